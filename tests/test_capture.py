"""
Unit tests for the request lifecycle and authorization capture
"""

import asyncio

import pytest
from eth_account import Account

from pinpay.errors import InvalidTransitionError
from pinpay.models import CaptureResult, RequestStatus, UpdateResult, utc_datetime
from tests.factories import ONE_TOKEN, SignatureFactory


async def open_request(store, clock, payee, ttl=300, **kwargs):
    return await store.create(
        payee_address=payee,
        amount=kwargs.pop("amount", ONE_TOKEN),
        valid_after=kwargs.pop("valid_after", 0),
        valid_before=kwargs.pop("valid_before", int(clock()) + ttl),
    )


class TestLifecycle:
    """Test status transition rules"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("from_status,to_status", [
        (RequestStatus.PENDING, RequestStatus.COMPLETED),
        (RequestStatus.PENDING, RequestStatus.FAILED),
        (RequestStatus.SIGNED, RequestStatus.PENDING),
        (RequestStatus.COMPLETED, RequestStatus.SIGNED),
        (RequestStatus.EXPIRED, RequestStatus.PENDING),
        (RequestStatus.FAILED, RequestStatus.COMPLETED),
    ])
    async def test_illegal_transitions_raise(self, lifecycle, from_status, to_status):
        with pytest.raises(InvalidTransitionError):
            await lifecycle.transition("any", from_status, to_status)

    @pytest.mark.asyncio
    async def test_transition_publishes_change(self, store, lifecycle, notifier, clock, payee_account):
        request = await open_request(store, clock, payee_account.address)
        received = []
        subscription = notifier.subscribe(request.id, received.append)

        result = await lifecycle.transition(request.id, RequestStatus.PENDING, RequestStatus.EXPIRED)
        await subscription.drain()

        assert result == UpdateResult.OK
        assert [e.status for e in received] == [RequestStatus.EXPIRED]
        assert received[0].timestamp == utc_datetime(clock())

    @pytest.mark.asyncio
    async def test_conflict_publishes_nothing(self, store, lifecycle, notifier, clock, payee_account):
        request = await open_request(store, clock, payee_account.address)
        received = []
        subscription = notifier.subscribe(request.id, received.append)

        result = await lifecycle.transition(request.id, RequestStatus.SIGNED, RequestStatus.COMPLETED)
        await subscription.drain()

        assert result == UpdateResult.CONFLICT
        assert received == []


class TestAuthorizationCapture:
    """Test attaching payer signatures to requests"""

    @pytest.mark.asyncio
    async def test_capture_signs_pending_request(self, store, capture, clock, payee_account, payer_account):
        request = await open_request(store, clock, payee_account.address)
        signature = SignatureFactory()

        result = await capture.attach_signature(request.pin, payer_account.address.lower(), signature)

        assert result.status == CaptureResult.OK
        assert result.request_id == request.id
        stored = await store.get(request.id)
        assert stored.status == RequestStatus.SIGNED
        assert stored.payer_address == payer_account.address
        assert stored.signature == signature
        assert stored.signed_at == utc_datetime(clock())
        assert stored.submitted_at is None

    @pytest.mark.asyncio
    async def test_unknown_pin(self, capture, payer_account):
        result = await capture.attach_signature("999999", payer_account.address, SignatureFactory())
        assert result.status == CaptureResult.NOT_FOUND

    @pytest.mark.asyncio
    async def test_past_deadline_returns_expired(self, store, capture, clock, payee_account, payer_account):
        """valid_before = now - 1 is rejected and the request flips to expired"""
        request = await open_request(
            store, clock, payee_account.address, valid_before=int(clock()) - 1
        )

        result = await capture.attach_signature(request.pin, payer_account.address, SignatureFactory())

        assert result.status == CaptureResult.EXPIRED
        stored = await store.get(request.id)
        assert stored.status == RequestStatus.EXPIRED
        assert stored.signature is None

    @pytest.mark.asyncio
    async def test_capture_at_deadline_is_accepted(self, store, capture, clock, payee_account, payer_account):
        request = await open_request(store, clock, payee_account.address, valid_before=int(clock()))

        result = await capture.attach_signature(request.pin, payer_account.address, SignatureFactory())

        assert result.status == CaptureResult.OK

    @pytest.mark.asyncio
    async def test_expired_request_stays_expired(self, store, capture, clock, payee_account, payer_account):
        request = await open_request(store, clock, payee_account.address, ttl=10)
        clock.advance(60)
        await capture.attach_signature(request.pin, payer_account.address, SignatureFactory())

        result = await capture.attach_signature(request.pin, payer_account.address, SignatureFactory())

        assert result.status == CaptureResult.EXPIRED

    @pytest.mark.asyncio
    async def test_second_signature_rejected(self, store, capture, clock, payee_account, payer_account):
        request = await open_request(store, clock, payee_account.address)
        first = SignatureFactory()
        await capture.attach_signature(request.pin, payer_account.address, first)

        other_payer = Account.create().address
        result = await capture.attach_signature(request.pin, other_payer, SignatureFactory())

        assert result.status == CaptureResult.ALREADY_RESOLVED
        stored = await store.get(request.id)
        assert stored.signature == first
        assert stored.payer_address == payer_account.address

    @pytest.mark.asyncio
    async def test_concurrent_captures_single_winner(self, store, capture, clock, payee_account):
        request = await open_request(store, clock, payee_account.address)
        payers = [Account.create().address for _ in range(5)]

        outcomes = await asyncio.gather(*(
            capture.attach_signature(request.pin, payer, SignatureFactory()) for payer in payers
        ))
        results = [o.status for o in outcomes]

        assert results.count(CaptureResult.OK) == 1
        assert results.count(CaptureResult.ALREADY_RESOLVED) == 4
        stored = await store.get(request.id)
        assert stored.payer_address == payers[results.index(CaptureResult.OK)]

    @pytest.mark.asyncio
    async def test_completed_request_already_resolved(self, store, capture, lifecycle, clock, payee_account, payer_account):
        request = await open_request(store, clock, payee_account.address)
        await capture.attach_signature(request.pin, payer_account.address, SignatureFactory())
        await lifecycle.transition(
            request.id, RequestStatus.SIGNED, RequestStatus.COMPLETED, {"result_reference": "0xabc"}
        )

        result = await capture.attach_signature(request.pin, payer_account.address, SignatureFactory())

        assert result.status == CaptureResult.ALREADY_RESOLVED

    @pytest.mark.asyncio
    async def test_invalid_payer_address(self, store, capture, clock, payee_account):
        request = await open_request(store, clock, payee_account.address)

        with pytest.raises(ValueError):
            await capture.attach_signature(request.pin, "not-an-address", SignatureFactory())

        assert (await store.get(request.id)).status == RequestStatus.PENDING
