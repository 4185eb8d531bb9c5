"""
Unit tests for relay clients
Gelato is exercised through httpx.MockTransport; the direct relay through a mocked Web3
"""

import json
from unittest.mock import MagicMock

import httpx
import pytest
from eth_abi import decode
from web3.exceptions import ContractLogicError

from pinpay.errors import TerminalRelayError, TransientRelayError
from pinpay.models import Signature
from pinpay.payments.models import AuthorizationPayload
from pinpay.payments.relay import (
    DirectRelayClient,
    GelatoRelayClient,
    SimulatedRelayClient,
    encode_transfer_with_authorization,
)
from pinpay.payments.typed_data import sign_authorization
from tests.factories import ONE_TOKEN, PAYER_KEY, RELAYER_KEY, FakeClock, RecordingSleep

TOKEN = "0xE7C3D8C9a439feDe00D2600032D5dB0Be71C3c29"


@pytest.fixture
def payload(payer_account, payee_account):
    return AuthorizationPayload(
        from_address=payer_account.address,
        to=payee_account.address,
        value=ONE_TOKEN,
        valid_after=0,
        valid_before=1_700_000_300,
        nonce="0x" + "5a" * 32,
    )


@pytest.fixture
def signature():
    return Signature(v=28, r="0x" + "11" * 32, s="0x" + "22" * 32)


def gelato_client(handler, clock=None, poll_timeout=10.0):
    clock = clock or FakeClock(0)
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://relay.test")
    return GelatoRelayClient(
        api_key="sponsor-key",
        token_address=TOKEN,
        chain_id=137,
        poll_interval=2.0,
        poll_timeout=poll_timeout,
        http_client=http,
        sleep=RecordingSleep(clock),
        clock=clock,
    )


def task_status(state, **extra):
    return httpx.Response(200, json={"task": {"taskState": state, **extra}})


class TestCalldata:
    """Test transferWithAuthorization encoding"""

    def test_selector_and_arguments(self, payload, signature, payer_account, payee_account):
        data = encode_transfer_with_authorization(payload, signature)

        assert data.startswith("0xe3ee160e")
        args = decode(
            ["address", "address", "uint256", "uint256", "uint256", "bytes32", "uint8", "bytes32", "bytes32"],
            bytes.fromhex(data[10:]),
        )
        assert args[0].lower() == payer_account.address.lower()
        assert args[1].lower() == payee_account.address.lower()
        assert args[2] == ONE_TOKEN
        assert args[4] == 1_700_000_300
        assert args[5] == bytes.fromhex("5a" * 32)
        assert args[6] == 28
        assert args[7] == bytes.fromhex("11" * 32)


class TestSimulatedRelay:

    @pytest.mark.asyncio
    async def test_returns_reference(self, payload, signature):
        receipt = await SimulatedRelayClient().execute(payload, signature)

        assert receipt.reference == "0xsim_" + "5a" * 8
        assert receipt.relay == "simulated"


class TestGelatoRelay:
    """Test the Gelato sponsored-call client"""

    @pytest.mark.asyncio
    async def test_submit_and_poll_until_success(self, payload, signature):
        requests = []
        states = iter([
            task_status("CheckPending"),
            task_status("ExecPending"),
            task_status("ExecSuccess", transactionHash="0xabc"),
        ])

        def handler(request: httpx.Request):
            requests.append(request)
            if request.method == "POST":
                return httpx.Response(201, json={"taskId": "task_1"})
            return next(states)

        client = gelato_client(handler)
        receipt = await client.execute(payload, signature)

        assert receipt.reference == "0xabc"
        assert receipt.task_id == "task_1"
        assert receipt.relay == "gelato"

        body = json.loads(requests[0].content)
        assert requests[0].url.path == "/relays/v2/sponsored-call"
        assert body["chainId"] == "137"
        assert body["target"] == TOKEN
        assert body["sponsorApiKey"] == "sponsor-key"
        assert body["data"] == encode_transfer_with_authorization(payload, signature)
        assert requests[1].url.path == "/tasks/status/task_1"
        assert client._sleep.delays == [2.0, 2.0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [429, 500, 503])
    async def test_retryable_http_errors(self, payload, signature, status_code):
        client = gelato_client(lambda request: httpx.Response(status_code, text="busy"))

        with pytest.raises(TransientRelayError):
            await client.execute(payload, signature)

    @pytest.mark.asyncio
    async def test_client_error_is_terminal(self, payload, signature):
        client = gelato_client(
            lambda request: httpx.Response(400, json={"message": "Invalid sponsor key"})
        )

        with pytest.raises(TerminalRelayError, match="Invalid sponsor key"):
            await client.execute(payload, signature)

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self, payload, signature):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientRelayError):
            await gelato_client(handler).execute(payload, signature)

    @pytest.mark.asyncio
    async def test_reverted_task_is_terminal(self, payload, signature):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(201, json={"taskId": "task_2"})
            return task_status("ExecReverted", lastCheckMessage="FiatTokenV2: authorization is used")

        with pytest.raises(TerminalRelayError, match="authorization is used") as exc_info:
            await gelato_client(handler).execute(payload, signature)
        assert exc_info.value.task_id == "task_2"

    @pytest.mark.asyncio
    async def test_poll_errors_do_not_resubmit(self, payload, signature):
        posts = []
        polls = iter([httpx.Response(502), task_status("ExecSuccess", transactionHash="0xdef")])

        def handler(request):
            if request.method == "POST":
                posts.append(request)
                return httpx.Response(201, json={"taskId": "task_3"})
            return next(polls)

        receipt = await gelato_client(handler).execute(payload, signature)

        assert receipt.reference == "0xdef"
        assert len(posts) == 1

    @pytest.mark.asyncio
    async def test_poll_timeout_is_terminal(self, payload, signature):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(201, json={"taskId": "task_4"})
            return task_status("WaitingForConfirmation")

        with pytest.raises(TerminalRelayError, match="not settled") as exc_info:
            await gelato_client(handler, poll_timeout=5.0).execute(payload, signature)
        assert exc_info.value.task_id == "task_4"

    @pytest.mark.asyncio
    async def test_missing_task_id_is_terminal(self, payload, signature):
        client = gelato_client(lambda request: httpx.Response(200, json={}))

        with pytest.raises(TerminalRelayError):
            await client.execute(payload, signature)

    def test_api_key_required(self):
        with pytest.raises(ValueError):
            GelatoRelayClient(api_key="", token_address=TOKEN, chain_id=137)


class TestDirectRelay:
    """Test the self-sponsored relay against a mocked Web3"""

    def make_client(self, domain, w3=None):
        w3 = w3 or MagicMock()
        token = w3.eth.contract.return_value
        token.functions.authorizationState.return_value.call.return_value = False
        token.functions.balanceOf.return_value.call.return_value = ONE_TOKEN * 10
        token.functions.transferWithAuthorization.return_value.build_transaction.return_value = {"gas": 150000}
        w3.eth.get_transaction_count.return_value = 7
        w3.eth.gas_price = 30_000_000_000
        w3.eth.send_raw_transaction.return_value = bytes.fromhex("12" * 32)
        w3.eth.wait_for_transaction_receipt.return_value = MagicMock(status=1, blockNumber=100, gasUsed=60000)
        return DirectRelayClient(private_key=RELAYER_KEY, domain=domain, w3=w3), w3, token

    @pytest.mark.asyncio
    async def test_sends_transfer(self, domain, payload):
        client, w3, token = self.make_client(domain)
        signature = sign_authorization(PAYER_KEY, domain, payload)

        receipt = await client.execute(payload, signature)

        assert receipt.reference == "0x" + "12" * 32
        assert receipt.relay == "direct"
        args = token.functions.transferWithAuthorization.call_args[0]
        assert args[2] == ONE_TOKEN
        assert args[6] == signature.v
        tx_params = token.functions.transferWithAuthorization.return_value.build_transaction.call_args[0][0]
        assert tx_params["from"] == client.address
        assert tx_params["nonce"] == 7
        assert tx_params["chainId"] == 137

    @pytest.mark.asyncio
    async def test_wrong_signer_rejected_before_rpc(self, domain, payload):
        client, w3, token = self.make_client(domain)
        signed_by_relayer = sign_authorization(RELAYER_KEY, domain, payload)

        with pytest.raises(TerminalRelayError, match="does not match payer"):
            await client.execute(payload, signed_by_relayer)
        w3.eth.send_raw_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_used_nonce_is_terminal(self, domain, payload):
        client, w3, token = self.make_client(domain)
        token.functions.authorizationState.return_value.call.return_value = True

        with pytest.raises(TerminalRelayError, match="already used"):
            await client.execute(payload, sign_authorization(PAYER_KEY, domain, payload))
        w3.eth.send_raw_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_insufficient_balance_is_terminal(self, domain, payload):
        client, w3, token = self.make_client(domain)
        token.functions.balanceOf.return_value.call.return_value = 1

        with pytest.raises(TerminalRelayError, match="Insufficient"):
            await client.execute(payload, sign_authorization(PAYER_KEY, domain, payload))

    @pytest.mark.asyncio
    async def test_rpc_outage_is_transient(self, domain, payload):
        client, w3, token = self.make_client(domain)
        w3.eth.get_transaction_count.side_effect = ConnectionError("rpc down")

        with pytest.raises(TransientRelayError):
            await client.execute(payload, sign_authorization(PAYER_KEY, domain, payload))

    @pytest.mark.asyncio
    async def test_revert_is_terminal(self, domain, payload):
        client, w3, token = self.make_client(domain)
        token.functions.transferWithAuthorization.return_value.build_transaction.side_effect = (
            ContractLogicError("execution reverted: FiatTokenV2: invalid signature")
        )

        with pytest.raises(TerminalRelayError, match="reverted"):
            await client.execute(payload, sign_authorization(PAYER_KEY, domain, payload))

    @pytest.mark.asyncio
    async def test_failed_receipt_is_terminal(self, domain, payload):
        client, w3, token = self.make_client(domain)
        w3.eth.wait_for_transaction_receipt.return_value = MagicMock(status=0)

        with pytest.raises(TerminalRelayError, match="reverted on-chain"):
            await client.execute(payload, sign_authorization(PAYER_KEY, domain, payload))

    def test_key_required(self, domain):
        with pytest.raises(ValueError):
            DirectRelayClient(private_key="", domain=domain, w3=MagicMock())
