from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect, status

from pinpay.gateway.dependencies import get_gateway, limiter, logger
from pinpay.gateway.models import CaptureResponse, CreateRequestBody, SignatureBody
from pinpay.gateway.service import PaymentGateway
from pinpay.models import CaptureResult, PaymentAuthorizationRequest, RequestStatus, checksum_address
from pinpay.notifications import WebSocketManager
from pinpay.payments.models import SubmitResult, SubmitStatus

router = APIRouter(prefix="/api/v1/requests", tags=["Payment Requests"])

CAPTURE_ERRORS = {
    CaptureResult.NOT_FOUND: (status.HTTP_404_NOT_FOUND, "Payment request not found"),
    CaptureResult.EXPIRED: (status.HTTP_410_GONE, "Payment request expired"),
    CaptureResult.ALREADY_RESOLVED: (
        status.HTTP_409_CONFLICT,
        "This payment was already handled elsewhere",
    ),
}

SUBMIT_ERRORS = {
    SubmitStatus.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    SubmitStatus.EXPIRED: status.HTTP_410_GONE,
    SubmitStatus.ALREADY_RESOLVED: status.HTTP_409_CONFLICT,
    SubmitStatus.NOT_SIGNED: status.HTTP_409_CONFLICT,
    SubmitStatus.NOT_YET_VALID: status.HTTP_425_TOO_EARLY,
}


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment request not found")


@router.post("", response_model=PaymentAuthorizationRequest, status_code=status.HTTP_201_CREATED)
async def create_request(body: CreateRequestBody, gateway: PaymentGateway = Depends(get_gateway)):
    """
    Open a payment intent; the returned PIN is shown to the payer
    """
    try:
        return await gateway.create_request(
            payee_address=body.payee_address,
            amount=body.amount,
            valid_after=body.valid_after,
            valid_before=body.valid_before,
            ttl_seconds=body.ttl_seconds,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.get("/pin/{pin}", response_model=PaymentAuthorizationRequest)
@limiter.limit("60/minute")
async def get_request_by_pin(request: Request, pin: str, gateway: PaymentGateway = Depends(get_gateway)):
    """Look up the request a PIN refers to"""
    found = await gateway.lookup(pin)
    if found is None:
        raise _not_found()
    return found


@router.get("/pin/{pin}/typed-data")
@limiter.limit("60/minute")
async def get_typed_data(
    request: Request,
    pin: str,
    payer_address: str,
    gateway: PaymentGateway = Depends(get_gateway),
):
    """EIP-712 TransferWithAuthorization message for the payer's wallet to sign"""
    found = await gateway.lookup(pin)
    if found is None:
        raise _not_found()
    try:
        payer = checksum_address(payer_address)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return {
        "request_id": found.id,
        "status": found.status.value,
        "typed_data": gateway.typed_data_for(found, payer),
    }


@router.post("/pin/{pin}/signature", response_model=CaptureResponse)
@limiter.limit("20/minute")
async def attach_signature(
    request: Request,
    pin: str,
    body: SignatureBody,
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Attach the payer's signature to the pending request for a PIN"""
    try:
        signature = body.to_signature()
        outcome = await gateway.attach_signature(pin, body.payer_address, signature)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    if outcome.status in CAPTURE_ERRORS:
        code, detail = CAPTURE_ERRORS[outcome.status]
        raise HTTPException(status_code=code, detail=detail)

    return CaptureResponse(request_id=outcome.request_id, status=RequestStatus.SIGNED.value)


@router.get("/{request_id}", response_model=PaymentAuthorizationRequest)
async def get_request(request_id: str, gateway: PaymentGateway = Depends(get_gateway)):
    """Get current request state"""
    found = await gateway.get_request(request_id)
    if found is None:
        raise _not_found()
    return found


@router.post("/{request_id}/submit", response_model=SubmitResult)
async def submit_request(request_id: str, gateway: PaymentGateway = Depends(get_gateway)):
    """
    Relay a signed request on-chain

    COMPLETED and FAILED are both returned with 200; the request record
    carries the transaction hash or the failure reason.
    """
    result = await gateway.submit(request_id)
    if result.status in SUBMIT_ERRORS:
        raise HTTPException(
            status_code=SUBMIT_ERRORS[result.status],
            detail=result.error or result.status.value,
        )
    return result


@router.websocket("/{request_id}/events")
async def request_events(websocket: WebSocket, request_id: str):
    """Stream status changes for one request"""
    gateway: PaymentGateway = websocket.app.state.gateway
    manager: WebSocketManager = websocket.app.state.websocket_manager

    found = await gateway.get_request(request_id)
    if found is None:
        await websocket.close(code=4404)
        return

    await manager.connect(websocket, found)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("websocket_client_left", request_id=request_id)
    finally:
        manager.disconnect(websocket)
