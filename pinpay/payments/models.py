"""
Payment models for EIP-3009 relay submission
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from pinpay.models import PaymentAuthorizationRequest


class AuthorizationPayload(BaseModel):
    """TransferWithAuthorization message fields"""
    model_config = ConfigDict(populate_by_name=True)

    from_address: str = Field(alias="from")
    to: str
    value: int
    valid_after: int = Field(default=0, alias="validAfter")
    valid_before: int = Field(alias="validBefore")
    nonce: str

    @classmethod
    def from_request(
        cls,
        request: PaymentAuthorizationRequest,
        payer_address: Optional[str] = None,
    ) -> "AuthorizationPayload":
        """
        Build the payload a payer signs for a request

        payer_address overrides the stored payer, which is only known
        once the request is signed.
        """
        payer = payer_address or request.payer_address
        if not payer:
            raise ValueError(f"Request {request.id} has no payer address")
        return cls(
            from_address=payer,
            to=request.payee_address,
            value=request.amount,
            valid_after=request.valid_after,
            valid_before=request.valid_before,
            nonce=request.nonce,
        )


class RelayReceipt(BaseModel):
    """Returned by a relay client after on-chain execution"""
    reference: str = Field(description="Transaction hash or simulated reference")
    task_id: Optional[str] = None
    relay: str


class SubmitStatus(str, Enum):
    """Outcome of a relay submission"""
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    ALREADY_RESOLVED = "already_resolved"
    NOT_FOUND = "not_found"
    NOT_SIGNED = "not_signed"
    NOT_YET_VALID = "not_yet_valid"


class SubmitResult(BaseModel):
    """Result of RelaySubmitter.submit"""
    request_id: str
    status: SubmitStatus
    reference: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == SubmitStatus.COMPLETED
