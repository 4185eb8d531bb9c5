"""
API request/response models for the PinPay gateway
"""

from typing import Optional

from pydantic import BaseModel, Field, model_validator

from pinpay.models import Signature


class CreateRequestBody(BaseModel):
    """Merchant request to open a payment intent"""
    payee_address: str = Field(description="Merchant wallet address")
    amount: int = Field(gt=0, description="Token amount in base units")
    valid_after: Optional[int] = Field(default=None, ge=0)
    valid_before: Optional[int] = Field(default=None, ge=0)
    ttl_seconds: Optional[int] = Field(default=None, gt=0, description="Used when valid_before is omitted")


class SignatureBody(BaseModel):
    """Payer signature, either as a 65-byte hex string or split into v, r, s"""
    payer_address: str
    signature: Optional[str] = None
    v: Optional[int] = None
    r: Optional[str] = None
    s: Optional[str] = None

    @model_validator(mode="after")
    def check_form(self):
        split = (self.v, self.r, self.s)
        if self.signature is None and any(part is None for part in split):
            raise ValueError("Provide signature or all of v, r, s")
        return self

    def to_signature(self) -> Signature:
        if self.signature is not None:
            return Signature.from_hex(self.signature)
        return Signature(v=self.v, r=self.r, s=self.s)


class CaptureResponse(BaseModel):
    request_id: str
    status: str
