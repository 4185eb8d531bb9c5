"""
PinPay Core Data Models
Shared models for the request store, lifecycle and API
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from web3 import Web3


class RequestStatus(str, Enum):
    """Payment authorization request lifecycle states"""
    PENDING = "pending"
    SIGNED = "signed"
    COMPLETED = "completed"
    EXPIRED = "expired"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({
    RequestStatus.COMPLETED,
    RequestStatus.EXPIRED,
    RequestStatus.FAILED,
})

ACTIVE_STATUSES = frozenset({RequestStatus.PENDING, RequestStatus.SIGNED})

# Fields a compare-and-update mutation may touch. Everything else is fixed at creation.
MUTABLE_FIELDS = frozenset({
    "status",
    "payer_address",
    "signature",
    "result_reference",
    "signed_at",
    "submitted_at",
    "completed_at",
})


class UpdateResult(str, Enum):
    """Outcome of a conditional update"""
    OK = "ok"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


class CaptureResult(str, Enum):
    """Outcome of attaching a payer signature"""
    OK = "ok"
    EXPIRED = "expired"
    ALREADY_RESOLVED = "already_resolved"
    NOT_FOUND = "not_found"


class CaptureOutcome(BaseModel):
    """Capture result and the request the PIN resolved to"""
    status: CaptureResult
    request_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == CaptureResult.OK


def _hex32(value: str) -> str:
    body = value[2:] if value.startswith("0x") else value
    if len(body) != 64:
        raise ValueError("expected 32 bytes of hex")
    int(body, 16)
    return "0x" + body.lower()


def checksum_address(value: str) -> str:
    """Validate and checksum an EVM address"""
    if not Web3.is_address(value):
        raise ValueError(f"Invalid address: {value}")
    return Web3.to_checksum_address(value)


class Signature(BaseModel):
    """ECDSA signature split into (v, r, s)"""
    v: int = Field(ge=0, le=255)
    r: str
    s: str

    @field_validator("v")
    @classmethod
    def normalize_v(cls, v):
        # Some wallets return 0/1 instead of 27/28
        return v + 27 if v < 27 else v

    @field_validator("r", "s")
    @classmethod
    def validate_word(cls, v):
        return _hex32(v)

    @classmethod
    def from_hex(cls, signature: str) -> "Signature":
        """Split a 65-byte hex signature into components"""
        sig_bytes = bytes.fromhex(signature[2:] if signature.startswith("0x") else signature)
        if len(sig_bytes) != 65:
            raise ValueError(f"Invalid signature length: {len(sig_bytes)}")
        return cls(
            v=sig_bytes[64],
            r="0x" + sig_bytes[:32].hex(),
            s="0x" + sig_bytes[32:64].hex(),
        )

    def to_hex(self) -> str:
        """Join components back into a 65-byte hex signature"""
        return "0x" + self.r[2:] + self.s[2:] + format(self.v, "02x")


class PaymentAuthorizationRequest(BaseModel):
    """A payment intent a payer signs and a merchant relays"""
    id: str
    pin: str = Field(pattern=r"^\d+$")
    nonce: str
    payee_address: str
    amount: int = Field(gt=0, description="Token amount in base units")
    valid_after: int = Field(ge=0)
    valid_before: int = Field(ge=0)
    status: RequestStatus = RequestStatus.PENDING

    payer_address: Optional[str] = None
    signature: Optional[Signature] = None
    result_reference: Optional[str] = None

    created_at: datetime
    signed_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("nonce")
    @classmethod
    def validate_nonce(cls, v):
        return _hex32(v)

    @field_validator("payee_address")
    @classmethod
    def validate_payee(cls, v):
        return checksum_address(v)

    @field_validator("payer_address")
    @classmethod
    def validate_payer(cls, v):
        return checksum_address(v) if v is not None else v

    @model_validator(mode="after")
    def check_window(self):
        if self.valid_after > self.valid_before:
            raise ValueError("valid_after must not be later than valid_before")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_row(self) -> Dict[str, Any]:
        """Flatten into a database row"""
        row = {
            "id": self.id,
            "pin": self.pin,
            "nonce": self.nonce,
            "payee_address": self.payee_address,
            "amount": str(self.amount),
            "valid_after": self.valid_after,
            "valid_before": self.valid_before,
            "created_at": self.created_at.isoformat(),
        }
        row.update(mutation_to_row({
            field: getattr(self, field) for field in MUTABLE_FIELDS
        }))
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PaymentAuthorizationRequest":
        """Build from a database row"""
        data = dict(row)
        v = data.pop("signature_v", None)
        r = data.pop("signature_r", None)
        s = data.pop("signature_s", None)
        data["signature"] = Signature(v=v, r=r, s=s) if v is not None else None
        data["amount"] = int(data["amount"])
        return cls.model_validate(data)


def mutation_to_row(mutation: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a model-level mutation into column values"""
    row: Dict[str, Any] = {}
    for field, value in mutation.items():
        if field == "signature":
            row["signature_v"] = value.v if value else None
            row["signature_r"] = value.r if value else None
            row["signature_s"] = value.s if value else None
        elif isinstance(value, datetime):
            row[field] = value.isoformat()
        elif isinstance(value, Enum):
            row[field] = value.value
        else:
            row[field] = value
    return row


class StatusChange(BaseModel):
    """Notification emitted for each committed status transition"""
    request_id: str
    status: RequestStatus
    timestamp: datetime


def utc_datetime(ts: float) -> datetime:
    """Convert a unix timestamp into an aware UTC datetime"""
    return datetime.fromtimestamp(ts, tz=timezone.utc)
