"""
PinPay Payment Module
EIP-3009 authorization capture and gasless relay submission
"""

from pinpay.payments.issuer import IssuedCredentials, PinIssuer
from pinpay.payments.models import (
    AuthorizationPayload,
    RelayReceipt,
    SubmitResult,
    SubmitStatus,
)
from pinpay.payments.typed_data import (
    TokenDomain,
    build_typed_data,
    sign_authorization,
    recover_signer,
)

__all__ = [
    "IssuedCredentials",
    "PinIssuer",
    "AuthorizationPayload",
    "RelayReceipt",
    "SubmitResult",
    "SubmitStatus",
    "TokenDomain",
    "build_typed_data",
    "sign_authorization",
    "recover_signer",
]
