"""
PIN and nonce issuing
"""

import secrets
from dataclasses import dataclass


@dataclass(frozen=True)
class IssuedCredentials:
    """A fresh PIN and authorization nonce"""
    pin: str
    nonce: str


class PinIssuer:
    """
    Generates human-enterable PINs and EIP-3009 nonces.

    PINs are uniform over the full fixed-width range (000000-999999 for
    six digits). Nonces are 32 random bytes, the size of the bytes32
    nonce in TransferWithAuthorization. Checking a PIN against live
    requests is the store's job.
    """

    NONCE_BYTES = 32

    def __init__(self, pin_length: int = 6):
        if pin_length < 1:
            raise ValueError("pin_length must be positive")
        self.pin_length = pin_length

    def issue_pin(self) -> str:
        return str(secrets.randbelow(10 ** self.pin_length)).zfill(self.pin_length)

    def issue_nonce(self) -> str:
        return "0x" + secrets.token_bytes(self.NONCE_BYTES).hex()

    def issue(self) -> IssuedCredentials:
        return IssuedCredentials(pin=self.issue_pin(), nonce=self.issue_nonce())
