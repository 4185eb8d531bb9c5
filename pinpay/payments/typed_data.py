"""
EIP-712 typed data for EIP-3009 TransferWithAuthorization

The type definition and field order must match the token contract byte for
byte, or every captured signature becomes unusable.
"""

from dataclasses import dataclass

from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

from pinpay.models import Signature
from pinpay.payments.models import AuthorizationPayload

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

TRANSFER_WITH_AUTHORIZATION_TYPE = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "validAfter", "type": "uint256"},
    {"name": "validBefore", "type": "uint256"},
    {"name": "nonce", "type": "bytes32"},
]


@dataclass(frozen=True)
class TokenDomain:
    """EIP-712 domain of the token contract"""
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    @classmethod
    def from_config(cls, config) -> "TokenDomain":
        return cls(
            name=config.token_name,
            version=config.token_version,
            chain_id=config.chain_id,
            verifying_contract=Web3.to_checksum_address(config.token_address),
        )

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }


def build_typed_data(domain: TokenDomain, payload: AuthorizationPayload) -> dict:
    """Create EIP-712 typed data for a payment authorization"""
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_TYPE,
            "TransferWithAuthorization": TRANSFER_WITH_AUTHORIZATION_TYPE,
        },
        "primaryType": "TransferWithAuthorization",
        "domain": domain.as_dict(),
        "message": {
            "from": Web3.to_checksum_address(payload.from_address),
            "to": Web3.to_checksum_address(payload.to),
            "value": int(payload.value),
            "validAfter": payload.valid_after,
            "validBefore": payload.valid_before,
            "nonce": payload.nonce if payload.nonce.startswith("0x") else f"0x{payload.nonce}",
        },
    }


def sign_authorization(
    private_key: str,
    domain: TokenDomain,
    payload: AuthorizationPayload,
) -> Signature:
    """Sign a payment authorization as the payer's wallet would"""
    encoded = encode_typed_data(full_message=build_typed_data(domain, payload))
    signed = Account.sign_message(encoded, private_key=private_key)
    return Signature(
        v=signed.v,
        r="0x" + format(signed.r, "064x"),
        s="0x" + format(signed.s, "064x"),
    )


def recover_signer(
    domain: TokenDomain,
    payload: AuthorizationPayload,
    signature: Signature,
) -> str:
    """Recover the address that produced a signature over the payload"""
    encoded = encode_typed_data(full_message=build_typed_data(domain, payload))
    return Account.recover_message(encoded, signature=bytes.fromhex(signature.to_hex()[2:]))
