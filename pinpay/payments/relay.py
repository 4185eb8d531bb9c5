"""
Gas-sponsoring relay clients
Execute EIP-3009 transferWithAuthorization on behalf of the payer
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from eth_abi import encode
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted
import httpx
import structlog

from pinpay.errors import TerminalRelayError, TransientRelayError
from pinpay.models import Signature
from pinpay.payments.models import AuthorizationPayload, RelayReceipt
from pinpay.payments.typed_data import TokenDomain, recover_signer

logger = structlog.get_logger()

TRANSFER_WITH_AUTHORIZATION_SIGNATURE = (
    "transferWithAuthorization(address,address,uint256,uint256,uint256,bytes32,uint8,bytes32,bytes32)"
)

# EIP-3009 subset of the token ABI
EIP3009_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "validAfter", "type": "uint256"},
            {"name": "validBefore", "type": "uint256"},
            {"name": "nonce", "type": "bytes32"},
            {"name": "v", "type": "uint8"},
            {"name": "r", "type": "bytes32"},
            {"name": "s", "type": "bytes32"},
        ],
        "name": "transferWithAuthorization",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    # Check if authorization nonce has been used
    {
        "constant": True,
        "inputs": [
            {"name": "authorizer", "type": "address"},
            {"name": "nonce", "type": "bytes32"},
        ],
        "name": "authorizationState",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
]

GELATO_SUCCESS_STATES = frozenset({"ExecSuccess", "CheckSuccess"})
GELATO_FAILURE_STATES = frozenset({"ExecReverted", "Cancelled"})


def _bytes32(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value).rjust(32, b"\x00")


def encode_transfer_with_authorization(payload: AuthorizationPayload, signature: Signature) -> str:
    """ABI-encode the transferWithAuthorization call"""
    selector = Web3.keccak(text=TRANSFER_WITH_AUTHORIZATION_SIGNATURE)[:4]
    args = encode(
        ["address", "address", "uint256", "uint256", "uint256", "bytes32", "uint8", "bytes32", "bytes32"],
        [
            Web3.to_checksum_address(payload.from_address),
            Web3.to_checksum_address(payload.to),
            int(payload.value),
            payload.valid_after,
            payload.valid_before,
            _bytes32(payload.nonce),
            signature.v,
            _bytes32(signature.r),
            _bytes32(signature.s),
        ],
    )
    return Web3.to_hex(bytes(selector) + args)


def is_transient_relay_error(error: Exception) -> bool:
    return isinstance(error, TransientRelayError)


class RelayClient(ABC):
    """Submits a signed authorization for on-chain execution"""

    name = "relay"

    @abstractmethod
    async def execute(self, payload: AuthorizationPayload, signature: Signature) -> RelayReceipt:
        """
        Execute the transfer

        Raises:
            TransientRelayError: rate limit, timeout, transport failure
            TerminalRelayError: rejected by the relay or the chain
        """

    async def aclose(self) -> None:
        return None


class SimulatedRelayClient(RelayClient):
    """
    Logs the transfer instead of executing it. For local development.
    """

    name = "simulated"

    async def execute(self, payload: AuthorizationPayload, signature: Signature) -> RelayReceipt:
        logger.info(
            "relay_execution_simulated",
            from_address=payload.from_address,
            to_address=payload.to,
            amount=payload.value,
            nonce=payload.nonce,
        )
        return RelayReceipt(reference=f"0xsim_{payload.nonce[2:18]}", relay=self.name)


class GelatoRelayClient(RelayClient):
    """
    Gelato sponsored-call relay.

    Sends transferWithAuthorization calldata to the token contract through
    Gelato's 1Balance sponsorship and polls the task until it settles.
    """

    name = "gelato"

    def __init__(
        self,
        api_key: str,
        token_address: str,
        chain_id: int,
        base_url: str = "https://api.gelato.digital",
        poll_interval: float = 2.0,
        poll_timeout: float = 60.0,
        http_timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], object] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not api_key:
            raise ValueError("Gelato API key is required for the gelato relay")
        self.api_key = api_key
        self.token_address = Web3.to_checksum_address(token_address)
        self.chain_id = chain_id
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.http = http_client or httpx.AsyncClient(base_url=base_url, timeout=http_timeout)
        self._owns_client = http_client is None
        self._sleep = sleep
        self._clock = clock

    async def execute(self, payload: AuthorizationPayload, signature: Signature) -> RelayReceipt:
        data = await self._request(
            "POST",
            "/relays/v2/sponsored-call",
            json={
                "chainId": str(self.chain_id),
                "target": self.token_address,
                "data": encode_transfer_with_authorization(payload, signature),
                "sponsorApiKey": self.api_key,
            },
        )
        task_id = data.get("taskId")
        if not task_id:
            raise TerminalRelayError(f"Relay returned no task id: {data}")

        logger.info("relay_task_created", task_id=task_id, nonce=payload.nonce)
        tx_hash = await self._wait_for_task(task_id)
        return RelayReceipt(reference=tx_hash, task_id=task_id, relay=self.name)

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self.http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientRelayError(f"Relay timeout: {e}") from e
        except httpx.TransportError as e:
            raise TransientRelayError(f"Relay transport error: {e}") from e

        if response.status_code == 429:
            raise TransientRelayError("Too many requests")
        if response.status_code >= 500:
            raise TransientRelayError(f"Relay server error: HTTP {response.status_code}")
        if response.status_code >= 400:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            raise TerminalRelayError(f"Relay rejected request: HTTP {response.status_code} {message}")
        return response.json()

    async def _wait_for_task(self, task_id: str) -> str:
        """Poll the task until it settles; resubmitting here could double-send"""
        deadline = self._clock() + self.poll_timeout

        while True:
            try:
                data = await self._request("GET", f"/tasks/status/{task_id}")
            except TransientRelayError as e:
                logger.warning("relay_task_poll_failed", task_id=task_id, error=str(e))
                data = {}

            task = data.get("task") or {}
            state = task.get("taskState")

            if state in GELATO_SUCCESS_STATES:
                tx_hash = task.get("transactionHash")
                logger.info("relay_task_succeeded", task_id=task_id, tx_hash=tx_hash)
                return tx_hash or task_id

            if state in GELATO_FAILURE_STATES:
                detail = task.get("lastCheckMessage") or state
                raise TerminalRelayError(
                    f"Relay task {task_id} {state}: {detail}", task_id=task_id
                )

            if self._clock() >= deadline:
                raise TerminalRelayError(
                    f"Relay task {task_id} not settled within {self.poll_timeout:g}s",
                    task_id=task_id,
                )

            await self._sleep(self.poll_interval)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()


class DirectRelayClient(RelayClient):
    """
    Sponsors gas with the gateway's own key.

    Blocking web3 calls run in a worker thread.
    """

    name = "direct"

    def __init__(
        self,
        private_key: str,
        domain: TokenDomain,
        rpc_url: str = "https://polygon-rpc.com",
        gas_limit: int = 150000,
        tx_timeout_seconds: int = 120,
        w3: Optional[Web3] = None,
    ):
        if not private_key:
            raise ValueError("Relayer private key is required for the direct relay")
        self.account = Account.from_key(private_key)
        self.address = self.account.address
        self.domain = domain
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url))
        self.token = self.w3.eth.contract(address=domain.verifying_contract, abi=EIP3009_ABI)
        self.gas_limit = gas_limit
        self.tx_timeout_seconds = tx_timeout_seconds

    async def execute(self, payload: AuthorizationPayload, signature: Signature) -> RelayReceipt:
        return await asyncio.to_thread(self._execute_sync, payload, signature)

    def _execute_sync(self, payload: AuthorizationPayload, signature: Signature) -> RelayReceipt:
        # Refuse to spend gas on a transfer the contract would reject
        try:
            signer = recover_signer(self.domain, payload, signature)
        except Exception as e:
            raise TerminalRelayError(f"Signature could not be recovered: {e}") from e
        if signer.lower() != payload.from_address.lower():
            raise TerminalRelayError(
                f"Signature does not match payer: recovered {signer}, expected {payload.from_address}"
            )

        from_address = Web3.to_checksum_address(payload.from_address)
        nonce_bytes = _bytes32(payload.nonce)

        try:
            if self.token.functions.authorizationState(from_address, nonce_bytes).call():
                raise TerminalRelayError("Payment authorization nonce already used")

            balance = self.token.functions.balanceOf(from_address).call()
            if balance < int(payload.value):
                raise TerminalRelayError(f"Insufficient token balance: {balance} < {payload.value}")

            tx = self.token.functions.transferWithAuthorization(
                from_address,
                Web3.to_checksum_address(payload.to),
                int(payload.value),
                payload.valid_after,
                payload.valid_before,
                nonce_bytes,
                signature.v,
                _bytes32(signature.r),
                _bytes32(signature.s),
            ).build_transaction({
                "from": self.address,
                "nonce": self.w3.eth.get_transaction_count(self.address),
                "gas": self.gas_limit,
                "gasPrice": self.w3.eth.gas_price,
                "chainId": self.domain.chain_id,
            })
        except ContractLogicError as e:
            raise TerminalRelayError(f"Execution reverted: {e}") from e
        except OSError as e:
            raise TransientRelayError(f"RPC unavailable: {e}") from e

        try:
            signed_tx = self.w3.eth.account.sign_transaction(tx, self.account.key)
            tx_hash = Web3.to_hex(self.w3.eth.send_raw_transaction(signed_tx.raw_transaction))
        except ContractLogicError as e:
            raise TerminalRelayError(f"Execution reverted: {e}") from e
        except OSError as e:
            raise TransientRelayError(f"RPC unavailable: {e}") from e

        logger.info(
            "transfer_with_authorization_sent",
            tx_hash=tx_hash,
            from_address=from_address,
            to_address=payload.to,
            amount=payload.value,
        )

        # Once sent, never resend: a timeout here is recorded, not retried
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.tx_timeout_seconds)
        except TimeExhausted as e:
            raise TerminalRelayError(
                f"Transaction {tx_hash} not confirmed within {self.tx_timeout_seconds}s"
            ) from e

        if receipt.status != 1:
            raise TerminalRelayError(f"Transaction {tx_hash} reverted on-chain")

        logger.info(
            "transfer_with_authorization_confirmed",
            tx_hash=tx_hash,
            block_number=receipt.blockNumber,
            gas_used=receipt.gasUsed,
        )
        return RelayReceipt(reference=tx_hash, relay=self.name)
