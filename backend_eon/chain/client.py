"""
EVM client for the settlement contract and its ERC-20 token.

Wraps web3.AsyncWeb3 over HTTP plus one operator account. Donation calls are
signed once with a fixed nonce and the raw payload is what gets (re)sent, so a
retried submission can never land a second transaction on chain.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Iterable

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound

from backend_eon.chain.abi import (
    ERC20_ABI,
    SETTLEMENT_ABI,
    TRANSFER_TOPIC,
    address_to_topic,
    to_hex,
)
from backend_eon.eon_logging import get_logger

logger = get_logger(__name__)

DEFAULT_REQUEST_TIMEOUT_SEC = 30.0
_ALREADY_KNOWN_MARKERS = ("already known", "known transaction", "already imported")


@dataclass(frozen=True)
class SignedDonation:
    """A signed donate() call ready to broadcast."""

    tx_hash: str
    raw_transaction: bytes
    nonce: int
    contract: str
    entries: int


def is_already_known_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _ALREADY_KNOWN_MARKERS)


class EonChain:
    """Async chain access used by the event source and the submitter."""

    def __init__(
        self,
        rpc_url: str,
        operator_private_key: str,
        *,
        request_timeout_sec: float = DEFAULT_REQUEST_TIMEOUT_SEC,
        receipt_timeout_sec: float = 120.0,
        receipt_poll_sec: float = 2.0,
    ) -> None:
        if not rpc_url.strip():
            raise ValueError("rpc_url must be non-empty")
        self._w3 = AsyncWeb3(
            AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout_sec})
        )
        self._account = Account.from_key(operator_private_key)
        self._receipt_timeout = receipt_timeout_sec
        self._receipt_poll = receipt_poll_sec
        self._chain_id: int | None = None
        self._nonce_lock = asyncio.Lock()

    @property
    def operator(self) -> str:
        return self._account.address.lower()

    def _contract(self, address: str, abi: list[dict[str, Any]]) -> Any:
        return self._w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def block_number(self) -> int:
        return int(await self._w3.eth.block_number)

    async def get_block(self, number: int) -> dict[str, Any]:
        """Block with full transaction objects."""
        block = await self._w3.eth.get_block(number, full_transactions=True)
        return dict(block)

    async def get_transfer_logs(
        self,
        from_block: int,
        to_block: int,
        tokens: Iterable[str],
        recipients: Iterable[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Transfer logs emitted by tokens in [from_block, to_block], optionally filtered by recipient."""
        addresses = [Web3.to_checksum_address(t) for t in tokens if t]
        if not addresses:
            return []
        topics: list[Any] = [TRANSFER_TOPIC]
        if recipients is not None:
            padded = [address_to_topic(r) for r in recipients]
            if not padded:
                return []
            topics.extend([None, padded])
        logs = await self._w3.eth.get_logs(
            {
                "fromBlock": from_block,
                "toBlock": to_block,
                "address": addresses,
                "topics": topics,
            }
        )
        return [dict(log) for log in logs]

    async def is_executor(self, contract: str) -> bool:
        settlement = self._contract(contract, SETTLEMENT_ABI)
        return bool(
            await settlement.functions.isExecutor(Web3.to_checksum_address(self.operator)).call()
        )

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        erc20 = self._contract(token, ERC20_ABI)
        return int(
            await erc20.functions.allowance(
                Web3.to_checksum_address(owner), Web3.to_checksum_address(spender)
            ).call()
        )

    async def token_decimals(self, token: str) -> int:
        erc20 = self._contract(token, ERC20_ABI)
        return int(await erc20.functions.decimals().call())

    async def get_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        """Receipt if mined, else None. Does not wait."""
        try:
            receipt = await self._w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        return dict(receipt) if receipt else None

    async def is_pending(self, tx_hash: str) -> bool:
        """True if the node knows tx_hash but it is not mined yet."""
        try:
            tx = await self._w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return False
        return tx.get("blockNumber") is None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def _chain_id_value(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(await self._w3.eth.chain_id)
        return self._chain_id

    async def sign_donation(
        self,
        contract: str,
        froms: list[str],
        tos: list[str],
        times: list[int],
        amounts: list[int],
    ) -> SignedDonation:
        """
        Build and sign donate(froms, tos, times, amounts).

        The nonce is taken from the pending count once, here; retries resend
        the returned payload unchanged.
        """
        if not (len(froms) == len(tos) == len(times) == len(amounts)) or not froms:
            raise ValueError("donate arrays must be non-empty and of equal length")
        settlement = self._contract(contract, SETTLEMENT_ABI)
        async with self._nonce_lock:
            nonce = await self._w3.eth.get_transaction_count(
                Web3.to_checksum_address(self.operator), "pending"
            )
            tx = await settlement.functions.donate(
                [Web3.to_checksum_address(a) for a in froms],
                [Web3.to_checksum_address(a) for a in tos],
                [int(t) for t in times],
                [int(a) for a in amounts],
            ).build_transaction(
                {
                    "from": Web3.to_checksum_address(self.operator),
                    "nonce": nonce,
                    "chainId": await self._chain_id_value(),
                }
            )
            signed = self._account.sign_transaction(tx)
        tx_hash = to_hex(signed.hash)
        logger.info(
            "donation_signed",
            contract=contract,
            tx_hash=tx_hash,
            nonce=nonce,
            entries=len(froms),
        )
        return SignedDonation(
            tx_hash=tx_hash,
            raw_transaction=bytes(signed.raw_transaction),
            nonce=nonce,
            contract=contract,
            entries=len(froms),
        )

    async def send_signed(self, signed: SignedDonation) -> str:
        """Broadcast the signed payload. A node that already has it counts as accepted."""
        try:
            sent = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            if is_already_known_error(e):
                logger.info("donation_already_known", tx_hash=signed.tx_hash)
                return signed.tx_hash
            raise
        return to_hex(sent)

    async def wait_for_receipt(self, tx_hash: str) -> dict[str, Any]:
        """Block (cooperatively) until mined. Raises web3 TimeExhausted after receipt_timeout_sec."""
        receipt = await self._w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self._receipt_timeout, poll_latency=self._receipt_poll
        )
        return dict(receipt)
