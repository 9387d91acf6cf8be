"""
Transfer events and push-payload normalization.

Every delivery channel (block scan, log scan, webhook) is reduced to
TransferEvent before entering the pipeline. Webhook bodies come in several
shapes (raw logs, decoded ERC-20 transfers, native txs, a single generic
transaction, decoded logs); entries that cannot be parsed are logged and
skipped so one bad entry never drops the rest of the body.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterator

from backend_eon.chain.abi import TRANSFER_TOPIC, to_hex, to_int, topic_to_address
from backend_eon.database.models import canonical_address
from backend_eon.eon_logging import get_logger

logger = get_logger(__name__)

CHANNEL_NATIVE = "native"
CHANNEL_TOKEN = "token"


@dataclass(frozen=True)
class TransferEvent:
    """A value transfer observed on chain. token is None for native coin."""

    tx_hash: str
    sender: str
    recipient: str
    amount: int
    token: str | None = None
    block_number: int | None = None
    block_time: int | None = None
    channel: str = CHANNEL_NATIVE

    @property
    def is_native(self) -> bool:
        return self.token is None


def _block_time(payload: dict[str, Any]) -> int | None:
    block = payload.get("block")
    if isinstance(block, dict) and block.get("timestamp") not in (None, ""):
        try:
            return to_int(block["timestamp"])
        except ValueError:
            return None
    return None


def _block_number(payload: dict[str, Any]) -> int | None:
    block = payload.get("block")
    if isinstance(block, dict) and block.get("number") not in (None, ""):
        try:
            return to_int(block["number"])
        except ValueError:
            return None
    return None


def _from_raw_log(log: dict[str, Any], block_time: int | None, block_number: int | None) -> TransferEvent | None:
    if "topics" in log:
        topics = list(log.get("topics") or [])
    else:
        topics = [log.get("topic0"), log.get("topic1"), log.get("topic2")]
    if not topics or to_hex(topics[0]) != TRANSFER_TOPIC:
        return None
    if len(topics) < 3 or not topics[1] or not topics[2]:
        raise ValueError("Transfer log missing indexed from/to")
    data = log.get("data") or "0x0"
    return TransferEvent(
        tx_hash=to_hex(log.get("transactionHash") or log.get("transaction_hash")),
        sender=topic_to_address(topics[1]),
        recipient=topic_to_address(topics[2]),
        amount=to_int(data),
        token=canonical_address(log.get("address")),
        block_number=block_number,
        block_time=block_time,
        channel=CHANNEL_TOKEN,
    )


def _from_erc20_transfer(item: dict[str, Any], block_time: int | None, block_number: int | None) -> TransferEvent:
    token = canonical_address(item.get("contract") or item.get("address"))
    sender = canonical_address(item.get("from"))
    recipient = canonical_address(item.get("to"))
    if not (token and sender and recipient):
        raise ValueError("erc20 transfer missing contract/from/to")
    return TransferEvent(
        tx_hash=to_hex(item.get("transactionHash") or item.get("transaction_hash")),
        sender=sender,
        recipient=recipient,
        amount=to_int(item.get("value") or item.get("amount") or 0),
        token=token,
        block_number=block_number,
        block_time=block_time,
        channel=CHANNEL_TOKEN,
    )


def _from_native_tx(item: dict[str, Any], block_time: int | None, block_number: int | None) -> TransferEvent:
    sender = canonical_address(item.get("fromAddress") or item.get("from_address") or item.get("from"))
    recipient = canonical_address(item.get("toAddress") or item.get("to_address") or item.get("to"))
    if not (sender and recipient):
        raise ValueError("native tx missing from/to")
    return TransferEvent(
        tx_hash=to_hex(item.get("hash") or item.get("transaction_hash")),
        sender=sender,
        recipient=recipient,
        amount=to_int(item.get("value") or 0),
        token=None,
        block_number=block_number,
        block_time=block_time,
        channel=CHANNEL_NATIVE,
    )


def _from_decoded_log(item: dict[str, Any], block_time: int | None, block_number: int | None) -> TransferEvent | None:
    if item.get("name") != "Transfer":
        return None
    params = {p.get("name"): p.get("value") for p in item.get("params") or [] if isinstance(p, dict)}
    if not all(params.get(k) not in (None, "") for k in ("from", "to", "value")):
        raise ValueError("decoded Transfer missing from/to/value")
    return TransferEvent(
        tx_hash=to_hex(item.get("transactionHash") or item.get("transaction_hash")),
        sender=canonical_address(params["from"]),
        recipient=canonical_address(params["to"]),
        amount=to_int(params["value"]),
        token=canonical_address(item.get("address")),
        block_number=block_number,
        block_time=block_time,
        channel=CHANNEL_TOKEN,
    )


def _list_at(payload: dict[str, Any], shape: str) -> list:
    value = payload.get(shape)
    if value is None:
        return []
    if not isinstance(value, list):
        logger.warning("webhook_entry_skipped", shape=shape, error="value is not a list")
        return []
    return value


def _entries(payload: dict[str, Any]) -> Iterator[tuple[str, dict[str, Any], Callable[..., TransferEvent | None]]]:
    for log in _list_at(payload, "logs"):
        yield "logs", log, _from_raw_log
    for item in _list_at(payload, "erc20Transfers"):
        yield "erc20Transfers", item, _from_erc20_transfer
    for item in _list_at(payload, "txs"):
        yield "txs", item, _from_native_tx
    single = payload.get("transaction") or payload.get("tx")
    if isinstance(single, dict):
        yield "transaction", single, _from_native_tx
    for item in _list_at(payload, "decodedLogs"):
        yield "decodedLogs", item, _from_decoded_log


def is_verification_payload(payload: Any) -> bool:
    """Stream setup pings: {"verified": false} or tag == "verification"."""
    return isinstance(payload, dict) and (
        payload.get("verified") is False or payload.get("tag") == "verification"
    )


def normalize_payload(payload: Any, now: Callable[[], float] = time.time) -> list[TransferEvent]:
    """
    Reduce a webhook body to TransferEvents.

    Transactions with no block timestamp get the time of receipt. Events with
    no tx hash are dropped since they cannot be deduplicated.
    """
    if not isinstance(payload, dict):
        logger.warning("webhook_payload_unrecognized", payload_type=type(payload).__name__)
        return []
    block_time = _block_time(payload)
    block_number = _block_number(payload)
    received_at = int(now())
    events: list[TransferEvent] = []
    seen_shape = False
    for shape, entry, parse in _entries(payload):
        seen_shape = True
        if not isinstance(entry, dict):
            logger.warning("webhook_entry_skipped", shape=shape, error="entry is not an object")
            continue
        try:
            event = parse(entry, block_time, block_number)
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("webhook_entry_skipped", shape=shape, error=str(e))
            continue
        if event is None:
            continue
        if not event.tx_hash or event.tx_hash == "0x":
            logger.warning("webhook_entry_skipped", shape=shape, error="missing transaction hash")
            continue
        if event.block_time is None:
            event = replace(event, block_time=received_at)
        events.append(event)
    if not seen_shape:
        logger.info("webhook_payload_unrecognized", keys=sorted(payload.keys())[:20])
    return events
