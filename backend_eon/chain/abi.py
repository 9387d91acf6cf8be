"""
Contract ABIs and Transfer-log decoding helpers.

Logs arrive either from web3 (HexBytes topics, int fields) or from webhook
JSON (hex strings everywhere); the helpers accept both.
"""

from __future__ import annotations

from typing import Any

from web3 import Web3

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

SETTLEMENT_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"internalType": "address[]", "name": "froms", "type": "address[]"},
            {"internalType": "address[]", "name": "tos", "type": "address[]"},
            {"internalType": "uint256[]", "name": "donationTimes", "type": "uint256[]"},
            {"internalType": "uint256[]", "name": "usdcAmounts", "type": "uint256[]"},
        ],
        "name": "donate",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "", "type": "address"}],
        "name": "isExecutor",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
]

ERC20_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
        ],
        "name": "Transfer",
        "type": "event",
    },
]


def to_hex(value: Any) -> str:
    """Lowercase 0x-prefixed hex for bytes/HexBytes/str values."""
    if value is None:
        return ""
    if isinstance(value, str):
        text = value.strip().lower()
        return text if text.startswith("0x") else "0x" + text
    return Web3.to_hex(value).lower()


def to_int(value: Any) -> int:
    """int from int, decimal string, or 0x-hex string. Raises ValueError otherwise."""
    if isinstance(value, bool):
        raise ValueError("boolean is not an amount")
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "big")
    text = str(value).strip().lower()
    if text.startswith("0x"):
        return int(text, 16) if len(text) > 2 else 0
    return int(text)


def topic_to_address(topic: Any) -> str:
    """Last 20 bytes of a 32-byte indexed topic as a lowercase address."""
    hex_topic = to_hex(topic)
    return "0x" + hex_topic[-40:]


def address_to_topic(address: str) -> str:
    """Left-pad an address to a 32-byte topic."""
    return "0x" + address.lower().replace("0x", "").rjust(64, "0")


def decode_transfer_log(log: dict[str, Any]) -> dict[str, Any] | None:
    """
    Decode an ERC-20 Transfer log.

    Returns {token, sender, recipient, amount, tx_hash, block_number} or
    None when the log is not a Transfer (wrong topic0, missing indexed args).
    """
    topics = log.get("topics") or []
    if len(topics) < 3:
        return None
    if to_hex(topics[0]) != TRANSFER_TOPIC:
        return None
    data = log.get("data")
    amount = to_int(to_hex(data)) if data not in (None, b"", "") else 0
    block = log.get("blockNumber", log.get("block_number"))
    return {
        "token": to_hex(log.get("address")),
        "sender": topic_to_address(topics[1]),
        "recipient": topic_to_address(topics[2]),
        "amount": amount,
        "tx_hash": to_hex(log.get("transactionHash") or log.get("transaction_hash")),
        "block_number": to_int(block) if block is not None else None,
    }
