"""
Chain access: web3 client for the settlement contract, ABIs, Transfer-log decoding.
"""

from backend_eon.chain.abi import TRANSFER_TOPIC, decode_transfer_log
from backend_eon.chain.client import EonChain, SignedDonation

__all__ = ["EonChain", "SignedDonation", "TRANSFER_TOPIC", "decode_transfer_log"]
