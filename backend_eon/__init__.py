"""
EON watcher backend.

Watches configured wallets on an EVM chain, skims a percentage of every
incoming transfer into a donation, caps it against the wallet's season goal,
and settles donations in batches through the EON settlement contract.
"""

__version__ = "0.1.0"
