"""
HTLC (Hash Time-Locked Contract) support for swapper.

- script/tx: Bitcoin script, address and transaction primitives
- btc: HTLCBuilder (lock scripts, claim/refund transactions, secret extraction)
- evm: EVMOrderRegistry, the contract-backed order registry
"""

from .btc import HTLCBuilder, load_private_key, privkey_to_pubkey
from .evm import EVMOrderRegistry, REGISTRY_ABI

__all__ = [
    "HTLCBuilder",
    "load_private_key",
    "privkey_to_pubkey",
    "EVMOrderRegistry",
    "REGISTRY_ABI",
]
