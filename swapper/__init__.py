"""
swapper - HTLC atomic swaps between a UTXO chain and an account chain

The depositor locks BTC in an HTLC; the counter asset sits escrowed in a
registry order keyed by the same secret hash. Revealing the secret with a
proof of the deposit releases the counter asset; past expiry both sides
refund.

Usage:
    from swapper import SwapperConfig, SwapParams, SwapMonitor, build_coordinator

    config = SwapperConfig.from_env()
    coordinator = build_coordinator(config)

    result = coordinator.initiate(SwapParams(
        lock_amount=100_000,                 # sats
        counter_asset=token_address,
        counter_amount=10 ** 17,
        depositor=user_id,
        beneficiary=user_evm_address,
        refund_pubkey=user_btc_pubkey,
    ))
    # user funds result.deposit_address, then:
    coordinator.complete_on_deposit(result.swap_id, deposit_txid)

    SwapMonitor(coordinator, config.monitor_interval).start()
"""

from .core import (
    SwapStatus,
    OrderStatus,
    FeePolicy,
    HTLCLock,
    Utxo,
    generate_secret,
    verify_preimage,
    generate_swap_id,
    btc_to_sats,
    sats_to_btc,
)
from .errors import SwapError
from .config import SwapperConfig, configure_logging
from .models import SwapRecord
from .vault import SecretVault
from .store import PersistentStore
from .registry import OrderRegistry, OrderRecord, OrderEvent

from .htlc.btc import HTLCBuilder
from .htlc.evm import EVMOrderRegistry

from .swap.oracle import ChainProofOracle, InclusionProof
from .swap.coordinator import SwapCoordinator, SwapParams, InitiateResult, build_coordinator
from .swap.monitor import SwapMonitor

from .chains.btc import BTCClient, BTCConfig
from .chains.esplora import EsploraClient

__version__ = "0.1.0"
__all__ = [
    # Core types
    "SwapStatus",
    "OrderStatus",
    "FeePolicy",
    "HTLCLock",
    "Utxo",
    "SwapRecord",
    "SwapError",
    # Utilities
    "generate_secret",
    "verify_preimage",
    "generate_swap_id",
    "btc_to_sats",
    "sats_to_btc",
    "configure_logging",
    # Components
    "SwapperConfig",
    "SecretVault",
    "PersistentStore",
    "OrderRegistry",
    "OrderRecord",
    "OrderEvent",
    "EVMOrderRegistry",
    "HTLCBuilder",
    "ChainProofOracle",
    "InclusionProof",
    # Clients
    "BTCClient",
    "BTCConfig",
    "EsploraClient",
    # Swap
    "SwapCoordinator",
    "SwapParams",
    "InitiateResult",
    "build_coordinator",
    "SwapMonitor",
]
