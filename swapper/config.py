"""
Configuration for swapper.

Plain dataclasses with defaults; from_env() reads SWAPPER_* environment variables.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .core import (
    DEFAULT_CLAIM_SAFETY_MARGIN, DEFAULT_LOCK_DURATION, DEFAULT_MAX_BACKUPS,
    DEFAULT_MAX_ORDER_LIFETIME, DEFAULT_MONITOR_INTERVAL, DEFAULT_REQUIRED_CONFIRMATIONS,
    DEFAULT_RETENTION, DEFAULT_TIMELOCK_GAP, FeePolicy,
)

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


def configure_logging(level: str = "INFO"):
    """Process-wide logging setup for services embedding the coordinator."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


@dataclass
class SwapperConfig:
    """Coordinator configuration."""
    # UTXO chain
    btc_network: str = "testnet"            # mainnet, testnet, signet, regtest
    btc_backend: str = "esplora"            # esplora | cli
    esplora_url: Optional[str] = None
    btc_rpc_host: str = "127.0.0.1"
    btc_rpc_port: int = 18332
    btc_rpc_user: str = ""
    btc_rpc_password: str = ""
    btc_cli_path: Optional[str] = None
    btc_datadir: str = ""                   # bitcoin-cli -datadir, for cookie auth
    address_type: str = "p2wsh"             # p2wsh | p2sh

    # Account chain
    evm_rpc_url: str = "http://127.0.0.1:8545"
    evm_chain_id: int = 11155111
    registry_address: str = ""
    evm_private_key: str = ""

    # Claimant mode: when set, the coordinator claims the HTLC itself
    claim_key: str = ""
    claim_destination: str = ""

    # Protocol knobs
    required_confirmations: int = DEFAULT_REQUIRED_CONFIRMATIONS
    default_lock_duration: int = DEFAULT_LOCK_DURATION
    timelock_gap: int = DEFAULT_TIMELOCK_GAP
    claim_safety_margin: int = DEFAULT_CLAIM_SAFETY_MARGIN
    max_order_lifetime: int = DEFAULT_MAX_ORDER_LIFETIME
    monitor_interval: int = DEFAULT_MONITOR_INTERVAL
    fee_policy: FeePolicy = field(default_factory=FeePolicy)

    # Storage
    data_dir: Path = Path("~/.swapper/data")
    backup_dir: Optional[Path] = None
    secrets_dir: Path = Path("~/.swapper/secrets")
    max_backups: int = DEFAULT_MAX_BACKUPS
    retention: int = DEFAULT_RETENTION

    log_level: str = "INFO"

    @property
    def claimant(self) -> bool:
        return bool(self.claim_key)

    @classmethod
    def from_env(cls, prefix: str = "SWAPPER_") -> "SwapperConfig":
        env = os.environ

        def get(name: str, default):
            return env.get(prefix + name, default)

        backup_dir = get("BACKUP_DIR", "")
        return cls(
            btc_network=get("BTC_NETWORK", "testnet"),
            btc_backend=get("BTC_BACKEND", "esplora"),
            esplora_url=get("ESPLORA_URL", None),
            btc_rpc_host=get("BTC_RPC_HOST", "127.0.0.1"),
            btc_rpc_port=int(get("BTC_RPC_PORT", 18332)),
            btc_rpc_user=get("BTC_RPC_USER", ""),
            btc_rpc_password=get("BTC_RPC_PASSWORD", ""),
            btc_cli_path=get("BTC_CLI_PATH", None),
            btc_datadir=get("BTC_DATADIR", ""),
            address_type=get("ADDRESS_TYPE", "p2wsh"),
            evm_rpc_url=get("EVM_RPC_URL", "http://127.0.0.1:8545"),
            evm_chain_id=int(get("EVM_CHAIN_ID", 11155111)),
            registry_address=get("REGISTRY_ADDRESS", ""),
            evm_private_key=get("EVM_PRIVATE_KEY", ""),
            claim_key=get("CLAIM_KEY", ""),
            claim_destination=get("CLAIM_DESTINATION", ""),
            required_confirmations=int(get("REQUIRED_CONFIRMATIONS", DEFAULT_REQUIRED_CONFIRMATIONS)),
            default_lock_duration=int(get("LOCK_DURATION", DEFAULT_LOCK_DURATION)),
            timelock_gap=int(get("TIMELOCK_GAP", DEFAULT_TIMELOCK_GAP)),
            claim_safety_margin=int(get("CLAIM_SAFETY_MARGIN", DEFAULT_CLAIM_SAFETY_MARGIN)),
            max_order_lifetime=int(get("MAX_ORDER_LIFETIME", DEFAULT_MAX_ORDER_LIFETIME)),
            monitor_interval=int(get("MONITOR_INTERVAL", DEFAULT_MONITOR_INTERVAL)),
            fee_policy=FeePolicy(
                mode=get("FEE_MODE", "fixed"),
                fixed_fee=int(get("FIXED_FEE", 1000)),
                fee_rate=float(get("FEE_RATE", 2.0)),
            ),
            data_dir=Path(get("DATA_DIR", "~/.swapper/data")),
            backup_dir=Path(backup_dir) if backup_dir else None,
            secrets_dir=Path(get("SECRETS_DIR", "~/.swapper/secrets")),
            max_backups=int(get("MAX_BACKUPS", DEFAULT_MAX_BACKUPS)),
            retention=int(get("RETENTION", DEFAULT_RETENTION)),
            log_level=get("LOG_LEVEL", "INFO"),
        )
