"""
Core types and helpers for swapper.
"""

import hashlib
import math
import secrets
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from Crypto.Hash import RIPEMD160


class SwapStatus(str, Enum):
    """Coordinator-side swap lifecycle.

    Funded is implicit (deposit seen but not yet completed) and never persisted.
    """
    INITIATED = "initiated"
    COMPLETED = "completed"
    REFUNDED = "refunded"     # we submitted the refund
    EXPIRED = "expired"       # timed out, refund not submitted by us

    @property
    def terminal(self) -> bool:
        return self is not SwapStatus.INITIATED


TERMINAL_STATUSES = frozenset({SwapStatus.COMPLETED, SwapStatus.REFUNDED, SwapStatus.EXPIRED})


class OrderStatus(int, Enum):
    """Registry order status (uint8 on-chain)."""
    NONE = 0
    PENDING = 1
    COMPLETED = 2
    REFUNDED = 3


@dataclass(frozen=True)
class FeePolicy:
    """Network fee policy for claim/refund transactions."""
    mode: str = "fixed"             # fixed | rate
    fixed_fee: int = 1000           # sats
    fee_rate: float = 2.0           # sat/vbyte
    dust_threshold: int = 546       # sats

    def fee_for(self, vsize: int) -> int:
        if self.mode == "fixed":
            return self.fixed_fee
        if self.mode == "rate":
            return int(math.ceil(vsize * self.fee_rate))
        raise ValueError(f"Unknown fee policy mode: {self.mode}")


@dataclass(frozen=True)
class Utxo:
    """Spendable output locked to an HTLC."""
    txid: str
    vout: int
    value: int                      # sats


@dataclass(frozen=True)
class HTLCLock:
    """HTLC lock on the UTXO chain. Immutable once built."""
    script: bytes
    address: str
    amount: int                     # sats
    lock_time: int                  # CLTV value (unix timestamp)
    secret_hash: bytes
    claim_pubkey: bytes
    refund_pubkey: bytes
    address_type: str = "p2wsh"
    network: str = "testnet"

    @property
    def script_hex(self) -> str:
        return self.script.hex()

    @property
    def secret_hash_hex(self) -> str:
        return self.secret_hash.hex()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": self.amount,
            "address": self.address,
            "scriptHex": self.script_hex,
            "secretHashHex": self.secret_hash_hex,
            "lockTime": self.lock_time,
        }


@dataclass
class SignedTransaction:
    """Fully signed spend of an HTLC."""
    hex: str
    txid: str
    fee: int
    output_value: int
    locktime: int = 0
    inputs: Tuple[Utxo, ...] = field(default_factory=tuple)


# =============================================================================
# Hashing
# =============================================================================

def sha256(data: bytes) -> bytes:
    """SHA256 hash."""
    return hashlib.sha256(data).digest()


def double_sha256(data: bytes) -> bytes:
    """Double SHA256 hash."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    """HASH160 = RIPEMD160(SHA256(data))."""
    # OpenSSL 3 builds often ship without ripemd160
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


def to_bytes(value: Union[bytes, str]) -> bytes:
    """Accept raw bytes or (optionally 0x-prefixed) hex."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if value.startswith("0x"):
        value = value[2:]
    return bytes.fromhex(value)


# =============================================================================
# Secrets
# =============================================================================

def generate_secret() -> Tuple[bytes, bytes]:
    """
    Generate a random 32-byte secret and its SHA256 hash.

    Returns:
        (secret, secret_hash)
    """
    secret = secrets.token_bytes(32)
    return secret, sha256(secret)


def verify_preimage(secret: Union[bytes, str], secret_hash: Union[bytes, str]) -> bool:
    """
    Verify that SHA256(secret) == secret_hash.

    Args:
        secret: 32-byte preimage (bytes or hex)
        secret_hash: Expected SHA256 hash (bytes or hex)

    Returns:
        True if valid
    """
    try:
        return sha256(to_bytes(secret)) == to_bytes(secret_hash)
    except (ValueError, TypeError):
        return False


def generate_swap_id(party: str, now_ms: Optional[int] = None) -> str:
    """Derive a bytes32 swap id from timestamp, entropy and party identity."""
    from web3 import Web3

    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    seed = f"{now_ms}-{secrets.token_hex(16)}-{party}"
    return Web3.to_hex(Web3.keccak(text=seed))


# =============================================================================
# Units
# =============================================================================

SATS_PER_BTC = 100_000_000
WEI_PER_ETH = 10 ** 18


def sats_to_btc(sats: int) -> Decimal:
    """Convert satoshis to BTC."""
    return Decimal(sats) / SATS_PER_BTC


def btc_to_sats(btc: Union[float, str, Decimal]) -> int:
    """Convert BTC to satoshis."""
    return int(Decimal(str(btc)) * SATS_PER_BTC)


def to_base_units(amount: Union[float, str, Decimal], decimals: int = 18) -> int:
    """Convert a human amount (e.g. 0.1 ETH) to integer base units."""
    return int(Decimal(str(amount)) * (10 ** decimals))


# =============================================================================
# Constants
# =============================================================================

DEFAULT_LOCK_DURATION = 24 * 3600       # registry order lifetime (seconds)
DEFAULT_TIMELOCK_GAP = 3600             # HTLC CLTV = expiresAt + gap
DEFAULT_MAX_ORDER_LIFETIME = 7 * 24 * 3600
DEFAULT_REQUIRED_CONFIRMATIONS = 3
DEFAULT_MONITOR_INTERVAL = 300          # 5 minutes
DEFAULT_CLAIM_SAFETY_MARGIN = 600
DEFAULT_MAX_BACKUPS = 10
DEFAULT_RETENTION = 30 * 24 * 3600

# CLTV values below this are block heights
LOCKTIME_THRESHOLD = 500_000_000
