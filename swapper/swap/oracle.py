"""
Chain proof oracle for swapper.

Answers three questions about the UTXO chain:
- how deep is a transaction (confirmations)
- is a transaction really in a block (Merkle path against an 80-byte header
  whose proof-of-work meets the network limit, optionally followed by linked headers)
- has the claim branch been spent, and with which secret

Chain access goes through a ChainReader (bitcoin-cli or Esplora client).
"""

import logging
import struct
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, Union

from ..core import DEFAULT_REQUIRED_CONFIRMATIONS, double_sha256, to_bytes
from ..errors import ChainError, InvalidParameters

log = logging.getLogger(__name__)

# Easiest target (compact nBits) a header may claim on each network
POW_LIMITS = {
    "mainnet": 0x1d00ffff,
    "testnet": 0x1d00ffff,
    "signet": 0x1e0377ae,
    "regtest": 0x207fffff,
}


class ChainReader(Protocol):
    """Read/broadcast interface a UTXO chain client must provide."""

    def get_block_count(self) -> int: ...

    def get_confirmations(self, txid: str) -> int: ...

    def get_transaction_hex(self, txid: str) -> str: ...

    def get_inclusion_proof(self, txid: str) -> "InclusionProof": ...

    def find_spending_transaction(self, txid: str, vout: int) -> Optional[str]: ...

    def send_raw_transaction(self, hex_tx: str) -> str: ...


# =============================================================================
# Block headers and Merkle paths
# =============================================================================

@dataclass(frozen=True)
class BlockHeader:
    version: int
    prev_hash: str          # display hex
    merkle_root: str        # display hex
    timestamp: int
    bits: int
    nonce: int
    raw: bytes

    @classmethod
    def parse(cls, raw: Union[bytes, str]) -> "BlockHeader":
        raw = to_bytes(raw)
        if len(raw) != 80:
            raise ValueError(f"Block header must be 80 bytes, got {len(raw)}")
        version, = struct.unpack('<i', raw[0:4])
        timestamp, bits, nonce = struct.unpack('<III', raw[68:80])
        return cls(
            version=version,
            prev_hash=raw[4:36][::-1].hex(),
            merkle_root=raw[36:68][::-1].hex(),
            timestamp=timestamp,
            bits=bits,
            nonce=nonce,
            raw=raw,
        )

    @property
    def hash(self) -> str:
        return double_sha256(self.raw)[::-1].hex()

    @property
    def target(self) -> int:
        return bits_to_target(self.bits)

    def check_pow(self) -> bool:
        target = self.target
        if target <= 0:
            return False
        return int.from_bytes(double_sha256(self.raw), "little") <= target


def bits_to_target(bits: int) -> int:
    """Expand compact nBits to a 256-bit target. Negative/overflow -> 0."""
    exponent = bits >> 24
    mantissa = bits & 0x007fffff
    if bits & 0x00800000:
        return 0
    if exponent <= 3:
        target = mantissa >> (8 * (3 - exponent))
    else:
        target = mantissa << (8 * (exponent - 3))
    if target >= 1 << 256:
        return 0
    return target


def merkle_root_from_path(txid: str, path: Sequence[str], index: int) -> str:
    """Fold a Merkle branch (display-hex siblings, leaf first) up to the root."""
    node = bytes.fromhex(txid)[::-1]
    for sibling in path:
        sibling = bytes.fromhex(sibling)[::-1]
        if index & 1:
            node = double_sha256(sibling + node)
        else:
            node = double_sha256(node + sibling)
        index >>= 1
    if index:
        raise ValueError("Merkle path shorter than index depth")
    return node[::-1].hex()


def build_merkle_branch(txids: Sequence[str], index: int) -> Tuple[List[str], str]:
    """
    Merkle branch for txids[index] and the block's merkle root.

    Returns:
        (path, root) with path siblings in display hex, leaf first
    """
    if not 0 <= index < len(txids):
        raise ValueError(f"Index {index} outside block of {len(txids)} txs")
    level = [bytes.fromhex(t)[::-1] for t in txids]
    path = []
    while len(level) > 1:
        if len(level) % 2:
            level.append(level[-1])
        sibling = index ^ 1
        path.append(level[sibling][::-1].hex())
        level = [double_sha256(level[i] + level[i + 1]) for i in range(0, len(level), 2)]
        index >>= 1
    return path, level[0][::-1].hex()


@dataclass
class InclusionProof:
    """SPV proof that txid sits at position index in the block with block_header."""
    txid: str
    block_header: str                   # 80-byte header, hex
    merkle_path: List[str]              # sibling hashes, display hex, leaf first
    index: int
    block_height: Optional[int] = None
    headers_after: List[str] = field(default_factory=list)  # descendant headers, hex

    @property
    def depth(self) -> int:
        return 1 + len(self.headers_after)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txid": self.txid,
            "blockHeader": self.block_header,
            "merklePath": list(self.merkle_path),
            "index": self.index,
            "blockHeight": self.block_height,
            "headersAfter": list(self.headers_after),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InclusionProof":
        return cls(
            txid=data["txid"],
            block_header=data["blockHeader"],
            merkle_path=list(data["merklePath"]),
            index=int(data["index"]),
            block_height=data.get("blockHeight"),
            headers_after=list(data.get("headersAfter") or []),
        )


# =============================================================================
# Oracle
# =============================================================================

class ChainProofOracle:
    """
    Confirmation depth, inclusion proofs and secret discovery.

    verify_inclusion does the full check locally. It never trusts the chain
    reader's say-so that a transaction is confirmed.
    """

    def __init__(self, chain: ChainReader,
                 required_confirmations: int = DEFAULT_REQUIRED_CONFIRMATIONS,
                 min_depth: int = 1, builder=None, network: Optional[str] = None):
        self.chain = chain
        self.required_confirmations = required_confirmations
        self.min_depth = min_depth
        if builder is None:
            from ..htlc.btc import HTLCBuilder
            builder = HTLCBuilder()
        self.builder = builder
        self.network = network or builder.network
        if self.network not in POW_LIMITS:
            raise InvalidParameters(f"Unknown network: {self.network}")
        self.pow_limit = bits_to_target(POW_LIMITS[self.network])

    def confirmations_of(self, tx_ref: str) -> int:
        """Current confirmation count (0 if unconfirmed or unknown)."""
        return int(self.chain.get_confirmations(tx_ref) or 0)

    def is_confirmed(self, tx_ref: str, required: Optional[int] = None) -> Tuple[bool, int]:
        required = self.required_confirmations if required is None else required
        count = self.confirmations_of(tx_ref)
        return count >= required, count

    def fetch_proof(self, tx_ref: str) -> InclusionProof:
        return self.chain.get_inclusion_proof(tx_ref)

    def verify_inclusion(self, tx_ref: str, proof: InclusionProof) -> bool:
        """
        Check that tx_ref is committed to by a valid-PoW block header.

        Args:
            tx_ref: Transaction id (display hex)
            proof: Inclusion proof to check

        Returns:
            True only if every check passes
        """
        reason = self._reject_reason(tx_ref, proof)
        if reason:
            log.warning(f"Inclusion proof rejected for {tx_ref[:16]}...: {reason}")
            return False
        return True

    def _reject_reason(self, tx_ref: str, proof: InclusionProof) -> Optional[str]:
        if proof is None:
            return "no proof"
        if proof.txid.lower() != tx_ref.lower():
            return "proof is for a different transaction"
        if proof.index < 0:
            return "negative index"

        try:
            header = BlockHeader.parse(proof.block_header)
        except ValueError as e:
            return f"bad header: {e}"
        if not self._check_work(header):
            return "header fails proof-of-work"

        try:
            root = merkle_root_from_path(proof.txid, proof.merkle_path, proof.index)
        except ValueError as e:
            return f"bad merkle path: {e}"
        if root != header.merkle_root:
            return "merkle root mismatch"

        prev = header
        for raw in proof.headers_after:
            try:
                nxt = BlockHeader.parse(raw)
            except ValueError as e:
                return f"bad descendant header: {e}"
            if nxt.prev_hash != prev.hash:
                return "descendant headers do not link"
            if not self._check_work(nxt):
                return "descendant header fails proof-of-work"
            prev = nxt

        if proof.depth < self.min_depth:
            return f"proof depth {proof.depth} below {self.min_depth}"
        return None

    def _check_work(self, header: BlockHeader) -> bool:
        # A header may pick its own bits, so the target is capped by the network limit
        return header.target <= self.pow_limit and header.check_pow()

    def find_revealed_secret(self, funding_txid: str, vout: int,
                             expected_hash: Union[bytes, str]) -> Optional[bytes]:
        """Secret from whatever transaction spent funding_txid:vout, if any."""
        spending_hex = self.chain.find_spending_transaction(funding_txid, vout)
        if not spending_hex:
            return None
        return self.builder.extract_revealed_secret(spending_hex, expected_hash)

    def wait_for_confirmations(self, tx_ref: str, required: Optional[int] = None,
                               interval: float = 30.0, timeout: Optional[float] = None,
                               stop_event: Optional[threading.Event] = None) -> int:
        """
        Poll at a fixed interval until tx_ref reaches the required depth.

        Returns early (with the last seen count) on timeout or when
        stop_event is set. Chain errors are logged and polled through.
        """
        required = self.required_confirmations if required is None else required
        stop_event = stop_event or threading.Event()
        deadline = time.monotonic() + timeout if timeout is not None else None
        count = 0

        while True:
            try:
                count = self.confirmations_of(tx_ref)
            except ChainError as e:
                log.warning(f"Confirmation poll failed for {tx_ref[:16]}...: {e}")
            if count >= required:
                return count
            if deadline is not None and time.monotonic() >= deadline:
                return count
            if stop_event.wait(interval):
                return count
