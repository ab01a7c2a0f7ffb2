"""
In-process order registry.

Mirrors the on-chain swap registry contract: one order per swap id, a status
that only moves Pending -> Completed | Refunded, and global anti-replay sets
for consumed secrets and processed deposit transactions.

complete() and refund() are permissionless. Whoever reveals the secret first
can finish the swap. The oracle allowlist only gates the auxiliary
confirmation-reporting path.
"""

import itertools
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from .core import DEFAULT_MAX_ORDER_LIFETIME, OrderStatus, sha256, to_bytes
from .errors import (
    DepositAlreadyProcessed, DuplicateSwap, Expired, InvalidParameters, InvalidProof,
    InvalidSecret, LockNotExpired, NotPending, SecretAlreadyUsed, Unauthorized, UnknownSwap,
)

log = logging.getLogger(__name__)

ORDER_REGISTERED = "order-registered"
ORDER_COMPLETED = "order-completed"
ORDER_REFUNDED = "order-refunded"
CONFIRMATIONS_REPORTED = "confirmations-reported"


@dataclass
class OrderRecord:
    """Registry-side swap order."""
    swap_id: str
    depositor: str              # account that registered and funded the order
    beneficiary: str            # receives the counter asset on completion
    counter_asset: str
    amount: int
    secret_hash: bytes
    lock_time: int
    created_at: int
    status: OrderStatus = OrderStatus.PENDING
    deposit_tx_ref: Optional[str] = None
    secret: Optional[bytes] = None
    refund_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "swapId": self.swap_id,
            "depositor": self.depositor,
            "beneficiary": self.beneficiary,
            "counterAsset": self.counter_asset,
            "amount": self.amount,
            "secretHash": self.secret_hash.hex(),
            "lockTime": self.lock_time,
            "createdAt": self.created_at,
            "status": self.status.name.lower(),
            "depositTxRef": self.deposit_tx_ref,
            "refundReason": self.refund_reason,
        }


@dataclass
class OrderEvent:
    """Indexed registry event. Always carries swap id and party identity."""
    name: str
    swap_id: str
    party: str
    index: int
    timestamp: int
    tx_ref: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


class OrderRegistry:
    """
    Registry of mirrored swap orders.

    Operations run one at a time, as transactions in a block would.
    """

    def __init__(self, proof_verifier, owner: str = "registry-owner",
                 max_lifetime: int = DEFAULT_MAX_ORDER_LIFETIME,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            proof_verifier: object with verify_inclusion(tx_ref, proof) -> bool
                (normally a ChainProofOracle)
            owner: identity allowed to manage the oracle allowlist
            max_lifetime: refund backstop in seconds after creation
            clock: time source, injectable for tests
        """
        self.proof_verifier = proof_verifier
        self.owner = owner
        self.max_lifetime = max_lifetime
        self.clock = clock

        self._orders: Dict[str, OrderRecord] = {}
        self._used_secret_hashes: Set[bytes] = set()
        self._processed_deposits: Set[str] = set()
        self._oracles: Set[str] = set()
        self._reported: Dict[str, Dict[str, int]] = {}
        self._events: List[OrderEvent] = []
        self._escrow: Dict[str, int] = {}
        self._released: Dict[Tuple[str, str], int] = {}
        self._tx_counter = itertools.count(1)
        self._lock = threading.Lock()

    def _now(self) -> int:
        return int(self.clock())

    def _tx_ref(self, action: str, swap_id: str) -> str:
        return "0x" + sha256(f"{action}:{swap_id}:{next(self._tx_counter)}".encode()).hex()

    def _emit(self, name: str, swap_id: str, party: str, tx_ref: Optional[str] = None, **data):
        event = OrderEvent(name, swap_id, party, len(self._events), self._now(), tx_ref, data)
        self._events.append(event)
        log.info(f"Registry event {name} swap={swap_id[:18]} party={party}")

    def _order(self, swap_id: str) -> OrderRecord:
        order = self._orders.get(swap_id)
        if order is None:
            raise UnknownSwap(f"No order for swap {swap_id}", swap_id=swap_id)
        return order

    def _expired(self, order: OrderRecord, now: int) -> bool:
        return now > order.lock_time or now > order.created_at + self.max_lifetime

    # =========================================================================
    # Entry points
    # =========================================================================

    def register(self, swap_id: str, counter_asset: str, amount: int,
                 secret_hash: Union[bytes, str], lock_time: int, *,
                 caller: str, beneficiary: Optional[str] = None) -> str:
        """
        Register a pending order escrowing `amount` of `counter_asset`.

        Raises:
            DuplicateSwap: swap_id already registered (first order untouched)
            InvalidParameters: non-positive amount, past lock_time, bad hash
        """
        try:
            secret_hash = to_bytes(secret_hash)
        except ValueError:
            raise InvalidParameters("secret_hash is not valid hex", swap_id=swap_id)

        with self._lock:
            if swap_id in self._orders:
                raise DuplicateSwap(f"Swap {swap_id} already registered", swap_id=swap_id)

            now = self._now()
            if not isinstance(amount, int) or amount <= 0:
                raise InvalidParameters(f"Amount must be positive, got {amount}", swap_id=swap_id)
            if lock_time <= now:
                raise InvalidParameters(f"lock_time {lock_time} is not in the future", swap_id=swap_id)
            if len(secret_hash) != 32:
                raise InvalidParameters("secret_hash must be 32 bytes", swap_id=swap_id)
            if not swap_id or not caller:
                raise InvalidParameters("swap_id and caller are required", swap_id=swap_id)

            self._orders[swap_id] = OrderRecord(
                swap_id=swap_id,
                depositor=caller,
                beneficiary=beneficiary or caller,
                counter_asset=counter_asset,
                amount=amount,
                secret_hash=secret_hash,
                lock_time=lock_time,
                created_at=now,
            )
            self._escrow[counter_asset] = self._escrow.get(counter_asset, 0) + amount

            tx_ref = self._tx_ref("register", swap_id)
            self._emit(ORDER_REGISTERED, swap_id, caller, tx_ref,
                       counter_asset=counter_asset, amount=amount, lock_time=lock_time,
                       beneficiary=beneficiary or caller)
            return tx_ref

    def complete(self, swap_id: str, secret: Union[bytes, str], proof, *,
                 caller: Optional[str] = None) -> str:
        """
        Complete an order by revealing the secret with a deposit inclusion proof.

        Checks run in a fixed order; the first failure wins and nothing
        changes.
        """
        secret = to_bytes(secret)

        with self._lock:
            order = self._order(swap_id)
            if order.status != OrderStatus.PENDING:
                raise NotPending(f"Swap {swap_id} is {order.status.name.lower()}", swap_id=swap_id)
            if self._expired(order, self._now()):
                raise Expired(f"Swap {swap_id} expired at {order.lock_time}", swap_id=swap_id)

            secret_hash = sha256(secret)
            if secret_hash != order.secret_hash:
                raise InvalidSecret("Secret does not match order hash", swap_id=swap_id)
            if secret_hash in self._used_secret_hashes:
                raise SecretAlreadyUsed("Secret already consumed by another order", swap_id=swap_id)

            deposit_ref = getattr(proof, "txid", None)
            if not deposit_ref:
                raise InvalidProof("Proof does not name a deposit transaction", swap_id=swap_id)
            if deposit_ref in self._processed_deposits:
                raise DepositAlreadyProcessed(f"Deposit {deposit_ref} already used", swap_id=swap_id)
            if not self.proof_verifier.verify_inclusion(deposit_ref, proof):
                raise InvalidProof(f"Inclusion proof for {deposit_ref} rejected", swap_id=swap_id)

            order.status = OrderStatus.COMPLETED
            order.secret = secret
            order.deposit_tx_ref = deposit_ref
            self._used_secret_hashes.add(secret_hash)
            self._processed_deposits.add(deposit_ref)
            self._release(order.counter_asset, order.beneficiary, order.amount)

            tx_ref = self._tx_ref("complete", swap_id)
            self._emit(ORDER_COMPLETED, swap_id, order.beneficiary, tx_ref,
                       deposit_tx_ref=deposit_ref, secret=secret.hex(), caller=caller)
            return tx_ref

    def refund(self, swap_id: str, reason: str, *, caller: Optional[str] = None) -> str:
        """Refund an expired order back to its depositor."""
        with self._lock:
            order = self._order(swap_id)
            if order.status != OrderStatus.PENDING:
                raise NotPending(f"Swap {swap_id} is {order.status.name.lower()}", swap_id=swap_id)
            if not self._expired(order, self._now()):
                raise LockNotExpired(
                    f"Swap {swap_id} locked until {order.lock_time}", swap_id=swap_id
                )

            order.status = OrderStatus.REFUNDED
            order.refund_reason = reason
            self._release(order.counter_asset, order.depositor, order.amount)

            tx_ref = self._tx_ref("refund", swap_id)
            self._emit(ORDER_REFUNDED, swap_id, order.depositor, tx_ref,
                       reason=reason, caller=caller)
            return tx_ref

    def _release(self, asset: str, party: str, amount: int):
        self._escrow[asset] -= amount
        key = (asset, party)
        self._released[key] = self._released.get(key, 0) + amount

    # =========================================================================
    # Views
    # =========================================================================

    def get_order(self, swap_id: str) -> Optional[OrderRecord]:
        """Snapshot of the order; changing it never touches registry state."""
        with self._lock:
            order = self._orders.get(swap_id)
            return replace(order) if order is not None else None

    def is_expired(self, swap_id: str) -> bool:
        with self._lock:
            return self._expired(self._order(swap_id), self._now())

    def events(self, since: int = 0) -> List[OrderEvent]:
        with self._lock:
            return list(self._events[since:])

    def escrowed(self, asset: str) -> int:
        return self._escrow.get(asset, 0)

    def released_to(self, asset: str, party: str) -> int:
        return self._released.get((asset, party), 0)

    # =========================================================================
    # Oracle allowlist (auxiliary reporting only)
    # =========================================================================

    def add_oracle(self, oracle: str, *, caller: str):
        if caller != self.owner:
            raise Unauthorized("Only the owner can manage oracles")
        with self._lock:
            self._oracles.add(oracle)

    def remove_oracle(self, oracle: str, *, caller: str):
        if caller != self.owner:
            raise Unauthorized("Only the owner can manage oracles")
        with self._lock:
            self._oracles.discard(oracle)

    def is_oracle(self, oracle: str) -> bool:
        return oracle in self._oracles

    def report_confirmations(self, swap_id: str, tx_ref: str, confirmations: int, *, caller: str):
        """Out-of-band confirmation report from an allowlisted oracle."""
        with self._lock:
            if caller not in self._oracles:
                raise Unauthorized(f"{caller} is not an authorized oracle", swap_id=swap_id)
            self._order(swap_id)
            self._reported.setdefault(swap_id, {})[tx_ref] = confirmations
            self._emit(CONFIRMATIONS_REPORTED, swap_id, caller,
                       tx_ref=None, deposit_tx_ref=tx_ref, confirmations=confirmations)

    def reported_confirmations(self, swap_id: str, tx_ref: str) -> Optional[int]:
        return self._reported.get(swap_id, {}).get(tx_ref)
