"""
Swap monitor for swapper.

Background service that keeps swaps moving without a caller:
- refunds (or reconciles) swaps past their expiry
- retries completion for deposits handed to track_deposit()
- retries completion for claims already broadcast, so a claimed swap is
  never left to expire with its order pending
- picks up registry events finished by other parties

Runs one tick every `interval` seconds on a daemon thread.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

from ..core import DEFAULT_MONITOR_INTERVAL, SwapStatus
from ..errors import SwapError
from ..models import SwapRecord
from .coordinator import SwapCoordinator

log = logging.getLogger(__name__)

EVENTS = ("refund", "expire", "complete", "error")


class SwapMonitor:
    """
    Periodic timeout handling with event emission.

    Events:
    - refund: we refunded an expired order (record)
    - expire: another party finished an expired order first (record)
    - complete: a tracked deposit completed its swap (record)
    - error: a swap failed to make progress this tick (swap_id, error)
    """

    def __init__(self, coordinator: SwapCoordinator, interval: float = DEFAULT_MONITOR_INTERVAL,
                 poll_events: bool = True):
        self.coordinator = coordinator
        self.interval = interval
        self.poll_events = poll_events

        self._handlers: Dict[str, List[Callable]] = {name: [] for name in EVENTS}
        self._deposits: Dict[str, str] = {}
        self._deposits_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # =========================================================================
    # Handlers
    # =========================================================================

    def on(self, event: str, handler: Callable):
        """Register event handler."""
        if event not in self._handlers:
            raise ValueError(f"Unknown monitor event: {event}")
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Callable):
        """Remove event handler."""
        if event in self._handlers and handler in self._handlers[event]:
            self._handlers[event].remove(handler)

    def _emit(self, event: str, *args):
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(*args)
            except Exception as e:
                log.error(f"Handler error for {event}: {e}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start monitoring in a background thread."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="swap-monitor", daemon=True)
        self._thread.start()
        log.info(f"Swap monitor started (interval {self.interval}s)")

    def stop(self, timeout: float = 5.0):
        """Stop monitoring and wait for the current tick to finish."""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        log.info("Swap monitor stopped")

    def _run(self):
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                log.exception("Monitor tick failed")
            self._stop.wait(self.interval)

    # =========================================================================
    # Work
    # =========================================================================

    def track_deposit(self, swap_id: str, deposit_txid: str):
        """Retry complete_on_deposit for this deposit on every tick until it lands."""
        with self._deposits_lock:
            self._deposits[swap_id] = deposit_txid
        log.info(f"Tracking deposit {deposit_txid[:16]}... for swap {swap_id[:18]}")

    def untrack_deposit(self, swap_id: str):
        with self._deposits_lock:
            self._deposits.pop(swap_id, None)

    @property
    def tracked_deposits(self) -> Dict[str, str]:
        with self._deposits_lock:
            return dict(self._deposits)

    def tick(self) -> Dict[str, int]:
        """
        One monitoring pass.

        Returns:
            Counts of swaps completed, refunded, expired and failed this tick
        """
        counts = {"completed": 0, "refunded": 0, "expired": 0, "errors": 0}

        if self.poll_events:
            try:
                self.coordinator.poll_events()
            except SwapError as e:
                log.warning(f"Registry event poll failed: {e}")

        tracked = self.tracked_deposits
        for swap_id, deposit_txid in tracked.items():
            self._try_complete(swap_id, deposit_txid, counts)

        now = int(self.coordinator.clock())

        # Claims persisted by an earlier attempt (or an earlier process) still owe a completion
        for record in self.coordinator.outstanding_claims():
            if record.swap_id not in tracked and now <= record.expires_at:
                self._try_complete(record.swap_id, record.deposit_tx_ref, counts)

        for record in self.coordinator.store.list_active():
            if now <= record.expires_at:
                continue
            try:
                result = self.coordinator.handle_timeout(record.swap_id)
            except SwapError as e:
                counts["errors"] += 1
                log.error(f"Timeout handling failed for swap {record.swap_id[:18]}: {e}")
                self._emit("error", record.swap_id, e)
                continue
            self.untrack_deposit(record.swap_id)
            self._report(result, counts)

        if any(counts.values()):
            log.info(f"Monitor tick: {counts}")
        return counts

    def _try_complete(self, swap_id: str, deposit_txid: str, counts: Dict[str, int]):
        try:
            record = self.coordinator.complete_on_deposit(swap_id, deposit_txid)
        except SwapError as e:
            if e.retryable:
                log.debug(f"Swap {swap_id[:18]} not ready: {e}")
                return
            counts["errors"] += 1
            self.untrack_deposit(swap_id)
            log.error(f"Completion failed for swap {swap_id[:18]}: {e}")
            self._emit("error", swap_id, e)
            return
        self.untrack_deposit(swap_id)
        self._report(record, counts)

    def _report(self, record: SwapRecord, counts: Dict[str, int]):
        if record.status == SwapStatus.REFUNDED:
            counts["refunded"] += 1
            self._emit("refund", record)
        elif record.status == SwapStatus.EXPIRED:
            counts["expired"] += 1
            self._emit("expire", record)
        elif record.status == SwapStatus.COMPLETED:
            counts["completed"] += 1
            self._emit("complete", record)
