"""
Persistent swap-state store.

Layout:
    <data_dir>/swap_<id>.json                    live record
    <backup_dir>/swap_<id>_<utc-timestamp>.json  rolling backups
    <data_dir>/exports/                          export_to_file output

Every save writes the live record atomically, then a timestamped backup,
then prunes old backups. Backup failures are logged and never fail the save.
Reads come from an in-memory cache filled at startup.
"""

import csv
import io
import json
import logging
import os
import re
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, ContextManager, Dict, List, Optional, Union

from pydantic import ValidationError

from .core import DEFAULT_MAX_BACKUPS, SwapStatus, TERMINAL_STATUSES
from .errors import InvalidParameters, SwapNotFound
from .locks import KeyedLock
from .models import SwapRecord

log = logging.getLogger(__name__)

CSV_FIELDS = [
    "swapId", "status", "createdAt", "completedAt", "lockAmount", "counterAmount",
    "depositor", "counterparty", "depositTxRef", "counterTxRef",
]


class PersistentStore:
    """Durable keyed store of SwapRecords with per-swap write serialization."""

    def __init__(self, data_dir: Union[str, Path], backup_dir: Union[str, Path, None] = None,
                 max_backups: int = DEFAULT_MAX_BACKUPS, clock: Callable[[], float] = time.time):
        self.data_dir = Path(data_dir).expanduser()
        self.backup_dir = Path(backup_dir).expanduser() if backup_dir else self.data_dir / "backups"
        self.max_backups = max_backups
        self.clock = clock

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.backup_dir.mkdir(parents=True, exist_ok=True)

        self._cache: Dict[str, SwapRecord] = {}
        self._locks = KeyedLock()
        self._load_lock = threading.Lock()
        self.load()

    # =========================================================================
    # Locking and paths
    # =========================================================================

    def lock(self, swap_id: str) -> ContextManager[None]:
        """Per-swap re-entrant lock, shared with the coordinator."""
        return self._locks.hold(swap_id)

    def _path(self, swap_id: str) -> Path:
        if not swap_id or "/" in swap_id or os.sep in swap_id or swap_id.startswith("."):
            raise InvalidParameters(f"Unsafe swap id: {swap_id!r}")
        return self.data_dir / f"swap_{swap_id}.json"

    def list_backups(self, swap_id: str) -> List[Path]:
        """Backups for a swap, oldest first."""
        pattern = re.compile(rf"swap_{re.escape(swap_id)}_\d{{8}}T\d{{12}}Z\.json")
        return sorted(p for p in self.backup_dir.glob("swap_*.json") if pattern.fullmatch(p.name))

    # =========================================================================
    # Load / save
    # =========================================================================

    def load(self) -> int:
        """Fill the cache from disk. Corrupt live records fall back to backups."""
        with self._load_lock:
            loaded: Dict[str, SwapRecord] = {}
            for path in sorted(self.data_dir.glob("swap_*.json")):
                swap_id = path.stem[len("swap_"):]
                try:
                    loaded[swap_id] = SwapRecord.from_json(path.read_text())
                except (OSError, ValueError, ValidationError) as e:
                    log.error(f"Corrupt swap record {path.name}: {e}")
                    record = self._newest_backup(swap_id)
                    if record is None:
                        log.error(f"No usable backup for swap {swap_id}, skipping")
                        continue
                    self._write_live(record)
                    loaded[swap_id] = record
                    log.warning(f"Restored swap {swap_id} from backup")
            self._cache = loaded
        log.info(f"Loaded {len(loaded)} swap records from {self.data_dir}")
        return len(loaded)

    def _write_live(self, record: SwapRecord):
        path = self._path(record.swap_id)
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "w") as f:
            f.write(record.to_json())
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def _backup(self, record: SwapRecord):
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        target = self.backup_dir / f"swap_{record.swap_id}_{stamp}.json"
        try:
            target.write_text(record.to_json())
            backups = self.list_backups(record.swap_id)
            for old in backups[:max(0, len(backups) - self.max_backups)]:
                old.unlink()
        except OSError as e:
            log.warning(f"Backup for swap {record.swap_id} failed: {e}")

    def _newest_backup(self, swap_id: str) -> Optional[SwapRecord]:
        for path in reversed(self.list_backups(swap_id)):
            try:
                return SwapRecord.from_json(path.read_text())
            except (OSError, ValueError, ValidationError) as e:
                log.warning(f"Skipping unreadable backup {path.name}: {e}")
        return None

    def save(self, record: SwapRecord) -> SwapRecord:
        """Write live record + backup and update the cache."""
        with self.lock(record.swap_id):
            stored = record.model_copy(deep=True)
            stored.updated_at = int(self.clock())
            self._write_live(stored)
            self._cache[stored.swap_id] = stored
            self._backup(stored)
        log.debug(f"Saved swap {record.swap_id} status={record.status.value}")
        return stored.model_copy(deep=True)

    def restore_from_backup(self, swap_id: str) -> SwapRecord:
        """Replace the live record with its newest readable backup."""
        with self.lock(swap_id):
            record = self._newest_backup(swap_id)
            if record is None:
                raise SwapNotFound(f"No backup for swap {swap_id}", swap_id=swap_id)
            self._write_live(record)
            self._cache[swap_id] = record
        log.info(f"Restored swap {swap_id} from backup")
        return record.model_copy(deep=True)

    def delete(self, swap_id: str, keep_backups: bool = False) -> bool:
        with self.lock(swap_id):
            existed = self._cache.pop(swap_id, None) is not None
            try:
                self._path(swap_id).unlink()
                existed = True
            except FileNotFoundError:
                pass
            if not keep_backups:
                for path in self.list_backups(swap_id):
                    path.unlink()
        if existed:
            log.info(f"Deleted swap {swap_id}")
        return existed

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, swap_id: str) -> Optional[SwapRecord]:
        record = self._cache.get(swap_id)
        return record.model_copy(deep=True) if record else None

    def require(self, swap_id: str) -> SwapRecord:
        record = self.get(swap_id)
        if record is None:
            raise SwapNotFound(f"Swap {swap_id} not found", swap_id=swap_id)
        return record

    def list_all(self) -> List[SwapRecord]:
        return [r.model_copy(deep=True) for r in list(self._cache.values())]

    def list_by_status(self, status: Union[SwapStatus, str]) -> List[SwapRecord]:
        status = SwapStatus(status)
        return [r for r in self.list_all() if r.status == status]

    def list_active(self) -> List[SwapRecord]:
        return [r for r in self.list_all() if r.status not in TERMINAL_STATUSES]

    def list_by_party(self, identity: str) -> List[SwapRecord]:
        """Swaps where identity is depositor, counterparty or beneficiary. Newest first."""
        needle = identity.lower()
        matches = [
            r for r in self.list_all()
            if needle in (r.depositor.lower(), r.counterparty.lower(),
                          r.counter_asset.party_address.lower())
        ]
        return sorted(matches, key=lambda r: r.created_at, reverse=True)

    # =========================================================================
    # Aggregates
    # =========================================================================

    def stats(self) -> Dict:
        records = self.list_all()
        by_status = {status.value: 0 for status in SwapStatus}
        for r in records:
            by_status[r.status.value] += 1

        completed = [r for r in records if r.status == SwapStatus.COMPLETED]
        durations = [r.completed_at - r.created_at for r in completed if r.completed_at]

        return {
            "total": len(records),
            "by_status": by_status,
            "volume": {
                "lock": sum(r.lock_asset.amount for r in records),
                "counter": sum(r.counter_asset.amount for r in records),
            },
            "completed_volume": {
                "lock": sum(r.lock_asset.amount for r in completed),
                "counter": sum(r.counter_asset.amount for r in completed),
            },
            "success_rate": (len(completed) / len(records) * 100) if records else 0.0,
            "average_completion_time": (sum(durations) / len(durations)) if durations else 0.0,
        }

    def _filtered(self, status: Optional[Union[SwapStatus, str]] = None,
                  start: Optional[int] = None, end: Optional[int] = None) -> List[SwapRecord]:
        records = self.list_all()
        if status is not None:
            records = [r for r in records if r.status == SwapStatus(status)]
        if start is not None:
            records = [r for r in records if r.created_at >= start]
        if end is not None:
            records = [r for r in records if r.created_at <= end]
        return sorted(records, key=lambda r: r.created_at)

    def export(self, status: Optional[Union[SwapStatus, str]] = None,
               start: Optional[int] = None, end: Optional[int] = None,
               fmt: str = "json") -> str:
        """Serialized snapshot of matching swaps (json or csv)."""
        records = self._filtered(status, start, end)

        if fmt == "json":
            return json.dumps([r.model_dump(by_alias=True, mode="json") for r in records], indent=2)

        if fmt == "csv":
            buffer = io.StringIO()
            writer = csv.DictWriter(buffer, fieldnames=CSV_FIELDS, lineterminator="\n")
            writer.writeheader()
            for r in records:
                writer.writerow({
                    "swapId": r.swap_id,
                    "status": r.status.value,
                    "createdAt": r.created_at,
                    "completedAt": r.completed_at or "",
                    "lockAmount": r.lock_asset.amount,
                    "counterAmount": r.counter_asset.amount,
                    "depositor": r.depositor,
                    "counterparty": r.counterparty,
                    "depositTxRef": r.deposit_tx_ref or "",
                    "counterTxRef": r.counter_tx_ref or "",
                })
            return buffer.getvalue()

        raise InvalidParameters(f"Unsupported export format: {fmt}")

    def export_to_file(self, fmt: str = "json", **filters) -> Path:
        content = self.export(fmt=fmt, **filters)
        exports = self.data_dir / "exports"
        exports.mkdir(exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        path = exports / f"swap_export_{stamp}.{fmt}"
        path.write_text(content)
        log.info(f"Exported swaps to {path}")
        return path

    def purge_older_than(self, age_seconds: int) -> int:
        """Delete terminal swaps whose terminal transition is older than age_seconds."""
        cutoff = int(self.clock()) - age_seconds
        purged = 0
        for record in self.list_all():
            if record.status not in TERMINAL_STATUSES:
                continue
            finished_at = (record.completed_at or record.refunded_at
                           or record.updated_at or record.created_at)
            if finished_at < cutoff:
                with self.lock(record.swap_id):
                    current = self._cache.get(record.swap_id)
                    if current is None or current.status not in TERMINAL_STATUSES:
                        continue
                    self.delete(record.swap_id)
                    purged += 1
        if purged:
            log.info(f"Purged {purged} swaps older than {age_seconds}s")
        return purged
