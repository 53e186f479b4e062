"""File-backed transaction store.

The in-memory map is authoritative. Mutations mark the store dirty and a
background thread writes the whole map to disk at most ``flush_interval``
seconds later (write to a temp file, fsync, rename). ``close()`` performs a
final synchronous flush and must run at shutdown.
"""

import json
import logging
import os
import tempfile
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from datarelay.models.transaction import TransactionRecord, utcnow


logger = logging.getLogger(__name__)

MIN_RETENTION = timedelta(hours=24)
FILE_VERSION = 1


class StoreError(Exception):
    pass


class TransactionStore:
    def __init__(
        self,
        path: str | os.PathLike,
        *,
        flush_interval: float = 5.0,
        retention: timedelta = timedelta(hours=72),
        cleanup_interval: float = 3600.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        if flush_interval <= 0 or flush_interval > 30:
            raise ValueError("flush_interval must be within (0, 30] seconds")
        self.path = Path(path)
        self.flush_interval = float(flush_interval)
        self.retention = max(retention, MIN_RETENTION)
        self.cleanup_interval = float(cleanup_interval)
        self._clock = clock
        self._records: dict[str, TransactionRecord] = {}
        self._lock = threading.RLock()
        self._flush_lock = threading.Lock()
        self._dirty = False
        self._loaded = False
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_flush_at: Optional[datetime] = None
        self.quarantined_path: Optional[Path] = None

    # -- contract -----------------------------------------------------------

    def has(self, reference: str) -> bool:
        with self._lock:
            return reference in self._records

    def get(self, reference: str) -> Optional[TransactionRecord]:
        with self._lock:
            record = self._records.get(reference)
            return record.model_copy(deep=True) if record is not None else None

    def put(self, reference: str, record: TransactionRecord, *, sync: bool = False) -> TransactionRecord:
        """Upsert ``record``; ``sync=True`` writes through to disk before returning."""
        if record.reference != reference:
            raise StoreError(f"Record reference {record.reference!r} does not match key {reference!r}")
        stored = record.model_copy(deep=True)
        stored.updated_at = self._clock()
        with self._lock:
            self._records[reference] = stored
            self._dirty = True
        if sync:
            self.flush()
        else:
            self._wake.set()
        return stored.model_copy(deep=True)

    def all(self) -> list[TransactionRecord]:
        with self._lock:
            return [record.model_copy(deep=True) for record in self._records.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def cleanup(self, max_age: timedelta | None = None) -> int:
        age = max(max_age if max_age is not None else self.retention, MIN_RETENTION)
        cutoff = self._clock() - age
        with self._lock:
            expired = [ref for ref, record in self._records.items() if record.updated_at < cutoff]
            for ref in expired:
                del self._records[ref]
            if expired:
                self._dirty = True
        if expired:
            logger.info("Retention sweep removed %s transaction(s) older than %s", len(expired), age)
            self._wake.set()
        return len(expired)

    # -- persistence --------------------------------------------------------

    def load(self) -> int:
        with self._lock:
            self._records = {}
            self._loaded = True
            if not self.path.exists():
                logger.info("Transaction store %s not found; starting empty", self.path)
                return 0
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
                items = raw.get("transactions") if isinstance(raw, dict) else None
                if not isinstance(items, dict):
                    raise ValueError("missing 'transactions' mapping")
                records = {ref: TransactionRecord.model_validate(item) for ref, item in items.items()}
            except (OSError, ValueError, ValidationError) as exc:
                self._quarantine(exc)
                return 0

            cutoff = self._clock() - self.retention
            kept = {ref: rec for ref, rec in records.items() if rec.updated_at >= cutoff}
            dropped = len(records) - len(kept)
            self._records = kept
            if dropped:
                self._dirty = True
                logger.info("Dropped %s expired transaction(s) on load", dropped)
            logger.info("Loaded %s transaction(s) from %s", len(kept), self.path)
            return len(kept)

    def _quarantine(self, exc: Exception) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        target = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        try:
            os.replace(self.path, target)
            self.quarantined_path = target
            logger.error("Transaction store %s is unreadable (%s); moved to %s and starting empty", self.path, exc, target)
        except OSError as move_exc:
            logger.error(
                "Transaction store %s is unreadable (%s) and could not be moved aside (%s); starting empty",
                self.path,
                exc,
                move_exc,
            )

    def flush(self) -> bool:
        """Write the map to disk if dirty. Raises StoreError on I/O failure."""
        with self._flush_lock:
            with self._lock:
                if not self._dirty:
                    return False
                snapshot = {ref: rec.model_dump(mode="json") for ref, rec in self._records.items()}
                self._dirty = False
            try:
                self._write(snapshot)
            except OSError as exc:
                with self._lock:
                    self._dirty = True
                logger.error("Failed to flush transaction store %s: %s", self.path, exc)
                raise StoreError(f"Failed to persist transactions: {exc}") from exc
            self.last_flush_at = self._clock()
            return True

    def _write(self, snapshot: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"version": FILE_VERSION, "transactions": snapshot}
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, separators=(",", ":"), sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    # -- lifecycle ----------------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if not self._loaded:
            self.load()
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="transaction-store-flusher", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        next_cleanup = time.monotonic() + self.cleanup_interval
        while not self._stop.is_set():
            # Coalesce: wait for the first mutation, then hold for the interval.
            woke = self._wake.wait(timeout=min(self.cleanup_interval, 60.0))
            if self._stop.is_set():
                break
            if woke:
                if self._stop.wait(self.flush_interval):
                    break
                self._wake.clear()
            try:
                if time.monotonic() >= next_cleanup:
                    self.cleanup()
                    next_cleanup = time.monotonic() + self.cleanup_interval
                self.flush()
            except StoreError:
                # Still dirty; the next wake-up retries.
                self._wake.set()

    def close(self) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=self.flush_interval + 5)
            self._thread = None
        self.flush()
        logger.info("Transaction store closed (%s record(s))", len(self))

    def stats(self) -> dict:
        return {
            "records": len(self),
            "path": str(self.path),
            "loaded": self._loaded,
            "flusher_running": self.is_running,
            "last_flush_at": self.last_flush_at.isoformat() if self.last_flush_at else None,
        }
