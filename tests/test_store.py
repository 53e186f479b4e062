import json
from datetime import datetime, timedelta, timezone

import pytest

from datarelay.core.store import StoreError, TransactionStore
from datarelay.models.transaction import TransactionPhase, TransactionRecord


class _Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def _record(intent, reference="MTN_DATA_abc123"):
    return TransactionRecord(reference=reference, request_payload=intent)


def test_put_and_get_return_copies(store, intent):
    stored = store.put("MTN_DATA_abc123", _record(intent))
    stored.phase = TransactionPhase.FULFILLED
    assert store.get("MTN_DATA_abc123").phase == TransactionPhase.INITIATED
    assert store.has("MTN_DATA_abc123")
    assert store.get("MTN_DATA_other") is None


def test_put_rejects_mismatched_key(store, intent):
    with pytest.raises(StoreError):
        store.put("MTN_DATA_other", _record(intent))


def test_flush_and_reload(tmp_path, intent):
    path = tmp_path / "transactions.json"
    store = TransactionStore(path)
    store.load()
    store.put("MTN_DATA_abc123", _record(intent), sync=True)

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["version"] == 1
    assert raw["transactions"]["MTN_DATA_abc123"]["phase"] == "INITIATED"

    reloaded = TransactionStore(path)
    assert reloaded.load() == 1
    record = reloaded.get("MTN_DATA_abc123")
    assert record.request_payload == intent


def test_flush_is_noop_when_clean(tmp_path):
    store = TransactionStore(tmp_path / "transactions.json")
    store.load()
    assert store.flush() is False
    assert not (tmp_path / "transactions.json").exists()


def test_background_flusher_writes_pending_changes(tmp_path, intent):
    path = tmp_path / "transactions.json"
    store = TransactionStore(path, flush_interval=0.05)
    store.start()
    assert store.is_running
    store.put("MTN_DATA_abc123", _record(intent))
    store.close()
    assert not store.is_running
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert "MTN_DATA_abc123" in raw["transactions"]


def test_corrupt_file_is_quarantined(tmp_path):
    path = tmp_path / "transactions.json"
    path.write_text("{not json", encoding="utf-8")
    store = TransactionStore(path)
    assert store.load() == 0
    assert len(store) == 0
    assert store.quarantined_path is not None
    assert store.quarantined_path.read_text(encoding="utf-8") == "{not json"
    assert not path.exists()


def test_load_drops_records_past_retention(tmp_path, intent):
    clock = _Clock()
    path = tmp_path / "transactions.json"
    store = TransactionStore(path, clock=clock)
    store.load()
    store.put("MTN_DATA_old001", _record(intent, "MTN_DATA_old001"))
    clock.now += timedelta(hours=60)
    store.put("MTN_DATA_new001", _record(intent, "MTN_DATA_new001"), sync=True)

    clock.now += timedelta(hours=20)
    reloaded = TransactionStore(path, retention=timedelta(hours=72), clock=clock)
    assert reloaded.load() == 1
    assert reloaded.has("MTN_DATA_new001")
    assert not reloaded.has("MTN_DATA_old001")


def test_cleanup_never_goes_below_minimum_retention(tmp_path, intent):
    clock = _Clock()
    store = TransactionStore(tmp_path / "transactions.json", clock=clock)
    store.load()
    store.put("MTN_DATA_abc123", _record(intent))
    clock.now += timedelta(hours=10)

    assert store.cleanup(max_age=timedelta(hours=1)) == 0
    clock.now += timedelta(hours=15)
    assert store.cleanup(max_age=timedelta(hours=1)) == 1
    assert len(store) == 0


def test_flush_interval_is_bounded(tmp_path):
    with pytest.raises(ValueError):
        TransactionStore(tmp_path / "transactions.json", flush_interval=31)
    with pytest.raises(ValueError):
        TransactionStore(tmp_path / "transactions.json", flush_interval=0)


def test_flush_failure_raises_store_error(tmp_path, intent):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    store = TransactionStore(blocker / "transactions.json")
    store.load()
    with pytest.raises(StoreError):
        store.put("MTN_DATA_abc123", _record(intent), sync=True)
    # The in-memory map is still authoritative.
    assert store.has("MTN_DATA_abc123")
