import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from app.schemas import IngestionError, IngestionJob, IngestionStatus, StationHistory
from datastore.job_table import JobTable
from datastore.station_store import StationHistoryStore, station_key
from helpers import build_series
from models.errors import ValidationError
from storage.blob_store import BlobStore


def test_blob_store_put_and_get(tmp_path: Path) -> None:
    store = BlobStore(name="test", root_path=tmp_path)
    store.put("stations/a.json", b"hello")

    assert (tmp_path / "stations" / "a.json").read_bytes() == b"hello"
    assert "stations/a.json" in store.list_keys("stations/")
    assert store.exists("stations/a.json")

    fresh_store = BlobStore(name="test", root_path=tmp_path)
    assert fresh_store.get("stations/a.json") == b"hello"
    assert fresh_store.list_keys() == ["stations/a.json"]


def test_blob_store_missing_key(tmp_path: Path) -> None:
    store = BlobStore(name="test", root_path=tmp_path)

    with pytest.raises(KeyError, match="missing.json"):
        store.get("missing.json")


def test_blob_store_delete_removes_file(tmp_path: Path) -> None:
    store = BlobStore(name="test", root_path=tmp_path)
    store.put("x.json", b"{}")

    store.delete("x.json")

    assert not store.exists("x.json")
    assert not (tmp_path / "x.json").exists()


def test_in_memory_blob_store_lists_by_prefix() -> None:
    store = BlobStore(name="memory")
    store.put("stations/b.json", b"1")
    store.put("stations/a.json", b"2")
    store.put("backups/a-1.json", b"3")

    assert store.list_keys("stations/") == ["stations/a.json", "stations/b.json"]


@pytest.mark.parametrize("station_id", ["", "../etc", "a/b", ".hidden"])
def test_station_key_rejects_unsafe_ids(station_id: str) -> None:
    with pytest.raises(ValidationError):
        station_key(station_id)


def test_station_store_round_trips_history(tmp_path: Path) -> None:
    store = StationHistoryStore(BlobStore(name="test", root_path=tmp_path))
    history = StationHistory.from_series(build_series([0.2, 0.4], totals=[1.0, 1.4]))

    key = store.save(history)
    loaded = StationHistoryStore(BlobStore(name="test", root_path=tmp_path)).load("031555")

    assert key == "stations/031555.json"
    assert loaded is not None
    assert loaded.to_payload() == history.to_payload()
    stored = json.loads((tmp_path / key).read_text())
    assert stored["data"][1] == {"date": "2025-09-20", "time": "00:15", "rainfall_mm": 0.4, "total_mm": 1.4}


def test_station_store_keeps_unknown_top_level_fields() -> None:
    blobs = BlobStore(name="memory")
    blobs.put(
        "stations/E1.json",
        json.dumps({"station": "E1", "data": [], "coordinates": {"lat": 51.9}}).encode(),
    )
    store = StationHistoryStore(blobs)

    history = store.load("E1")
    store.save(StationHistory.from_series(history.to_series("E1")))

    assert json.loads(blobs.get("stations/E1.json"))["coordinates"] == {"lat": 51.9}


def test_station_store_missing_station_returns_none() -> None:
    assert StationHistoryStore(BlobStore(name="memory")).load("nope") is None


@pytest.mark.parametrize(
    "raw",
    [b"{not json", b"[1, 2]", b'{"station": "E1"}', b'{"station": "E1", "data": {}}'],
)
def test_station_store_rejects_malformed_records(raw: bytes) -> None:
    blobs = BlobStore(name="memory")
    blobs.put("stations/E1.json", raw)

    with pytest.raises(ValidationError):
        StationHistoryStore(blobs).load("E1")


def test_station_store_backup_and_listing() -> None:
    blobs = BlobStore(name="memory")
    store = StationHistoryStore(blobs)
    store.save(StationHistory.from_series(build_series([0.1], station_id="B")))
    store.save(StationHistory.from_series(build_series([0.2], station_id="A")))

    backup_key = store.backup("A")

    assert backup_key is not None and backup_key.startswith("backups/A-")
    assert blobs.get(backup_key) == blobs.get("stations/A.json")
    assert store.list_station_ids() == ["A", "B"]
    assert store.backup("missing") is None


def _sample_job(job_id: str = "job-123") -> IngestionJob:
    return IngestionJob(
        job_id=job_id,
        station_id="031555",
        provider="ea",
        status=IngestionStatus.partial,
        submitted_at=datetime(2025, 9, 20, 12, 0, tzinfo=timezone.utc),
        processed_at=datetime(2025, 9, 20, 12, 0, 1, tzinfo=timezone.utc),
        processing_ms=1000,
        errors=[IngestionError(row_number=3, reason="invalid timestamp")],
    )


def test_job_table_put_and_get_returns_deep_copy() -> None:
    table = JobTable(name="jobs")
    original = _sample_job()

    table.put_item(original)
    fetched = table.get_item(original.job_id)

    assert fetched == original
    assert fetched is not original
    fetched.errors.clear()
    assert table.get_item(original.job_id).errors[0].row_number == 3


def test_job_table_missing_item_returns_none() -> None:
    assert JobTable(name="jobs").get_item("missing") is None


def test_job_table_persists_to_disk_and_reloads(tmp_path: Path) -> None:
    path = tmp_path / "jobs.json"
    table = JobTable(name="jobs", persistence_path=path)

    table.put_item(_sample_job())

    on_disk = json.loads(path.read_text())
    assert on_disk["job-123"]["status"] == "partial"
    reloaded = JobTable(name="jobs", persistence_path=path)
    assert reloaded.get_item("job-123") == _sample_job()
    assert [job.job_id for job in reloaded.scan()] == ["job-123"]


def test_job_table_ignores_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "jobs.json"
    path.write_text("{corrupt")

    table = JobTable(name="jobs", persistence_path=path)

    assert table.scan() == []
