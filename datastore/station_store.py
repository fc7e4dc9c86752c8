from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import List, Optional

from app.schemas import StationHistory
from models.errors import ValidationError
from storage.blob_store import BlobStore, build_default_blob_store

logger = logging.getLogger(__name__)

STATION_PREFIX = "stations/"
BACKUP_PREFIX = "backups/"


def station_key(station_id: str) -> str:
    if not station_id or "/" in station_id or station_id.startswith("."):
        raise ValidationError(f"Invalid station id {station_id!r}.")
    return f"{STATION_PREFIX}{station_id}.json"


class StationHistoryStore:
    """Loads and stores persisted station histories, one blob per station."""

    def __init__(self, blobs: BlobStore) -> None:
        self.blobs = blobs

    def load(self, station_id: str) -> Optional[StationHistory]:
        key = station_key(station_id)
        try:
            raw = self.blobs.get(key)
        except KeyError:
            return None

        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValidationError(f"Stored record {key!r} is not valid JSON.") from exc
        return StationHistory.from_payload(payload)

    def save(self, history: StationHistory) -> str:
        if not history.station:
            raise ValidationError("Cannot store a station record without a station id.")
        key = station_key(history.station)
        body = json.dumps(history.to_payload(), indent=2)
        self.blobs.put(key, body.encode("utf-8"))
        logger.debug(
            "Stored station record",
            extra={"station_id": history.station, "blob_key": key, "record_count": len(history.data)},
        )
        return key

    def backup(self, station_id: str) -> Optional[str]:
        """Copy the current blob aside before it is rewritten; returns the backup key."""

        key = station_key(station_id)
        try:
            raw = self.blobs.get(key)
        except KeyError:
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        backup_key = f"{BACKUP_PREFIX}{station_id}-{stamp}.json"
        self.blobs.put(backup_key, raw)
        logger.info("Backed up station record", extra={"station_id": station_id, "blob_key": backup_key})
        return backup_key

    def list_station_ids(self) -> List[str]:
        ids = []
        for key in self.blobs.list_keys(STATION_PREFIX):
            name = key[len(STATION_PREFIX) :]
            if "/" in name or not name.endswith(".json"):
                continue
            ids.append(name[: -len(".json")])
        return ids


@lru_cache
def build_default_station_store() -> StationHistoryStore:
    return StationHistoryStore(build_default_blob_store())
