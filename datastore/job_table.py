from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Dict, Optional

from app.schemas import IngestionJob
from settings import get_settings


class JobTable:
    """Ingestion job records keyed by ``job_id``; reads return deep copies."""

    def __init__(self, name: str, persistence_path: Optional[Path] = None) -> None:
        self.name = name
        self._items: Dict[str, IngestionJob] = {}
        self.persistence_path = persistence_path
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    def put_item(self, item: IngestionJob) -> None:
        with self._lock:
            self._items[item.job_id] = item.model_copy(deep=True)
            self._persist()

    def get_item(self, key: str) -> Optional[IngestionJob]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            return item.model_copy(deep=True)

    def scan(self) -> list[IngestionJob]:
        with self._lock:
            return [item.model_copy(deep=True) for item in self._items.values()]

    def _persist(self) -> None:
        if not self.persistence_path:
            return
        payload = {
            job_id: item.model_dump(mode="json") for job_id, item in self._items.items()
        }
        self.persistence_path.write_text(json.dumps(payload, indent=2, sort_keys=True))

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text() or "{}"
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError):
            data = {}

        for job_id, payload in data.items():
            self._items[job_id] = IngestionJob.model_validate(payload)


@lru_cache
def build_default_job_table(
    name: str = "ingestion_jobs",
    path: Optional[str] = None,
) -> JobTable:
    settings = get_settings()
    table_path = settings.job_table_path if path is None else path
    persistence = Path(table_path) if table_path else None
    return JobTable(name=name, persistence_path=persistence)
