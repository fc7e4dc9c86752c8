from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Dict, Iterable, Optional, Set

from settings import get_settings


class BlobStore:
    """Key/value byte store, optionally mirrored to a directory tree."""

    def __init__(self, name: str, root_path: Optional[Path] = None) -> None:
        self.name = name
        self._objects: Dict[str, bytes] = {}
        self._known_keys: Set[str] = set()
        self.root_path = root_path
        self._lock = Lock()
        if root_path:
            root_path.mkdir(parents=True, exist_ok=True)
            self._load_existing_keys()

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            self._objects[key] = data
            self._known_keys.add(key)
            if self.root_path:
                path = self.root_path / key
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(data)

    def get(self, key: str) -> bytes:
        with self._lock:
            data = self._objects.get(key)
            if data is not None:
                return data

        if self.root_path:
            path = self.root_path / key
            if path.exists():
                data = path.read_bytes()
                with self._lock:
                    self._objects[key] = data
                    self._known_keys.add(key)
                return data

        raise KeyError(f"Blob with key {key!r} not found in store {self.name!r}.")

    def exists(self, key: str) -> bool:
        with self._lock:
            if key in self._objects:
                return True
        return bool(self.root_path and (self.root_path / key).is_file())

    def delete(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)
            self._known_keys.discard(key)
            if self.root_path:
                path = self.root_path / key
                if path.is_file():
                    path.unlink()

    def list_keys(self, prefix: str = "") -> Iterable[str]:
        with self._lock:
            keys = set(self._known_keys)
            keys.update(self._objects.keys())

        if self.root_path:
            for path in self.root_path.rglob("*"):
                if path.is_file():
                    keys.add(path.relative_to(self.root_path).as_posix())

        return sorted(key for key in keys if key.startswith(prefix))

    def _load_existing_keys(self) -> None:
        assert self.root_path is not None
        for path in self.root_path.rglob("*"):
            if path.is_file():
                key = path.relative_to(self.root_path).as_posix()
                self._known_keys.add(key)


@lru_cache
def build_default_blob_store(
    name: str = "rainfall-data",
    root_path: Optional[str] = None,
) -> BlobStore:
    settings = get_settings()
    store_root = settings.store_root_path if root_path is None else root_path
    path = Path(store_root) if store_root else None
    return BlobStore(name=name, root_path=path)
