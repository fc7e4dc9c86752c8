"""Station metadata lookup passed explicitly into the pipeline."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional

from models.errors import ValidationError


@dataclass(frozen=True)
class StationInfo:
    station_id: str
    name: Optional[str] = None
    region: Optional[str] = None
    source: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


def _info_from_payload(station_id: str, payload: Mapping[str, Any]) -> StationInfo:
    coordinates = payload.get("coordinates") or {}
    return StationInfo(
        station_id=str(payload.get("stationId") or station_id),
        name=payload.get("name") or payload.get("stationName"),
        region=payload.get("region"),
        source=payload.get("source") or payload.get("provider"),
        latitude=coordinates.get("lat"),
        longitude=coordinates.get("lng"),
    )


class StationRegistry:
    """Read-only mapping of station id to ``StationInfo``."""

    def __init__(self, stations: Optional[Mapping[str, StationInfo]] = None) -> None:
        self._stations: Dict[str, StationInfo] = dict(stations or {})

    def get(self, station_id: str) -> Optional[StationInfo]:
        return self._stations.get(station_id)

    def __contains__(self, station_id: object) -> bool:
        return station_id in self._stations

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._stations))

    def __len__(self) -> int:
        return len(self._stations)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "StationRegistry":
        """Build from ``{"stations": {id: {...}}}`` as kept in stations-metadata.json."""

        stations = payload.get("stations")
        if not isinstance(stations, Mapping):
            raise ValidationError("Station registry must contain a 'stations' object.")
        entries: Dict[str, StationInfo] = {}
        for key, value in stations.items():
            if not isinstance(value, Mapping):
                raise ValidationError(f"Station registry entry {key!r} is not an object.")
            info = _info_from_payload(str(key), value)
            entries[info.station_id] = info
        return cls(entries)

    @classmethod
    def from_file(cls, path: Path) -> "StationRegistry":
        try:
            payload = json.loads(path.read_text())
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Station registry {path} is not valid JSON.") from exc
        if not isinstance(payload, Mapping):
            raise ValidationError(f"Station registry {path} must be a JSON object.")
        return cls.from_mapping(payload)
