from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence

from models.records import Reading, StationSeries

BASE_TIME = datetime(2025, 9, 20, 0, 0, tzinfo=timezone.utc)
FIXED_NOW = datetime(2025, 9, 21, 6, 30, tzinfo=timezone.utc)

SPIKE_VALUES = [0.5, 1.2, 35.8, 2.1, 1.8, 0.9, 45.0, 1.5, 2.3, 0.8, 0.2, 0.0]


def at(step: int) -> datetime:
    """Timestamp of the ``step``-th 15-minute reading."""

    return BASE_TIME + timedelta(minutes=15 * step)


def build_series(
    values: Sequence[float],
    totals: Optional[Iterable[Optional[float]]] = None,
    station_id: str = "031555",
) -> StationSeries:
    total_list: List[Optional[float]] = list(totals) if totals is not None else [None] * len(values)
    readings = [
        Reading(timestamp=at(step), rainfall_mm=value, cumulative_mm=total)
        for step, (value, total) in enumerate(zip(values, total_list))
    ]
    return StationSeries(
        station_id=station_id,
        station_name="Exmouth",
        region="South West",
        source="EA",
        readings=readings,
    )


def wire(step: int, rainfall: object, **extra: object) -> dict:
    moment = at(step)
    record = {"date": moment.strftime("%Y-%m-%d"), "time": moment.strftime("%H:%M"), "rainfall_mm": rainfall}
    record.update(extra)
    return record
