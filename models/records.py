"""Domain models shared across services."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from models.errors import ParseError

_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y")
_TIME_FORMATS = ("%H:%M", "%H:%M:%S")

# Wire keys owned by ``Reading``; anything else is carried through in ``extras``.
_KNOWN_KEYS = frozenset(
    {
        "date",
        "time",
        "dateTimeUtc",
        "rainfall_mm",
        "total_mm",
        "corrected",
        "original_rainfall_mm",
        "correction_reason",
        "correction_timestamp",
    }
)


@dataclass(slots=True)
class Reading:
    """A single rainfall measurement for the interval ending at ``timestamp``."""

    timestamp: datetime
    rainfall_mm: float
    cumulative_mm: Optional[float] = None
    date_time_utc: Optional[str] = None
    corrected: bool = False
    original_rainfall_mm: Optional[float] = None
    correction_method: Optional[str] = None
    correction_applied_at: Optional[datetime] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> datetime:
        return truncate_to_minute(self.timestamp)

    def to_record(self) -> Dict[str, Any]:
        """Render the reading in the persisted wire format."""

        record: Dict[str, Any] = {
            "date": self.timestamp.strftime("%Y-%m-%d"),
            "time": self.timestamp.strftime("%H:%M"),
        }
        if self.date_time_utc is not None:
            record["dateTimeUtc"] = self.date_time_utc
        record["rainfall_mm"] = self.rainfall_mm
        if self.cumulative_mm is not None:
            record["total_mm"] = self.cumulative_mm
        if self.corrected:
            record["corrected"] = True
        if self.original_rainfall_mm is not None:
            record["original_rainfall_mm"] = self.original_rainfall_mm
        if self.correction_method is not None:
            record["correction_reason"] = self.correction_method
        if self.correction_applied_at is not None:
            record["correction_timestamp"] = format_instant(self.correction_applied_at)
        for key, value in self.extras.items():
            record.setdefault(key, value)
        return record


@dataclass
class StationSeries:
    """The ordered reading history of one gauge plus its descriptive metadata."""

    station_id: str
    station_name: Optional[str] = None
    region: Optional[str] = None
    source: Optional[str] = None
    readings: List[Reading] = field(default_factory=list)
    last_updated: Optional[datetime] = None
    outlier_detection: Optional[Dict[str, Any]] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.readings)


def truncate_to_minute(value: datetime) -> datetime:
    return value.replace(second=0, microsecond=0)


def _to_utc_minute(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return truncate_to_minute(value.astimezone(timezone.utc))


def format_instant(value: datetime) -> str:
    """Format a UTC instant as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""

    utc = value.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def parse_instant(value: str) -> datetime:
    """Parse an ISO-8601 instant into an aware UTC datetime (naive means UTC)."""

    candidate = value.strip()
    if not candidate:
        raise ParseError("Timestamp is empty.", value)

    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError as exc:
        raise ParseError("invalid timestamp", value) from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)

    return parsed.astimezone(timezone.utc)


def _parse_date_time(date_value: str, time_value: str) -> datetime:
    date_raw = date_value.strip()
    time_raw = (time_value or "00:00").strip() or "00:00"
    for date_format in _DATE_FORMATS:
        for time_format in _TIME_FORMATS:
            try:
                parsed = datetime.strptime(
                    f"{date_raw} {time_raw}", f"{date_format} {time_format}"
                )
            except ValueError:
                continue
            return parsed.replace(tzinfo=timezone.utc)
    raise ParseError("invalid timestamp", f"{date_raw} {time_raw}")


def parse_timestamp(
    date: Optional[str] = None,
    time: Optional[str] = None,
    instant: Optional[str] = None,
) -> datetime:
    """Derive the minute-precision UTC key from an instant or a date/time pair.

    The instant wins when both are supplied and parseable; a broken instant
    falls back to the date/time pair before giving up.
    """

    if isinstance(instant, str) and instant.strip():
        try:
            return truncate_to_minute(parse_instant(instant))
        except ParseError:
            if not date:
                raise
    if isinstance(date, str) and date.strip():
        return truncate_to_minute(_parse_date_time(date, time or ""))
    raise ParseError("missing timestamp", instant or date)


def parse_rainfall(value: Any) -> float:
    """Coerce a rainfall amount; anything unusable becomes ``0.0``."""

    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        parsed = float(value)
    elif isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return 0.0
    else:
        return 0.0
    if not math.isfinite(parsed) or parsed < 0:
        return 0.0
    return parsed


def _optional_amount(value: Any) -> Optional[float]:
    if value is None:
        return None
    return parse_rainfall(value)


def coerce_reading(item: Any) -> Reading:
    """Turn a persisted or scraped record into a ``Reading``.

    ``Reading`` instances pass through with their timestamp normalised to a
    UTC minute (naive means UTC). Raises ``ParseError`` when no
    timestamp can be derived; a bad rainfall value is coerced instead.
    """

    if isinstance(item, Reading):
        return _normalise_reading(item)
    if not isinstance(item, Mapping):
        raise ParseError("reading is not a mapping", item)

    instant = item.get("dateTimeUtc")
    timestamp = parse_timestamp(
        date=item.get("date") if isinstance(item.get("date"), str) else None,
        time=item.get("time") if isinstance(item.get("time"), str) else None,
        instant=instant if isinstance(instant, str) else None,
    )

    applied_at: Optional[datetime] = None
    raw_applied = item.get("correction_timestamp")
    if isinstance(raw_applied, str) and raw_applied.strip():
        try:
            applied_at = parse_instant(raw_applied)
        except ParseError:
            applied_at = None

    reason = item.get("correction_reason")
    return Reading(
        timestamp=timestamp,
        rainfall_mm=parse_rainfall(item.get("rainfall_mm")),
        cumulative_mm=_optional_amount(item.get("total_mm")),
        date_time_utc=instant if isinstance(instant, str) else None,
        corrected=bool(item.get("corrected", False)),
        original_rainfall_mm=_optional_amount(item.get("original_rainfall_mm")),
        correction_method=str(reason) if reason is not None else None,
        correction_applied_at=applied_at,
        extras={key: value for key, value in item.items() if key not in _KNOWN_KEYS},
    )


def _normalise_reading(reading: Reading) -> Reading:
    if not isinstance(reading.timestamp, datetime):
        raise ParseError("invalid timestamp", reading.timestamp)
    timestamp = _to_utc_minute(reading.timestamp)
    if timestamp == reading.timestamp and reading.timestamp.tzinfo is timezone.utc:
        return reading
    return replace(reading, timestamp=timestamp)
