"""Provider CSV exports to ``Reading`` batches, driven by a field mapping."""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

from models.errors import ParseError, ValidationError
from models.records import Reading, format_instant, parse_rainfall, parse_timestamp

logger = logging.getLogger(__name__)

Column = Union[str, int]


@dataclass(frozen=True)
class FieldMapping:
    """Which CSV columns feed the timestamp and amounts of a ``Reading``.

    Columns are header names (matched case-insensitively) or zero-based
    positions. Either ``instant_column`` or ``date_column`` (optionally with
    ``time_column``) must be set. ``skip_preamble`` drops everything up to and
    including the first blank line, for exports that open with a metadata block.
    """

    rainfall_column: Column
    instant_column: Optional[Column] = None
    date_column: Optional[Column] = None
    time_column: Optional[Column] = None
    total_column: Optional[Column] = None
    skip_preamble: bool = False

    def __post_init__(self) -> None:
        if self.instant_column is None and self.date_column is None:
            raise ValueError("FieldMapping needs an instant_column or a date_column.")


PROVIDER_MAPPINGS: Dict[str, FieldMapping] = {
    "ea": FieldMapping(instant_column="dateTime", rainfall_column="value"),
    "nrw": FieldMapping(instant_column=0, rainfall_column=1, skip_preamble=True),
    "generic": FieldMapping(
        date_column="date",
        time_column="time",
        rainfall_column="rainfall_mm",
        total_column="total_mm",
    ),
}


@dataclass(frozen=True)
class RowError:
    row_number: int
    reason: str


@dataclass
class ParsedBatch:
    readings: List[Reading] = field(default_factory=list)
    errors: List[RowError] = field(default_factory=list)


def get_mapping(provider: str) -> FieldMapping:
    try:
        return PROVIDER_MAPPINGS[provider.lower().strip()]
    except KeyError as exc:
        known = ", ".join(sorted(PROVIDER_MAPPINGS))
        raise ValidationError(f"Unknown provider {provider!r}; expected one of: {known}.") from exc


def _strip_preamble(lines: List[str]) -> tuple[List[str], int]:
    for position, line in enumerate(lines):
        if not line.strip():
            return lines[position + 1 :], position + 1
    return lines, 0


def _resolve(column: Optional[Column], header: Sequence[str]) -> Optional[int]:
    if column is None:
        return None
    if isinstance(column, int):
        if column >= len(header):
            raise ValidationError(f"CSV has no column at position {column}.")
        return column
    normalized = {name.lower().strip().strip('"'): index for index, name in enumerate(header)}
    index = normalized.get(column.lower())
    if index is None:
        raise ValidationError(f"CSV missing required columns: {column}")
    return index


def _cell(row: Sequence[str], index: Optional[int]) -> Optional[str]:
    if index is None or index >= len(row):
        return None
    return row[index].strip()


def parse_csv(text: str, mapping: FieldMapping) -> ParsedBatch:
    """Parse a provider export into readings; bad rows are reported, not fatal.

    Raises ``ValidationError`` only when the header cannot satisfy the mapping.
    """

    lines = text.splitlines()
    offset = 0
    if mapping.skip_preamble:
        lines, offset = _strip_preamble(lines)

    rows = list(csv.reader(io.StringIO("\n".join(lines))))
    if not rows or not any(cell.strip() for cell in rows[0]):
        raise ValidationError("CSV file is missing a header row.")

    header = rows[0]
    instant_idx = _resolve(mapping.instant_column, header)
    date_idx = _resolve(mapping.date_column, header)
    time_idx = _resolve(mapping.time_column, header)
    rainfall_idx = _resolve(mapping.rainfall_column, header)
    try:
        total_idx = _resolve(mapping.total_column, header)
    except ValidationError:
        total_idx = None

    batch = ParsedBatch()
    for row_number, row in enumerate(rows[1:], start=offset + 2):
        if not any(cell.strip() for cell in row):
            continue

        instant = _cell(row, instant_idx)
        try:
            timestamp = parse_timestamp(
                date=_cell(row, date_idx),
                time=_cell(row, time_idx),
                instant=instant,
            )
        except ParseError as exc:
            batch.errors.append(RowError(row_number=row_number, reason=exc.reason))
            logger.warning(
                "Skipping row", extra={"row_number": row_number, "reason": exc.reason}
            )
            continue

        raw_rainfall = _cell(row, rainfall_idx)
        rainfall = parse_rainfall(raw_rainfall)
        if rainfall == 0.0 and not _is_zero(raw_rainfall):
            reason = "invalid rainfall value, stored as 0"
            batch.errors.append(RowError(row_number=row_number, reason=reason))
            logger.warning("Coercing row", extra={"row_number": row_number, "reason": reason})

        total = None
        if total_idx is not None:
            raw_total = _cell(row, total_idx)
            total = parse_rainfall(raw_total) if raw_total else None

        batch.readings.append(
            Reading(
                timestamp=timestamp,
                rainfall_mm=rainfall,
                cumulative_mm=total,
                date_time_utc=format_instant(timestamp) if instant_idx is not None else None,
            )
        )

    return batch


def _is_zero(raw: Optional[str]) -> bool:
    if not raw:
        return False
    try:
        return float(raw) == 0.0
    except ValueError:
        return False
