"""Incremental merge of freshly scraped readings into a persisted history."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Sequence, Tuple

from models.errors import ParseError, ValidationError
from models.records import Reading, StationSeries, coerce_reading

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SkippedReading:
    """An incoming item rejected because no timestamp could be derived."""

    position: int
    reason: str
    value: Any = None


@dataclass
class MergeOutcome:
    series: StationSeries
    added: int = 0
    replaced: int = 0
    skipped: List[SkippedReading] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.replaced)


def _rank(reading: Reading) -> Tuple[float, float, str]:
    total = reading.cumulative_mm if reading.cumulative_mm is not None else -math.inf
    return (
        reading.rainfall_mm,
        total,
        json.dumps(reading.to_record(), sort_keys=True, default=str),
    )


def _prefer(incumbent: Reading, challenger: Reading) -> bool:
    """Max-wins on ``rainfall_mm``; equal amounts fall back to the larger total,
    then to the rendered record, so the survivor does not depend on arrival
    order. A challenger identical in rank never displaces the incumbent.
    """

    return _rank(challenger) > _rank(incumbent)


class SeriesMerger:
    """Combines an existing series with a new batch, keyed by minute timestamp.

    A key collision keeps the reading with the larger ``rainfall_mm`` so a
    re-scrape that reports a truncated value never shrinks what was already
    observed. Equal amounts are ordered by total and then by content, and
    readings that rank identically keep the incumbent.
    """

    def merge(self, existing: StationSeries, incoming: Sequence[Any]) -> StationSeries:
        return self.merge_with_report(existing, incoming).series

    def merge_with_report(
        self, existing: StationSeries, incoming: Sequence[Any]
    ) -> MergeOutcome:
        if not isinstance(existing, StationSeries):
            raise ValidationError("existing must be a StationSeries.")
        if not isinstance(incoming, (list, tuple)):
            raise ValidationError(
                f"incoming readings must be a list, got {type(incoming).__name__}."
            )

        by_key: Dict[datetime, Reading] = {}
        for reading in existing.readings:
            try:
                reading = coerce_reading(reading)
            except ParseError as exc:
                raise ValidationError(
                    f"existing series holds an invalid reading: {exc.reason}"
                ) from exc
            current = by_key.get(reading.key)
            if current is None or _prefer(current, reading):
                by_key[reading.key] = reading

        outcome = MergeOutcome(series=existing)
        for position, item in enumerate(incoming):
            try:
                reading = coerce_reading(item)
            except ParseError as exc:
                outcome.skipped.append(
                    SkippedReading(position=position, reason=exc.reason, value=exc.value)
                )
                logger.warning(
                    "Skipping unparsable reading",
                    extra={
                        "station_id": existing.station_id,
                        "row_number": position,
                        "reason": exc.reason,
                    },
                )
                continue

            current = by_key.get(reading.key)
            if current is None:
                by_key[reading.key] = reading
                outcome.added += 1
            elif _prefer(current, reading):
                by_key[reading.key] = reading
                outcome.replaced += 1

        ordered = [by_key[key] for key in sorted(by_key)]
        outcome.series = replace(existing, readings=ordered)
        return outcome


def merge(existing: StationSeries, incoming: Sequence[Any]) -> StationSeries:
    """Merge ``incoming`` into ``existing`` and return a new sorted series."""

    return SeriesMerger().merge(existing, incoming)
