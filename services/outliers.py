"""Detection and correction of implausible rainfall spikes."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from models.errors import ValidationError
from models.records import Reading, StationSeries, format_instant

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_MM = 25.0
DEFAULT_SAMPLE_INTERVAL_MINUTES = 15
DEFAULT_WINDOW = 6
DEFAULT_MIN_LOCAL_VALUES = 3

# Corrected amounts and adjusted totals are stored at this precision.
_PRECISION = 3

METHOD_LOCAL_MEDIAN = "Local median of {count} nearby values"
METHOD_INTERPOLATION = "Linear interpolation between nearest valid points"
METHOD_PREVIOUS = "Previous valid value"
METHOD_NEXT = "Next valid value"
METHOD_ZERO = "Fallback to zero"


@dataclass(frozen=True)
class OutlierFlag:
    index: int
    timestamp: datetime
    rainfall_mm: float
    reason: str


@dataclass(frozen=True)
class Correction:
    index: int
    timestamp: datetime
    original_mm: float
    corrected_mm: float
    method: str


@dataclass
class CorrectionResult:
    series: StationSeries
    corrections: List[Correction] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_threshold(threshold_mm: float) -> float:
    if isinstance(threshold_mm, bool) or not isinstance(threshold_mm, (int, float)):
        raise ValidationError("threshold_mm must be a number.")
    if not math.isfinite(threshold_mm) or threshold_mm <= 0:
        raise ValidationError("threshold_mm must be a positive finite number.")
    return float(threshold_mm)


def _check_ordered(readings: Sequence[Reading]) -> None:
    for previous, current in zip(readings, readings[1:]):
        if not previous.key < current.key:
            raise ValidationError(
                f"Readings must be in ascending timestamp order with unique keys; "
                f"{format_instant(current.timestamp)} follows {format_instant(previous.timestamp)}."
            )


def median(values: Sequence[float]) -> float:
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2
    return ordered[mid]


def detect(
    series: StationSeries,
    threshold_mm: float = DEFAULT_THRESHOLD_MM,
    sample_interval_minutes: int = DEFAULT_SAMPLE_INTERVAL_MINUTES,
) -> List[OutlierFlag]:
    """Flag every reading whose amount exceeds ``threshold_mm``.

    The threshold is a flat amount per nominal sampling interval. Elapsed time
    between neighbouring readings is not considered, so one reading that
    aggregates a multi-hour gap is flagged like a sensor fault.
    """

    threshold = _check_threshold(threshold_mm)
    flags: List[OutlierFlag] = []
    for index, reading in enumerate(series.readings):
        if reading.rainfall_mm > threshold:
            flags.append(
                OutlierFlag(
                    index=index,
                    timestamp=reading.timestamp,
                    rainfall_mm=reading.rainfall_mm,
                    reason=(
                        f"Rainfall {reading.rainfall_mm}mm exceeds threshold of "
                        f"{threshold:g}mm in {sample_interval_minutes}-minute interval"
                    ),
                )
            )
    return flags


class OutlierCorrector:
    """Computes replacement values for flagged readings.

    The series must be in ascending key order (as ``merge`` returns it);
    anything else raises ``ValidationError``. Every replacement is derived
    from the uncorrected series, so the result does not depend on the order
    flags are handled in. Corrections are then
    applied in ascending index order, and each shifts ``cumulative_mm`` on the
    corrected reading and all later ones by ``corrected - original``.
    """

    def __init__(
        self,
        threshold_mm: float = DEFAULT_THRESHOLD_MM,
        window: int = DEFAULT_WINDOW,
        min_local_values: int = DEFAULT_MIN_LOCAL_VALUES,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.threshold_mm = _check_threshold(threshold_mm)
        if window < 0:
            raise ValidationError("window must not be negative.")
        if min_local_values < 1:
            raise ValidationError("min_local_values must be at least 1.")
        self.window = window
        self.min_local_values = min_local_values
        self._clock = clock or _utcnow

    def correct(
        self, series: StationSeries, flags: Sequence[OutlierFlag]
    ) -> CorrectionResult:
        original = series.readings
        _check_ordered(original)
        indices = sorted({flag.index for flag in flags})
        for index in indices:
            if index < 0 or index >= len(original):
                raise ValidationError(
                    f"Outlier index {index} is outside a series of {len(original)} readings."
                )

        if not indices:
            return CorrectionResult(series=series)

        planned: Dict[int, Tuple[float, str]] = {
            index: self.replacement_for(original, index) for index in indices
        }

        applied_at = self._clock()
        readings = list(original)
        corrections: List[Correction] = []
        for index in indices:
            value, method = planned[index]
            current = readings[index]
            corrected_mm = round(value, _PRECISION)
            readings[index] = replace(
                current,
                rainfall_mm=corrected_mm,
                corrected=True,
                original_rainfall_mm=current.rainfall_mm,
                correction_method=method,
                correction_applied_at=applied_at,
            )
            if current.cumulative_mm is not None:
                self._shift_totals(readings, index, corrected_mm - current.rainfall_mm)

            corrections.append(
                Correction(
                    index=index,
                    timestamp=current.timestamp,
                    original_mm=current.rainfall_mm,
                    corrected_mm=corrected_mm,
                    method=method,
                )
            )

        return CorrectionResult(series=replace(series, readings=readings), corrections=corrections)

    def replacement_for(self, readings: Sequence[Reading], index: int) -> Tuple[float, str]:
        """Return ``(value, method)`` for the reading at ``index``."""

        local = self._local_values(readings, index)
        if len(local) >= self.min_local_values:
            return median(local), METHOD_LOCAL_MEDIAN.format(count=len(local))

        previous, following = self._nearest_valid(readings, index)
        if previous is not None and following is not None:
            return (previous + following) / 2, METHOD_INTERPOLATION
        if previous is not None:
            return previous, METHOD_PREVIOUS
        if following is not None:
            return following, METHOD_NEXT
        return 0.0, METHOD_ZERO

    def _is_valid(self, reading: Reading) -> bool:
        return reading.rainfall_mm <= self.threshold_mm

    def _local_values(self, readings: Sequence[Reading], index: int) -> List[float]:
        start = max(0, index - self.window)
        end = min(len(readings) - 1, index + self.window)
        return [
            readings[position].rainfall_mm
            for position in range(start, end + 1)
            if position != index and self._is_valid(readings[position])
        ]

    def _nearest_valid(
        self, readings: Sequence[Reading], index: int
    ) -> Tuple[Optional[float], Optional[float]]:
        previous = next(
            (
                readings[position].rainfall_mm
                for position in range(index - 1, -1, -1)
                if self._is_valid(readings[position])
            ),
            None,
        )
        following = next(
            (
                readings[position].rainfall_mm
                for position in range(index + 1, len(readings))
                if self._is_valid(readings[position])
            ),
            None,
        )
        return previous, following

    @staticmethod
    def _shift_totals(readings: List[Reading], start: int, delta: float) -> None:
        for position in range(start, len(readings)):
            reading = readings[position]
            if reading.cumulative_mm is None:
                continue
            adjusted = max(0.0, round(reading.cumulative_mm + delta, _PRECISION))
            readings[position] = replace(reading, cumulative_mm=adjusted)


def correct(
    series: StationSeries,
    flags: Sequence[OutlierFlag],
    threshold_mm: float = DEFAULT_THRESHOLD_MM,
    window: int = DEFAULT_WINDOW,
    min_local_values: int = DEFAULT_MIN_LOCAL_VALUES,
    clock: Optional[Callable[[], datetime]] = None,
) -> CorrectionResult:
    corrector = OutlierCorrector(
        threshold_mm=threshold_mm,
        window=window,
        min_local_values=min_local_values,
        clock=clock,
    )
    return corrector.correct(series, flags)
