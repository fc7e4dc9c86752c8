"""Merge, detect and correct: the per-cycle entry point for one station."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from datastore.station_registry import StationRegistry
from models.records import StationSeries, format_instant
from services.merger import SeriesMerger, SkippedReading
from services.outliers import (
    DEFAULT_MIN_LOCAL_VALUES,
    DEFAULT_SAMPLE_INTERVAL_MINUTES,
    DEFAULT_THRESHOLD_MM,
    DEFAULT_WINDOW,
    Correction,
    OutlierCorrector,
    OutlierFlag,
    detect,
)
from settings import Settings, get_settings

logger = logging.getLogger(__name__)

CORRECTION_STRATEGY = "intelligent_interpolation"


@dataclass(frozen=True)
class ReconcilerConfig:
    threshold_mm: float = DEFAULT_THRESHOLD_MM
    sample_interval_minutes: int = DEFAULT_SAMPLE_INTERVAL_MINUTES
    window: int = DEFAULT_WINDOW
    min_local_values: int = DEFAULT_MIN_LOCAL_VALUES
    alert_threshold: int = 5

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ReconcilerConfig":
        settings = settings or get_settings()
        return cls(
            threshold_mm=settings.threshold_mm,
            sample_interval_minutes=settings.sample_interval_minutes,
            window=settings.outlier_window,
            min_local_values=settings.min_local_values,
            alert_threshold=settings.alert_threshold,
        )


@dataclass
class OutlierReport:
    threshold_mm: float
    sample_interval_minutes: int
    detected_at: datetime
    flags: List[OutlierFlag] = field(default_factory=list)
    corrections: List[Correction] = field(default_factory=list)
    skipped: List[SkippedReading] = field(default_factory=list)
    added: int = 0
    replaced: int = 0

    @property
    def outliers_found(self) -> int:
        return len(self.flags)

    @property
    def corrections_made(self) -> int:
        return len(self.corrections)

    @property
    def had_outliers(self) -> bool:
        return bool(self.flags)

    def to_summary(self) -> Dict[str, Any]:
        """The ``outlierDetection`` block stored alongside the series."""

        return {
            "detectedAt": format_instant(self.detected_at),
            "threshold": self.threshold_mm,
            "outliersFound": self.outliers_found,
            "correctionsMade": self.corrections_made,
            "correctionMethod": CORRECTION_STRATEGY,
        }


@dataclass
class ReconcileResult:
    series: StationSeries
    report: OutlierReport

    @property
    def changed(self) -> bool:
        return bool(self.report.added or self.report.replaced or self.report.corrections)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationPipeline:
    """Runs ``merge -> detect -> correct`` for one station per ingestion cycle.

    Holds no state between calls. Callers must serialise runs per station;
    see ``services.ingestion.IngestionService``.
    """

    def __init__(
        self,
        config: Optional[ReconcilerConfig] = None,
        registry: Optional[StationRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.config = config or ReconcilerConfig()
        self.registry = registry
        self._clock = clock or _utcnow
        self._merger = SeriesMerger()

    def reconcile(
        self,
        existing: StationSeries,
        incoming: Sequence[Any],
        threshold_mm: Optional[float] = None,
    ) -> ReconcileResult:
        threshold = self.config.threshold_mm if threshold_mm is None else threshold_mm
        now = self._clock()

        outcome = self._merger.merge_with_report(existing, incoming)
        merged = self._with_registry_metadata(outcome.series)

        flags = detect(merged, threshold, self.config.sample_interval_minutes)
        corrector = OutlierCorrector(
            threshold_mm=threshold,
            window=self.config.window,
            min_local_values=self.config.min_local_values,
            clock=lambda: now,
        )
        corrected = corrector.correct(merged, flags)

        report = OutlierReport(
            threshold_mm=float(threshold),
            sample_interval_minutes=self.config.sample_interval_minutes,
            detected_at=now,
            flags=flags,
            corrections=corrected.corrections,
            skipped=outcome.skipped,
            added=outcome.added,
            replaced=outcome.replaced,
        )

        series = corrected.series
        if report.had_outliers:
            series = replace(series, outlier_detection=report.to_summary())
        if outcome.changed or report.corrections:
            series = replace(series, last_updated=now)

        self._log(series, report)
        return ReconcileResult(series=series, report=report)

    def _with_registry_metadata(self, series: StationSeries) -> StationSeries:
        if self.registry is None:
            return series
        info = self.registry.get(series.station_id)
        if info is None:
            return series
        return replace(
            series,
            station_name=series.station_name or info.name,
            region=series.region or info.region,
            source=series.source or info.source,
        )

    def _log(self, series: StationSeries, report: OutlierReport) -> None:
        context = {"station_id": series.station_id}
        for correction in report.corrections:
            logger.info(
                "Corrected %s %smm -> %smm (%s)",
                format_instant(correction.timestamp),
                correction.original_mm,
                correction.corrected_mm,
                correction.method,
                extra=context,
            )
        logger.info(
            "Reconciled station",
            extra={
                **context,
                "record_count": len(series.readings),
                "outliers_found": report.outliers_found,
                "corrections_made": report.corrections_made,
                "skipped_count": len(report.skipped),
            },
        )
        if report.outliers_found > self.config.alert_threshold:
            logger.warning(
                "Outlier count %d exceeds alert threshold %d",
                report.outliers_found,
                self.config.alert_threshold,
                extra=context,
            )


def reconcile(
    existing: StationSeries,
    incoming: Sequence[Any],
    threshold_mm: Optional[float] = None,
    *,
    config: Optional[ReconcilerConfig] = None,
    registry: Optional[StationRegistry] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> ReconcileResult:
    """Merge ``incoming`` into ``existing`` and repair spikes in the result."""

    pipeline = ReconciliationPipeline(config=config, registry=registry, clock=clock)
    return pipeline.reconcile(existing, incoming, threshold_mm)
