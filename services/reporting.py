"""Summaries of reconciliation outcomes across stations."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Mapping, Optional

from app.schemas import (
    BatchReport,
    BatchSummary,
    CorrectionModel,
    ReconcileResponse,
    StationOutlierDetail,
)
from services.reconciler import ReconcileResult


def to_response(station_id: str, result: ReconcileResult) -> ReconcileResponse:
    report = result.report
    return ReconcileResponse(
        station_id=station_id,
        record_count=len(result.series.readings),
        added=report.added,
        replaced=report.replaced,
        skipped=len(report.skipped),
        outliers_found=report.outliers_found,
        corrections_made=report.corrections_made,
        corrections=[
            CorrectionModel(
                timestamp=correction.timestamp,
                original_mm=correction.original_mm,
                corrected_mm=correction.corrected_mm,
                method=correction.method,
            )
            for correction in report.corrections
        ],
    )


def build_batch_report(
    results: Mapping[str, ReconcileResult],
    threshold_mm: float,
    failures: Optional[Mapping[str, str]] = None,
    generated_at: Optional[datetime] = None,
) -> BatchReport:
    failures = dict(failures or {})
    details = []
    total_outliers = 0
    total_corrections = 0
    for station_id in sorted(results):
        result = results[station_id]
        report = result.report
        total_outliers += report.outliers_found
        total_corrections += report.corrections_made
        if not report.had_outliers:
            continue
        details.append(
            StationOutlierDetail(
                station=station_id,
                station_name=result.series.station_name,
                outliers_found=report.outliers_found,
                corrections=to_response(station_id, result).corrections,
            )
        )

    summary = BatchSummary(
        stations_processed=len(results) + len(failures),
        stations_with_outliers=len(details),
        stations_failed=len(failures),
        total_outliers_found=total_outliers,
        total_corrections=total_corrections,
    )
    return BatchReport(
        generated_at=generated_at or datetime.now(timezone.utc),
        threshold=threshold_mm,
        summary=summary,
        station_details=details,
        failures=failures,
    )
