"""Pydantic schemas for persisted records and the HTTP API layer."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaError

from models.errors import ParseError, ValidationError
from models.records import StationSeries, coerce_reading, format_instant, parse_instant

logger = logging.getLogger(__name__)


class OutlierDetectionSummary(BaseModel):
    """The ``outlierDetection`` block written after a correcting run."""

    model_config = ConfigDict(populate_by_name=True)

    detected_at: str = Field(..., alias="detectedAt")
    threshold: float
    outliers_found: int = Field(..., alias="outliersFound", ge=0)
    corrections_made: int = Field(..., alias="correctionsMade", ge=0)
    correction_method: str = Field("intelligent_interpolation", alias="correctionMethod")


class StationHistory(BaseModel):
    """Persisted history record for one station, as consumed by the dashboard."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")
    station: Optional[str] = None
    station_name: Optional[str] = Field(default=None, alias="stationName")
    region: Optional[str] = None
    source: Optional[str] = None
    data: List[Dict[str, Any]]
    outlier_detection: Optional[OutlierDetectionSummary] = Field(
        default=None, alias="outlierDetection"
    )

    @classmethod
    def from_payload(cls, payload: Any) -> "StationHistory":
        if not isinstance(payload, Mapping):
            raise ValidationError("Station record must be a JSON object.")
        if not isinstance(payload.get("data"), list):
            raise ValidationError("Station record is missing its 'data' array.")
        try:
            return cls.model_validate(payload)
        except SchemaError as exc:
            raise ValidationError(f"Invalid station record: {exc}") from exc

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_series(self, station_id: Optional[str] = None) -> StationSeries:
        """Rehydrate the record; readings without a usable timestamp are dropped.

        ``station_id`` (the storage key) takes precedence over the stored field.
        """

        identifier = station_id or self.station
        if not identifier:
            raise ValidationError("Station record has no station id.")

        readings = []
        for position, item in enumerate(self.data):
            try:
                readings.append(coerce_reading(item))
            except ParseError as exc:
                logger.warning(
                    "Dropping stored reading",
                    extra={"station_id": identifier, "row_number": position, "reason": exc.reason},
                )

        last_updated: Optional[datetime] = None
        if self.last_updated:
            try:
                last_updated = parse_instant(self.last_updated)
            except ParseError:
                last_updated = None

        return StationSeries(
            station_id=identifier,
            station_name=self.station_name,
            region=self.region,
            source=self.source,
            readings=readings,
            last_updated=last_updated,
            outlier_detection=(
                self.outlier_detection.model_dump(by_alias=True)
                if self.outlier_detection is not None
                else None
            ),
            extras=dict(self.model_extra or {}),
        )

    @classmethod
    def from_series(cls, series: StationSeries) -> "StationHistory":
        return cls.model_validate(
            {
                **series.extras,
                "lastUpdated": (
                    format_instant(series.last_updated) if series.last_updated else None
                ),
                "station": series.station_id,
                "stationName": series.station_name,
                "region": series.region,
                "source": series.source,
                "data": [reading.to_record() for reading in series.readings],
                "outlierDetection": series.outlier_detection,
            }
        )


class IngestionStatus(str, Enum):
    """Ingestion job lifecycle states exposed via the API."""

    queued = "queued"
    processing = "processing"
    processed = "processed"
    partial = "partial"
    failed = "failed"


class JobAcceptedResponse(BaseModel):
    """Immediate response payload after accepting a CSV upload."""

    job_id: str = Field(..., description="Generated identifier for the ingestion job.")


class IngestionError(BaseModel):
    """Details about a row that failed parsing, or a job-level failure (row 0)."""

    row_number: int = Field(..., ge=0)
    reason: str


class CorrectionModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timestamp: datetime
    original_mm: float = Field(..., alias="originalValue")
    corrected_mm: float = Field(..., alias="correctedValue")
    method: str


class ReconcileResponse(BaseModel):
    """Outcome of one synchronous reconciliation."""

    station_id: str
    record_count: int = Field(..., ge=0)
    added: int = Field(0, ge=0)
    replaced: int = Field(0, ge=0)
    skipped: int = Field(0, ge=0)
    outliers_found: int = Field(0, ge=0)
    corrections_made: int = Field(0, ge=0)
    corrections: List[CorrectionModel] = Field(default_factory=list)


class IngestionJob(BaseModel):
    """Full record representing one uploaded batch for a station."""

    job_id: str
    station_id: str
    provider: str
    status: IngestionStatus
    submitted_at: datetime
    processed_at: Optional[datetime] = None
    processing_ms: Optional[int] = Field(
        default=None, description="Duration in milliseconds from start to finish."
    )
    result: Optional[ReconcileResponse] = None
    errors: List[IngestionError] = Field(default_factory=list)


class StationSummary(BaseModel):
    station_id: str
    name: Optional[str] = None
    region: Optional[str] = None


class StationListing(BaseModel):
    stations: List[StationSummary] = Field(default_factory=list)


class StationOutlierDetail(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    station: str
    station_name: Optional[str] = Field(default=None, alias="stationName")
    outliers_found: int = Field(..., alias="outliersFound", ge=0)
    corrections: List[CorrectionModel] = Field(default_factory=list)


class BatchSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stations_processed: int = Field(0, alias="stationsProcessed", ge=0)
    stations_with_outliers: int = Field(0, alias="stationsWithOutliers", ge=0)
    stations_failed: int = Field(0, alias="stationsFailed", ge=0)
    total_outliers_found: int = Field(0, alias="totalOutliersFound", ge=0)
    total_corrections: int = Field(0, alias="totalCorrections", ge=0)


class BatchReport(BaseModel):
    """Outlier report across many stations."""

    model_config = ConfigDict(populate_by_name=True)

    generated_at: datetime = Field(..., alias="generatedAt")
    threshold: float
    summary: BatchSummary
    station_details: List[StationOutlierDetail] = Field(
        default_factory=list, alias="stationDetails"
    )
    failures: Dict[str, str] = Field(default_factory=dict)
