"""HTTP route definitions for the service."""

from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Body, Depends, File, HTTPException, Query, UploadFile, status

from app.schemas import (
    BatchReport,
    IngestionJob,
    JobAcceptedResponse,
    ReconcileResponse,
    StationListing,
    StationSummary,
)
from models.errors import ValidationError
from services.ingestion import IngestionService, build_default_ingestion_service
from services.reporting import to_response

router = APIRouter()


def get_service() -> IngestionService:
    return build_default_ingestion_service()


@router.post(
    "/stations/{station_id}/uploads",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=JobAcceptedResponse,
    summary="Upload a provider CSV export for asynchronous reconciliation.",
)
async def upload_csv(
    station_id: str,
    file: UploadFile = File(..., description="CSV export from the data provider."),
    provider: str = Query("ea", description="Field mapping to apply to the CSV."),
    service: IngestionService = Depends(get_service),
) -> JobAcceptedResponse:
    try:
        contents = await file.read()
        job_id = service.enqueue_csv(station_id, contents, provider)
    except UnicodeDecodeError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Uploaded file is not UTF-8 text.",
        ) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    finally:
        await file.close()
    return JobAcceptedResponse(job_id=job_id)


@router.get(
    "/jobs/{job_id}",
    response_model=IngestionJob,
    summary="Fetch status and outcome of an ingestion job.",
)
async def get_job(
    job_id: str,
    service: IngestionService = Depends(get_service),
) -> IngestionJob:
    try:
        return service.fetch_job(job_id)
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=exc.args[0],
        ) from exc


@router.post(
    "/stations/{station_id}/readings",
    response_model=ReconcileResponse,
    summary="Merge a batch of readings into a station history and correct outliers.",
)
def post_readings(
    station_id: str,
    readings: List[Dict[str, Any]] = Body(..., description="Readings in the persisted wire format."),
    service: IngestionService = Depends(get_service),
) -> ReconcileResponse:
    try:
        result = service.reconcile_station(station_id, readings)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return to_response(station_id, result)


@router.get(
    "/stations",
    response_model=StationListing,
    summary="List stations with stored histories.",
)
def list_stations(service: IngestionService = Depends(get_service)) -> StationListing:
    summaries = []
    for station_id in service.store.list_station_ids():
        info = service.registry.get(station_id) if service.registry else None
        summaries.append(
            StationSummary(
                station_id=station_id,
                name=info.name if info else None,
                region=info.region if info else None,
            )
        )
    return StationListing(stations=summaries)


@router.get(
    "/stations/{station_id}",
    summary="Fetch the stored history record of a station.",
)
def get_station(
    station_id: str,
    service: IngestionService = Depends(get_service),
) -> Dict[str, Any]:
    try:
        history = service.fetch_history(station_id)
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=exc.args[0],
        ) from exc
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return history.to_payload()


@router.post(
    "/maintenance/rescan",
    response_model=BatchReport,
    response_model_by_alias=True,
    summary="Re-run outlier correction across every stored station.",
)
def rescan(
    backup: bool = Query(True, description="Back up each record before rewriting it."),
    service: IngestionService = Depends(get_service),
) -> BatchReport:
    return service.rescan_all(backup=backup)


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
