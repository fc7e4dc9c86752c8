"""Per-station ingestion: load history, reconcile a new batch, store the result."""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence
from uuid import uuid4

from app.schemas import (
    BatchReport,
    IngestionError,
    IngestionJob,
    IngestionStatus,
    StationHistory,
)
from datastore.job_table import JobTable, build_default_job_table
from datastore.station_registry import StationRegistry
from datastore.station_store import StationHistoryStore, build_default_station_store, station_key
from models.errors import ValidationError
from models.records import StationSeries
from services.parsing import FieldMapping, get_mapping, parse_csv
from services.reconciler import ReconcilerConfig, ReconcileResult, ReconciliationPipeline
from services.reporting import build_batch_report, to_response
from settings import get_settings

logger = logging.getLogger(__name__)


class IngestionService:
    """Coordinates storage, background parsing and per-station reconciliation.

    The load -> reconcile -> store cycle for a station runs under that
    station's lock, so at most one reconciliation per station is in flight
    within this process. Different stations proceed in parallel.
    """

    def __init__(
        self,
        store: StationHistoryStore,
        jobs: JobTable,
        config: Optional[ReconcilerConfig] = None,
        registry: Optional[StationRegistry] = None,
        workers: int = 4,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.jobs = jobs
        self.registry = registry
        self.pipeline = ReconciliationPipeline(config=config, registry=registry, clock=clock)
        self.executor = ThreadPoolExecutor(max_workers=workers)
        self._futures: Dict[str, Future[None]] = {}
        self._futures_lock = Lock()
        self._station_locks: Dict[str, Lock] = {}
        self._station_locks_guard = Lock()

    @property
    def config(self) -> ReconcilerConfig:
        return self.pipeline.config

    def reconcile_station(self, station_id: str, incoming: Sequence[Any]) -> ReconcileResult:
        """Merge ``incoming`` into the stored history of ``station_id`` and persist it.

        A ``ValidationError`` leaves the stored record untouched.
        """
        station_key(station_id)
        with self._station_lock(station_id):
            history = self.store.load(station_id)
            if history is None:
                existing = StationSeries(station_id=station_id)
            else:
                existing = history.to_series(station_id)

            result = self.pipeline.reconcile(existing, incoming)
            if result.changed:
                self.store.save(StationHistory.from_series(result.series))
            return result

    def reconcile_many(self, batches: Mapping[str, Sequence[Any]]) -> BatchReport:
        """Reconcile independent stations in parallel; one failure does not stop the rest."""
        return self._run_stations(
            batches.keys(), lambda station_id: self.reconcile_station(station_id, batches[station_id])
        )

    def rescan_all(self, backup: bool = True) -> BatchReport:
        """Re-run outlier correction over every stored history."""
        return self._run_stations(
            self.store.list_station_ids(),
            lambda station_id: self._rescan_station(station_id, backup),
        )

    def enqueue_csv(self, station_id: str, contents: bytes | str, provider: str = "ea") -> str:
        """Record a job for the upload and parse/reconcile it on the worker pool."""
        station_key(station_id)
        mapping = get_mapping(provider)
        if isinstance(contents, bytes):
            contents = contents.decode("utf-8-sig")
        if not contents.strip():
            raise ValueError("Uploaded file is empty.")

        job_id = str(uuid4())
        submitted_at = datetime.now(timezone.utc)
        self.jobs.put_item(
            IngestionJob(
                job_id=job_id,
                station_id=station_id,
                provider=provider,
                status=IngestionStatus.queued,
                submitted_at=submitted_at,
            )
        )

        future = self.executor.submit(
            self._process_job,
            job_id=job_id,
            station_id=station_id,
            provider=provider,
            text=contents,
            mapping=mapping,
            submitted_at=submitted_at,
        )
        with self._futures_lock:
            self._futures[job_id] = future
        future.add_done_callback(lambda _f, jid=job_id: self._clear_future(jid))
        return job_id

    def fetch_job(self, job_id: str) -> IngestionJob:
        job = self.jobs.get_item(job_id)
        if job is None:
            raise KeyError(f"Ingestion job {job_id!r} not found.")
        return job

    def fetch_history(self, station_id: str) -> StationHistory:
        history = self.store.load(station_id)
        if history is None:
            raise KeyError(f"Station {station_id!r} not found.")
        return history

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False, cancel_futures=True)

    def _station_lock(self, station_id: str) -> Lock:
        with self._station_locks_guard:
            lock = self._station_locks.get(station_id)
            if lock is None:
                lock = Lock()
                self._station_locks[station_id] = lock
            return lock

    def _clear_future(self, job_id: str) -> None:
        with self._futures_lock:
            self._futures.pop(job_id, None)

    def _rescan_station(self, station_id: str, backup: bool) -> ReconcileResult:
        with self._station_lock(station_id):
            history = self.store.load(station_id)
            if history is None:
                raise KeyError(f"Station {station_id!r} not found.")
            result = self.pipeline.reconcile(history.to_series(station_id), [])
            if result.report.corrections:
                if backup:
                    self.store.backup(station_id)
                self.store.save(StationHistory.from_series(result.series))
            return result

    def _run_stations(
        self, station_ids: Iterable[str], work: Callable[[str], ReconcileResult]
    ) -> BatchReport:
        futures = {station_id: self.executor.submit(work, station_id) for station_id in station_ids}
        results: Dict[str, ReconcileResult] = {}
        failures: Dict[str, str] = {}
        for station_id, future in futures.items():
            try:
                results[station_id] = future.result()
            except (ValidationError, KeyError) as exc:
                failures[station_id] = str(exc)
                logger.warning(
                    "Skipping station", extra={"station_id": station_id, "reason": str(exc)}
                )
            except Exception as exc:  # noqa: BLE001
                failures[station_id] = str(exc)
                logger.exception("Station reconciliation failed", extra={"station_id": station_id})
        return build_batch_report(results, self.config.threshold_mm, failures)

    def _process_job(
        self,
        job_id: str,
        station_id: str,
        provider: str,
        text: str,
        mapping: FieldMapping,
        submitted_at: datetime,
    ) -> None:
        start_time = time.perf_counter()
        context = {"job_id": job_id, "station_id": station_id}
        self.jobs.put_item(
            IngestionJob(
                job_id=job_id,
                station_id=station_id,
                provider=provider,
                status=IngestionStatus.processing,
                submitted_at=submitted_at,
            )
        )

        errors: list[IngestionError] = []
        response = None
        try:
            batch = parse_csv(text, mapping)
            errors.extend(
                IngestionError(row_number=error.row_number, reason=error.reason)
                for error in batch.errors
            )
            if not batch.readings and errors:
                status = IngestionStatus.failed
            else:
                result = self.reconcile_station(station_id, batch.readings)
                response = to_response(station_id, result)
                status = IngestionStatus.partial if errors else IngestionStatus.processed
        except ValidationError as exc:
            status = IngestionStatus.failed
            errors.append(IngestionError(row_number=0, reason=str(exc)))
            logger.warning("Ingestion rejected", extra={**context, "reason": str(exc)})
        except Exception as exc:  # pragma: no cover
            status = IngestionStatus.failed
            errors.append(IngestionError(row_number=0, reason=str(exc)))
            logger.exception("Ingestion failed", extra=context)

        processing_ms = int((time.perf_counter() - start_time) * 1000)
        self.jobs.put_item(
            IngestionJob(
                job_id=job_id,
                station_id=station_id,
                provider=provider,
                status=status,
                submitted_at=submitted_at,
                processed_at=datetime.now(timezone.utc),
                processing_ms=processing_ms,
                result=response,
                errors=errors,
            )
        )
        logger.info(
            "Ingestion job finished",
            extra={**context, "status": status.value, "record_count": response.record_count if response else None},
        )


@lru_cache
def build_default_ingestion_service(workers: Optional[int] = None) -> IngestionService:
    """Factory that wires the service from settings."""
    settings = get_settings()
    registry = None
    if settings.registry_path:
        registry = StationRegistry.from_file(Path(settings.registry_path))
    return IngestionService(
        store=build_default_station_store(),
        jobs=build_default_job_table(),
        config=ReconcilerConfig.from_settings(settings),
        registry=registry,
        workers=workers or settings.ingest_workers,
    )
