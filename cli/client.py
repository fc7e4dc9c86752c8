from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Dict

import httpx
import typer

from cli.config import CLIConfig


class ApiClient:
    """Minimal HTTP client for the reconciliation service."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        self._client = httpx.Client(base_url=config.base_url, timeout=30.0)

    def close(self) -> None:
        self._client.close()

    def upload_csv(self, station_id: str, path: Path, provider: str) -> str:
        if not path.is_file():
            raise typer.BadParameter(f"Path {path} is not a file.")

        try:
            with path.open("rb") as handle:
                response = self._client.post(
                    f"/stations/{station_id}/uploads",
                    params={"provider": provider},
                    files={"file": (path.name, handle, "text/csv")},
                )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        payload = response.json()
        job_id = payload.get("job_id")
        if not isinstance(job_id, str):
            raise typer.BadParameter("Unexpected response payload when uploading file.")
        return job_id

    def get_job(self, job_id: str) -> Dict[str, Any]:
        return self._get(f"/jobs/{job_id}", not_found=f"Job {job_id} was not found.")

    def get_station(self, station_id: str) -> Dict[str, Any]:
        return self._get(f"/stations/{station_id}", not_found=f"Station {station_id} was not found.")

    def rescan(self, backup: bool = True) -> Dict[str, Any]:
        try:
            response = self._client.post(
                "/maintenance/rescan",
                params={"backup": str(backup).lower()},
                timeout=300.0,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.json()

    def poll_job(self, job_id: str, interval: float, timeout: float) -> Dict[str, Any]:
        deadline = time.monotonic() + timeout
        last_payload: Dict[str, Any] | None = None
        while time.monotonic() <= deadline:
            last_payload = self.get_job(job_id)
            status = last_payload.get("status")
            if status not in {"queued", "processing"}:
                return last_payload
            time.sleep(interval)
        typer.secho(
            (
                f"Timed out waiting for job {job_id}. "
                f"Last status: {last_payload.get('status') if last_payload else 'unknown'}"
            ),
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(code=1)

    def _get(self, path: str, not_found: str) -> Dict[str, Any]:
        try:
            response = self._client.get(path)
            if response.status_code == 404:
                raise typer.BadParameter(not_found)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.json()

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        detail: str | None = None
        try:
            data = exc.response.json()
            detail = data.get("detail")
        except Exception:  # noqa: BLE001 - best effort parsing
            detail = exc.response.text.strip()
        message = (
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}"
        )
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
