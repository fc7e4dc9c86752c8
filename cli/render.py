from __future__ import annotations

from typing import Any, Dict, Iterable

import typer


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def _echo_corrections(corrections: Iterable[Dict[str, Any]], indent: str = "  ") -> None:
    for correction in corrections:
        typer.echo(
            f"{indent}- {correction.get('timestamp')}: "
            f"{correction.get('originalValue')}mm -> {correction.get('correctedValue')}mm "
            f"({correction.get('method')})"
        )


def render_job(payload: Dict[str, Any]) -> None:
    echo_heading("Ingestion Job")
    echo_key_values(
        [
            ("job_id", payload.get("job_id")),
            ("station_id", payload.get("station_id")),
            ("provider", payload.get("provider")),
            ("status", payload.get("status")),
            ("submitted_at", payload.get("submitted_at")),
            ("processed_at", payload.get("processed_at")),
            ("processing_ms", payload.get("processing_ms")),
        ]
    )

    result = payload.get("result") or {}
    typer.echo()
    echo_heading("Reconciliation")
    if result:
        echo_key_values(
            [
                ("record_count", result.get("record_count")),
                ("added", result.get("added")),
                ("replaced", result.get("replaced")),
                ("skipped", result.get("skipped")),
                ("outliers_found", result.get("outliers_found")),
                ("corrections_made", result.get("corrections_made")),
            ]
        )
        corrections = result.get("corrections") or []
        if corrections:
            typer.echo("corrections:")
            _echo_corrections(corrections)
    else:
        typer.echo("No reconciliation result available.")

    errors = payload.get("errors") or []
    typer.echo()
    echo_heading("Errors")
    if errors:
        for error in errors:
            typer.echo(f"  - row {error.get('row_number')}: {error.get('reason')}")
    else:
        typer.echo("No errors recorded.")


def render_station(payload: Dict[str, Any]) -> None:
    echo_heading("Station")
    data = payload.get("data") or []
    echo_key_values(
        [
            ("station", payload.get("station")),
            ("stationName", payload.get("stationName")),
            ("region", payload.get("region")),
            ("source", payload.get("source")),
            ("lastUpdated", payload.get("lastUpdated")),
            ("records", len(data)),
            ("corrected", sum(1 for item in data if item.get("corrected"))),
        ]
    )
    if data:
        first, last = data[0], data[-1]
        typer.echo(f"range: {first.get('date')} {first.get('time')} .. {last.get('date')} {last.get('time')}")

    detection = payload.get("outlierDetection")
    if detection:
        typer.echo()
        echo_heading("Outlier Detection")
        echo_key_values(sorted(detection.items()))


def render_report(payload: Dict[str, Any]) -> None:
    echo_heading("Outlier Report")
    echo_key_values(
        [
            ("generatedAt", payload.get("generatedAt")),
            ("threshold", payload.get("threshold")),
        ]
    )
    summary = payload.get("summary") or {}
    echo_key_values(sorted(summary.items()))

    details = payload.get("stationDetails") or []
    if details:
        typer.echo()
        echo_heading("Stations With Outliers")
        for detail in details:
            typer.echo(f"{detail.get('station')}: {detail.get('outliersFound')} outliers")
            _echo_corrections(detail.get("corrections") or [])

    failures = payload.get("failures") or {}
    if failures:
        typer.echo()
        echo_heading("Failures")
        for station_id, reason in failures.items():
            typer.echo(f"  - {station_id}: {reason}")
