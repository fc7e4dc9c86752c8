from __future__ import annotations

import json
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

import typer

from app.schemas import StationHistory
from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import render_job, render_report, render_station
from models.errors import ValidationError
from services.reconciler import ReconcilerConfig, reconcile
from services.reporting import build_batch_report


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Utilities for the rainfall reconciliation service.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1, message="CLI state is uninitialized.")
    return state


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Service base URL (defaults to API_BASE_URL env or http://localhost:8000).",
    ),
    poll_interval: Optional[float] = typer.Option(
        None,
        "--poll-interval",
        help="Seconds between status checks when waiting for completion.",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Maximum seconds to wait when polling for results.",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(
        base_url=base_url,
        poll_interval=poll_interval,
        poll_timeout=timeout,
    )
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("upload")
def upload_command(
    ctx: typer.Context,
    station_id: str = typer.Argument(..., help="Station the readings belong to."),
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Path to CSV file."),
    provider: Optional[str] = typer.Option(
        None,
        "--provider",
        "-p",
        help="Provider field mapping (ea, nrw, generic).",
    ),
    wait: bool = typer.Option(
        False,
        "--wait/--no-wait",
        help="Wait for the job to finish and display the result.",
    ),
    poll_interval: Optional[float] = typer.Option(
        None,
        "--poll-interval",
        help="Override poll interval while waiting.",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Override timeout while waiting.",
    ),
) -> None:
    """Upload a provider CSV export for a station."""
    state = _get_state(ctx)
    mapping = provider or state.config.provider
    typer.echo(f"Uploading {file} for station {station_id} to {state.config.base_url} ...")
    job_id = state.client.upload_csv(station_id, file, mapping)
    typer.secho(f"Upload accepted. job_id={job_id}", fg=typer.colors.GREEN)

    if not wait:
        return

    interval = poll_interval if poll_interval is not None else state.config.poll_interval
    poll_timeout = timeout if timeout is not None else state.config.poll_timeout
    typer.echo(f"Waiting for job (interval={interval}s, timeout={poll_timeout}s)...")
    result = state.client.poll_job(job_id, interval=interval, timeout=poll_timeout)
    typer.echo()
    render_job(result)


@app.command("job")
def job_command(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Identifier returned from the upload command."),
) -> None:
    """Fetch status and reconciliation outcome of an ingestion job."""
    state = _get_state(ctx)
    render_job(state.client.get_job(job_id))


@app.command("station")
def station_command(
    ctx: typer.Context,
    station_id: str = typer.Argument(..., help="Station identifier."),
) -> None:
    """Show a summary of a station's stored history."""
    state = _get_state(ctx)
    render_station(state.client.get_station(station_id))


@app.command("rescan")
def rescan_command(
    ctx: typer.Context,
    backup: bool = typer.Option(True, "--backup/--no-backup", help="Back up records before rewriting."),
) -> None:
    """Re-run outlier correction over every stored station."""
    state = _get_state(ctx)
    render_report(state.client.rescan(backup=backup))


@app.command("correct")
def correct_command(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Station history JSON."),
    threshold: float = typer.Option(25.0, "--threshold", "-t", min=0.1, help="Outlier threshold in mm per interval."),
    output_dir: Optional[Path] = typer.Option(
        None,
        "--output-dir",
        "-o",
        file_okay=False,
        help="Where to write the corrected record and report (defaults to the input directory).",
    ),
) -> None:
    """Correct outliers in a local history file without contacting the service."""
    try:
        history = StationHistory.from_payload(json.loads(file.read_text()))
        series = history.to_series(history.station or file.stem)
    except (json.JSONDecodeError, ValidationError) as exc:
        typer.secho(f"Cannot read {file}: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc

    config = replace(ReconcilerConfig.from_settings(), threshold_mm=threshold)
    result = reconcile(series, [], config=config)
    report = result.report
    typer.echo(f"Found {report.outliers_found} outliers (>{threshold:g}mm per interval).")
    if not report.had_outliers:
        typer.secho("No outliers detected.", fg=typer.colors.GREEN)
        return

    target_dir = output_dir or file.parent
    target_dir.mkdir(parents=True, exist_ok=True)
    corrected_path = target_dir / f"{file.stem}-corrected.json"
    report_path = target_dir / f"{file.stem}-outlier-report.json"

    corrected_path.write_text(json.dumps(StationHistory.from_series(result.series).to_payload(), indent=2))
    batch = build_batch_report({series.station_id: result}, threshold)
    report_path.write_text(batch.model_dump_json(by_alias=True, indent=2))

    typer.secho(f"Applied {report.corrections_made} corrections.", fg=typer.colors.GREEN)
    typer.echo(f"Corrected data saved to: {corrected_path}")
    typer.echo(f"Report saved to: {report_path}")
