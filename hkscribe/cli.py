"""
hkscribe.cli - Typer CLI entry point.

Provides the transcribe, split, license and config subcommands.
"""

from __future__ import annotations

import asyncio
import signal
from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from hkscribe import __version__
from hkscribe.config import (
    CONFIG_FILENAME,
    QuotaPolicy,
    ScribeConfig,
    TranscriptionSettings,
    create_default_config,
    load_config,
    write_config,
)
from hkscribe.exceptions import ConfigError, DependencyError, LicenseError
from hkscribe.export.csv import default_csv_name, write_csv
from hkscribe.extract.probe import MediaFile, probe_duration_seconds, require_ffprobe
from hkscribe.io import write_text
from hkscribe.license import (
    JsonLicenseStore,
    LicenseState,
    activate_license,
    resolve_quota_policy,
)
from hkscribe.logging import configure_logging, logger
from hkscribe.transcribe.client import GeminiBackend, TranscriptionBackend
from hkscribe.transcribe.engine import JobContext, JobResult, JobState, TranscriptionJob
from hkscribe.transcribe.worker import CancelSignal
from hkscribe.utils import format_bytes, format_duration

app = typer.Typer(
    name="hkscribe",
    help="Long-form Cantonese transcription with Gemini.\n\n"
    "Splits long recordings into safe parts, transcribes them in order with "
    "retry, and merges the results into one timestamped transcript.",
    add_completion=False,
)
console = Console()


def version_callback(value: bool) -> None:
    if value:
        console.print(f"hkscribe {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """hkscribe - Long-form Cantonese transcription with Gemini."""
    pass


def create_backend(config: ScribeConfig) -> TranscriptionBackend:
    """Build the remote backend from configuration."""
    return GeminiBackend(api_key=config.resolve_api_key())


def _load_config_or_exit(config_path: str | None) -> ScribeConfig:
    try:
        return load_config(Path(config_path) if config_path else None)
    except (ConfigError, FileNotFoundError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def _load_media_or_exit(file: str) -> MediaFile:
    path = Path(file).expanduser()
    if not path.is_file():
        console.print(f"[red]Error: File not found: {path}[/red]")
        raise typer.Exit(1)
    media = MediaFile.from_path(path)
    if not media.is_media:
        console.print(f"[red]Error: {path.name} is not an audio or video file[/red]")
        raise typer.Exit(1)
    return media


@app.command("init")
def init_config(
    path: str = typer.Option(".", "--path", "-d", help="Directory to write hkscribe.yaml in"),
) -> None:
    """Create a default hkscribe.yaml."""
    config_path = Path(path) / CONFIG_FILENAME
    if config_path.exists():
        console.print(f"[red]Error: '{config_path}' already exists[/red]")
        raise typer.Exit(1)

    write_config(create_default_config(), config_path)
    console.print(f"[green]✓[/green] Created {config_path}")
    console.print("[dim]  Set api_key there or export GEMINI_API_KEY[/dim]")


@app.command("transcribe")
def transcribe(
    file: str = typer.Argument(..., help="Audio or video file to transcribe"),
    model: str | None = typer.Option(None, "--model", "-m", help="Gemini model id"),
    speakers: list[str] | None = typer.Option(
        None, "--speaker", "-s", help="Likely speaker name (repeat for several)"
    ),
    no_speakers: bool = typer.Option(False, "--no-speakers", help="Do not label speakers"),
    no_timestamps: bool = typer.Option(False, "--no-timestamps", help="Do not insert timestamps"),
    output: str | None = typer.Option(None, "--output", "-o", help="Write transcript text here"),
    csv_path: str | None = typer.Option(None, "--csv", help="Write transcript rows as CSV here"),
    config_path: str | None = typer.Option(None, "--config", "-c", help="Path to hkscribe.yaml"),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging"),
) -> None:
    """Transcribe an audio or video file.

    Long files are split into two-minute parts and transcribed in order.
    Press Ctrl-C to stop; text finished so far is kept.
    """
    configure_logging(verbose)
    config = _load_config_or_exit(config_path)
    media = _load_media_or_exit(file)

    try:
        require_ffprobe()
    except DependencyError as e:
        console.print(f"[yellow]Warning: {e}. Duration is unknown; splitting by size.[/yellow]")

    try:
        settings = config.to_settings(
            model_id=model,
            speaker_names=speakers or None,
            identify_speakers=False if no_speakers else None,
            timestamps_enabled=False if no_timestamps else None,
        )
        backend = create_backend(config)
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    quota = resolve_quota_policy(config)
    plan = "licensed" if quota.is_licensed else f"free ({quota.free_limit_minutes:g} min limit)"
    console.print(
        f"[cyan]Transcribing {media.path.name} ({format_bytes(media.size)}) "
        f"with {settings.model_id}, {plan}...[/cyan]\n"
    )

    job = TranscriptionJob(backend=backend, prober=probe_duration_seconds)
    result = asyncio.run(_run_with_progress(job, media, settings, quota))

    _print_result(result)

    if result.transcript:
        if output:
            write_text(Path(output), result.transcript)
            console.print(f"[dim]  Transcript written to {output}[/dim]")
        if csv_path:
            target = Path(csv_path)
            if target.is_dir():
                target = target / default_csv_name()
            write_csv(target, result.rows)
            console.print(f"[dim]  CSV written to {target}[/dim]")

    if result.state is JobState.FAILED:
        raise typer.Exit(1)


async def _run_with_progress(
    job: TranscriptionJob,
    media: MediaFile,
    settings: TranscriptionSettings,
    quota: QuotaPolicy,
) -> JobResult:
    cancel = CancelSignal()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.cancel)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT handler unavailable; Ctrl-C will not stop cleanly")
        handler_installed = False

    with Progress(
        TextColumn("{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task_id = progress.add_task("Starting...", total=100)

        def on_update(context: JobContext) -> None:
            progress.update(task_id, completed=context.progress, description=context.status)

        try:
            return await job.run(media, settings, quota, cancel=cancel, on_update=on_update)
        finally:
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)


def _print_result(result: JobResult) -> None:
    rows = result.rows
    if rows:
        table = Table(title="Transcript")
        table.add_column("Time", style="cyan", no_wrap=True)
        table.add_column("Speaker", style="green")
        table.add_column("Content")
        for row in rows:
            table.add_row(row.time, row.speaker, row.content)
        console.print(table)

    for index in result.skipped_segments:
        console.print(f"[yellow]Warning: part {index + 1} failed and was skipped[/yellow]")

    if result.state is JobState.COMPLETED:
        duration = (
            f" ({format_duration(result.duration_seconds)})" if result.duration_seconds else ""
        )
        console.print(f"\n[green]✓[/green] Transcription complete{duration}")
    elif result.state is JobState.QUOTA_HALTED:
        console.print(
            "\n[yellow]Free plan limit reached. "
            "Run 'hkscribe activate <key>' to unlock full-length transcription.[/yellow]"
        )
    elif result.state is JobState.ABORTED:
        console.print("\n[yellow]Stopped by user. Text finished so far was kept.[/yellow]")
    elif result.state is JobState.FAILED and result.error:
        code = f" [{result.error.code}]" if result.error.code else ""
        console.print(f"\n[red]Error{code}: {result.error.message}[/red]")


@app.command("split")
def split_file(
    file: str = typer.Argument(..., help="Audio or video file to split"),
    minutes: float = typer.Option(2.0, "--minutes", "-n", help="Target minutes per part"),
    out: str = typer.Option(".", "--out", "-d", help="Directory for the part files"),
) -> None:
    """Split a file into parts of roughly equal duration."""
    from hkscribe.transcribe.segmenter import split_to_directory

    if minutes <= 0:
        console.print("[red]Error: --minutes must be positive[/red]")
        raise typer.Exit(1)

    media = _load_media_or_exit(file)
    try:
        require_ffprobe()
    except DependencyError as e:
        console.print(f"[yellow]Warning: {e}. Duration is unknown; splitting by size.[/yellow]")

    parts = split_to_directory(media, minutes, Path(out))

    table = Table(title=f"Parts ({len(parts)})")
    table.add_column("File", style="cyan")
    table.add_column("Size", style="green")
    for part in parts:
        table.add_row(part.name, format_bytes(part.stat().st_size))
    console.print(table)
    console.print(f"\n[green]✓[/green] Wrote {len(parts)} part(s) to {out}")


@app.command("activate")
def activate(
    key: str = typer.Argument(..., help="License key"),
    config_path: str | None = typer.Option(None, "--config", "-c", help="Path to hkscribe.yaml"),
) -> None:
    """Activate a license key on this machine."""
    config = _load_config_or_exit(config_path)
    store = JsonLicenseStore(config.license_store_path)
    state = LicenseState(config.state_path)

    try:
        record = activate_license(key, store, state)
    except LicenseError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    console.print("[green]✓[/green] License activated")
    if record.expires_at_ms is not None:
        expires = datetime.fromtimestamp(record.expires_at_ms / 1000)
        console.print(f"[dim]  Expires {expires.isoformat(timespec='minutes')}[/dim]")


@app.command("license")
def license_status(
    config_path: str | None = typer.Option(None, "--config", "-c", help="Path to hkscribe.yaml"),
) -> None:
    """Show whether this machine has a valid license."""
    config = _load_config_or_exit(config_path)
    quota = resolve_quota_policy(config)
    if quota.is_licensed:
        console.print("[green]✓[/green] Licensed: full-length transcription enabled")
    else:
        console.print(
            f"[yellow]Free plan: files up to {quota.free_limit_minutes:g} minutes[/yellow]"
        )
