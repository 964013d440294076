"""
voxqueue.cli - Typer CLI entry point.

Workspace setup, job queue management, batch transcription and live
transcription of a WAV file.
"""

from __future__ import annotations

import time
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from voxqueue import __version__
from voxqueue.exceptions import ConfigError, DependencyError, MissingSourceFileError, WorkspaceError
from voxqueue.io import write_json
from voxqueue.logging import configure_logging
from voxqueue.models import Job, JobStatus, Segment, TranscriptionResult
from voxqueue.storage import Workspace, find_workspace_dir
from voxqueue.utils import format_duration, timestamped_filename

app = typer.Typer(
    name="voxqueue",
    help="Queued audio transcription with on-device and cloud engines.\n\n"
    "Imports recordings into a workspace, transcribes them one at a time "
    "with a local Whisper model or a cloud provider, and can transcribe "
    "audio live in overlapping windows.",
    add_completion=False,
)
console = Console()

STATUS_STYLES = {
    JobStatus.QUEUED: "yellow",
    JobStatus.TRANSCRIBING: "cyan",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
    JobStatus.CANCELLED: "dim",
}


def version_callback(value: bool) -> None:
    if value:
        console.print(f"voxqueue {__version__}")
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
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging"),
) -> None:
    """Voxqueue - queued audio transcription."""
    configure_logging(verbose)


def open_runtime(autostart: bool = False, recover: bool | None = None):
    """Open the workspace containing the current directory, or exit.

    Interrupted jobs are recovered only when recover is set, which defaults
    to autostart. Inspection commands leave the job file untouched.
    """
    from voxqueue.runtime import Runtime

    workspace_dir = find_workspace_dir()
    if not workspace_dir:
        console.print("[red]Error: Not in a Voxqueue workspace[/red]")
        console.print("[dim]Run 'voxqueue init' first or cd into a workspace directory[/dim]")
        raise typer.Exit(1)
    try:
        return Runtime.open(
            workspace_dir, autostart=autostart, recover=autostart if recover is None else recover
        )
    except (ConfigError, WorkspaceError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def find_job(runtime, job_id: str) -> Job:
    """Look up a job by id or unique id prefix, or exit."""
    matches = [job for job in runtime.jobs.jobs() if job.id.startswith(job_id)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        console.print(f"[red]Error: No job matching '{job_id}'[/red]")
    else:
        console.print(f"[red]Error: '{job_id}' matches {len(matches)} jobs[/red]")
    raise typer.Exit(1)


def write_result(job: Job, output_dir: Path) -> Path:
    path = output_dir / f"{Path(job.filename).stem}.json"
    write_json(
        path,
        {
            "job_id": job.id,
            "filename": job.filename,
            "status": job.status.value,
            "error": job.error,
            "result": job.result.model_dump() if job.result else None,
            "attempts": [a.model_dump() for a in job.attempts],
        },
    )
    return path


def wait_and_report(runtime, jobs: list[Job], timeout: float, output_dir: Path | None) -> int:
    """Wait for jobs to finish, print outcomes, return the number not completed."""
    deadline = time.monotonic() + timeout
    failures = 0
    for job in jobs:
        remaining = max(0.0, deadline - time.monotonic())
        finished = runtime.jobs.wait_for_job(job.id, timeout=remaining)
        if finished is None:
            console.print(f"[red]✗[/red] {job.filename}: timed out after {timeout:.0f}s")
            failures += 1
            continue
        if finished.status is JobStatus.COMPLETED:
            console.print(f"[green]✓[/green] {finished.filename}")
            if finished.result and finished.result.text:
                console.print(f"[dim]  {finished.result.text[:200]}[/dim]")
        else:
            console.print(f"[red]✗[/red] {finished.filename}: {finished.error}")
            failures += 1
        if output_dir is not None:
            path = write_result(finished, output_dir)
            console.print(f"[dim]  Wrote {path}[/dim]")
    return failures


@app.command("init")
def init_workspace(
    path: str = typer.Argument(".", help="Workspace directory"),
    provider: str = typer.Option(
        "local", "--provider", "-p", help="Transcription provider: local, openai, or gemini"
    ),
) -> None:
    """Create a new Voxqueue workspace."""
    from voxqueue.config import CLOUD_PROVIDERS

    if provider not in CLOUD_PROVIDERS:
        console.print(f"[red]Error: provider must be one of: {', '.join(sorted(CLOUD_PROVIDERS))}[/red]")
        raise typer.Exit(1)

    workspace = Workspace(Path(path).expanduser().resolve())
    if workspace.exists():
        console.print(f"[red]Error: Workspace already exists at '{workspace.path}'[/red]")
        raise typer.Exit(1)

    try:
        workspace.create(provider=provider)
    except OSError as e:
        console.print(f"[red]Error creating workspace: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] Created workspace with provider '{provider}'")
    console.print(f"[dim]  {workspace.path}[/dim]")
    console.print("\nNext steps:")
    console.print("  set model_path in voxqueue.yaml (or export OPENAI_API_KEY / GEMINI_API_KEY)")
    console.print("  voxqueue add <audio_files>")


@app.command("add")
def add_files(
    files: list[str] = typer.Argument(..., help="Audio file(s) to transcribe"),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Wait for transcription to finish"),
    timeout: float = typer.Option(600.0, "--timeout", "-t", help="Seconds to wait for all jobs"),
    output_dir: str | None = typer.Option(
        None, "--output-dir", "-o", help="Write one result JSON per job here"
    ),
) -> None:
    """Queue audio files for transcription."""
    runtime = open_runtime(autostart=wait)

    table = Table(title="Adding Recordings")
    table.add_column("File", style="cyan")
    table.add_column("Duration", style="green")
    table.add_column("Status", style="yellow")

    added: list[Job] = []
    for file_path in files:
        source = Path(file_path).expanduser().resolve()
        job = runtime.jobs.add_job(source, source.name)
        if job is None:
            table.add_row(source.name, "-", "[red]Skipped (missing, empty, or unreadable)[/red]")
            continue
        added.append(job)
        table.add_row(source.name, format_duration(job.duration or 0), f"Queued {job.id[:8]}")

    console.print(table)
    if not added:
        raise typer.Exit(1)

    if not wait:
        console.print(f"\n[green]✓[/green] Queued {len(added)} job(s)")
        console.print("[dim]Run 'voxqueue run' to process the queue[/dim]")
        return

    out = Path(output_dir).expanduser() if output_dir else None
    failures = wait_and_report(runtime, added, timeout, out)
    runtime.close(timeout=5)
    if failures or len(added) < len(files):
        raise typer.Exit(1)


@app.command("run")
def run_queue(
    timeout: float = typer.Option(3600.0, "--timeout", "-t", help="Seconds to wait for the queue"),
    output_dir: str | None = typer.Option(
        None, "--output-dir", "-o", help="Write one result JSON per job here"
    ),
) -> None:
    """Process every queued job and wait for it to finish."""
    runtime = open_runtime(recover=True)
    queued = [job for job in runtime.jobs.jobs() if job.status is JobStatus.QUEUED]
    if not queued:
        console.print("[yellow]Nothing queued.[/yellow]")
        raise typer.Exit(0)

    runtime.jobs.ensure_processing("cli-run")
    out = Path(output_dir).expanduser() if output_dir else None
    failures = wait_and_report(runtime, queued, timeout, out)
    runtime.close(timeout=5)
    if failures:
        raise typer.Exit(1)


@app.command("status")
def show_status() -> None:
    """List jobs in queue order."""
    runtime = open_runtime()
    jobs = runtime.jobs.jobs()
    if not jobs:
        console.print("[yellow]No jobs. Run 'voxqueue add' first.[/yellow]")
        raise typer.Exit(0)

    table = Table(title="Jobs")
    table.add_column("ID", style="dim")
    table.add_column("File", style="cyan")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Stage")
    table.add_column("Duration", justify="right")
    table.add_column("Error", style="red")

    for job in jobs:
        style = STATUS_STYLES.get(job.status, "white")
        table.add_row(
            job.id[:8],
            job.filename,
            f"[{style}]{job.status.value}[/{style}]",
            f"{job.progress * 100:.0f}%",
            job.stage,
            format_duration(job.duration) if job.duration else "-",
            job.error or "",
        )
    console.print(table)


@app.command("cancel")
def cancel_job(job_id: str = typer.Argument(..., help="Job id or prefix")) -> None:
    """Cancel a queued or running job."""
    runtime = open_runtime()
    job = find_job(runtime, job_id)
    if runtime.jobs.cancel_job(job.id) is None:
        console.print(f"[yellow]Job {job.id[:8]} is {job.status.value}; nothing to cancel[/yellow]")
        return
    console.print(f"[green]✓[/green] Cancelled {job.filename}")


@app.command("retry")
def retry_job(
    job_id: str = typer.Argument(..., help="Job id or prefix"),
    wait: bool = typer.Option(False, "--wait/--no-wait", help="Wait for the retried job"),
    timeout: float = typer.Option(600.0, "--timeout", "-t", help="Seconds to wait"),
) -> None:
    """Requeue a failed or cancelled job at the front of the queue."""
    runtime = open_runtime(autostart=wait)
    job = find_job(runtime, job_id)
    try:
        retried = runtime.jobs.retry_job(job.id)
    except MissingSourceFileError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] Requeued {job.filename}")
    if wait and retried is not None:
        failures = wait_and_report(runtime, [retried], timeout, None)
        runtime.close(timeout=5)
        if failures:
            raise typer.Exit(1)


@app.command("remove")
def remove_job(job_id: str = typer.Argument(..., help="Job id or prefix")) -> None:
    """Remove a job from the queue and the job file."""
    runtime = open_runtime()
    job = find_job(runtime, job_id)
    runtime.jobs.remove_job(job.id)
    console.print(f"[green]✓[/green] Removed {job.filename}")


class ConsoleLiveDelegate:
    """Prints live session callbacks to the console."""

    def __init__(self) -> None:
        self.partials: list[list[Segment]] = []
        self.final: TranscriptionResult | None = None

    def on_partial(self, segments: list[Segment]) -> None:
        self.partials.append(segments)
        text = " ".join(s.text for s in segments)
        console.print(f"[cyan]…[/cyan] {text}")

    def on_eta(self, seconds: float) -> None:
        console.print(f"[dim]  eta {seconds:.1f}s[/dim]")

    def on_complete(self, result: TranscriptionResult) -> None:
        self.final = result

    def on_error(self, error: Exception) -> None:
        console.print(f"[red]  {error}[/red]")


@app.command("live")
def live_transcribe(
    wav: str = typer.Argument(..., help="Audio file to feed through a live session"),
    window: float | None = typer.Option(None, "--window", help="Window length in seconds"),
    hop: float | None = typer.Option(None, "--hop", help="Seconds between windows"),
    realtime: bool = typer.Option(
        False, "--realtime", help="Feed audio at playback speed instead of all at once"
    ),
    chunk: float = typer.Option(0.5, "--chunk", help="Seconds of audio per ingest call"),
    save: bool = typer.Option(False, "--save", help="Store the final transcript as a completed job"),
) -> None:
    """Transcribe an audio file through a live session, printing partials."""
    import tempfile

    from voxqueue.audio import SAMPLE_RATE, normalize_samples, prepare_for_transcription, read_wav
    from voxqueue.exceptions import AudioPreparationError

    runtime = open_runtime()
    if window is not None:
        runtime.config.live_window_seconds = window
    if hop is not None:
        runtime.config.live_hop_seconds = hop

    source = Path(wav).expanduser().resolve()
    with tempfile.TemporaryDirectory(prefix="voxqueue-live-") as tmp:
        try:
            prepared = prepare_for_transcription(source, Path(tmp))
            samples, rate = read_wav(prepared.path)
        except AudioPreparationError as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(1)

        samples = normalize_samples(samples)
        delegate = ConsoleLiveDelegate()
        session = runtime.live_session(delegate)
        console.print(
            f"[cyan]Live transcription of {source.name} "
            f"({format_duration(len(samples) / rate)})...[/cyan]\n"
        )

        step = max(1, int(chunk * SAMPLE_RATE))
        session.start()
        for offset in range(0, len(samples), step):
            session.ingest(samples[offset : offset + step])
            if realtime:
                time.sleep(step / SAMPLE_RATE)
        result = session.finish()

        if result is None:
            console.print("[yellow]No transcript produced.[/yellow]")
            if session.last_error is not None:
                raise typer.Exit(1)
            return

        console.print(f"\n[green]✓[/green] {result.text}")
        if save:
            name = f"{timestamped_filename('live')}.wav"
            job = runtime.jobs.add_completed_item(prepared.path, name, result.text)
            if job is not None:
                console.print(f"[dim]  Saved as job {job.id[:8]}[/dim]")
            runtime.close(timeout=5)


@app.command("doctor")
def run_doctor() -> None:
    """Check dependencies and engine configuration."""
    from voxqueue.audio import check_ffmpeg
    from voxqueue.engines.local import check_faster_whisper
    from voxqueue.resolver import resolve_engine

    console.print("[cyan]Running preflight checks...[/cyan]\n")

    table = Table(title="Dependency Status")
    table.add_column("Component", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Version/Details")

    all_passed = True

    try:
        table.add_row("FFmpeg", "✓ Installed", check_ffmpeg())
    except DependencyError as e:
        table.add_row("FFmpeg", "✗ Missing", e.install_hint or "")
        all_passed = False

    try:
        table.add_row("faster-whisper", "✓ Installed", check_faster_whisper())
    except DependencyError as e:
        table.add_row("faster-whisper", "✗ Missing", e.install_hint or "")

    workspace_dir = find_workspace_dir()
    if workspace_dir:
        try:
            from voxqueue.config import load_config

            config = load_config(workspace_dir)
            resolution = resolve_engine(config.engine_selection())
            details = "offline" if config.offline_mode else config.cloud_provider
            if resolution.engine_type.value != config.cloud_provider and not config.offline_mode:
                details += " (no API key, using local)"
            table.add_row("Engine", resolution.engine_type.value, details)
            table.add_row("Model", "✓ Set" if config.model_path else "✗ Not set", config.model_path or "")
            if resolution.engine_type.value == "local" and not config.model_path:
                all_passed = False
        except ConfigError as e:
            table.add_row("Config", "✗ Invalid", str(e))
            all_passed = False
    else:
        table.add_row("Workspace", "-", "Not in a workspace directory")

    console.print(table)

    if all_passed:
        console.print("\n[green]✓ All checks passed[/green]")
    else:
        console.print("\n[yellow]⚠ Some checks failed[/yellow]")
        raise typer.Exit(1)
