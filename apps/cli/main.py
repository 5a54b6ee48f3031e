"""CLI application for endstate."""

import logging
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from core.config import EngineConfig
from core.drivers import DriverDispatch, WingetClient
from core.engine import ReconciliationEngine
from core.errors import ConfigError, EndstateError, ErrorCode, ManifestError, StateImportError
from core.events import JsonlEventSink
from core.manifest import load_manifest
from core.report import (
    build_report,
    diff_artifacts,
    format_human_output,
    format_json_output,
    load_artifact,
    write_artifact,
)
from core.state import StateStore

console = Console()

EXIT_INPUT_ERROR = 2

INPUT_ERROR_CODES = {
    ErrorCode.MANIFEST_NOT_FOUND,
    ErrorCode.MANIFEST_INVALID,
    ErrorCode.MANIFEST_INCLUDE_CYCLE,
    ErrorCode.ARTIFACT_INVALID,
    ErrorCode.CONFIG_INVALID,
    ErrorCode.IMPORT_INVALID,
    ErrorCode.SCHEMA_VERSION_MISMATCH,
}


def configure_logging(verbose: bool) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def exit_code_for(error: EndstateError) -> int:
    if isinstance(error, (ManifestError, ConfigError, StateImportError)):
        return EXIT_INPUT_ERROR
    return EXIT_INPUT_ERROR if error.code in INPUT_ERROR_CODES else 1


def fail(error: EndstateError) -> None:
    """Print an error with its code and exit with the matching status."""
    console.print(f"Error [{error.code.value}]: {error.message}", style="red", markup=False)
    raise typer.Exit(exit_code_for(error))


def emit(payload: dict, json_output: bool) -> None:
    if json_output:
        typer.echo(format_json_output(payload))
    else:
        console.print(format_human_output(payload), markup=False, highlight=False, soft_wrap=True)


def build_engine(config: EngineConfig, events: str | None = None) -> ReconciliationEngine:
    """Wire the engine for one invocation."""
    sink = None
    if events == "jsonl":
        sink = JsonlEventSink(sys.stderr)
    elif events:
        raise ConfigError(f"Unsupported event format {events!r}, use jsonl")

    client = WingetClient(timeout=config.driver_timeout)
    dispatch = DriverDispatch.from_config(config, client=client)
    return ReconciliationEngine(config, dispatch, StateStore(config.state_path), sink=sink)


app = typer.Typer(
    name="endstate",
    help="endstate - Reconcile installed software against a declarative manifest",
    add_completion=False,
)
state_app = typer.Typer(help="Inspect and manage recorded state", add_completion=False)
app.add_typer(state_app, name="state")


@app.callback()
def main(
    ctx: typer.Context,
    root: str | None = typer.Option(
        None, "--root", envvar="ENDSTATE_ROOT", help="Trusted root for custom install scripts"
    ),
    state_dir: str | None = typer.Option(
        None, "--state-dir", envvar="ENDSTATE_STATE_DIR", help="Directory holding state.json"
    ),
    platform: str | None = typer.Option(
        None, "--platform", envvar="ENDSTATE_PLATFORM", help="Ref key to install by (windows, linux, macos)"
    ),
    timeout: float | None = typer.Option(
        None, "--timeout", envvar="ENDSTATE_TIMEOUT", help="Seconds to wait for each package-manager call"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging to stderr"),
) -> None:
    """endstate - Reconcile installed software against a declarative manifest."""
    configure_logging(verbose)
    try:
        ctx.obj = EngineConfig.build(
            root=root, state_dir=state_dir, platform=platform, driver_timeout=timeout
        )
    except EndstateError as e:
        fail(e)


def _run_apply(
    config: EngineConfig,
    manifest_path: Path,
    dry_run: bool,
    skip_verify: bool,
    json_output: bool,
    out: Path | None,
    events: str | None,
) -> None:
    try:
        manifest = load_manifest(manifest_path)
        engine = build_engine(config, events)
        result = engine.apply(manifest, dry_run=dry_run, skip_verify=skip_verify)
        payload = result.to_dict()
        if out:
            write_artifact(out, payload)
    except EndstateError as e:
        fail(e)

    emit(payload, json_output)
    raise typer.Exit(result.exit_code)


@app.command()
def apply(
    ctx: typer.Context,
    manifest_path: Path = typer.Argument(..., metavar="MANIFEST", help="Manifest file (.jsonc, .json, .yaml)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show planned actions without executing"),
    skip_verify: bool = typer.Option(False, "--skip-verify", help="Do not verify after installing"),
    json_output: bool = typer.Option(False, "--json", help="Single-line JSON output"),
    out: Path | None = typer.Option(None, "--out", "-o", help="Also write the result artifact to a file"),
    events: str | None = typer.Option(None, "--events", help="Stream events to stderr (jsonl)"),
) -> None:
    """Install or upgrade everything the manifest declares."""
    _run_apply(ctx.obj, manifest_path, dry_run, skip_verify, json_output, out, events)


@app.command()
def plan(
    ctx: typer.Context,
    manifest_path: Path = typer.Argument(..., metavar="MANIFEST", help="Manifest file"),
    json_output: bool = typer.Option(False, "--json", help="Single-line JSON output"),
    out: Path | None = typer.Option(None, "--out", "-o", help="Also write the plan artifact to a file"),
    events: str | None = typer.Option(None, "--events", help="Stream events to stderr (jsonl)"),
) -> None:
    """Show what apply would do (same as apply --dry-run)."""
    _run_apply(ctx.obj, manifest_path, True, False, json_output, out, events)


@app.command()
def verify(
    ctx: typer.Context,
    manifest_path: Path = typer.Argument(..., metavar="MANIFEST", help="Manifest file"),
    json_output: bool = typer.Option(False, "--json", help="Single-line JSON output"),
    out: Path | None = typer.Option(None, "--out", "-o", help="Also write the verify artifact to a file"),
    events: str | None = typer.Option(None, "--events", help="Stream events to stderr (jsonl)"),
) -> None:
    """Check the machine against the manifest without changing it."""
    try:
        manifest = load_manifest(manifest_path)
        engine = build_engine(ctx.obj, events)
        result = engine.verify(manifest)
        payload = result.to_dict()
        if out:
            write_artifact(out, payload)
    except EndstateError as e:
        fail(e)

    emit(payload, json_output)
    raise typer.Exit(result.exit_code)


@app.command()
def report(
    ctx: typer.Context,
    manifest_path: Path | None = typer.Option(None, "--manifest", "-m", help="Compare state with this manifest"),
    json_output: bool = typer.Option(False, "--json", help="Single-line JSON output"),
) -> None:
    """Summarize recorded state."""
    try:
        manifest = load_manifest(manifest_path) if manifest_path else None
        state = StateStore(ctx.obj.state_path).read()
    except EndstateError as e:
        fail(e)

    emit(build_report(state, manifest).to_dict(), json_output)


@app.command()
def diff(
    before: Path = typer.Argument(..., help="Earlier run artifact"),
    after: Path = typer.Argument(..., help="Later run artifact"),
    json_output: bool = typer.Option(False, "--json", help="Single-line JSON output"),
) -> None:
    """Compare two run artifacts written with --out."""
    try:
        delta = diff_artifacts(load_artifact(before), load_artifact(after))
    except EndstateError as e:
        fail(e)

    emit(delta.to_dict(), json_output)


@state_app.command("reset")
def state_reset(ctx: typer.Context) -> None:
    """Delete recorded state."""
    try:
        removed = StateStore(ctx.obj.state_path).reset()
    except EndstateError as e:
        fail(e)
    console.print("State reset" if removed else "No state to reset")


@state_app.command("export")
def state_export(
    ctx: typer.Context,
    destination: Path = typer.Argument(..., help="File to write"),
) -> None:
    """Write recorded state (or an empty state) to a file."""
    try:
        StateStore(ctx.obj.state_path).export(destination)
    except EndstateError as e:
        fail(e)
    console.print(f"Exported state to {destination}", markup=False)


@state_app.command("import")
def state_import(
    ctx: typer.Context,
    source: Path = typer.Argument(..., help="State file to import"),
    replace: bool = typer.Option(False, "--replace", help="Back up and overwrite instead of merging"),
) -> None:
    """Merge (or replace) recorded state from a file."""
    mode = "replace" if replace else "merge"
    try:
        StateStore(ctx.obj.state_path).import_state(source, mode=mode)
    except EndstateError as e:
        fail(e)
    console.print(f"Imported state from {source} ({mode})", markup=False)


if __name__ == "__main__":
    app()
