#!/usr/bin/env python3
"""Main CLI entry point for proofshot using Typer.

Commands cover a single capture, a batch capture from a JSON or YAML file,
profile directory housekeeping and configuration inspection.
"""

import asyncio
import json
import logging
import tempfile
from enum import IntEnum
from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional

import typer
import yaml
from pydantic import ValidationError

from .. import __version__
from ..capture.config import ConfigLoadError, ProofshotSettings, dump_settings, load_settings
from ..capture.orchestrator import CaptureOrchestrator
from ..capture.session_manager import cleanup_stale_profiles
from ..models.capture import CaptureMode, CaptureRequest, CaptureResult

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    """CLI exit codes."""
    SUCCESS = 0           # Every capture produced an image
    CAPTURE_FAILED = 1    # At least one capture failed
    CONFIG_ERROR = 3      # Configuration or input error
    RUNTIME_ERROR = 4     # Unexpected error during execution


app = typer.Typer(
    name="proofshot",
    help="proofshot - capture framed screenshots of text on live web pages",
    add_completion=False,
    rich_markup_mode="rich"
)


@app.callback()
def main():
    """
    proofshot - capture framed screenshots of text on live web pages.

    Locates a text fragment on a page, defeats consent overlays and popups,
    and screenshots the fragment with its surrounding context.
    """
    pass


@app.command(name="version")
def show_version():
    """Show version information."""
    typer.echo(f"proofshot v{__version__}")


@app.command()
def capture(
    url: Annotated[
        str,
        typer.Argument(help="Page to load")
    ],

    text: Annotated[
        str,
        typer.Argument(help="Text fragment to locate and capture")
    ],

    request_id: Annotated[
        Optional[str],
        typer.Option("--id", help="Identifier echoed back in the result")
    ] = None,

    out: Annotated[
        Optional[Path],
        typer.Option("--out", "-o", help="PNG output path (default: <id>.png)")
    ] = None,

    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to configuration file")
    ] = None,

    env: Annotated[
        Optional[str],
        typer.Option("--env", "-e", help="Environment section of the configuration file")
    ] = None,

    headful: Annotated[
        bool,
        typer.Option("--headful", help="Run browser with GUI (for debugging)")
    ] = False,

    mode: Annotated[
        Optional[str],
        typer.Option("--mode", help="Screenshot mode: clip or viewport")
    ] = None,

    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Verbose logging")
    ] = False,
):
    """
    Capture one text fragment from one page.

    Examples:

        proofshot capture https://example.com "Example Domain"

        proofshot capture --mode viewport --out shot.png https://example.com "More information"
    """
    overrides: Dict[str, Any] = {}
    if headful:
        overrides["session"] = {"headless": False}
    if mode is not None:
        try:
            overrides["orchestrator"] = {"capture_mode": CaptureMode(mode.lower()).value}
        except ValueError:
            typer.echo(f"❌ Invalid mode '{mode}'. Valid values: clip, viewport", err=True)
            raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    settings = _load_settings_or_exit(config_file, env, overrides)
    configure_logging(settings.log_level, verbose)

    try:
        request_fields = {"url": url, "target_text": text}
        if request_id:
            request_fields["request_id"] = request_id
        request = CaptureRequest(**request_fields)
    except ValidationError as e:
        typer.echo(f"❌ Invalid capture request: {e}", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    try:
        result = asyncio.run(_run_capture(settings, request))
    except KeyboardInterrupt:
        typer.echo("❌ Operation interrupted by user", err=True)
        raise typer.Exit(code=ExitCode.RUNTIME_ERROR.value)
    except Exception as e:
        typer.echo(f"❌ Runtime error: {e}", err=True)
        if verbose:
            import traceback
            traceback.print_exc()
        raise typer.Exit(code=ExitCode.RUNTIME_ERROR.value)

    image_path = None
    if result.success:
        image_path = out or Path(f"{request.request_id}.png")
        write_image(result, image_path)
        typer.echo(f"✅ Captured {result.strategy_used.value if result.strategy_used else 'page'} match -> {image_path}")
    else:
        typer.echo(f"❌ Capture failed ({result.failure.kind.value}): {result.failure.message}", err=True)

    typer.echo(json.dumps(summarize_result(result, image_path), indent=2))

    if not result.success:
        raise typer.Exit(code=ExitCode.CAPTURE_FAILED.value)


@app.command()
def batch(
    input_file: Annotated[
        Path,
        typer.Argument(help="JSON or YAML list of {url, text, id} entries")
    ],

    out_dir: Annotated[
        Path,
        typer.Option("--out-dir", "-o", help="Directory for images and results.json")
    ] = Path("proofshot-results"),

    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to configuration file")
    ] = None,

    env: Annotated[
        Optional[str],
        typer.Option("--env", "-e", help="Environment section of the configuration file")
    ] = None,

    batch_size: Annotated[
        Optional[int],
        typer.Option("--batch-size", help="Captures run concurrently per batch")
    ] = None,

    max_retries: Annotated[
        Optional[int],
        typer.Option("--max-retries", help="Retries per failed capture")
    ] = None,

    headful: Annotated[
        bool,
        typer.Option("--headful", help="Run browser with GUI (for debugging)")
    ] = False,

    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Verbose logging")
    ] = False,
):
    """
    Capture every entry of a batch file with batching and retries.

    Example batch file (YAML):

        - url: https://example.com
          text: Example Domain
          id: example-1
    """
    if not input_file.exists():
        typer.echo(f"❌ Batch file not found: {input_file}", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    overrides: Dict[str, Any] = {}
    batch_overrides: Dict[str, Any] = {}
    if batch_size is not None:
        batch_overrides["batch_size"] = batch_size
    if max_retries is not None:
        batch_overrides["max_retries"] = max_retries
    if batch_overrides:
        overrides["batch"] = batch_overrides
    if headful:
        overrides["session"] = {"headless": False}

    settings = _load_settings_or_exit(config_file, env, overrides)
    configure_logging(settings.log_level, verbose)

    try:
        requests = load_batch_file(input_file)
    except (ConfigLoadError, ValidationError) as e:
        typer.echo(f"❌ Invalid batch file {input_file}: {e}", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    if not requests:
        typer.echo("❌ Batch file contains no entries", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    typer.echo(f"📋 Capturing {len(requests)} item(s) in batches of {settings.batch.batch_size}")

    def on_progress(current: int, total: int, request: CaptureRequest) -> None:
        typer.echo(f"   [{current}/{total}] {request.request_id} {request.url}")

    try:
        results = asyncio.run(_run_batch(settings, requests, on_progress))
    except KeyboardInterrupt:
        typer.echo("❌ Operation interrupted by user", err=True)
        raise typer.Exit(code=ExitCode.RUNTIME_ERROR.value)
    except Exception as e:
        typer.echo(f"❌ Runtime error: {e}", err=True)
        raise typer.Exit(code=ExitCode.RUNTIME_ERROR.value)

    out_dir.mkdir(parents=True, exist_ok=True)
    summaries = []
    for result in results:
        image_path = None
        if result is not None and result.success:
            image_path = out_dir / f"{_safe_filename(result.request_id)}.png"
            write_image(result, image_path)
        summaries.append(summarize_result(result, image_path))

    results_file = out_dir / "results.json"
    results_file.write_text(json.dumps(summaries, indent=2), encoding="utf-8")

    successful = sum(1 for r in results if r is not None and r.success)
    typer.echo(f"{'✅' if successful == len(results) else '⚠️ '} {successful}/{len(results)} captured -> {results_file}")

    if successful != len(results):
        raise typer.Exit(code=ExitCode.CAPTURE_FAILED.value)


@app.command(name="cleanup-profiles")
def cleanup_profiles(
    max_age_minutes: Annotated[
        int,
        typer.Option("--max-age-minutes", help="Only remove profiles older than this")
    ] = 60,

    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to configuration file")
    ] = None,
):
    """Remove leftover browser profile directories."""
    settings = _load_settings_or_exit(config_file, None, None)
    configure_logging(settings.log_level, False)

    session = settings.session
    base_dir = session.profile_base_dir or Path(tempfile.gettempdir())
    cleaned, errors = cleanup_stale_profiles(base_dir, session.profile_prefix, max_age_minutes=max_age_minutes)

    typer.echo(f"🧹 Removed {cleaned} profile director{'y' if cleaned == 1 else 'ies'} from {base_dir}")
    if errors:
        typer.echo(f"❌ {errors} profile director{'y' if errors == 1 else 'ies'} could not be removed", err=True)
        raise typer.Exit(code=ExitCode.RUNTIME_ERROR.value)


@app.command(name="show-config")
def show_config(
    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to configuration file")
    ] = None,

    env: Annotated[
        Optional[str],
        typer.Option("--env", "-e", help="Environment section of the configuration file")
    ] = None,

    output_format: Annotated[
        str,
        typer.Option("--format", help="Output format: yaml or json")
    ] = "yaml",
):
    """Print the effective configuration."""
    if output_format.lower() not in ("yaml", "json"):
        typer.echo(f"❌ Invalid format '{output_format}'. Valid values: yaml, json", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    settings = _load_settings_or_exit(config_file, env, None)
    if output_format.lower() == "yaml":
        typer.echo("# Effective Configuration")
        typer.echo("# Loaded from: " + " -> ".join(settings.loaded_from))
    typer.echo(dump_settings(settings, output_format))


def configure_logging(level: str, verbose: bool = False) -> None:
    """Configure root logging for CLI runs."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def load_batch_file(path: Path) -> List[CaptureRequest]:
    """Read capture requests from a JSON or YAML list.

    Entries use ``url``, ``text`` (or ``target_text``) and an optional ``id``
    (or ``request_id``).

    Raises:
        ConfigLoadError: If the file is unreadable or not a list of mappings
        ValidationError: If an entry is not a valid capture request
    """
    try:
        content = Path(path).read_text(encoding="utf-8")
        if Path(path).suffix.lower() == ".json":
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigLoadError(f"Failed to read batch file {path}: {e}")

    if isinstance(data, dict) and "requests" in data:
        data = data["requests"]
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigLoadError("Batch file must contain a list of entries")

    requests = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise ConfigLoadError(f"Entry {index} is not a mapping")
        fields = {
            "url": entry.get("url"),
            "target_text": entry.get("text", entry.get("target_text")),
        }
        entry_id = entry.get("id", entry.get("request_id"))
        if entry_id is not None:
            fields["request_id"] = str(entry_id)
        requests.append(CaptureRequest(**fields))
    return requests


def summarize_result(result: Optional[CaptureResult], image_path: Optional[Path] = None) -> Dict[str, Any]:
    """Result dict without the inline image, plus the written image path."""
    if result is None:
        return {"success": False, "error": {"kind": "unexpected", "message": "no result"}}
    summary = result.to_dict()
    summary.pop("imageBytes", None)
    summary["requestId"] = result.request_id
    if image_path is not None:
        summary["image"] = str(image_path)
    return summary


def write_image(result: CaptureResult, path: Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(result.image_bytes or b"")


async def _run_capture(settings: ProofshotSettings, request: CaptureRequest) -> CaptureResult:
    async with CaptureOrchestrator.from_settings(settings) as orchestrator:
        return await orchestrator.capture(request)


async def _run_batch(settings: ProofshotSettings, requests: List[CaptureRequest], on_progress) -> List[CaptureResult]:
    async with CaptureOrchestrator.from_settings(settings) as orchestrator:
        results = await orchestrator.capture_batch(requests, on_progress=on_progress)
        logger.info(f"Capture stats: {orchestrator.get_stats()}")
        return results


def _load_settings_or_exit(
    config_file: Optional[Path],
    env: Optional[str],
    overrides: Optional[Dict[str, Any]],
) -> ProofshotSettings:
    try:
        return load_settings(config_file=config_file, environment=env, overrides=overrides)
    except ConfigLoadError as e:
        typer.echo(f"❌ Configuration error: {e}", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)


def _safe_filename(name: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in name) or "capture"


def cli_main():
    """Entry point for console script."""
    app()


if __name__ == "__main__":
    app()
