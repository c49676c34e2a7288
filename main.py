import logging
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
import typer

from pdf_sanitizer.config import DEFAULT_CONFIG_PATH, resolve_run_config
from pdf_sanitizer.discovery import resolve_work_items
from pdf_sanitizer.errors import BootstrapError, DiscoveryError
from pdf_sanitizer.orchestrator import SanitizationOrchestrator

load_dotenv()


app = typer.Typer(add_completion=False)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def _setup_logging(log_level: str, log_file: Optional[Path] = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


@app.command()
def sanitize(
    paths: Optional[List[Path]] = typer.Argument(
        None,
        help="Optional INPUT OUTPUT pair; honored only when CLI_OVERRIDE=yes",
    ),
    config_path: Path = typer.Option(
        DEFAULT_CONFIG_PATH,
        "--config",
        "-c",
        envvar="PDF_SANITIZER_CONFIG",
        help="Config file; created with defaults when missing",
    ),
    report: Optional[Path] = typer.Option(
        None,
        "--report",
        "-r",
        help="Write the run report (.xlsx, otherwise CSV)",
    ),
    workers: int = typer.Option(
        1,
        "--workers",
        "-w",
        min=1,
        help="Process this many files in parallel",
    ),
    log_level: str = typer.Option(
        "INFO",
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    ),
):
    """
    Strip scripts, attachments and metadata from PDFs, then rewrite them.

    Encrypted inputs are unlocked with a password prompt and can be relocked.
    """
    _setup_logging(log_level)
    logger = logging.getLogger(__name__)

    try:
        config = resolve_run_config(config_path, [str(p) for p in paths or []])
    except BootstrapError as exc:
        logger.error("%s", exc)
        raise typer.Exit(code=1)

    _setup_logging(log_level, config.log_file)
    logger.info("Logging to %s", config.log_file)

    try:
        items = resolve_work_items(config)
    except DiscoveryError as exc:
        logger.error("%s", exc)
        raise typer.Exit(code=1)

    orchestrator = SanitizationOrchestrator(config=config)
    results = orchestrator.run(items, workers=workers)

    for result in results.items:
        typer.echo(result.summary())
    typer.echo(results.totals())

    if report is not None:
        if config.dry_run:
            logger.info("Dry run: not writing report %s", report)
        else:
            results.write(report)
            typer.echo(f"Wrote report to {report}")

    if results.has_failures:
        raise typer.Exit(code=2)


def main():
    app()


if __name__ == "__main__":
    main()
