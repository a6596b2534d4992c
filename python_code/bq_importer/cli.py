"""
Command-line interface for the importer.

Commands:
- run: Wait for SQS messages and import objects as they arrive
- batch: Import everything currently in the queue, then exit
- request: Import the objects listed in saved notification files
- check: Show which rules match S3 URIs read from standard input
- version: Show the installed version

Example:
    $ bq-importer --config config.yaml run
    $ bq-importer batch --queue bq-importer-dlq
    $ echo "s3://example-logs/data/user/part-0001.csv" | bq-importer check
"""

import signal
import sys
import threading
from dataclasses import replace
from importlib.metadata import version as package_version
from pathlib import Path
from typing import Optional, Tuple

import click
from aws_lambda_powertools import Logger

from .app import Importer, build_importer
from .config import SERVICE_NAME, Settings, load_config
from .errors import ImporterError
from .model import Locator
from .resolver import Resolver

TRAP_SIGNALS = ("SIGHUP", "SIGINT", "SIGTERM", "SIGQUIT")


def _importer(ctx: click.Context) -> Importer:
    return build_importer(ctx.obj["settings"], logger=ctx.obj["logger"])


@click.group()
@click.version_option(package_name="bq-importer", prog_name="bq-importer")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    help="Configuration file path (default: $CONFIG_PATH or config.yaml)",
)
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[Path], debug: bool) -> None:
    """Load S3 objects into BigQuery as their SQS notifications arrive."""
    settings = Settings.from_env()
    if config_path is not None:
        settings = replace(settings, config_path=str(config_path))
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings
    ctx.obj["logger"] = Logger(service=SERVICE_NAME, level="DEBUG" if debug else settings.log_level)


@main.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Wait for SQS messages and import the notified objects as they arrive.

    SIGINT/SIGTERM stop the worker after the current message is finished.
    """
    logger: Logger = ctx.obj["logger"]
    try:
        importer = _importer(ctx)
    except ImporterError as e:
        logger.error(f"load config failed: {e}")
        ctx.exit(1)

    stop = threading.Event()

    def _handle_signal(signum, frame):
        logger.info("shutdown...", extra={"signal": signum})
        stop.set()

    for name in TRAP_SIGNALS:
        if hasattr(signal, name):
            signal.signal(getattr(signal, name), _handle_signal)

    importer.run(cancel=stop)
    logger.info("goodbye.")


@main.command()
@click.option("--queue", "queue_name", help="SQS queue name to drain instead of the configured one")
@click.pass_context
def batch(ctx: click.Context, queue_name: Optional[str]) -> None:
    """Import objects for every message currently in the queue, then exit.

    Use this command to reprocess messages from a dead-letter queue. The first
    failure stops the batch with a non-zero exit status.
    """
    logger: Logger = ctx.obj["logger"]
    try:
        importer = _importer(ctx)
        if queue_name:
            importer.source.set_queue_name(queue_name)
        stats = importer.run(exit_on_no_message=True, exit_on_error=True)
    except ImporterError as e:
        logger.error(f"run error: {e}", extra={"kind": e.kind.value})
        ctx.exit(1)
    logger.info("all succeeded, goodbye.", extra={"cycles": stats.cycles, "jobs_loaded": stats.jobs_loaded})


@main.command()
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def request(ctx: click.Context, files: Tuple[Path, ...]) -> None:
    """Import the objects listed in saved S3 notification JSON FILES.

    The queue is not read or modified. Useful for replaying failed messages
    or checking connectivity.
    """
    logger: Logger = ctx.obj["logger"]
    try:
        importer = _importer(ctx)
        for path in files:
            loaded = importer.process_notification(path.read_text())
            logger.info(f"processed {path}", extra={"jobs_loaded": loaded})
    except ImporterError as e:
        logger.error(f"request failed: {e}", extra={"kind": e.kind.value})
        ctx.exit(1)
    logger.info("all succeeded, goodbye.")


@main.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """Check rule matching for S3 URIs read line by line from standard input.

    \b
    Example:
        $ echo "s3://bucket.example.com/object/data.txt" | bq-importer check
    """
    logger: Logger = ctx.obj["logger"]
    try:
        config = load_config(ctx.obj["settings"].config_path, logger)
    except ImporterError as e:
        logger.error(f"load config failed: {e}")
        ctx.exit(1)
    resolver = Resolver(config.rules, logger)

    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        try:
            locator = Locator.parse(line)
        except ValueError as e:
            logger.error(f"url parse error: {e}")
            continue
        jobs = resolver.resolve([locator])
        if not jobs:
            click.echo(f"{locator}: no match rules")
            continue
        for job in jobs:
            click.echo(f"match job: {job}")


@main.command()
def version() -> None:
    """Show the installed version."""
    click.echo(f"bq-importer {package_version('bq-importer')}")


if __name__ == "__main__":
    main()
