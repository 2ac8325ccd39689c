"""
Command-line interface for the tiered pipeline.

Usage:
    tiered-pipeline run --source <source_id> --config <file> [options]
    tiered-pipeline watermark show --source <source_id> [options]
    tiered-pipeline watermark init --source <source_id> --timestamp <iso> [options]
    tiered-pipeline watermark history --source <source_id> [--limit N] [options]
"""

import argparse
import json
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from tiered_pipeline.batch.pipeline import IncrementalPipeline
from tiered_pipeline.core.exceptions import PipelineError, WatermarkNotFound
from tiered_pipeline.core.models import RunStatus
from tiered_pipeline.core.rules import RuleConfigLoader
from tiered_pipeline.observability.logger import get_logger, set_level
from tiered_pipeline.observability.metrics import PrometheusMetricsSink, start_metrics_server
from tiered_pipeline.observability.notifications import LoggingNotificationSink
from tiered_pipeline.utils.timeutil import parse_timestamp

from .factory import Resources, build_sink, build_source, build_watermark_store

logger = get_logger(__name__)

EXIT_USAGE = 64


def _db_args(args) -> dict:
    return {
        "host": args.db_host,
        "port": args.db_port,
        "database": args.db_name,
        "user": args.db_user,
        "password": args.db_password,
    }


def run_command(args) -> int:
    """
    Execute one pipeline run and print its summary as JSON.

    Args:
        args: Command-line arguments

    Returns:
        Process exit code derived from the run status
    """
    try:
        settings = RuleConfigLoader(args.config).load()
        source_config = settings.source(args.source)
        as_of = parse_timestamp(args.as_of) if args.as_of else None
        since = parse_timestamp(args.since) if args.since else None
    except (FileNotFoundError, ValueError, KeyError) as e:
        logger.error(f"Invalid invocation: {e}")
        print(f"error: {e}", file=sys.stderr)
        return EXIT_USAGE

    if args.metrics_port:
        start_metrics_server(args.metrics_port)

    with Resources(_db_args(args)) as resources:
        try:
            store = build_watermark_store(args.store, resources)
            if since is not None:
                store.initialize(args.source, since)
            source = build_source(source_config, resources)
        except (PipelineError, ValueError, OSError) as e:
            logger.error(f"Failed to set up run for {args.source}: {e}", exc_info=True)
            print(f"error: {e}", file=sys.stderr)
            return 1

        pipeline = IncrementalPipeline(
            settings=settings,
            watermark_store=store,
            sink=build_sink(args.sink_dir),
            sources={args.source: source},
            notifications=LoggingNotificationSink(),
            metrics=PrometheusMetricsSink(),
            spark=resources.spark if source_config.connection.get("type") == "spark" else None,
        )
        summary = pipeline.run(args.source, as_of=as_of)

    output = summary.model_dump_json(indent=2)
    print(output)
    if args.summary_file:
        Path(args.summary_file).write_text(output, encoding="utf-8")
    if summary.status not in (RunStatus.SUCCEEDED, RunStatus.SKIPPED):
        logger.error(f"Run {summary.run_id} for {args.source} finished {summary.status.value}: {summary.error}")
    return summary.exit_code


def watermark_command(args) -> int:
    """
    Show, initialize or list the history of a source's watermark.

    Args:
        args: Command-line arguments

    Returns:
        Process exit code
    """
    try:
        timestamp = parse_timestamp(args.timestamp) if args.action == "init" else None
    except ValueError as e:
        logger.error(f"Invalid invocation: {e}")
        print(f"error: {e}", file=sys.stderr)
        return EXIT_USAGE

    with Resources(_db_args(args)) as resources:
        store = build_watermark_store(args.store, resources)
        try:
            if args.action == "init":
                watermark = store.initialize(args.source, timestamp)
                print(watermark.model_dump_json(indent=2))
            elif args.action == "show":
                print(store.get(args.source).model_dump_json(indent=2))
            else:
                commits = store.history(args.source, limit=args.limit)
                print(json.dumps([c.model_dump(mode="json") for c in commits], indent=2))
        except WatermarkNotFound as e:
            print(f"error: {e}", file=sys.stderr)
            return 1
    return 0


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--store",
        default="postgres",
        choices=["memory", "postgres"],
        help="Watermark store (default: postgres)"
    )

    # Database connection arguments (fall back to DB_* environment variables)
    parser.add_argument("--db-host", default=None, help="Database host (default: $DB_HOST)")
    parser.add_argument("--db-port", type=int, default=None, help="Database port (default: $DB_PORT)")
    parser.add_argument("--db-name", default=None, help="Database name (default: $DB_NAME)")
    parser.add_argument("--db-user", default=None, help="Database user (default: $DB_USER)")
    parser.add_argument("--db-password", default=None, help="Database password (default: $DB_PASSWORD)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tiered-pipeline",
        description="Incremental extraction through raw, cleaned and aggregated tiers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the orders source against the Postgres watermark store
  tiered-pipeline run --source orders --config config/pipeline.example.yaml

  # Replay a change export with an in-memory watermark starting at midnight
  tiered-pipeline run --source orders --config config/pipeline.example.yaml \\
      --store memory --since 2024-01-01T00:00:00Z --as-of 2024-01-02T00:05:00Z

  # Inspect the committed watermark and its history
  tiered-pipeline watermark show --source orders
  tiered-pipeline watermark history --source orders --limit 10
        """
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: $LOG_LEVEL or INFO)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Run command
    run_parser = subparsers.add_parser("run", help="Run the pipeline for one source")
    run_parser.add_argument("--source", required=True, help="Source ID")
    run_parser.add_argument("--config", required=True, help="Path to pipeline YAML configuration")
    run_parser.add_argument("--as-of", default=None, help="Logical run time, ISO-8601 (default: now)")
    run_parser.add_argument(
        "--since",
        default=None,
        help="Initialize the watermark at this ISO-8601 time if the source has none"
    )
    run_parser.add_argument(
        "--sink-dir",
        default="data/tiers",
        help="Directory holding the tier partitions (default: data/tiers)"
    )
    run_parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Expose Prometheus metrics on this port while running"
    )
    run_parser.add_argument(
        "--summary-file",
        default=None,
        help="Also write the JSON run summary to this file"
    )
    _add_common_arguments(run_parser)

    # Watermark command
    watermark_parser = subparsers.add_parser("watermark", help="Inspect or initialize watermarks")
    watermark_parser.add_argument("action", choices=["show", "init", "history"])
    watermark_parser.add_argument("--source", required=True, help="Source ID")
    watermark_parser.add_argument("--timestamp", default=None, help="Initial watermark for 'init', ISO-8601")
    watermark_parser.add_argument("--limit", type=int, default=20, help="History entries to show (default: 20)")
    _add_common_arguments(watermark_parser)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = args.log_level or os.getenv("LOG_LEVEL")
    if log_level:
        set_level(log_level)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "watermark" and args.action == "init" and not args.timestamp:
        parser.error("watermark init requires --timestamp")

    if args.command == "run":
        sys.exit(run_command(args))
    sys.exit(watermark_command(args))


if __name__ == "__main__":
    main()
