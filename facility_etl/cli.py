"""CLI entrypoint for the facility directory ETL pipeline."""

from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from facility_etl.common.config_loader import load_pipeline_config
from facility_etl.common.constants import EXIT_HARD_FAIL, SOURCE_KINDS
from facility_etl.common.context import RunContext
from facility_etl.common.errors import PipelineError
from facility_etl.common.fs import ensure_dir
from facility_etl.common.ids import generate_run_id
from facility_etl.common.logging import build_logger, close_logger, log_event
from facility_etl.extract.runner import clear_checkpoint, run_extract
from facility_etl.pipeline.reports import build_summary, write_run_summary
from facility_etl.pipeline.runner import OUTCOME_PARTIAL, OUTCOME_SUCCESS, PipelineSettings, run_pipeline
from facility_etl.sink.sqlalchemy_sink import SqlAlchemyFacilitySink

DEFAULT_DB_FILENAME = "facility_etl.db"
CHECKPOINT_FILENAME = "api_checkpoint.json"


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--source", required=True, choices=SOURCE_KINDS)
    parser.add_argument("--path", default=None)
    parser.add_argument("--location", dest="locations", action="append", default=None)
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--workers", type=int, default=None)
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--config-dir", default="./config")
    parser.add_argument("--overlay-config-dir", default=None)
    parser.add_argument("--data-dir", default="./data")
    parser.add_argument("--database-uri", default=None)
    parser.add_argument("--report-path", default=None)
    parser.add_argument("--run-id", default=None)
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARN", "ERROR"])
    args = parser.parse_args(argv)
    if args.source == "file" and not args.path:
        parser.error("--path is required with --source file")
    for flag in ("batch_size", "workers"):
        value = getattr(args, flag)
        if value is not None and value < 1:
            parser.error(f"--{flag.replace('_', '-')} must be a positive integer")
    return args


def resolve_settings(args: argparse.Namespace) -> tuple[dict, PipelineSettings]:
    cfg = load_pipeline_config(
        Path(args.config_dir),
        overlay_config_dir=Path(args.overlay_config_dir) if args.overlay_config_dir else None,
    )
    if args.batch_size is not None:
        cfg["load"]["batch_size"] = args.batch_size
    if args.workers is not None:
        cfg["load"]["workers"] = args.workers
    if args.database_uri:
        cfg["database"]["uri"] = args.database_uri
    return cfg, PipelineSettings.from_config(cfg, dry_run=args.dry_run)


def default_database_uri(data_dir: Path) -> str:
    ensure_dir(data_dir)
    return f"sqlite+pysqlite:///{(data_dir / DEFAULT_DB_FILENAME).resolve()}"


@contextmanager
def cancel_on_signals(ctx: RunContext) -> Iterator[None]:
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, frame):
        log_event(
            ctx.logger,
            f"received signal {signum}, cancelling after the current chunk",
            run_id=ctx.run_id,
            event="CANCEL_REQUESTED",
            status="cancelled",
        )
        ctx.request_cancel()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def run_command(args: argparse.Namespace) -> int:
    run_id = args.run_id or generate_run_id()
    data_dir = Path(args.data_dir)
    logger = build_logger(run_id, log_dir=data_dir / "run_meta", level=args.log_level)
    ctx = RunContext(run_id=run_id, logger=logger)
    sink = None

    try:
        cfg, settings = resolve_settings(args)
        database_uri = cfg["database"]["uri"] or default_database_uri(data_dir)
        sink = SqlAlchemyFacilitySink.from_uri(
            database_uri,
            connect_timeout=float(cfg["database"]["connect_timeout_seconds"]),
        )
        sink.create_schema()
        log_event(
            logger,
            "run start",
            run_id=run_id,
            source=args.source,
            event="RUN_START",
            status="ok",
        )

        checkpoint_path = data_dir / "run_meta" / CHECKPOINT_FILENAME if args.source == "api" else None

        def records_source():
            return run_extract(
                args.source,
                cfg,
                ctx,
                path=Path(args.path) if args.path else None,
                locations=args.locations,
                checkpoint_path=checkpoint_path,
            )

        with cancel_on_signals(ctx):
            result = run_pipeline(ctx, records_source, sink, settings)
        if result.outcome in (OUTCOME_SUCCESS, OUTCOME_PARTIAL):
            clear_checkpoint(checkpoint_path)

        summary = build_summary(result)
        if args.report_path:
            write_run_summary(Path(args.report_path), result)
        print(json.dumps(summary, indent=2, sort_keys=True, default=str))
        return result.exit_code
    except PipelineError as exc:
        log_event(
            logger,
            f"run failed before start: {exc}",
            run_id=run_id,
            event="RUN_ABORT",
            status="error",
            error_code=exc.error_code,
        )
        return EXIT_HARD_FAIL
    finally:
        if sink is not None:
            sink.dispose()
        close_logger(logger)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    try:
        return run_command(args)
    except Exception:
        return EXIT_HARD_FAIL


if __name__ == "__main__":
    raise SystemExit(main())
