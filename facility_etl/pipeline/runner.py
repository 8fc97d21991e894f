"""Run driver: extract, transform, load and refresh under one run state machine."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from facility_etl.common.constants import DEFAULT_BATCH_SIZE, EXIT_CANCELLED, EXIT_HARD_FAIL, EXIT_SUCCESS
from facility_etl.common.context import RunContext, RunState
from facility_etl.common.errors import NormalizationError, PipelineFatalError, RunCancelled, SinkError
from facility_etl.common.logging import log_event
from facility_etl.common.models import FacilityRecord, LoadReport, RawRecord, SourceFormat
from facility_etl.common.retry import RetryPolicy, call_with_retry
from facility_etl.extract.runner import Extraction
from facility_etl.pipeline.aggregates import refresh
from facility_etl.pipeline.dedupe import dedupe
from facility_etl.pipeline.geo import WGS84_EPSG, enrich_with_issue
from facility_etl.pipeline.loader import load_batch
from facility_etl.pipeline.normalize import normalize
from facility_etl.pipeline.scoring import rescore

OUTCOME_SUCCESS = "success"
OUTCOME_PARTIAL = "partial"
OUTCOME_ABORTED = "aborted"
OUTCOME_CANCELLED = "cancelled"

EXIT_CODE_BY_OUTCOME = {
    OUTCOME_SUCCESS: EXIT_SUCCESS,
    OUTCOME_PARTIAL: EXIT_SUCCESS,
    OUTCOME_ABORTED: EXIT_HARD_FAIL,
    OUTCOME_CANCELLED: EXIT_CANCELLED,
}


@dataclass(frozen=True)
class PipelineSettings:
    batch_size: int = DEFAULT_BATCH_SIZE
    workers: int = 1
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    dry_run: bool = False
    source_epsg: int = WGS84_EPSG
    region_bbox: dict | None = None

    @classmethod
    def from_config(cls, cfg: dict, *, dry_run: bool = False) -> "PipelineSettings":
        load = cfg["load"]
        return cls(
            batch_size=int(load["batch_size"]),
            workers=int(load["workers"]),
            retry=RetryPolicy(
                max_attempts=int(load["max_attempts"]),
                backoff_initial=float(load["backoff_initial_seconds"]),
                backoff_max=float(load["backoff_max_seconds"]),
            ),
            dry_run=dry_run,
            source_epsg=int(cfg["geo"]["source_epsg"]),
            region_bbox=cfg["geo"]["region_bbox"],
        )


@dataclass(frozen=True)
class RunResult:
    run_id: str
    source: str
    state: RunState
    outcome: str
    report: LoadReport
    extracted: int = 0
    rejected: tuple[dict, ...] = ()
    geo_warnings: tuple[dict, ...] = ()
    failed_locations: tuple[str, ...] = ()
    started_at: datetime | None = None
    finished_at: datetime | None = None
    dry_run: bool = False
    message: str | None = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODE_BY_OUTCOME[self.outcome]


def transform(
    rows: Iterable[RawRecord],
    source_format: SourceFormat,
    *,
    source_epsg: int = WGS84_EPSG,
    region_bbox: dict | None = None,
) -> tuple[list[FacilityRecord], list[dict], list[dict]]:
    """Normalize, score, dedupe and geo-enrich raw rows.

    Returns the records to load, the rejected rows and the geo warnings.
    Record-level problems are collected, never raised.
    """
    normalized: list[FacilityRecord] = []
    rejected: list[dict] = []
    for position, raw in enumerate(rows):
        result = normalize(raw, source_format, source_epsg=source_epsg)
        if isinstance(result, NormalizationError):
            rejected.append({**result.to_dict(), "row": position})
            continue
        normalized.append(rescore(result))

    records: list[FacilityRecord] = []
    geo_warnings: list[dict] = []
    for record in dedupe(normalized):
        enriched, issue = enrich_with_issue(record, region_bbox=region_bbox)
        if issue is not None:
            geo_warnings.append(issue.to_dict())
        records.append(rescore(enriched))
    return records, rejected, geo_warnings


def _outcome(
    state: RunState,
    report: LoadReport,
    rejected: list[dict],
    failed_locations: tuple[str, ...] = (),
) -> str:
    if state is RunState.CANCELLED:
        return OUTCOME_CANCELLED
    if state is RunState.FAILED:
        return OUTCOME_ABORTED
    if rejected or report.failed or failed_locations:
        return OUTCOME_PARTIAL
    return OUTCOME_SUCCESS


def _record_run(sink, ctx: RunContext, result: RunResult, policy: RetryPolicy) -> None:
    report = result.report
    row: dict[str, Any] = {
        "run_id": result.run_id,
        "source": result.source,
        "state": result.state.value,
        "outcome": result.outcome,
        "started_at": result.started_at,
        "finished_at": result.finished_at,
        "extracted": result.extracted,
        "rejected": len(result.rejected),
        "processed": report.processed,
        "created": report.created,
        "updated": report.updated,
        "unchanged": report.unchanged,
        "failed": report.failed,
    }

    def _write() -> None:
        with sink.chunk() as chunk:
            chunk.record_run(row)

    try:
        call_with_retry(_write, policy, ctx, what="run log write", run_id=ctx.run_id, stage="report")
    except SinkError as exc:
        # The run itself already finished; a missing log row does not change its outcome.
        log_event(
            ctx.logger,
            f"unable to write run log row: {exc}",
            level=logging.WARNING,
            run_id=ctx.run_id,
            stage="report",
            event="RUN_LOG_FAIL",
            status="error",
            error_code=exc.error_code,
        )


def run_pipeline(
    ctx: RunContext,
    records_source: Callable[[], Extraction],
    sink,
    settings: PipelineSettings,
) -> RunResult:
    started_at = ctx.now()
    source_name = "unknown"
    extracted = 0
    rejected: list[dict] = []
    geo_warnings: list[dict] = []
    report = LoadReport()
    failed_locations: tuple[str, ...] = ()
    message = None

    try:
        ctx.transition(RunState.EXTRACTING)
        extraction = records_source()
        source_name = extraction.source
        extracted = len(extraction.rows)
        failed_locations = extraction.failed_locations

        ctx.transition(RunState.TRANSFORMING)
        records, rejected, geo_warnings = transform(
            extraction.rows,
            extraction.source_format,
            source_epsg=settings.source_epsg,
            region_bbox=settings.region_bbox,
        )
        for error in rejected:
            log_event(
                ctx.logger,
                f"row rejected: {error['message']}",
                level=logging.ERROR,
                run_id=ctx.run_id,
                stage="transform",
                event="RECORD_REJECT",
                status="error",
                record_id=error["record_id"],
                error_code=error["error_code"],
            )
        for warning in geo_warnings:
            log_event(
                ctx.logger,
                warning["message"],
                level=logging.WARNING,
                run_id=ctx.run_id,
                stage="transform",
                event="GEO_INVALID",
                status="warning",
                record_id=warning["record_id"],
                error_code=warning["error_code"],
            )
        log_event(
            ctx.logger,
            "transform complete",
            run_id=ctx.run_id,
            stage="transform",
            event="STAGE_END",
            status="ok",
            rows_in=extracted,
            rows_out=len(records),
        )
        if ctx.cancelled:
            raise RunCancelled("cancelled before load")

        ctx.transition(RunState.LOADING)
        report = load_batch(
            records,
            sink,
            settings.batch_size,
            ctx=ctx,
            workers=settings.workers,
            retry=settings.retry,
            dry_run=settings.dry_run,
        )

        ctx.transition(RunState.REFRESHING)
        if not settings.dry_run:
            try:
                refresh(sink, report.scopes, ctx=ctx, retry=settings.retry)
            except SinkError as exc:
                raise PipelineFatalError(f"Aggregate refresh failed: {exc}") from exc
        ctx.transition(RunState.COMPLETED)
    except RunCancelled as exc:
        report = exc.report or report
        message = str(exc)
        ctx.transition(RunState.CANCELLED)
    except PipelineFatalError as exc:
        message = str(exc)
        log_event(
            ctx.logger,
            f"run aborted: {exc}",
            level=logging.ERROR,
            run_id=ctx.run_id,
            stage=ctx.state.value.lower(),
            event="RUN_ABORT",
            status="error",
            error_code=exc.error_code,
            rows_out=report.processed,
        )
        ctx.transition(RunState.FAILED)

    result = RunResult(
        run_id=ctx.run_id,
        source=source_name,
        state=ctx.state,
        outcome=_outcome(ctx.state, report, rejected, failed_locations),
        report=report,
        extracted=extracted,
        rejected=tuple(rejected),
        geo_warnings=tuple(geo_warnings),
        failed_locations=failed_locations,
        started_at=started_at,
        finished_at=ctx.now(),
        dry_run=settings.dry_run,
        message=message,
    )
    if not settings.dry_run:
        _record_run(sink, ctx, result, settings.retry)

    log_event(
        ctx.logger,
        f"run finished: {result.outcome}",
        run_id=ctx.run_id,
        stage="report",
        event="RUN_END",
        status=result.outcome,
        rows_in=extracted,
        rows_out=report.processed - report.failed,
    )
    return result
