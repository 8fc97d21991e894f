"""Chunked, retried, cancellable loading of facility records into the sink.

Records are grouped into id-disjoint chunks. Each chunk runs inside one
scoped sink acquisition and every row is written under its own savepoint, so a
bad row is reported and skipped while the rest of the chunk commits. Chunks
run on a bounded thread pool; cancellation is checked before each chunk is
started and committed chunks stay committed.
"""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Iterable

from facility_etl.common.constants import DEFAULT_BATCH_SIZE
from facility_etl.common.context import RunContext
from facility_etl.common.errors import (
    PermanentSinkError,
    PipelineFatalError,
    RunCancelled,
    SinkError,
    TransientSinkError,
)
from facility_etl.common.logging import log_event
from facility_etl.common.models import FacilityRecord, LoadReport
from facility_etl.common.retry import RetryPolicy, call_with_retry
from facility_etl.pipeline.merge import merge
from facility_etl.pipeline.scoring import rescore

STAGE = "load"


@dataclass(frozen=True)
class _PlannedWrite:
    record: FacilityRecord
    action: str
    previous_scope: tuple[str, str] | None = None


@dataclass(frozen=True)
class ChunkResult:
    index: int
    report: LoadReport
    exhausted: bool = False


def partition_chunks(records: Iterable[FacilityRecord], batch_size: int = DEFAULT_BATCH_SIZE) -> list[list[FacilityRecord]]:
    if batch_size < 1:
        raise ValueError("batch_size must be positive")

    grouped: dict[str, list[FacilityRecord]] = {}
    for record in records:
        grouped.setdefault(record.id, []).append(record)

    chunks: list[list[FacilityRecord]] = []
    current: list[FacilityRecord] = []
    for group in grouped.values():
        # An id never straddles two chunks, even if that overfills one.
        if current and len(current) + len(group) > batch_size:
            chunks.append(current)
            current = []
        current.extend(group)
    if current:
        chunks.append(current)
    return chunks


def _fold_same_id(records: list[FacilityRecord]) -> dict[str, FacilityRecord]:
    folded: dict[str, FacilityRecord] = {}
    for record in records:
        previous = folded.get(record.id)
        folded[record.id] = record if previous is None else merge(previous, record).record
    return folded


def _plan(
    incoming: dict[str, FacilityRecord],
    existing: dict[str, FacilityRecord],
    now,
) -> tuple[list[_PlannedWrite], list[str]]:
    writes: list[_PlannedWrite] = []
    unchanged: list[str] = []
    for record_id, record in incoming.items():
        stored = existing.get(record_id)
        if stored is None:
            writes.append(
                _PlannedWrite(
                    record=rescore(record).with_changes(created_at=now, last_updated=now),
                    action="created",
                )
            )
            continue
        result = merge(stored, record)
        if not result.changed:
            unchanged.append(record_id)
            continue
        writes.append(
            _PlannedWrite(
                record=result.record.with_changes(last_updated=now),
                action="updated",
                previous_scope=stored.scope,
            )
        )
    return writes, unchanged


def _error_entry(record_id: str, exc: Exception) -> dict:
    return {
        "record_id": record_id,
        "error_code": getattr(exc, "error_code", "UNEXPECTED_ERROR"),
        "message": str(exc),
    }


def _log_record_failures(ctx: RunContext, index: int, errors: Iterable[dict]) -> None:
    for error in errors:
        log_event(
            ctx.logger,
            f"record failed to load: {error['message']}",
            level=logging.ERROR,
            run_id=ctx.run_id,
            stage=STAGE,
            event="RECORD_FAIL",
            status="error",
            record_id=error["record_id"],
            chunk=index,
            error_code=error["error_code"],
        )


def _apply_chunk(sink, records: list[FacilityRecord], ctx: RunContext, *, dry_run: bool) -> LoadReport:
    incoming = _fold_same_id(records)
    counts = {"created": 0, "updated": 0}
    errors: list[dict] = []
    scopes: set[tuple[str, str]] = set()

    with sink.chunk(dry_run=dry_run) as chunk:
        existing = chunk.find_many(incoming)
        writes, unchanged = _plan(incoming, existing, ctx.now())
        outcomes = {outcome.record_id: outcome for outcome in chunk.upsert_many(w.record for w in writes)}

    for write in writes:
        outcome = outcomes[write.record.id]
        if not outcome.ok:
            errors.append(_error_entry(write.record.id, outcome.error))
            continue
        counts[write.action] += 1
        scopes.add(write.record.scope)
        if write.previous_scope is not None:
            scopes.add(write.previous_scope)

    return LoadReport(
        processed=len(incoming),
        created=counts["created"],
        updated=counts["updated"],
        unchanged=len(unchanged),
        failed=len(errors),
        errors=tuple(errors),
        scopes=frozenset(scopes),
    )


def _failed_report(records: list[FacilityRecord], exc: Exception) -> LoadReport:
    ids = list(dict.fromkeys(record.id for record in records))
    return LoadReport(
        processed=len(ids),
        failed=len(ids),
        errors=tuple(_error_entry(record_id, exc) for record_id in ids),
    )


def _apply_rows(sink, index: int, records: list[FacilityRecord], ctx: RunContext, policy: RetryPolicy, dry_run: bool) -> LoadReport:
    reports: list[LoadReport] = []
    for record_id, record in _fold_same_id(records).items():
        try:
            reports.append(
                call_with_retry(
                    lambda: _apply_chunk(sink, [record], ctx, dry_run=dry_run),
                    policy,
                    ctx,
                    what="row write",
                    run_id=ctx.run_id,
                    stage=STAGE,
                    chunk=index,
                    record_id=record_id,
                )
            )
        except SinkError as exc:
            reports.append(_failed_report([record], exc))
    return LoadReport.combine(reports)


def load_chunk(
    sink,
    index: int,
    records: list[FacilityRecord],
    ctx: RunContext,
    *,
    policy: RetryPolicy,
    dry_run: bool = False,
) -> ChunkResult:
    log_event(
        ctx.logger,
        "chunk start",
        run_id=ctx.run_id,
        stage=STAGE,
        event="CHUNK_START",
        status="ok",
        chunk=index,
        rows_in=len(records),
    )

    exhausted = False
    try:
        report = call_with_retry(
            lambda: _apply_chunk(sink, records, ctx, dry_run=dry_run),
            policy,
            ctx,
            what="chunk write",
            run_id=ctx.run_id,
            stage=STAGE,
            chunk=index,
        )
    except TransientSinkError as exc:
        log_event(
            ctx.logger,
            f"chunk failed after {policy.max_attempts} attempts: {exc}",
            level=logging.ERROR,
            run_id=ctx.run_id,
            stage=STAGE,
            event="CHUNK_FAIL",
            status="error",
            chunk=index,
            error_code=exc.error_code,
        )
        report = _failed_report(records, exc)
        exhausted = True
    except PermanentSinkError as exc:
        log_event(
            ctx.logger,
            f"chunk rejected, isolating rows: {exc}",
            level=logging.WARNING,
            run_id=ctx.run_id,
            stage=STAGE,
            event="CHUNK_ISOLATE",
            status="retrying",
            chunk=index,
            error_code=exc.error_code,
        )
        report = _apply_rows(sink, index, records, ctx, policy, dry_run)

    _log_record_failures(ctx, index, report.errors)
    log_event(
        ctx.logger,
        "chunk end",
        run_id=ctx.run_id,
        stage=STAGE,
        event="CHUNK_END",
        status="error" if report.failed else "ok",
        chunk=index,
        rows_in=len(records),
        rows_out=report.processed - report.failed,
    )
    return ChunkResult(index=index, report=report, exhausted=exhausted)


def _preflight(sink, ctx: RunContext, policy: RetryPolicy) -> None:
    try:
        call_with_retry(sink.ping, policy, ctx, what="preflight ping", run_id=ctx.run_id, stage=STAGE)
    except SinkError as exc:
        raise PipelineFatalError(f"Sink unreachable: {exc}") from exc


def _run_chunks(
    sink,
    chunks: list[list[FacilityRecord]],
    ctx: RunContext,
    *,
    workers: int,
    policy: RetryPolicy,
    dry_run: bool,
) -> tuple[list[ChunkResult], bool]:
    results: list[ChunkResult] = []
    next_index = 0
    stopped = False

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="facility-load") as pool:
        pending: set[Future] = set()

        def submit_next() -> None:
            nonlocal next_index, stopped
            if stopped or next_index >= len(chunks):
                return
            if ctx.cancelled:
                stopped = True
                return
            index = next_index
            next_index += 1
            pending.add(pool.submit(load_chunk, sink, index, chunks[index], ctx, policy=policy, dry_run=dry_run))

        for _ in range(workers):
            submit_next()
        while pending:
            done, _not_done = wait(pending, return_when=FIRST_COMPLETED)
            for future in done:
                pending.discard(future)
                results.append(future.result())
                submit_next()

    results.sort(key=lambda result: result.index)
    return results, stopped


def load_batch(
    records: Iterable[FacilityRecord],
    sink,
    batch_size: int = DEFAULT_BATCH_SIZE,
    *,
    ctx: RunContext | None = None,
    workers: int = 1,
    retry: RetryPolicy | None = None,
    dry_run: bool = False,
) -> LoadReport:
    ctx = ctx or RunContext()
    policy = retry or RetryPolicy()
    chunks = partition_chunks(records, batch_size)

    log_event(
        ctx.logger,
        "load start",
        run_id=ctx.run_id,
        stage=STAGE,
        event="STAGE_START",
        status="ok",
        rows_in=sum(len(chunk) for chunk in chunks),
    )
    if not chunks:
        return LoadReport()

    _preflight(sink, ctx, policy)
    results, cancelled = _run_chunks(
        sink,
        chunks,
        ctx,
        workers=max(1, workers),
        policy=policy,
        dry_run=dry_run,
    )
    report = LoadReport.combine(result.report for result in results)

    if cancelled:
        log_event(
            ctx.logger,
            f"load cancelled after {len(results)} of {len(chunks)} chunks",
            level=logging.WARNING,
            run_id=ctx.run_id,
            stage=STAGE,
            event="CANCELLED",
            status="cancelled",
            rows_out=report.processed,
        )
        raise RunCancelled("load cancelled between chunks", report=report)

    if all(result.exhausted for result in results):
        raise PipelineFatalError(f"All {len(results)} chunk(s) failed after retries; sink unavailable")

    log_event(
        ctx.logger,
        "load end",
        run_id=ctx.run_id,
        stage=STAGE,
        event="STAGE_END",
        status="error" if report.failed else "ok",
        rows_out=report.processed - report.failed,
    )
    return report
