"""Per-city aggregate refresh."""

from __future__ import annotations

import logging
from typing import Iterable

from facility_etl.common.context import RunContext
from facility_etl.common.errors import SinkError
from facility_etl.common.logging import log_event
from facility_etl.common.retry import RetryPolicy, call_with_retry

STAGE = "refresh"
# Keeps the OR-ed (state, city) predicate under SQLite's expression depth limit.
SCOPE_SLICE = 200


def _scope_slices(scope: set[tuple[str, str]] | None) -> list[list[tuple[str, str]] | None]:
    if scope is None:
        return [None]
    ordered = sorted({(state, city.lower()) for state, city in scope})
    return [ordered[start : start + SCOPE_SLICE] for start in range(0, len(ordered), SCOPE_SLICE)]


def refresh(
    sink,
    scope: Iterable[tuple[str, str]] | None = None,
    *,
    ctx: RunContext | None = None,
    retry: RetryPolicy | None = None,
) -> int:
    """Recompute ``facility_city_stats`` for ``scope`` (every city when None).

    Runs in one transaction of its own and returns the number of city rows
    written. Recomputing from the facilities table makes it idempotent.
    """
    ctx = ctx or RunContext()
    policy = retry or RetryPolicy()
    scope_set = None if scope is None else set(scope)
    if scope_set is not None and not scope_set:
        log_event(ctx.logger, "nothing to refresh", run_id=ctx.run_id, stage=STAGE, event="SKIP", status="ok")
        return 0

    def _refresh_once() -> int:
        written = 0
        with sink.chunk() as chunk:
            for part in _scope_slices(scope_set):
                rows = chunk.compute_city_stats(part)
                chunk.replace_city_stats(rows, part)
                written += len(rows)
        return written

    try:
        written = call_with_retry(_refresh_once, policy, ctx, what="aggregate refresh", run_id=ctx.run_id, stage=STAGE)
    except SinkError:
        log_event(
            ctx.logger,
            "aggregate refresh failed",
            level=logging.ERROR,
            run_id=ctx.run_id,
            stage=STAGE,
            event="REFRESH_FAIL",
            status="error",
        )
        raise

    log_event(
        ctx.logger,
        "aggregates refreshed",
        run_id=ctx.run_id,
        stage=STAGE,
        event="REFRESH_END",
        status="ok",
        rows_in=len(scope_set) if scope_set is not None else None,
        rows_out=written,
    )
    return written
