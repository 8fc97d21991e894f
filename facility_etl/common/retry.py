"""Bounded exponential-backoff retries for sink calls."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from facility_etl.common.context import RunContext
from facility_etl.common.errors import TransientSinkError
from facility_etl.common.logging import log_event

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_initial: float = 1.0
    backoff_max: float = 30.0


def sink_retrying(policy: RetryPolicy, ctx: RunContext, *, what: str, **log_fields) -> Retrying:
    fields = {"run_id": ctx.run_id, **log_fields}

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome is not None else None
        log_event(
            ctx.logger,
            f"transient sink failure during {what}, retrying: {exc}",
            level=logging.WARNING,
            event="RETRY",
            status="retrying",
            attempt=retry_state.attempt_number,
            error_code=getattr(exc, "error_code", None),
            **fields,
        )

    return Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(multiplier=policy.backoff_initial, max=policy.backoff_max),
        retry=retry_if_exception_type(TransientSinkError),
        sleep=ctx.sleep,
        before_sleep=_before_sleep,
        reraise=True,
    )


def call_with_retry(fn: Callable[[], T], policy: RetryPolicy, ctx: RunContext, *, what: str, **log_fields) -> T:
    for attempt in sink_retrying(policy, ctx, what=what, **log_fields):
        with attempt:
            result = fn()
    return result
