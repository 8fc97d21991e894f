"""Per-run state threaded through every stage call."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable

from facility_etl.common.errors import StageError
from facility_etl.common.ids import generate_run_id
from facility_etl.common.logging import log_event
from facility_etl.common.time_utils import utc_now


class RunState(str, Enum):
    PENDING = "PENDING"
    EXTRACTING = "EXTRACTING"
    TRANSFORMING = "TRANSFORMING"
    LOADING = "LOADING"
    REFRESHING = "REFRESHING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATES = frozenset({RunState.COMPLETED, RunState.FAILED, RunState.CANCELLED})

_FORWARD = {
    RunState.PENDING: RunState.EXTRACTING,
    RunState.EXTRACTING: RunState.TRANSFORMING,
    RunState.TRANSFORMING: RunState.LOADING,
    RunState.LOADING: RunState.REFRESHING,
    RunState.REFRESHING: RunState.COMPLETED,
}


@dataclass
class RunContext:
    run_id: str = field(default_factory=generate_run_id)
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("facility_etl"))
    clock: Callable[[], datetime] = utc_now
    sleep: Callable[[float], None] = time.sleep
    cancel_event: threading.Event = field(default_factory=threading.Event)
    state: RunState = RunState.PENDING
    history: list[RunState] = field(default_factory=lambda: [RunState.PENDING])

    def now(self) -> datetime:
        return self.clock()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def request_cancel(self) -> None:
        self.cancel_event.set()

    def transition(self, target: RunState) -> None:
        if self.state in TERMINAL_STATES:
            raise StageError(f"Run {self.run_id} already finished in state {self.state.value}")
        allowed = target in (RunState.FAILED, RunState.CANCELLED) or _FORWARD.get(self.state) == target
        if not allowed:
            raise StageError(f"Illegal run transition {self.state.value} -> {target.value}")
        previous = self.state
        self.state = target
        self.history.append(target)
        log_event(
            self.logger,
            f"run state {previous.value} -> {target.value}",
            run_id=self.run_id,
            stage=target.value.lower(),
            event="STATE_CHANGE",
            status="ok" if target not in (RunState.FAILED, RunState.CANCELLED) else "error",
        )
