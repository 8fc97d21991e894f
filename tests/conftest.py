from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator

import pytest

from facility_etl.common.context import RunContext
from facility_etl.common.ids import facility_id
from facility_etl.common.models import FacilityRecord
from facility_etl.sink.sqlalchemy_sink import SqlAlchemyFacilitySink

FIXED_NOW = datetime(2026, 2, 17, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def run_ctx() -> RunContext:
    return RunContext(
        run_id="run-test",
        logger=logging.getLogger("facility_etl.tests"),
        clock=lambda: FIXED_NOW,
        sleep=lambda _seconds: None,
    )


@pytest.fixture
def sink(tmp_path: Path) -> Iterator[SqlAlchemyFacilitySink]:
    sink = SqlAlchemyFacilitySink.from_uri(f"sqlite+pysqlite:///{tmp_path / 'facilities.db'}")
    sink.create_schema()
    try:
        yield sink
    finally:
        sink.dispose()


@pytest.fixture
def make_record() -> Callable[..., FacilityRecord]:
    def factory(name: str = "Hope House", city: str = "Reno", state: str = "NV", **fields) -> FacilityRecord:
        return FacilityRecord(id=facility_id(name, city, state), name=name, city=city, state=state, **fields)

    return factory
