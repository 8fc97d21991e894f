from __future__ import annotations

import logging
from contextlib import contextmanager

import pytest

from facility_etl.common.errors import PermanentSinkError
from facility_etl.pipeline.aggregates import refresh
from facility_etl.pipeline.loader import load_batch


def _stats(sink) -> dict:
    with sink.chunk() as chunk:
        return {(row["state"], row["city"]): row for row in chunk.fetch_city_stats()}


@pytest.mark.integration
def test_refresh_is_idempotent(sink, run_ctx, make_record):
    records = [
        make_record(name="A", latitude=39.5, longitude=-119.8, service_list=frozenset({"residential"}), is_residential=True),
        make_record(name="B", latitude=39.7, longitude=-119.6),
        make_record(name="C", city="Las Vegas"),
    ]
    report = load_batch(records, sink, ctx=run_ctx)

    first_count = refresh(sink, report.scopes, ctx=run_ctx)
    first = _stats(sink)
    second_count = refresh(sink, report.scopes, ctx=run_ctx)

    assert first_count == second_count == 2
    assert _stats(sink) == first
    assert first[("NV", "Reno")]["facility_count"] == 2
    assert first[("NV", "Reno")]["residential_count"] == 1
    assert first[("NV", "Reno")]["center_lat"] == pytest.approx(39.6)
    assert first[("NV", "Las Vegas")]["center_lon"] is None


@pytest.mark.integration
def test_scoped_refresh_only_touches_scope(sink, run_ctx, make_record):
    load_batch([make_record(name="A"), make_record(name="B", city="Sparks")], sink, ctx=run_ctx)
    refresh(sink, ctx=run_ctx)

    load_batch([make_record(name="C")], sink, ctx=run_ctx)
    written = refresh(sink, {("NV", "Reno")}, ctx=run_ctx)

    stats = _stats(sink)
    assert written == 1
    assert stats[("NV", "Reno")]["facility_count"] == 2
    assert stats[("NV", "Sparks")]["facility_count"] == 1


@pytest.mark.integration
def test_empty_scope_is_a_no_op(sink, run_ctx):
    assert refresh(sink, set(), ctx=run_ctx) == 0
    assert _stats(sink) == {}


@pytest.mark.integration
def test_city_casing_variants_share_one_stats_row(sink, run_ctx, make_record):
    report = load_batch(
        [make_record(name="A House", city="Austin", state="TX"), make_record(name="B House", city="austin", state="TX")],
        sink,
        ctx=run_ctx,
    )

    assert refresh(sink, report.scopes, ctx=run_ctx) == 1
    stats = _stats(sink)
    assert list(stats) == [("TX", "Austin")]
    assert stats[("TX", "Austin")]["facility_count"] == 2

    assert refresh(sink, {("TX", "AUSTIN")}, ctx=run_ctx) == 1
    assert _stats(sink)[("TX", "Austin")]["facility_count"] == 2


class BrokenChunkSink:
    @contextmanager
    def chunk(self, *, dry_run=False):
        raise PermanentSinkError("no such table: facility_city_stats")
        yield


@pytest.mark.integration
def test_refresh_failure_is_logged_as_error(run_ctx, caplog):
    with caplog.at_level(logging.INFO, logger=run_ctx.logger.name):
        with pytest.raises(PermanentSinkError):
            refresh(BrokenChunkSink(), ctx=run_ctx)

    failures = [record for record in caplog.records if getattr(record, "event", None) == "REFRESH_FAIL"]
    assert [record.levelno for record in failures] == [logging.ERROR]
