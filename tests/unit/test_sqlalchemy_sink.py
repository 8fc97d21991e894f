from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import exc as sa_exc
from sqlalchemy import func, select

from facility_etl.common.errors import PermanentSinkError, TransientSinkError
from facility_etl.sink.sqlalchemy_sink import (
    SqlAlchemyFacilitySink,
    city_stats_table,
    facilities_table,
    translate_error,
)

NOW = datetime(2026, 2, 17, 12, 0, tzinfo=timezone.utc)


def _count(sink) -> int:
    with sink.engine.connect() as connection:
        return connection.execute(select(func.count()).select_from(facilities_table)).scalar_one()


def test_upsert_then_find_round_trips_record(sink, make_record):
    record = make_record(
        phone="(775) 555-0100",
        latitude=39.5296,
        longitude=-119.8138,
        geo_bucket="39.5:-119.9",
        service_list=frozenset({"detox", "residential"}),
        services_display=("Detox", "Residential"),
        is_residential=True,
        accepted_insurance=("Medicaid",),
        metadata={"sourceFormat": "csv"},
        source_data={"name": "Hope House"},
        quality_score=0.9,
        created_at=NOW,
        last_updated=NOW,
    )

    with sink.chunk() as chunk:
        outcomes = chunk.upsert_many([record])
    with sink.chunk() as chunk:
        stored = chunk.find_by_id(record.id)
        found = chunk.find_many([record.id, "missing-id"])

    assert [outcome.action for outcome in outcomes] == ["inserted"]
    assert stored == record
    assert set(found) == {record.id}
    assert stored.created_at.tzinfo is not None


def test_second_upsert_updates_in_place(sink, make_record):
    record = make_record(quality_score=0.3, created_at=NOW, last_updated=NOW)
    with sink.chunk() as chunk:
        chunk.upsert_many([record])
    with sink.chunk() as chunk:
        outcomes = chunk.upsert_many([record.with_changes(street="12 Main St")])
        stored = chunk.find_by_id(record.id)

    assert outcomes[0].action == "updated"
    assert stored.street == "12 Main St"
    assert _count(sink) == 1


def test_constraint_violation_fails_only_that_row(sink, make_record):
    good = make_record(name="Good Place", quality_score=0.3, created_at=NOW, last_updated=NOW)
    bad = make_record(name="Bad Place", latitude=95.0, longitude=0.0, quality_score=0.3, created_at=NOW, last_updated=NOW)

    with sink.chunk() as chunk:
        outcomes = chunk.upsert_many([bad, good])

    assert outcomes[0].ok is False
    assert isinstance(outcomes[0].error, PermanentSinkError)
    assert outcomes[1].ok is True
    assert _count(sink) == 1


def test_dry_run_chunk_rolls_back(sink, make_record):
    with sink.chunk(dry_run=True) as chunk:
        chunk.upsert_many([make_record(quality_score=0.3, created_at=NOW, last_updated=NOW)])

    assert _count(sink) == 0


def test_exception_inside_chunk_rolls_back(sink, make_record):
    with pytest.raises(RuntimeError):
        with sink.chunk() as chunk:
            chunk.upsert_many([make_record(quality_score=0.3, created_at=NOW, last_updated=NOW)])
            raise RuntimeError("boom")

    assert _count(sink) == 0


def test_city_stats_compute_and_replace(sink, make_record):
    records = [
        make_record(name="A", latitude=39.0, longitude=-119.0, is_residential=True, quality_score=0.8),
        make_record(name="B", latitude=40.0, longitude=-120.0, quality_score=0.4),
        make_record(name="C", city="Sparks", quality_score=0.3),
    ]
    with sink.chunk() as chunk:
        chunk.upsert_many([r.with_changes(created_at=NOW, last_updated=NOW) for r in records])
        rows = chunk.compute_city_stats()
        chunk.replace_city_stats(rows)
    with sink.chunk() as chunk:
        stats = {(row["state"], row["city"]): row for row in chunk.fetch_city_stats()}

    reno = stats[("NV", "Reno")]
    assert reno["facility_count"] == 2
    assert reno["residential_count"] == 1
    assert reno["center_lat"] == pytest.approx(39.5)
    assert reno["center_lon"] == pytest.approx(-119.5)
    assert reno["avg_quality"] == pytest.approx(0.6)
    assert stats[("NV", "Sparks")]["center_lat"] is None


def test_scoped_replace_leaves_other_cities(sink, make_record):
    with sink.chunk() as chunk:
        chunk.upsert_many(
            [
                make_record(name="A", quality_score=0.3, created_at=NOW, last_updated=NOW),
                make_record(name="B", city="Sparks", quality_score=0.3, created_at=NOW, last_updated=NOW),
            ]
        )
        chunk.replace_city_stats(chunk.compute_city_stats())
        scope = [("NV", "Reno")]
        chunk.replace_city_stats(chunk.compute_city_stats(scope), scope)

    with sink.engine.connect() as connection:
        assert connection.execute(select(func.count()).select_from(city_stats_table)).scalar_one() == 2


def test_translate_error_classifies_dbapi_errors():
    integrity = sa_exc.IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
    operational = sa_exc.OperationalError("SELECT", {}, Exception("database is locked"))

    assert isinstance(translate_error(integrity), PermanentSinkError)
    assert isinstance(translate_error(operational), TransientSinkError)


def test_ping_on_unreachable_database_is_transient(tmp_path):
    sink = SqlAlchemyFacilitySink.from_uri(f"sqlite+pysqlite:///{tmp_path / 'missing' / 'nowhere.db'}")
    try:
        with pytest.raises(TransientSinkError):
            sink.ping()
    finally:
        sink.dispose()
