"""SQLAlchemy Core persistence sink for facilities, city aggregates and run logs."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterable, Iterator

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Dialect,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    TypeDecorator,
    and_,
    case,
    create_engine,
    delete,
    event,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import make_url
from sqlalchemy.pool import StaticPool

from facility_etl.common.errors import PermanentSinkError, SinkError, TransientSinkError
from facility_etl.common.models import FacilityRecord

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection, Engine

log = logging.getLogger(__name__)

ID_LOOKUP_CHUNK = 500


class UTCDateTime(TypeDecorator[datetime]):
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        _ = dialect
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        _ = dialect
        if value is None:
            return None
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


metadata = MetaData()

facilities_table = Table(
    "facilities",
    metadata,
    Column("id", String(160), primary_key=True),
    Column("name", String, nullable=False),
    Column("street", String),
    Column("city", String, nullable=False),
    Column("state", String, nullable=False),
    Column("zip", String(10)),
    Column("phone", String),
    Column("website", String),
    Column("latitude", Float),
    Column("longitude", Float),
    Column("geo_bucket", String(32)),
    Column("services", JSON, nullable=False),
    Column("services_display", JSON, nullable=False),
    Column("is_residential", Boolean, nullable=False, default=False),
    Column("accepted_insurance", JSON, nullable=False),
    Column("facility_type", String),
    Column("source_id", String),
    Column("source_data", JSON),
    Column("record_metadata", JSON, nullable=False),
    Column("quality_score", Float, nullable=False),
    Column("verified", Boolean, nullable=False, default=False),
    Column("created_at", UTCDateTime(), nullable=False),
    Column("last_updated", UTCDateTime(), nullable=False),
    CheckConstraint("quality_score >= 0 AND quality_score <= 1", name="ck_facilities_quality_score_range"),
    CheckConstraint("latitude IS NULL OR (latitude >= -90 AND latitude <= 90)", name="ck_facilities_latitude"),
    CheckConstraint("longitude IS NULL OR (longitude >= -180 AND longitude <= 180)", name="ck_facilities_longitude"),
    Index("ix_facilities_state_city", "state", "city"),
    Index("ix_facilities_geo_bucket", "geo_bucket"),
)

city_stats_table = Table(
    "facility_city_stats",
    metadata,
    Column("state", String, primary_key=True),
    Column("city", String, primary_key=True),
    Column("facility_count", Integer, nullable=False),
    Column("residential_count", Integer, nullable=False),
    Column("center_lat", Float),
    Column("center_lon", Float),
    Column("avg_quality", Float),
)

etl_runs_table = Table(
    "etl_runs",
    metadata,
    Column("run_id", String(64), primary_key=True),
    Column("source", String(16), nullable=False),
    Column("state", String(16), nullable=False),
    Column("outcome", String(16), nullable=False),
    Column("started_at", UTCDateTime(), nullable=False),
    Column("finished_at", UTCDateTime(), nullable=False),
    Column("extracted", Integer, nullable=False, default=0),
    Column("rejected", Integer, nullable=False, default=0),
    Column("processed", Integer, nullable=False, default=0),
    Column("created", Integer, nullable=False, default=0),
    Column("updated", Integer, nullable=False, default=0),
    Column("unchanged", Integer, nullable=False, default=0),
    Column("failed", Integer, nullable=False, default=0),
)


@dataclass(frozen=True)
class UpsertOutcome:
    record_id: str
    action: str | None
    error: SinkError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def translate_error(exc: sa_exc.SQLAlchemyError) -> SinkError:
    if isinstance(exc, sa_exc.IntegrityError):
        return PermanentSinkError(str(exc.orig) if exc.orig is not None else str(exc))
    if isinstance(exc, (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError, sa_exc.DisconnectionError)):
        return TransientSinkError(str(exc))
    return PermanentSinkError(str(exc))


def _enable_sqlite_savepoints(engine: Engine) -> None:
    # pysqlite issues its own BEGIN/COMMIT; hand transaction control to SQLAlchemy
    # so SAVEPOINT / ROLLBACK TO behave. IMMEDIATE takes the write lock up front so
    # concurrent chunk writers wait on the busy timeout instead of deadlocking.
    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_sink_engine(database_uri: str, *, connect_timeout: float = 10.0) -> Engine:
    url = make_url(database_uri)
    if url.get_backend_name() == "sqlite":
        kwargs: dict[str, Any] = {"connect_args": {"timeout": connect_timeout, "check_same_thread": False}}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)
        _enable_sqlite_savepoints(engine)
        return engine

    connect_args: dict[str, Any] = {}
    if url.get_backend_name() == "postgresql":
        connect_args["connect_timeout"] = max(1, int(connect_timeout))
    return create_engine(url, connect_args=connect_args, pool_timeout=connect_timeout, pool_pre_ping=True)


def record_to_row(record: FacilityRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "name": record.name,
        "street": record.street,
        "city": record.city,
        "state": record.state,
        "zip": record.zip,
        "phone": record.phone,
        "website": record.website,
        "latitude": record.latitude,
        "longitude": record.longitude,
        "geo_bucket": record.geo_bucket,
        "services": sorted(record.service_list),
        "services_display": list(record.services_display),
        "is_residential": record.is_residential,
        "accepted_insurance": list(record.accepted_insurance),
        "facility_type": record.facility_type,
        "source_id": record.source_id,
        "source_data": record.source_data,
        "record_metadata": dict(record.metadata),
        "quality_score": record.quality_score,
        "verified": record.verified,
        "created_at": record.created_at,
        "last_updated": record.last_updated,
    }


def row_to_record(row: Any) -> FacilityRecord:
    data = row._mapping
    return FacilityRecord(
        id=data["id"],
        name=data["name"],
        city=data["city"],
        state=data["state"],
        street=data["street"],
        zip=data["zip"],
        latitude=data["latitude"],
        longitude=data["longitude"],
        geo_bucket=data["geo_bucket"],
        phone=data["phone"],
        website=data["website"],
        service_list=frozenset(data["services"] or ()),
        services_display=tuple(data["services_display"] or ()),
        is_residential=bool(data["is_residential"]),
        accepted_insurance=tuple(data["accepted_insurance"] or ()),
        facility_type=data["facility_type"],
        source_id=data["source_id"],
        source_data=data["source_data"],
        metadata=dict(data["record_metadata"] or {}),
        quality_score=data["quality_score"],
        verified=bool(data["verified"]),
        created_at=data["created_at"],
        last_updated=data["last_updated"],
    )


def _scope_clause(table: Table, scope: Iterable[tuple[str, str]]):
    # Facility identity ignores city casing, so aggregates do too.
    return or_(
        *(and_(table.c.state == state, func.lower(table.c.city) == city.lower()) for state, city in scope)
    )


class FacilityChunk:
    """Sink operations bound to one connection and one open transaction."""

    def __init__(self, connection: Connection) -> None:
        self.connection = connection

    def find_by_id(self, record_id: str) -> FacilityRecord | None:
        row = self.connection.execute(
            select(facilities_table).where(facilities_table.c.id == record_id)
        ).first()
        return row_to_record(row) if row is not None else None

    def find_many(self, record_ids: Iterable[str]) -> dict[str, FacilityRecord]:
        ids = sorted(set(record_ids))
        found: dict[str, FacilityRecord] = {}
        for start in range(0, len(ids), ID_LOOKUP_CHUNK):
            batch = ids[start : start + ID_LOOKUP_CHUNK]
            rows = self.connection.execute(select(facilities_table).where(facilities_table.c.id.in_(batch)))
            for row in rows:
                record = row_to_record(row)
                found[record.id] = record
        return found

    def _upsert_one(self, record: FacilityRecord) -> str:
        row = record_to_row(record)
        result = self.connection.execute(
            update(facilities_table).where(facilities_table.c.id == record.id).values(**row)
        )
        if result.rowcount:
            return "updated"
        self.connection.execute(insert(facilities_table).values(**row))
        return "inserted"

    def upsert_many(self, records: Iterable[FacilityRecord]) -> list[UpsertOutcome]:
        outcomes: list[UpsertOutcome] = []
        for record in records:
            savepoint = self.connection.begin_nested()
            try:
                action = self._upsert_one(record)
            except (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.DisconnectionError) as exc:
                savepoint.rollback()
                raise translate_error(exc) from exc
            except sa_exc.DBAPIError as exc:
                savepoint.rollback()
                outcomes.append(UpsertOutcome(record_id=record.id, action=None, error=translate_error(exc)))
                continue
            savepoint.commit()
            outcomes.append(UpsertOutcome(record_id=record.id, action=action))
        return outcomes

    def compute_city_stats(self, scope: Iterable[tuple[str, str]] | None = None) -> list[dict[str, Any]]:
        t = facilities_table
        city_key = func.lower(t.c.city)
        stmt = select(
            t.c.state,
            func.min(t.c.city).label("city"),
            func.count().label("facility_count"),
            func.sum(case((t.c.is_residential.is_(True), 1), else_=0)).label("residential_count"),
            func.avg(t.c.latitude).label("center_lat"),
            func.avg(t.c.longitude).label("center_lon"),
            func.avg(t.c.quality_score).label("avg_quality"),
        ).group_by(t.c.state, city_key)
        if scope is not None:
            stmt = stmt.where(_scope_clause(t, scope))
        rows = self.connection.execute(stmt.order_by(t.c.state, city_key))
        return [
            {
                "state": row.state,
                "city": row.city,
                "facility_count": int(row.facility_count),
                "residential_count": int(row.residential_count or 0),
                "center_lat": row.center_lat,
                "center_lon": row.center_lon,
                "avg_quality": row.avg_quality,
            }
            for row in rows
        ]

    def replace_city_stats(self, rows: list[dict[str, Any]], scope: Iterable[tuple[str, str]] | None = None) -> None:
        stmt = delete(city_stats_table)
        if scope is not None:
            stmt = stmt.where(_scope_clause(city_stats_table, scope))
        self.connection.execute(stmt)
        if rows:
            self.connection.execute(insert(city_stats_table), rows)

    def fetch_city_stats(self) -> list[dict[str, Any]]:
        t = city_stats_table
        rows = self.connection.execute(select(t).order_by(t.c.state, t.c.city))
        return [dict(row._mapping) for row in rows]

    def record_run(self, run_row: dict[str, Any]) -> None:
        self.connection.execute(insert(etl_runs_table).values(**run_row))


class SqlAlchemyFacilitySink:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_uri(cls, database_uri: str, *, connect_timeout: float = 10.0) -> "SqlAlchemyFacilitySink":
        return cls(create_sink_engine(database_uri, connect_timeout=connect_timeout))

    def create_schema(self) -> None:
        try:
            metadata.create_all(self.engine, checkfirst=True)
        except sa_exc.SQLAlchemyError as exc:
            raise translate_error(exc) from exc

    def ping(self) -> None:
        try:
            with self.engine.connect() as connection:
                connection.execute(select(1))
        except sa_exc.SQLAlchemyError as exc:
            raise translate_error(exc) from exc

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def chunk(self, *, dry_run: bool = False) -> Iterator[FacilityChunk]:
        try:
            connection = self.engine.connect()
        except sa_exc.SQLAlchemyError as exc:
            raise translate_error(exc) from exc
        try:
            transaction = connection.begin()
            try:
                yield FacilityChunk(connection)
            except BaseException:
                transaction.rollback()
                raise
            if dry_run:
                transaction.rollback()
            else:
                transaction.commit()
        except sa_exc.SQLAlchemyError as exc:
            raise translate_error(exc) from exc
        finally:
            connection.close()
