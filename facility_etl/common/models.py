"""Data models used across the pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

RawRecord = Mapping[str, Any]


class SourceFormat(str, Enum):
    CSV = "csv"
    JSON = "json"
    API = "api"


@dataclass(frozen=True)
class FacilityRecord:
    id: str
    name: str
    city: str
    state: str
    street: str | None = None
    zip: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    geo_bucket: str | None = None
    phone: str | None = None
    website: str | None = None
    service_list: frozenset[str] = frozenset()
    services_display: tuple[str, ...] = ()
    is_residential: bool = False
    accepted_insurance: tuple[str, ...] = ()
    facility_type: str | None = None
    source_id: str | None = None
    source_data: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)
    quality_score: float = 0.0
    verified: bool = False
    created_at: datetime | None = None
    last_updated: datetime | None = None

    @property
    def scope(self) -> tuple[str, str]:
        return (self.state, self.city)

    def with_changes(self, **changes: Any) -> "FacilityRecord":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["service_list"] = sorted(self.service_list)
        payload["services_display"] = list(self.services_display)
        payload["accepted_insurance"] = list(self.accepted_insurance)
        for key in ("created_at", "last_updated"):
            value = payload[key]
            payload[key] = value.isoformat() if value is not None else None
        return payload


@dataclass(frozen=True)
class LoadReport:
    processed: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: tuple[dict[str, Any], ...] = ()
    scopes: frozenset[tuple[str, str]] = frozenset()

    def merge(self, other: "LoadReport") -> "LoadReport":
        return LoadReport(
            processed=self.processed + other.processed,
            created=self.created + other.created,
            updated=self.updated + other.updated,
            unchanged=self.unchanged + other.unchanged,
            failed=self.failed + other.failed,
            errors=self.errors + other.errors,
            scopes=self.scopes | other.scopes,
        )

    @classmethod
    def combine(cls, reports) -> "LoadReport":
        total = cls()
        for report in reports:
            total = total.merge(report)
        return total

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "errors": [dict(error) for error in self.errors],
        }
