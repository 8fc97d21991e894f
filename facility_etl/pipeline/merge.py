"""Field-level "most complete wins" merge of two facility records.

Populated values beat empty ones. When both sides are populated and differ,
the side with the higher quality score wins and ties go to the incoming
record. Coordinates move as one unit and an out-of-range pair counts as
empty. Service and insurance lists are unioned, ``verified`` never reverts
to false and ``created_at`` keeps its first value. Per-field quality flags in
``metadata`` follow the side whose value was kept.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from facility_etl.common.models import FacilityRecord
from facility_etl.pipeline.geo import valid_lat_lon
from facility_etl.pipeline.normalize import unique_tokens
from facility_etl.pipeline.scoring import score

SCALAR_FIELDS = (
    "name",
    "city",
    "state",
    "street",
    "zip",
    "phone",
    "website",
    "facility_type",
    "source_id",
    "source_data",
)
COORDINATE_FIELDS = ("latitude", "longitude", "geo_bucket")
# Quality flags describe one field, so they follow whichever side supplied it.
FIELD_FLAGS = {
    "phoneMalformed": "phone",
    "stateMalformed": "state",
    "geoInvalid": "coordinates",
    "geoOutsideRegion": "coordinates",
    "coordinatesUnparsable": "coordinates",
    "coordinatesTransformFailed": "coordinates",
}
# Bookkeeping fields that do not make a merge a "real" change on their own.
UNTRACKED_FIELDS = ("created_at", "last_updated")


@dataclass(frozen=True)
class MergeResult:
    record: FacilityRecord
    changed: bool


def _empty(value: Any) -> bool:
    return value is None or value == "" or value == {} or value == []


def _pick(existing: Any, incoming: Any, incoming_wins: bool) -> Any:
    if _empty(incoming):
        return existing
    if _empty(existing):
        return incoming
    if existing == incoming:
        return existing
    return incoming if incoming_wins else existing


def _coordinate_source(existing: FacilityRecord, incoming: FacilityRecord, incoming_wins: bool) -> FacilityRecord:
    existing_valid = valid_lat_lon(existing.latitude, existing.longitude)
    incoming_valid = valid_lat_lon(incoming.latitude, incoming.longitude)
    if existing_valid != incoming_valid:
        return incoming if incoming_valid else existing
    if existing_valid:
        return incoming if incoming_wins else existing
    incoming_present = incoming.latitude is not None and incoming.longitude is not None
    if incoming_present and (existing.latitude is None or existing.longitude is None):
        return incoming
    return existing


def _merge_metadata(
    existing: FacilityRecord,
    incoming: FacilityRecord,
    changes: dict[str, Any],
    coordinate_source: FacilityRecord,
) -> dict[str, Any]:
    metadata = {**existing.metadata, **incoming.metadata}
    for flag, field_name in FIELD_FLAGS.items():
        if field_name == "coordinates":
            owner = coordinate_source
        else:
            owner = incoming if changes[field_name] == getattr(incoming, field_name) else existing
        if flag in owner.metadata:
            metadata[flag] = owner.metadata[flag]
        else:
            metadata.pop(flag, None)
    return metadata


def content_of(record: FacilityRecord) -> dict[str, Any]:
    payload = record.to_dict()
    for key in UNTRACKED_FIELDS:
        payload.pop(key, None)
    return payload


def merge(existing: FacilityRecord, incoming: FacilityRecord) -> MergeResult:
    incoming_wins = score(incoming) >= score(existing)

    changes: dict[str, Any] = {
        name: _pick(getattr(existing, name), getattr(incoming, name), incoming_wins) for name in SCALAR_FIELDS
    }

    coordinate_source = _coordinate_source(existing, incoming, incoming_wins)
    for name in COORDINATE_FIELDS:
        changes[name] = getattr(coordinate_source, name)

    services_display = unique_tokens(existing.services_display + incoming.services_display)
    service_list = existing.service_list | incoming.service_list
    changes.update(
        services_display=services_display,
        service_list=service_list,
        is_residential=any("residential" in token for token in service_list),
        accepted_insurance=unique_tokens(existing.accepted_insurance + incoming.accepted_insurance),
        metadata=_merge_metadata(existing, incoming, changes, coordinate_source),
        verified=existing.verified or incoming.verified,
        created_at=existing.created_at or incoming.created_at,
        last_updated=existing.last_updated,
    )

    merged = existing.with_changes(**changes)
    merged = merged.with_changes(quality_score=score(merged))
    return MergeResult(record=merged, changed=content_of(merged) != content_of(existing))
