"""In-run duplicate collapse keyed on normalized name, city and state."""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable

from facility_etl.common.ids import facility_key
from facility_etl.common.models import FacilityRecord
from facility_etl.pipeline.merge import merge


def dedupe_key(record: FacilityRecord) -> str:
    return facility_key(record.name, record.city, record.state)


def _rank(indexed: tuple[int, FacilityRecord]) -> tuple[float, bool, int]:
    position, record = indexed
    # Highest score, then verified, then last seen in input order.
    return (record.quality_score, record.verified, position)


def resolve(group: list[FacilityRecord]) -> FacilityRecord:
    if not group:
        raise ValueError("cannot resolve an empty duplicate group")
    if len(group) == 1:
        return group[0]

    indexed = list(enumerate(group))
    winner_position, winner = max(indexed, key=_rank)

    resolved = winner
    for position, other in indexed:
        if position == winner_position:
            continue
        resolved = merge(other, resolved).record
    return resolved


def dedupe(records: Iterable[FacilityRecord]) -> list[FacilityRecord]:
    grouped: dict[str, list[FacilityRecord]] = defaultdict(list)
    for record in records:
        grouped[dedupe_key(record)].append(record)
    # dicts keep first-seen key order, so output order follows the input.
    return [resolve(group) for group in grouped.values()]
