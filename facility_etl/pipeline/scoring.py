"""Deterministic completeness scoring for facility records.

Weights are fixed:

- required fields (name, city, state, phone): 0.4 scaled by the share present
- geolocation present and in range: 0.2
- at least one of phone / website: 0.2
- at least one parsed service: 0.2

A record carrying only name, city and state scores ``0.4 * 3/4 = 0.3``.
"""

from __future__ import annotations

from facility_etl.common.models import FacilityRecord
from facility_etl.pipeline.geo import valid_lat_lon

REQUIRED_FIELDS_WEIGHT = 0.4
GEO_WEIGHT = 0.2
CONTACT_WEIGHT = 0.2
SERVICES_WEIGHT = 0.2
SCORE_PRECISION = 4


def clamp(value: float, *, minimum: float, maximum: float) -> float:
    return max(minimum, min(maximum, value))


def _present(value: str | None) -> bool:
    return value is not None and value.strip() != ""


def score_with_explanation(record: FacilityRecord) -> tuple[float, dict]:
    applied_rules: list[str] = []

    required = [record.name, record.city, record.state, record.phone]
    present_count = sum(1 for value in required if _present(value))
    raw_score = REQUIRED_FIELDS_WEIGHT * (present_count / len(required))
    if present_count:
        applied_rules.append(f"required_fields:{present_count}/{len(required)}")

    if valid_lat_lon(record.latitude, record.longitude):
        raw_score += GEO_WEIGHT
        applied_rules.append("geolocation")

    if _present(record.phone) or _present(record.website):
        raw_score += CONTACT_WEIGHT
        applied_rules.append("contact")

    if record.service_list:
        raw_score += SERVICES_WEIGHT
        applied_rules.append("services")

    # Rounding keeps e.g. 0.4 * 0.75 from surfacing as 0.30000000000000004.
    clamped_score = round(clamp(raw_score, minimum=0.0, maximum=1.0), SCORE_PRECISION)

    explanation = {
        "applied_rules": applied_rules,
        "raw_score": raw_score,
        "clamped_score": clamped_score,
    }
    return clamped_score, explanation


def score(record: FacilityRecord) -> float:
    value, _explanation = score_with_explanation(record)
    return value


def rescore(record: FacilityRecord) -> FacilityRecord:
    return record.with_changes(quality_score=score(record))
