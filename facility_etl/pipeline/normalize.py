"""Map heterogeneous source rows onto the canonical facility schema."""

from __future__ import annotations

import math
import re
from typing import Any, Iterable

from facility_etl.common.constants import SERVICE_DELIMITER
from facility_etl.common.errors import NormalizationError
from facility_etl.common.ids import facility_id
from facility_etl.common.models import FacilityRecord, RawRecord, SourceFormat
from facility_etl.pipeline.geo import WGS84_EPSG, transform_to_wgs84

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "name": ("name", "facilityname", "facility_name", "name1"),
    "street": ("street", "street1", "address1", "address", "street_address"),
    "street2": ("street2", "address2"),
    "city": ("city",),
    "state": ("state", "state_code"),
    "zip": ("zip", "zip5", "zipcode", "zip_code", "postal_code"),
    "phone": ("phone", "phonenumber", "phone_number", "telephone"),
    "website": ("website", "url", "web"),
    "latitude": ("latitude", "lat"),
    "longitude": ("longitude", "lng", "lon", "long"),
    "facility_type": ("facilitytype", "facility_type", "typelabel"),
    "source_id": ("sourceid", "source_id", "id", "frid", "facilityid", "facility_id"),
    "verified": ("verified", "isverified", "is_verified"),
}
SERVICE_FIELDS = (
    "allservices",
    "all_services",
    "services",
    "servicesprovided",
    "residentialservices",
    "residential_services",
)
INSURANCE_FIELDS = (
    "acceptedinsurance",
    "accepted_insurance",
    "insurance",
    "insuranceaccepted",
    "paymenttypes",
    "paymentaccepted",
)
API_SERVICE_FLAGS = {
    "detox": "Detox",
    "residential": "Residential Treatment",
    "outpatient": "Outpatient",
    "mat": "Medication-Assisted Treatment",
    "telehealth": "Telehealth",
}
API_INSURANCE_FLAGS = {
    "medicaid": "Medicaid",
    "medicare": "Medicare",
    "privateins": "Private Insurance",
    "selfpay": "Self Pay",
}
TRUTHY = {"1", "true", "yes", "y", "t"}

_WHITESPACE_RE = re.compile(r"\s+")
_NON_DIGIT_RE = re.compile(r"\D")
_ZIP_RE = re.compile(r"[^0-9-]")
_STATE_RE = re.compile(r"^[A-Z]{2}$")
_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


class _UnparsableServices(ValueError):
    pass


def _lower_keys(raw: RawRecord) -> dict[str, Any]:
    return {str(key).strip().lower(): value for key, value in raw.items()}


def _lookup_first(fields: dict[str, Any], candidates: Iterable[str]) -> Any | None:
    for key in candidates:
        if key in fields and fields[key] not in (None, ""):
            return fields[key]
    return None


def clean_text(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = _WHITESPACE_RE.sub(" ", str(value)).strip()
    return cleaned or None


def is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUTHY


def normalize_phone(value: Any) -> tuple[str | None, bool]:
    text = clean_text(value)
    if text is None:
        return None, False
    digits = _NON_DIGIT_RE.sub("", text)
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}", False
    return text, True


def normalize_website(value: Any) -> str | None:
    text = clean_text(value)
    if text is None:
        return None
    if not _SCHEME_RE.match(text):
        return f"https://{text}"
    return text


def normalize_state(value: str) -> tuple[str, bool]:
    candidate = value.upper()
    if _STATE_RE.match(candidate):
        return candidate, False
    return value, True


def normalize_zip(value: Any) -> str | None:
    text = clean_text(value)
    if text is None:
        return None
    cleaned = _ZIP_RE.sub("", text)[:10]
    return cleaned or None


def _safe_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def split_tokens(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        parts = value.split(SERVICE_DELIMITER)
    elif isinstance(value, (list, tuple)):
        parts = []
        for item in value:
            if not isinstance(item, str):
                raise _UnparsableServices(f"non-string entry {item!r}")
            parts.extend(item.split(SERVICE_DELIMITER))
    else:
        raise _UnparsableServices(f"unsupported value type {type(value).__name__}")
    tokens = (_WHITESPACE_RE.sub(" ", part).strip() for part in parts)
    return [token for token in tokens if token]


def unique_tokens(tokens: Iterable[str]) -> tuple[str, ...]:
    seen: set[str] = set()
    out: list[str] = []
    for token in tokens:
        key = token.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(token)
    return tuple(out)


def _collect_tokens(
    fields: dict[str, Any],
    field_names: Iterable[str],
    flags: dict[str, str],
    *,
    use_flags: bool,
) -> tuple[str, ...]:
    tokens: list[str] = []
    for name in field_names:
        if name in fields:
            tokens.extend(split_tokens(fields[name]))
    if use_flags:
        for flag, label in flags.items():
            if is_truthy(fields.get(flag)):
                tokens.append(label)
    return unique_tokens(tokens)


def _coordinates(fields: dict[str, Any], source_epsg: int, metadata: dict) -> tuple[float | None, float | None]:
    raw_lat = _lookup_first(fields, FIELD_ALIASES["latitude"])
    raw_lon = _lookup_first(fields, FIELD_ALIASES["longitude"])
    if raw_lat is None and raw_lon is None:
        return None, None

    lat = _safe_float(raw_lat)
    lon = _safe_float(raw_lon)
    if lat is None or lon is None:
        metadata["coordinatesUnparsable"] = True
        return None, None

    if source_epsg != WGS84_EPSG:
        transformed = transform_to_wgs84(lat, lon, source_epsg)
        if transformed is None:
            metadata["coordinatesTransformFailed"] = True
            return None, None
        lat, lon = transformed
    return lat, lon


def normalize(
    raw: RawRecord,
    source_format: SourceFormat | str,
    *,
    source_epsg: int = WGS84_EPSG,
) -> FacilityRecord | NormalizationError:
    fmt = SourceFormat(source_format)
    fields = _lower_keys(raw)

    name = clean_text(_lookup_first(fields, FIELD_ALIASES["name"]))
    city = clean_text(_lookup_first(fields, FIELD_ALIASES["city"]))
    raw_state = clean_text(_lookup_first(fields, FIELD_ALIASES["state"]))

    missing = [label for label, value in (("name", name), ("city", city), ("state", raw_state)) if value is None]
    if missing:
        return NormalizationError(
            "MissingRequiredField",
            f"missing required field(s): {', '.join(missing)}",
        )

    record_id = facility_id(name, city, raw_state)
    metadata: dict[str, Any] = {"sourceFormat": fmt.value}

    try:
        services_display = _collect_tokens(
            fields,
            SERVICE_FIELDS,
            API_SERVICE_FLAGS,
            use_flags=fmt is SourceFormat.API,
        )
    except _UnparsableServices as exc:
        return NormalizationError("UnparsableServiceList", f"service list unparsable: {exc}", record_id=record_id)

    try:
        insurance = _collect_tokens(
            fields,
            INSURANCE_FIELDS,
            API_INSURANCE_FLAGS,
            use_flags=fmt is SourceFormat.API,
        )
    except _UnparsableServices:
        insurance = ()
        metadata["insuranceUnparsable"] = True

    state, state_malformed = normalize_state(raw_state)
    if state_malformed:
        metadata["stateMalformed"] = True

    phone, phone_malformed = normalize_phone(_lookup_first(fields, FIELD_ALIASES["phone"]))
    if phone_malformed:
        metadata["phoneMalformed"] = True

    street_parts = [
        clean_text(_lookup_first(fields, FIELD_ALIASES["street"])),
        clean_text(_lookup_first(fields, FIELD_ALIASES["street2"])),
    ]
    street = ", ".join(part for part in street_parts if part) or None

    latitude, longitude = _coordinates(fields, source_epsg, metadata)

    source_id = _lookup_first(fields, FIELD_ALIASES["source_id"])
    service_list = frozenset(token.lower() for token in services_display)

    return FacilityRecord(
        id=record_id,
        name=name,
        city=city,
        state=state,
        street=street,
        zip=normalize_zip(_lookup_first(fields, FIELD_ALIASES["zip"])),
        latitude=latitude,
        longitude=longitude,
        phone=phone,
        website=normalize_website(_lookup_first(fields, FIELD_ALIASES["website"])),
        service_list=service_list,
        services_display=services_display,
        is_residential=any("residential" in token for token in service_list),
        accepted_insurance=insurance,
        facility_type=clean_text(_lookup_first(fields, FIELD_ALIASES["facility_type"])),
        source_id=str(source_id) if source_id is not None else None,
        source_data=dict(raw),
        metadata=metadata,
        verified=is_truthy(_lookup_first(fields, FIELD_ALIASES["verified"])),
    )
