"""Coordinate validation, CRS transformation, and coarse geo buckets."""

from __future__ import annotations

import math
from functools import lru_cache

from pyproj import CRS, Transformer
from pyproj.exceptions import CRSError, ProjError

from facility_etl.common.errors import GeoValidationError
from facility_etl.common.models import FacilityRecord

WGS84_EPSG = 4326
BUCKET_CELLS_PER_DEGREE = 10


def valid_lat_lon(lat: float | None, lon: float | None) -> bool:
    if lat is None or lon is None:
        return False
    return -90 <= lat <= 90 and -180 <= lon <= 180


def within_bbox(lat: float, lon: float, bbox: dict) -> bool:
    return (
        bbox["min_lat"] <= lat <= bbox["max_lat"]
        and bbox["min_lon"] <= lon <= bbox["max_lon"]
    )


@lru_cache(maxsize=16)
def _transformer(source_epsg: int) -> Transformer:
    return Transformer.from_crs(CRS.from_epsg(source_epsg), CRS.from_epsg(WGS84_EPSG), always_xy=True)


def transform_to_wgs84(lat: float, lon: float, source_epsg: int) -> tuple[float, float] | None:
    if source_epsg == WGS84_EPSG:
        return lat, lon
    try:
        transformed_lon, transformed_lat = _transformer(source_epsg).transform(lon, lat)
    except (CRSError, ProjError):
        return None
    if math.isinf(transformed_lat) or math.isinf(transformed_lon):
        return None
    return transformed_lat, transformed_lon


def _cell(value: float) -> float:
    return math.floor(value * BUCKET_CELLS_PER_DEGREE) / BUCKET_CELLS_PER_DEGREE


def geo_bucket(lat: float, lon: float) -> str:
    return f"{_cell(lat):.1f}:{_cell(lon):.1f}"


def enrich_with_issue(
    record: FacilityRecord,
    *,
    region_bbox: dict | None = None,
) -> tuple[FacilityRecord, GeoValidationError | None]:
    lat, lon = record.latitude, record.longitude
    metadata = dict(record.metadata)

    if lat is None and lon is None:
        return record.with_changes(geo_bucket=None), None

    if not valid_lat_lon(lat, lon):
        metadata["geoInvalid"] = True
        issue = GeoValidationError(
            "OutOfRange",
            f"coordinates out of range: lat={lat!r} lon={lon!r}",
            record_id=record.id,
        )
        return record.with_changes(latitude=None, longitude=None, geo_bucket=None, metadata=metadata), issue

    metadata.pop("geoInvalid", None)
    if region_bbox is not None and not within_bbox(lat, lon, region_bbox):
        metadata["geoOutsideRegion"] = True
    else:
        metadata.pop("geoOutsideRegion", None)

    return record.with_changes(geo_bucket=geo_bucket(lat, lon), metadata=metadata), None


def enrich(record: FacilityRecord, *, region_bbox: dict | None = None) -> FacilityRecord:
    enriched, _issue = enrich_with_issue(record, region_bbox=region_bbox)
    return enriched
