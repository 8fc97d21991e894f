import pytest

from facility_etl.pipeline.geo import enrich, enrich_with_issue, geo_bucket, transform_to_wgs84, valid_lat_lon

CONTINENTAL_US = {"min_lat": 24.0, "max_lat": 50.0, "min_lon": -125.0, "max_lon": -66.0}


def test_latitude_95_is_rejected_and_nulled(make_record):
    record = make_record(latitude=95.0, longitude=-119.8, geo_bucket="stale")

    enriched, issue = enrich_with_issue(record)

    assert enriched.latitude is None
    assert enriched.longitude is None
    assert enriched.geo_bucket is None
    assert enriched.metadata["geoInvalid"] is True
    assert issue is not None
    assert issue.kind == "OutOfRange"
    assert issue.record_id == record.id


def test_valid_coordinates_get_a_bucket(make_record):
    enriched = enrich(make_record(latitude=39.5296, longitude=-119.8138))

    assert enriched.geo_bucket == "39.5:-119.9"
    assert "geoInvalid" not in enriched.metadata


@pytest.mark.parametrize(
    ("lat", "lon", "expected"),
    [
        (0.0, 0.0, "0.0:0.0"),
        (-0.05, 0.05, "-0.1:0.0"),
        (90.0, 180.0, "90.0:180.0"),
        (40.7128, -74.006, "40.7:-74.1"),
    ],
)
def test_geo_bucket_floors_to_tenth_degree(lat, lon, expected):
    assert geo_bucket(lat, lon) == expected


def test_missing_coordinates_pass_through_without_issue(make_record):
    enriched, issue = enrich_with_issue(make_record())

    assert issue is None
    assert enriched.geo_bucket is None


def test_outside_region_is_flagged_but_kept(make_record):
    honolulu = make_record(city="Honolulu", state="HI", latitude=21.3, longitude=-157.85)

    enriched = enrich(honolulu, region_bbox=CONTINENTAL_US)

    assert enriched.latitude == 21.3
    assert enriched.geo_bucket == "21.3:-157.9"
    assert enriched.metadata["geoOutsideRegion"] is True


def test_enrich_does_not_mutate_input(make_record):
    record = make_record(latitude=95.0, longitude=1.0)
    enrich(record)

    assert record.latitude == 95.0
    assert record.metadata == {}


def test_valid_lat_lon_bounds():
    assert valid_lat_lon(-90, -180)
    assert valid_lat_lon(90, 180)
    assert not valid_lat_lon(90.0001, 0)
    assert not valid_lat_lon(None, 0)


def test_transform_to_wgs84_identity_and_projection():
    assert transform_to_wgs84(39.5, -119.8, 4326) == (39.5, -119.8)
    lat, lon = transform_to_wgs84(0.0, 0.0, 3857)
    assert lat == pytest.approx(0.0, abs=1e-9)
    assert lon == pytest.approx(0.0, abs=1e-9)
