from datetime import datetime, timezone

from facility_etl.pipeline.merge import merge

CREATED = datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_populated_value_beats_empty(make_record):
    existing = make_record(phone="(775) 555-0100", created_at=CREATED)
    incoming = make_record(website="https://hopehouse.example")

    result = merge(existing, incoming)

    assert result.changed is True
    assert result.record.phone == "(775) 555-0100"
    assert result.record.website == "https://hopehouse.example"


def test_higher_score_wins_conflicting_values(make_record):
    existing = make_record(
        street="1 Old Rd",
        phone="(775) 555-0100",
        service_list=frozenset({"detox"}),
        services_display=("Detox",),
    )
    incoming = make_record(street="2 New Rd")

    assert merge(existing, incoming).record.street == "1 Old Rd"


def test_score_tie_goes_to_incoming(make_record):
    existing = make_record(street="1 Old Rd")
    incoming = make_record(street="2 New Rd")

    assert merge(existing, incoming).record.street == "2 New Rd"


def test_verified_is_sticky(make_record):
    existing = make_record(verified=True, created_at=CREATED, quality_score=0.3)
    incoming = make_record(verified=False)

    result = merge(existing, incoming)

    assert result.record.verified is True
    assert result.changed is False


def test_created_at_is_preserved(make_record):
    existing = make_record(created_at=CREATED, last_updated=CREATED)
    incoming = make_record(phone="(775) 555-0100", created_at=datetime(2026, 1, 1, tzinfo=timezone.utc))

    merged = merge(existing, incoming).record

    assert merged.created_at == CREATED
    assert merged.last_updated == CREATED


def test_services_are_unioned_and_residential_recomputed(make_record):
    existing = make_record(service_list=frozenset({"detox"}), services_display=("Detox",))
    incoming = make_record(service_list=frozenset({"residential"}), services_display=("Residential",))

    merged = merge(existing, incoming).record

    assert merged.service_list == frozenset({"detox", "residential"})
    assert merged.services_display == ("Detox", "Residential")
    assert merged.is_residential is True


def test_coordinates_move_together(make_record):
    existing = make_record(latitude=39.5, longitude=-119.8, geo_bucket="39.5:-119.8")
    incoming = make_record(latitude=39.6, longitude=None)

    merged = merge(existing, incoming).record

    assert (merged.latitude, merged.longitude, merged.geo_bucket) == (39.5, -119.8, "39.5:-119.8")


def test_identical_record_is_unchanged_and_merge_is_idempotent(make_record):
    record = make_record(phone="(775) 555-0100", service_list=frozenset({"detox"}), services_display=("Detox",))
    record = record.with_changes(quality_score=merge(record, record).record.quality_score)

    first = merge(record, record)
    second = merge(first.record, record)

    assert first.changed is False
    assert second.record == first.record


def test_quality_score_is_recomputed(make_record):
    existing = make_record(quality_score=0.3)
    incoming = make_record(phone="(775) 555-0100", quality_score=0.0)

    assert merge(existing, incoming).record.quality_score == 0.6


def test_out_of_range_coordinates_count_as_empty(make_record):
    existing = make_record(latitude=39.5, longitude=-119.8)
    incoming = make_record(latitude=95.0, longitude=-119.8, phone="(775) 555-0100", website="https://hope.example")

    merged = merge(existing, incoming).record

    assert (merged.latitude, merged.longitude) == (39.5, -119.8)


def test_field_flags_follow_the_kept_value(make_record):
    existing = make_record(phone="775-55", metadata={"phoneMalformed": True, "geoInvalid": True, "sourceFormat": "csv"})
    incoming = make_record(phone="(775) 555-0100", latitude=39.5, longitude=-119.8, metadata={"sourceFormat": "api"})

    merged = merge(existing, incoming).record

    assert merged.metadata == {"sourceFormat": "api"}


def test_field_flags_survive_when_incoming_omits_the_field(make_record):
    existing = make_record(phone="775-55", metadata={"phoneMalformed": True})
    incoming = make_record(website="https://hope.example")

    assert merge(existing, incoming).record.metadata["phoneMalformed"] is True
