from datetime import datetime, timezone

import pytest

from conftest import START
from disruption_intel.alert_processing.data_models import ImpactLevel, Priority
from disruption_intel.alert_processing.validation import (
    DEFAULT_CONFIDENCE,
    AlertValidationError,
    AlertValidator,
    clamp_confidence,
    normalize_url,
)


def raw_record(**overrides):
    record = {
        "title": "Rail workers strike across Scottish network",
        "description": "ScotRail drivers walk out over pay; most services are cancelled.",
        "category": "Industrial Action",
        "subCategory": "Strike",
        "targetAudiences": ["Hotel", "Unicorn Wranglers", "hotel"],
        "impactLevel": "High",
        "expectedStart": "2025-03-05T06:00:00",
        "expectedEnd": "2025-03-06T23:00:00",
        "confidence": 0.92,
        "sourceName": "BBC News",
        "sourceUrl": "https://www.bbc.co.uk/news/scotland",
    }
    for key, value in overrides.items():
        if value is None:
            record.pop(key, None)
        else:
            record[key] = value
    return record


@pytest.fixture
def validator(config):
    return AlertValidator(config)


@pytest.fixture
def origin(config):
    return config.locations["edinburgh"]


def test_valid_record_is_normalized(validator, origin):
    candidate = validator.validate(raw_record(), origin, START)

    assert candidate.category == "Industrial Action"
    assert candidate.sub_category == "Strike"
    assert candidate.target_audiences == ["Hotel"]
    assert candidate.impact_level is ImpactLevel.HIGH
    assert candidate.priority is Priority.HIGH
    assert candidate.confidence == 0.92
    assert candidate.origin_location.city == "Edinburgh"
    assert candidate.impact_locations == [candidate.origin_location]
    assert candidate.expected_start.isoformat() == "2025-03-05T06:00:00+00:00"


def test_missing_required_field_rejected(validator, origin):
    with pytest.raises(AlertValidationError) as exc_info:
        validator.validate(raw_record(title=None), origin, START)
    assert exc_info.value.field == "title"


def test_end_before_start_rejected(validator, origin):
    record = raw_record(expectedStart="2025-03-06", expectedEnd="2025-03-05")
    with pytest.raises(AlertValidationError) as exc_info:
        validator.validate(record, origin, START)
    assert exc_info.value.field == "expected_end"


def test_single_date_must_fall_inside_window(validator, origin):
    outside = raw_record(expectedStart="2025-03-25", expectedEnd=None)
    with pytest.raises(AlertValidationError):
        validator.validate(outside, origin, START)

    inside = raw_record(expectedStart="2025-03-10", expectedEnd=None)
    assert validator.validate(inside, origin, START).expected_end is None


def test_ongoing_range_overlapping_window_accepted(validator, origin):
    record = raw_record(expectedStart="2025-03-01", expectedEnd="2025-03-04")
    assert validator.validate(record, origin, START).expected_start.day == 1


def test_range_entirely_in_past_rejected(validator, origin):
    record = raw_record(expectedStart="2025-02-20", expectedEnd="2025-02-25")
    with pytest.raises(AlertValidationError):
        validator.validate(record, origin, START)


def test_stale_year_rejected(validator, origin):
    record = raw_record(expectedStart="2024-03-05", expectedEnd=None)
    with pytest.raises(AlertValidationError) as exc_info:
        validator.validate(record, origin, START)
    assert exc_info.value.field == "expected_start"


def test_unparseable_date_rejected(validator, origin):
    with pytest.raises(AlertValidationError):
        validator.validate(raw_record(expectedEnd="sometime soon"), origin, START)


@pytest.mark.parametrize("value", ["9999-12-31T23:00:00-05:00", "0001-01-01T01:00:00+05:00"])
def test_out_of_range_date_rejected(validator, origin, value):
    with pytest.raises(AlertValidationError) as exc_info:
        validator.validate(raw_record(expectedStart=value, expectedEnd=None), origin, START)
    assert exc_info.value.field == "expected_start"


def test_naive_dates_read_in_schedule_timezone(validator, origin):
    summer = datetime(2025, 6, 2, 10, 0, tzinfo=timezone.utc)
    record = raw_record(expectedStart="2025-06-17T23:30:00", expectedEnd=None)

    candidate = validator.validate(record, origin, summer)

    assert candidate.expected_start == datetime(2025, 6, 17, 22, 30, tzinfo=timezone.utc)


def test_no_dates_accepted(validator, origin):
    candidate = validator.validate(raw_record(expectedStart=None, expectedEnd=None), origin, START)
    assert candidate.expected_start is None and candidate.expected_end is None


def test_synonyms_mapped_to_taxonomy(validator, origin):
    record = raw_record(category="weather", subCategory="Heavy Rain", impactLevel="Severe")
    candidate = validator.validate(record, origin, START)
    assert candidate.category == "Extreme Weather"
    assert candidate.sub_category == "Storm"
    assert candidate.impact_level is ImpactLevel.HIGH


def test_unknown_impact_level_defaults_to_moderate(validator, origin):
    candidate = validator.validate(raw_record(impactLevel="catastrophic"), origin, START)
    assert candidate.impact_level is ImpactLevel.MODERATE


def test_unknown_category_rejected(validator, origin):
    with pytest.raises(AlertValidationError) as exc_info:
        validator.validate(raw_record(category="Alien Invasion"), origin, START)
    assert exc_info.value.field == "category"


def test_sub_category_must_belong_to_category(validator, origin):
    with pytest.raises(AlertValidationError) as exc_info:
        validator.validate(raw_record(subCategory="Storm"), origin, START)
    assert exc_info.value.field == "sub_category"


def test_source_url_scheme_added():
    assert normalize_url("www.bbc.co.uk/news") == "https://www.bbc.co.uk/news"
    assert normalize_url("http://localhost:8080/x") == "http://localhost:8080/x"


@pytest.mark.parametrize("bad", [None, "", "not a url", "ftp://example.com/file", "https://intranet/page"])
def test_source_url_rejected(bad):
    with pytest.raises(AlertValidationError):
        normalize_url(bad)


def test_missing_source_url_rejects_record(validator, origin):
    with pytest.raises(AlertValidationError) as exc_info:
        validator.validate(raw_record(sourceUrl=None), origin, START)
    assert exc_info.value.field == "source_url"


def test_confidence_clamped_and_defaulted():
    assert clamp_confidence(None) == DEFAULT_CONFIDENCE
    assert clamp_confidence("high") == DEFAULT_CONFIDENCE
    assert clamp_confidence("1.5") == 1.0
    assert clamp_confidence(-0.2) == 0.0
    assert clamp_confidence(0.42) == 0.42


def test_impact_location_without_coordinates_inherits_origin(validator, origin):
    record = raw_record(impactLocations=[{"city": "Leith"}])
    location = validator.validate(record, origin, START).impact_locations[0]
    assert location.city == "Leith"
    assert (location.latitude, location.longitude) == (origin.latitude, origin.longitude)


@pytest.mark.parametrize("entry", [
    {"city": "Leith", "latitude": 95, "longitude": -3.1},
    {"city": "Leith", "latitude": 55.9, "longitude": 181},
    {"city": "Leith", "latitude": "north", "longitude": -3.1},
])
def test_bad_impact_coordinates_rejected(validator, origin, entry):
    with pytest.raises(AlertValidationError) as exc_info:
        validator.validate(raw_record(impactLocations=[entry]), origin, START)
    assert exc_info.value.field == "impact_locations"
