import asyncio
from datetime import timedelta

import pytest

from conftest import EDINBURGH, START, make_alert
from disruption_intel.alert_processing.data_models import AlertCandidate, AlertStatus, Location
from disruption_intel.alert_processing.deduplication import (
    DeduplicationEngine,
    MatchKind,
    jaccard_similarity,
    windows_overlap,
)


def words(indices) -> str:
    return " ".join(f"word{i}" for i in indices)


def make_candidate(**overrides) -> AlertCandidate:
    fields = {
        "title": "Rail workers strike across Scottish network",
        "description": "ScotRail drivers walk out over pay, most services cancelled.",
        "category": "Industrial Action",
        "sub_category": "Strike",
        "origin_location": EDINBURGH,
        "impact_locations": [EDINBURGH],
        "expected_start": START + timedelta(days=2),
        "expected_end": START + timedelta(days=3),
        "confidence": 0.95,
        "source_url": "https://www.bbc.co.uk/news",
    }
    fields.update(overrides)
    return AlertCandidate(**fields)


@pytest.fixture
def engine(store, config):
    return DeduplicationEngine(store, config.deduplication)


def test_similarity_of_text_with_itself_is_one():
    text = "Storm Eowyn brings red warning for wind"
    assert jaccard_similarity(text, text) == 1.0


def test_similarity_is_case_insensitive_token_overlap():
    assert jaccard_similarity("Rail STRIKE today", "rail strike tomorrow") == pytest.approx(2 / 4)
    assert jaccard_similarity("", "") == 1.0
    assert jaccard_similarity("a b", "") == 0.0


def test_windows_overlap_treats_missing_bounds_as_open():
    day = timedelta(days=1)
    assert windows_overlap(START, START + day, START + day, None)
    assert not windows_overlap(START, START + day, START + 2 * day, START + 3 * day)
    assert windows_overlap(None, None, START, START)


def test_exact_description_match_in_active_status(engine, store):
    existing = make_alert(status=AlertStatus.PENDING)
    asyncio.run(store.create(existing))

    result = asyncio.run(engine.check(make_candidate(), START))

    assert result.is_duplicate
    assert result.match_kind is MatchKind.EXACT
    assert result.similarity == 0.95
    assert result.matched_alert_id == existing.id


def test_rejected_alerts_are_not_duplicates(engine, store):
    asyncio.run(store.create(make_alert(status=AlertStatus.REJECTED)))
    assert not asyncio.run(engine.check(make_candidate(), START)).is_duplicate


def test_same_description_with_disjoint_window_is_not_duplicate(engine, store):
    later = make_alert(
        expected_start=START + timedelta(days=10),
        expected_end=START + timedelta(days=11),
        created_at=START - timedelta(days=30),
        updated_at=START - timedelta(days=30),
    )
    asyncio.run(store.create(later))
    assert not asyncio.run(engine.check(make_candidate(), START)).is_duplicate


def test_fuzzy_match_above_threshold(engine, store):
    existing = make_alert(description=words(range(1, 20)))
    asyncio.run(store.create(existing))
    candidate = make_candidate(description=words([*range(1, 18), 20]))

    result = asyncio.run(engine.check(candidate, START))

    assert result.match_kind is MatchKind.FUZZY
    assert result.similarity == pytest.approx(0.85)
    assert result.matched_alert_id == existing.id


def test_fuzzy_match_at_or_below_threshold_is_not_duplicate(engine, store):
    asyncio.run(store.create(make_alert(description=words(range(1, 11)))))
    candidate = make_candidate(description=words([*range(1, 9), 11, 12]))
    # 8 shared tokens out of 12
    assert not asyncio.run(engine.check(candidate, START)).is_duplicate


def test_fuzzy_lookback_ignores_old_alerts(engine, store):
    old = make_alert(
        description=words(range(1, 20)),
        created_at=START - timedelta(days=8),
        updated_at=START - timedelta(days=8),
    )
    asyncio.run(store.create(old))
    candidate = make_candidate(description=words([*range(1, 18), 20]))
    assert not asyncio.run(engine.check(candidate, START)).is_duplicate


def test_other_cities_are_not_compared(engine, store):
    glasgow = Location(city="Glasgow", country="United Kingdom", latitude=55.86, longitude=-4.25)
    asyncio.run(store.create(make_alert(origin_location=glasgow, impact_locations=[glasgow])))
    assert not asyncio.run(engine.check(make_candidate(), START)).is_duplicate
