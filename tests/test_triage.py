import pytest

from conftest import EDINBURGH
from disruption_intel.alert_processing.config_interface import TriageSettings
from disruption_intel.alert_processing.data_models import AlertCandidate, AlertStatus
from disruption_intel.alert_processing.deduplication import NOT_DUPLICATE, DuplicateCheck, MatchKind
from disruption_intel.alert_processing.triage import TriageClassifier, classify_confidence


def candidate(confidence: float) -> AlertCandidate:
    return AlertCandidate(
        title="Storm warning issued for central belt",
        description="Met Office amber wind warning.",
        category="Extreme Weather",
        origin_location=EDINBURGH,
        confidence=confidence,
        source_url="https://www.metoffice.gov.uk",
    )


@pytest.mark.parametrize("confidence, expected", [
    (0.95, AlertStatus.APPROVED),
    (0.9, AlertStatus.APPROVED),
    (0.6, AlertStatus.PENDING),
    (0.5, AlertStatus.PENDING),
    (0.3, AlertStatus.REJECTED),
])
def test_classify_confidence(confidence, expected):
    assert classify_confidence(confidence) is expected


def test_custom_thresholds():
    classifier = TriageClassifier(TriageSettings(approve_threshold=0.8, pending_threshold=0.4))
    assert classifier.classify(0.85) is AlertStatus.APPROVED
    assert classifier.classify(0.45) is AlertStatus.PENDING
    assert classifier.classify(0.35) is AlertStatus.REJECTED


def test_thresholds_must_be_ordered():
    with pytest.raises(ValueError):
        TriageSettings(approve_threshold=0.4, pending_threshold=0.6)


def test_new_candidate_uses_its_own_confidence():
    decision = TriageClassifier().triage(candidate(0.95), NOT_DUPLICATE)
    assert decision.status is AlertStatus.APPROVED
    assert decision.basis == "generation_confidence"


def test_duplicate_uses_match_similarity():
    duplicate = DuplicateCheck(is_duplicate=True, similarity=0.85, matched_alert_id="abc", match_kind=MatchKind.FUZZY)
    decision = TriageClassifier().triage(candidate(0.95), duplicate)
    assert decision.status is AlertStatus.PENDING
    assert decision.confidence_used == 0.85
    assert decision.basis == "duplicate_similarity"
