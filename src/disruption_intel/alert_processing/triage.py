"""Confidence-driven lifecycle status assignment."""
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from disruption_intel.alert_processing.config_interface import TriageSettings
from disruption_intel.alert_processing.data_models import AlertCandidate, AlertStatus
from disruption_intel.alert_processing.deduplication import DuplicateCheck

DEFAULT_APPROVE_THRESHOLD = 0.9
DEFAULT_PENDING_THRESHOLD = 0.5


class TriageDecision(BaseModel):
    """Status chosen for a candidate and the confidence that drove it."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    status: AlertStatus
    confidence_used: float = Field(ge=0, le=1)
    basis: Literal["generation_confidence", "duplicate_similarity"]


def classify_confidence(
    confidence: float,
    approve_threshold: float = DEFAULT_APPROVE_THRESHOLD,
    pending_threshold: float = DEFAULT_PENDING_THRESHOLD,
) -> AlertStatus:
    """
    Map a confidence value to a status.

    ``c >= approve`` is approved, ``pending <= c < approve`` is pending,
    anything lower is rejected.
    """
    if confidence >= approve_threshold:
        return AlertStatus.APPROVED
    if confidence >= pending_threshold:
        return AlertStatus.PENDING
    return AlertStatus.REJECTED


class TriageClassifier:
    """Assigns the creation status of generated alerts."""

    def __init__(self, settings: TriageSettings | None = None) -> None:
        """Initialize the classifier."""
        self._settings = settings or TriageSettings(
            approve_threshold=DEFAULT_APPROVE_THRESHOLD,
            pending_threshold=DEFAULT_PENDING_THRESHOLD,
        )

    def classify(self, confidence: float) -> AlertStatus:
        """Map a confidence value to a status."""
        return classify_confidence(
            confidence, self._settings.approve_threshold, self._settings.pending_threshold
        )

    def triage(self, candidate: AlertCandidate, duplicate: DuplicateCheck) -> TriageDecision:
        """
        Decide the status for a candidate.

        Duplicates are classified on their match similarity, everything else on
        the candidate's own generation confidence.
        """
        if duplicate.is_duplicate:
            return TriageDecision(
                status=self.classify(duplicate.similarity),
                confidence_used=duplicate.similarity,
                basis="duplicate_similarity",
            )
        return TriageDecision(
            status=self.classify(candidate.confidence),
            confidence_used=candidate.confidence,
            basis="generation_confidence",
        )
