"""
Duplicate detection for alert candidates.

A candidate is compared against stored alerts for the same origin city:

- exact match: identical description, overlapping expected window, stored
  status pending or approved; reported with a fixed similarity
- fuzzy match: token-set Jaccard similarity against alerts created in the
  trailing lookback window; the best score above the threshold wins

A duplicate is not discarded. The check result travels with the candidate to
triage and persistence so moderators can review it.
"""
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from disruption_intel.alert_processing.config_interface import DeduplicationSettings
from disruption_intel.alert_processing.data_models import AlertCandidate, AlertStatus
from disruption_intel.alert_processing.database_interface import AlertQuery, AlertStore
from disruption_intel.logger import get_logger

logger = get_logger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.8
DEFAULT_LOOKBACK_DAYS = 7
DEFAULT_EXACT_MATCH_SIMILARITY = 0.95

ACTIVE_STATUSES = [AlertStatus.PENDING, AlertStatus.APPROVED]


class MatchKind(StrEnum):
    """How a duplicate was detected."""

    NONE = "none"
    EXACT = "exact"
    FUZZY = "fuzzy"


class DuplicateCheck(BaseModel):
    """Outcome of comparing one candidate against stored alerts."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    is_duplicate: bool = False
    similarity: float = Field(default=0.0, ge=0, le=1)
    matched_alert_id: Optional[str] = None
    match_kind: MatchKind = MatchKind.NONE


NOT_DUPLICATE = DuplicateCheck()


def tokenize(text: str) -> set[str]:
    """Lower-cased whitespace tokens."""
    return set(text.lower().split())


def jaccard_similarity(text_a: str, text_b: str) -> float:
    """
    Token-set Jaccard similarity ``|A & B| / |A | B|``.

    Two texts with no tokens at all are identical (1.0).
    """
    tokens_a, tokens_b = tokenize(text_a), tokenize(text_b)
    union = tokens_a | tokens_b
    if not union:
        return 1.0
    return len(tokens_a & tokens_b) / len(union)


def windows_overlap(
    start_a: Optional[datetime],
    end_a: Optional[datetime],
    start_b: Optional[datetime],
    end_b: Optional[datetime],
) -> bool:
    """Closed-interval overlap where a missing bound is open-ended."""
    if start_a is not None and end_b is not None and start_a > end_b:
        return False
    if start_b is not None and end_a is not None and start_b > end_a:
        return False
    return True


class DeduplicationEngine:
    """Flags candidates that repeat an alert already in the store."""

    def __init__(self, store: AlertStore, settings: DeduplicationSettings | None = None) -> None:
        """Initialize the engine."""
        self._store = store
        self._settings = settings or DeduplicationSettings(
            similarity_threshold=DEFAULT_SIMILARITY_THRESHOLD,
            lookback_days=DEFAULT_LOOKBACK_DAYS,
            exact_match_similarity=DEFAULT_EXACT_MATCH_SIMILARITY,
        )

    async def check(self, candidate: AlertCandidate, now: datetime) -> DuplicateCheck:
        """
        Compare *candidate* with stored alerts for the same origin city.

        :param candidate: Validated candidate.
        :param now: Current instant; anchors the fuzzy lookback window.
        :return: Duplicate verdict with the similarity used downstream.
        """
        city = candidate.origin_location.city

        exact_matches = await self._store.find(
            AlertQuery(origin_city=city, description=candidate.description, statuses=ACTIVE_STATUSES)
        )
        for existing in exact_matches:
            if windows_overlap(
                candidate.expected_start, candidate.expected_end,
                existing.expected_start, existing.expected_end,
            ):
                logger.info("Exact duplicate of %s: %s", existing.id, candidate.title)
                return DuplicateCheck(
                    is_duplicate=True,
                    similarity=self._settings.exact_match_similarity,
                    matched_alert_id=existing.id,
                    match_kind=MatchKind.EXACT,
                )

        recent = await self._store.find(
            AlertQuery(
                origin_city=city,
                statuses=ACTIVE_STATUSES,
                created_after=now - timedelta(days=self._settings.lookback_days),
            )
        )
        best_score, best_id = 0.0, None
        for existing in recent:
            score = jaccard_similarity(candidate.description, existing.description)
            if score > best_score:
                best_score, best_id = score, existing.id

        if best_score > self._settings.similarity_threshold:
            logger.info("Fuzzy duplicate of %s (similarity=%.2f): %s", best_id, best_score, candidate.title)
            return DuplicateCheck(
                is_duplicate=True,
                similarity=best_score,
                matched_alert_id=best_id,
                match_kind=MatchKind.FUZZY,
            )
        return NOT_DUPLICATE
