"""
Prompt construction for the two-stage generation call and the update check.

The discovery instruction asks the generative service for raw candidate
events inside a rolling window; the synthesis instruction turns those raw
candidates into structured alert records conforming to the taxonomy.
"""
from datetime import date, datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict

from disruption_intel.alert_processing.config_interface import Config, LocationDefinition
from disruption_intel.alert_processing.data_models import Alert
from disruption_intel.alert_processing.prompt_registry import PromptRegistry

DISCOVERY_SYSTEM = "discovery_system.jinja"
DISCOVERY_USER = "discovery_user.jinja"
SYNTHESIS_SYSTEM = "synthesis_system.jinja"
SYNTHESIS_USER = "synthesis_user.jinja"
UPDATE_CHECK_SYSTEM = "update_check_system.jinja"
UPDATE_CHECK_USER = "update_check_user.jinja"

REQUIRED_TEMPLATES = [
    DISCOVERY_SYSTEM, DISCOVERY_USER,
    SYNTHESIS_SYSTEM, SYNTHESIS_USER,
    UPDATE_CHECK_SYSTEM, UPDATE_CHECK_USER,
]

TITLE_MIN_WORDS = 5
TITLE_MAX_WORDS = 12


class PromptPair(BaseModel):
    """System instruction and user prompt for one call."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    system: str
    user: str


def _isodate(value: date | datetime) -> str:
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


PROMPT_FILTERS = {"isodate": _isodate}


class PromptBuilder:
    """Renders discovery, synthesis and update-check instructions."""

    def __init__(self, config: Config, registry: PromptRegistry | None = None) -> None:
        """Initialize the builder and check that every template is present."""
        self._config = config
        self._registry = registry or PromptRegistry(filters=PROMPT_FILTERS)
        self._registry.validate_files(REQUIRED_TEMPLATES)

    def _render_pair(self, system_template: str, user_template: str, context: dict[str, Any]) -> PromptPair:
        return PromptPair(
            system=self._registry.render(system_template, context),
            user=self._registry.render(user_template, context),
        )

    def _location_context(self, location: LocationDefinition, segment: str, today: date) -> dict[str, Any]:
        generation = self._config.generation
        return {
            "today": today,
            "horizon_days": generation.discovery_horizon_days,
            "window_end": today + timedelta(days=generation.discovery_horizon_days),
            "city": location.city,
            "country": location.country,
            "latitude": location.latitude,
            "longitude": location.longitude,
            "segment": segment,
        }

    def build_discovery(self, location: LocationDefinition, segment: str, today: date) -> PromptPair:
        """
        Render the discovery instruction for one location and audience segment.

        :param location: City to research.
        :param segment: Audience segment the alerts are written for.
        :param today: Date anchor written into the instruction.
        :return: Rendered system/user pair.
        """
        generation = self._config.generation
        context = self._location_context(location, segment, today)
        context.update(
            min_sources=generation.min_sources_per_alert,
            local_quota=generation.local_alert_quota,
            global_quota=generation.global_alert_quota,
            categories=list(self._config.taxonomy.categories),
        )
        return self._render_pair(DISCOVERY_SYSTEM, DISCOVERY_USER, context)

    def build_synthesis(
        self,
        location: LocationDefinition,
        segment: str,
        today: date,
        raw_candidates: str,
    ) -> PromptPair:
        """
        Render the synthesis instruction that structures raw discovery output.

        :param raw_candidates: Text returned by the discovery call, passed through verbatim.
        """
        context = self._location_context(location, segment, today)
        context.update(
            raw_candidates=raw_candidates,
            min_confidence=self._config.generation.min_candidate_confidence,
            title_min_words=TITLE_MIN_WORDS,
            title_max_words=TITLE_MAX_WORDS,
            categories=self._config.taxonomy.categories,
            audiences=self._config.taxonomy.audiences,
        )
        return self._render_pair(SYNTHESIS_SYSTEM, SYNTHESIS_USER, context)

    def build_update_check(self, alert: Alert, today: date) -> PromptPair:
        """Render the instruction asking whether *alert* needs an update."""
        context = {"today": today, "alert": alert.prompt_context()}
        return self._render_pair(UPDATE_CHECK_SYSTEM, UPDATE_CHECK_USER, context)
