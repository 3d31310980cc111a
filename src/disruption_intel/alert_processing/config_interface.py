"""
Configuration Interface for the disruption alert pipeline.

This module provides Pydantic models for loading, validating, and accessing
the configuration defined in config.yaml together with the synonym map it
references. All models forbid unknown keys so that a typo in the YAML fails
loudly at startup instead of silently falling back to a default.

Usage:
    from disruption_intel.alert_processing.config_interface import load_config

    config = load_config("config/config.yaml")

    locations = config.locations
    taxonomy = config.taxonomy
    synonyms = config.synonyms
    generation = config.generation
    schedule = config.schedule
    llm = config.llm
"""
import hashlib
from datetime import time
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Weekday = Literal["mon", "tue", "wed", "thu", "fri", "sat", "sun"]

WEEKDAY_INDEX: dict[str, int] = {
    "mon": 0, "tue": 1, "wed": 2, "thu": 3, "fri": 4, "sat": 5, "sun": 6,
}

# BASE CONFIGURATION CLASSES

class StrictModel(BaseModel):
    """Base model with strict validation - forbids unknown keys."""

    model_config = ConfigDict(extra="forbid", validate_default=True, frozen=True)

# SECTION 1: LOCATIONS

class LocationDefinition(StrictModel):
    """A city the generation run iterates over."""

    city: str
    country: str
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)

# SECTION 2: TAXONOMY AND SYNONYMS

class Taxonomy(StrictModel):
    """Category to sub-category mapping plus the audience enumeration."""

    categories: dict[str, list[str]]
    audiences: list[str]

    @field_validator("categories")
    @classmethod
    def categories_not_empty(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        """Every category needs at least one sub-category."""
        empty = [name for name, subs in v.items() if not subs]
        if empty:
            raise ValueError(f"Categories without sub-categories: {empty}")
        return v

    def is_category(self, name: str) -> bool:
        """Check category membership."""
        return name in self.categories

    def allows(self, category: str, sub_category: str) -> bool:
        """Check that *sub_category* belongs to *category*."""
        return sub_category in self.categories.get(category, [])


class SynonymMap(StrictModel):
    """
    Data-driven synonym tables applied before taxonomy checks.

    Lookups are case-insensitive on the synonym side; the canonical values are
    returned verbatim.
    """

    category: dict[str, str] = Field(default_factory=dict)
    sub_category: dict[str, str] = Field(default_factory=dict)
    impact_level: dict[str, str] = Field(default_factory=dict)

    @staticmethod
    def _lookup(table: dict[str, str], value: str) -> Optional[str]:
        needle = value.strip().lower()
        for synonym, canonical in table.items():
            if synonym.lower() == needle:
                return canonical
        return None

    def canonical_category(self, value: str) -> Optional[str]:
        """Return the canonical category for a synonym, if known."""
        return self._lookup(self.category, value)

    def canonical_sub_category(self, value: str) -> Optional[str]:
        """Return the canonical sub-category for a synonym, if known."""
        return self._lookup(self.sub_category, value)

    def canonical_impact_level(self, value: str) -> Optional[str]:
        """Return the canonical impact level for a synonym, if known."""
        return self._lookup(self.impact_level, value)

# SECTION 3: GENERATION

class GenerationSettings(StrictModel):
    """Settings for the location x segment generation run."""

    discovery_horizon_days: int = Field(default=14, gt=0)
    validity_horizon_days: int = Field(default=15, gt=0)
    local_alert_quota: int = Field(default=6, ge=0)
    global_alert_quota: int = Field(default=2, ge=0)
    min_sources_per_alert: int = Field(default=1, ge=1)
    min_candidate_confidence: float = Field(default=0.5, ge=0, le=1)
    segments: list[str] = Field(default_factory=list)
    inter_call_delay_seconds: float = Field(default=1.0, ge=0)

# SECTION 4: DEDUPLICATION AND TRIAGE

class DeduplicationSettings(StrictModel):
    """Duplicate detection thresholds."""

    similarity_threshold: float = Field(default=0.8, ge=0, le=1)
    lookback_days: int = Field(default=7, gt=0)
    exact_match_similarity: float = Field(default=0.95, ge=0, le=1)


class TriageSettings(StrictModel):
    """Confidence-to-status thresholds."""

    approve_threshold: float = Field(default=0.9, ge=0, le=1)
    pending_threshold: float = Field(default=0.5, ge=0, le=1)
    email_summary_threshold: float = Field(default=0.8, ge=0, le=1)

    @model_validator(mode="after")
    def thresholds_ordered(self) -> "TriageSettings":
        """Pending threshold must not exceed the approve threshold."""
        if self.pending_threshold > self.approve_threshold:
            raise ValueError("triage.pending_threshold must be <= triage.approve_threshold")
        return self

# SECTION 5: AUTO UPDATE

class AutoUpdateSettings(StrictModel):
    """Settings for the update scan."""

    cooldown_days: float = Field(default=2, gt=0)
    confidence_threshold: float = Field(default=0.7, ge=0, le=1)
    inter_call_delay_seconds: float = Field(default=1.0, ge=0)

# SECTION 6: SCHEDULE

class CadenceDefinition(StrictModel):
    """
    Either a weekly cadence (``days`` + ``at``) or a day-of-month stepping
    cadence (``every_n_days`` + ``at``).
    """

    days: Optional[list[Weekday]] = None
    every_n_days: Optional[int] = Field(default=None, gt=0)
    at: time

    @field_validator("days", mode="before")
    @classmethod
    def normalize_days(cls, v: Any) -> Any:
        """Accept capitalised or full weekday names."""
        if v is None:
            return v
        return [str(d).strip().lower()[:3] for d in v]

    @model_validator(mode="after")
    def exactly_one_kind(self) -> "CadenceDefinition":
        """A cadence is weekly or stepping, never both."""
        if (self.days is None) == (self.every_n_days is None):
            raise ValueError("cadence needs exactly one of 'days' or 'every_n_days'")
        if self.days is not None and not self.days:
            raise ValueError("cadence 'days' cannot be empty")
        return self


class ScheduleSettings(StrictModel):
    """Cadences for both run kinds and the timezone they are expressed in."""

    timezone: str = "Europe/London"
    generation: CadenceDefinition
    update_scan: CadenceDefinition

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, v: str) -> str:
        """Timezone must be a valid IANA name."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

# SECTION 7: LLM

class LLMPurpose(StrEnum):
    """Calls made to the generative service."""

    DISCOVERY = "discovery"
    SYNTHESIS = "synthesis"
    UPDATE_CHECK = "update_check"


class SamplingParameters(StrictModel):
    """Per-purpose sampling parameters."""

    temperature: float = Field(default=0.3, ge=0, le=2)
    top_p: float = Field(default=0.8, gt=0, le=1)
    top_k: Optional[int] = Field(default=20, gt=0)
    max_output_tokens: int = Field(default=4000, gt=0)


class LLMConfig(StrictModel):
    """Endpoint, credentials and sampling configuration for the generative service."""

    model_id: str
    base_url: Optional[str] = None  # None uses the OpenAI default endpoint
    api_key_env: str = "OPENAI_API_KEY"
    timeout: float = Field(default=120, gt=0)
    json_mode: bool = False
    purposes: dict[LLMPurpose, SamplingParameters] = Field(default_factory=dict)

    def get_parameters(self, purpose: LLMPurpose) -> SamplingParameters:
        """Get sampling parameters for a purpose, falling back to defaults."""
        return self.purposes.get(purpose, SamplingParameters())

# SECTION 8: DATABASE

class DatabaseSettings(StrictModel):
    """SQLite location."""

    path: str = "database/alerts.db"

# ROOT CONFIGURATION

class Config(StrictModel):
    """Root configuration model."""

    locations: dict[str, LocationDefinition]
    taxonomy: Taxonomy
    synonyms_file: Optional[str] = None
    synonyms: SynonymMap = Field(default_factory=SynonymMap)
    generation: GenerationSettings = Field(default_factory=GenerationSettings)
    deduplication: DeduplicationSettings = Field(default_factory=DeduplicationSettings)
    triage: TriageSettings = Field(default_factory=TriageSettings)
    auto_update: AutoUpdateSettings = Field(default_factory=AutoUpdateSettings)
    schedule: ScheduleSettings
    llm: LLMConfig
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)

    @field_validator("locations")
    @classmethod
    def locations_not_empty(cls, v: dict[str, LocationDefinition]) -> dict[str, LocationDefinition]:
        """At least one location is required."""
        if not v:
            raise ValueError("At least one location must be configured")
        return v

    @model_validator(mode="after")
    def cross_check(self) -> "Config":
        """Synonyms and segments must point at known taxonomy values."""
        bad_categories = {
            c for c in self.synonyms.category.values() if not self.taxonomy.is_category(c)
        }
        if bad_categories:
            raise ValueError(f"Category synonyms map to unknown categories: {sorted(bad_categories)}")
        known_subs = {s for subs in self.taxonomy.categories.values() for s in subs}
        bad_subs = set(self.synonyms.sub_category.values()) - known_subs
        if bad_subs:
            raise ValueError(f"Sub-category synonyms map to unknown values: {sorted(bad_subs)}")
        bad_impacts = set(self.synonyms.impact_level.values()) - {"Low", "Moderate", "High"}
        if bad_impacts:
            raise ValueError(f"Impact synonyms map to unknown levels: {sorted(bad_impacts)}")
        bad_segments = set(self.generation.segments) - set(self.taxonomy.audiences)
        if bad_segments:
            raise ValueError(f"Generation segments are not known audiences: {sorted(bad_segments)}")
        return self

    def get_location(self, key: str) -> Optional[LocationDefinition]:
        """Get a location by registry key or city name (case-insensitive)."""
        if key in self.locations:
            return self.locations[key]
        for location in self.locations.values():
            if location.city.lower() == key.lower():
                return location
        return None


def _read_yaml(path: Path) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected mapping at top-level in {path}, got {type(data).__name__}")
    return data


def load_config(config_path: Union[str, Path]) -> Config:
    """Load and validate configuration (and its synonym map) from a YAML file."""
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    raw_config = _read_yaml(config_path)

    synonyms_file = raw_config.get("synonyms_file")
    if synonyms_file and "synonyms" not in raw_config:
        synonyms_path = config_path.parent / synonyms_file
        if not synonyms_path.exists():
            raise FileNotFoundError(f"Synonym map not found: {synonyms_path}")
        raw_config["synonyms"] = _read_yaml(synonyms_path)

    return Config.model_validate(raw_config)


def get_config_version(config: Config) -> str:
    """Generate a hash-based version string for the configuration."""
    config_json = config.model_dump_json(exclude_none=True)
    return hashlib.sha256(config_json.encode()).hexdigest()[:16]
