"""
Validation of structured alert candidates.

Checks run in a fixed order and the first hard violation rejects the record
with ``AlertValidationError``. Minor issues are repaired in place: synonyms
are remapped to canonical taxonomy values, scheme-less URLs get ``https://``,
confidence is clamped into [0, 1], unknown audiences are dropped and impact
locations without coordinates inherit the origin's.
"""
import math
from datetime import date, datetime, timedelta
from typing import Any, Optional
from urllib.parse import urlparse
from zoneinfo import ZoneInfo

from disruption_intel.alert_processing.config_interface import Config, LocationDefinition
from disruption_intel.alert_processing.data_models import (
    AlertCandidate,
    ImpactLevel,
    Location,
    parse_date_str,
)
from disruption_intel.logger import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIDENCE = 0.7

# raw payload keys accepted for each candidate field, in lookup order
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "title": ("title", "header"),
    "description": ("description", "summary"),
    "category": ("category", "alertCategory"),
    "sub_category": ("subCategory", "sub_category", "alertType", "type"),
    "target_audiences": ("targetAudiences", "target_audiences", "targetAudience"),
    "impact_level": ("impactLevel", "impact_level", "impact", "severity"),
    "expected_start": ("expectedStart", "expected_start", "start"),
    "expected_end": ("expectedEnd", "expected_end", "end"),
    "impact_locations": ("impactLocations", "impact_locations"),
    "confidence": ("confidence",),
    "source_name": ("sourceName", "source_name", "source"),
    "source_url": ("sourceUrl", "source_url", "url"),
    "mitigation": ("mitigation",),
    "recommended_action": ("recommendedAction", "recommended_action", "recommendation"),
}


class AlertValidationError(Exception):
    """A candidate violates a hard constraint and must be dropped."""

    def __init__(self, reason: str, field: Optional[str] = None) -> None:
        """Initialize the exception."""
        self.reason = reason
        self.field = field
        super().__init__(f"{field}: {reason}" if field else reason)


def pick(raw: dict[str, Any], field: str) -> Any:
    """Return the first non-empty value among the aliases of *field*."""
    for key in FIELD_ALIASES[field]:
        value = raw.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def normalize_url(value: Any) -> str:
    """
    Prefix a missing scheme and check the result is an absolute http(s) URL.

    :raises AlertValidationError: If the URL is missing or malformed.
    """
    if not isinstance(value, str) or not value.strip():
        raise AlertValidationError("source URL is required", "source_url")
    url = value.strip()
    if "://" not in url:
        url = "https://" + url.lstrip("/")
    parsed = urlparse(url)
    host = parsed.hostname or ""
    if (
        parsed.scheme not in ("http", "https")
        or not host
        or any(ch.isspace() for ch in url)
        or ("." not in host and host != "localhost")
    ):
        raise AlertValidationError(f"not a valid absolute URL: {value!r}", "source_url")
    return url


def clamp_confidence(value: Any) -> float:
    """Coerce confidence to a float in [0, 1]; missing or garbage values get the default."""
    if value is None or isinstance(value, bool):
        return DEFAULT_CONFIDENCE
    try:
        number = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if math.isnan(number):
        return DEFAULT_CONFIDENCE
    return min(1.0, max(0.0, number))


def _coordinate(value: Any, field: str, low: float, high: float) -> float:
    if isinstance(value, bool):
        raise AlertValidationError(f"{field} is not numeric: {value!r}", "impact_locations")
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise AlertValidationError(f"{field} is not numeric: {value!r}", "impact_locations") from e
    if math.isnan(number) or not low <= number <= high:
        raise AlertValidationError(f"{field} out of range: {number}", "impact_locations")
    return number


class AlertValidator:
    """Enforces schema, taxonomy, URL and temporal-window rules on raw candidates."""

    def __init__(self, config: Config) -> None:
        """Initialize the validator from configuration."""
        self._taxonomy = config.taxonomy
        self._synonyms = config.synonyms
        self._horizon_days = config.generation.validity_horizon_days
        self._tz = ZoneInfo(config.schedule.timezone)

    def local_today(self, now: datetime) -> date:
        """Today's date in the configured timezone."""
        return now.astimezone(self._tz).date()

    def validate(self, raw: dict[str, Any], origin: LocationDefinition, now: datetime) -> AlertCandidate:
        """
        Validate one raw candidate.

        :param raw: Record as parsed from the synthesis response.
        :param origin: Location the record was generated for.
        :param now: Current instant; anchors the year check and the window.
        :return: Validated candidate.
        :raises AlertValidationError: On the first hard violation.
        """
        for field in ("title", "description", "category"):
            value = pick(raw, field)
            if not isinstance(value, str) or not value.strip():
                raise AlertValidationError("required field missing", field)

        expected_start, expected_end = self._parse_dates(raw, now)

        category, sub_category, impact_level = self._normalize_terms(raw)

        source_url = normalize_url(pick(raw, "source_url"))

        self._check_window(expected_start, expected_end, now)

        if not self._taxonomy.is_category(category):
            raise AlertValidationError(f"unknown category {category!r}", "category")
        if sub_category is not None and not self._taxonomy.allows(category, sub_category):
            raise AlertValidationError(
                f"{sub_category!r} is not a sub-category of {category!r}", "sub_category"
            )

        audiences = self._filter_audiences(pick(raw, "target_audiences"))

        origin_location = Location(
            city=origin.city, country=origin.country,
            latitude=origin.latitude, longitude=origin.longitude,
        )
        impact_locations = self._impact_locations(pick(raw, "impact_locations"), origin_location)

        return AlertCandidate(
            title=pick(raw, "title").strip(),
            description=pick(raw, "description").strip(),
            category=category,
            sub_category=sub_category,
            target_audiences=audiences,
            impact_level=impact_level,
            origin_location=origin_location,
            impact_locations=impact_locations,
            expected_start=expected_start,
            expected_end=expected_end,
            confidence=clamp_confidence(pick(raw, "confidence")),
            source_name=str(pick(raw, "source_name") or "").strip(),
            source_url=source_url,
            mitigation=_optional_text(pick(raw, "mitigation")),
            recommended_action=_optional_text(pick(raw, "recommended_action")),
        )

    def _parse_dates(self, raw: dict[str, Any], now: datetime) -> tuple[Optional[datetime], Optional[datetime]]:
        parsed: dict[str, Optional[datetime]] = {}
        for field in ("expected_start", "expected_end"):
            try:
                value = parse_date_str(pick(raw, field), self._tz)
            except ValueError as e:
                raise AlertValidationError(str(e), field) from e
            if value is not None and value.year < now.year:
                raise AlertValidationError(f"stale year {value.year}", field)
            parsed[field] = value
        return parsed["expected_start"], parsed["expected_end"]

    def _normalize_terms(self, raw: dict[str, Any]) -> tuple[str, Optional[str], ImpactLevel]:
        category = str(pick(raw, "category")).strip()
        if not self._taxonomy.is_category(category):
            category = self._synonyms.canonical_category(category) or category

        sub_raw = pick(raw, "sub_category")
        sub_category: Optional[str] = None
        if sub_raw is not None:
            sub_category = str(sub_raw).strip()
            if not self._taxonomy.allows(category, sub_category):
                sub_category = self._synonyms.canonical_sub_category(sub_category) or sub_category

        impact_raw = pick(raw, "impact_level")
        impact_level = ImpactLevel.MODERATE
        if impact_raw is not None:
            text = str(impact_raw).strip()
            canonical = next((lvl for lvl in ImpactLevel if lvl.value.lower() == text.lower()), None)
            if canonical is None:
                mapped = self._synonyms.canonical_impact_level(text)
                canonical = ImpactLevel(mapped) if mapped else ImpactLevel.MODERATE
                logger.debug("Impact level %r normalized to %s", text, canonical)
            impact_level = canonical
        return category, sub_category, impact_level

    def _check_window(self, start: Optional[datetime], end: Optional[datetime], now: datetime) -> None:
        if start and end and end < start:
            raise AlertValidationError("expected end precedes expected start", "expected_end")
        today = self.local_today(now)
        window_end = today + timedelta(days=self._horizon_days)
        start_d = start.astimezone(self._tz).date() if start else None
        end_d = end.astimezone(self._tz).date() if end else None

        if start_d and end_d:
            if start_d > window_end or end_d < today:
                raise AlertValidationError(
                    f"{start_d}..{end_d} does not overlap {today}..{window_end}", "expected_start"
                )
        elif start_d or end_d:
            single = start_d or end_d
            if not today <= single <= window_end:
                raise AlertValidationError(
                    f"{single} outside {today}..{window_end}",
                    "expected_start" if start_d else "expected_end",
                )

    def _filter_audiences(self, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",")]
        if not isinstance(value, list):
            return []
        known = {a.lower(): a for a in self._taxonomy.audiences}
        audiences: list[str] = []
        for item in value:
            canonical = known.get(str(item).strip().lower())
            if canonical is None:
                logger.debug("Dropping unknown audience %r", item)
            elif canonical not in audiences:
                audiences.append(canonical)
        return audiences

    def _impact_locations(self, value: Any, origin: Location) -> list[Location]:
        if not value:
            return [origin]
        if not isinstance(value, list):
            raise AlertValidationError("impact locations must be a list", "impact_locations")
        locations: list[Location] = []
        for entry in value:
            if not isinstance(entry, dict):
                raise AlertValidationError("impact location must be an object", "impact_locations")
            lat, lon = entry.get("latitude"), entry.get("longitude")
            if lat is None and lon is None:
                lat, lon = origin.latitude, origin.longitude
            locations.append(Location(
                city=str(entry.get("city") or origin.city),
                country=str(entry.get("country") or origin.country),
                latitude=_coordinate(lat, "latitude", -90, 90),
                longitude=_coordinate(lon, "longitude", -180, 180),
            ))
        return locations


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
