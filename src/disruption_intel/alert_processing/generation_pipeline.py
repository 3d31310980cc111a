"""
Generation run: location x segment -> discovery -> synthesis -> parse ->
validate -> deduplicate -> triage -> persist.

**Containment:** a failed or unparseable service call aborts only the current
location/segment; a rejected or unpersistable record aborts only itself.
Records already persisted stay persisted when a later one fails.
**Pacing:** consecutive service calls are separated by the configured delay.
**Summary:** a run summary is written to the audit sink whether the run
completes or fails.
"""
from datetime import datetime
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from disruption_intel.alert_processing.clock import Clock, SystemClock
from disruption_intel.alert_processing.config_interface import Config, LLMPurpose, LocationDefinition
from disruption_intel.alert_processing.data_models import Alert, AlertCandidate, AlertStatus
from disruption_intel.alert_processing.database_interface import AlertStore, AuditLogger, DBError, emit_audit_event
from disruption_intel.alert_processing.deduplication import DeduplicationEngine, DuplicateCheck
from disruption_intel.alert_processing.llm_interface import GenerationClient, GenerationError, build_request
from disruption_intel.alert_processing.prompt_builder import PromptBuilder
from disruption_intel.alert_processing.response_sanitizer import ParseError, ResponseSanitizer
from disruption_intel.alert_processing.triage import TriageClassifier, TriageDecision
from disruption_intel.alert_processing.validation import AlertValidationError, AlertValidator
from disruption_intel.logger import get_logger

logger = get_logger(__name__)

EVENT_GENERATION_COMPLETED = "automated_alert_generation_completed"
EVENT_GENERATION_FAILED = "automated_alert_generation_failed"


class RunCounters(BaseModel):
    """Per-location (or run-wide) outcome counts."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    generated: int = 0
    persisted: int = 0
    approved: int = 0
    pending: int = 0
    rejected: int = 0
    duplicates: int = 0
    invalid: int = 0
    errors: int = 0

    def record_status(self, status: AlertStatus) -> None:
        """Increment the bucket for a persisted record's status."""
        setattr(self, status.value, getattr(self, status.value) + 1)

    def add(self, other: "RunCounters") -> None:
        """Accumulate another counter set into this one."""
        for name in type(self).model_fields:
            setattr(self, name, getattr(self, name) + getattr(other, name))


class GenerationRunSummary(BaseModel):
    """Audit summary of one generation run."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    run_id: str = Field(default_factory=lambda: uuid4().hex)
    status: Literal["running", "completed", "failed"] = "running"
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: int = 0
    segments: list[str] = Field(default_factory=list)
    totals: RunCounters = Field(default_factory=RunCounters)
    per_location: dict[str, RunCounters] = Field(default_factory=dict)
    alert_ids: list[str] = Field(default_factory=list)
    error_messages: list[str] = Field(default_factory=list)
    failure: Optional[str] = None


def build_alert(
    candidate: AlertCandidate,
    decision: TriageDecision,
    duplicate: DuplicateCheck,
    segment: str,
    now: datetime,
    sequence: int,
    email_summary_threshold: float,
) -> Alert:
    """Assemble the persisted record from a triaged candidate."""
    if duplicate.is_duplicate:
        group_id = f"duplicate_{duplicate.matched_alert_id}"
    else:
        group_id = f"auto_{int(now.timestamp())}_{sequence}"
    return Alert(
        created_at=now,
        updated_at=now,
        title=candidate.title,
        description=candidate.description,
        category=candidate.category,
        sub_category=candidate.sub_category,
        target_audiences=candidate.target_audiences,
        impact_level=candidate.impact_level,
        priority=candidate.priority,
        mitigation=candidate.mitigation,
        recommended_action=candidate.recommended_action,
        origin_location=candidate.origin_location,
        impact_locations=candidate.impact_locations,
        expected_start=candidate.expected_start,
        expected_end=candidate.expected_end,
        confidence=candidate.confidence,
        source_name=candidate.source_name,
        source_url=candidate.source_url,
        segment=segment,
        add_to_email_summary=candidate.confidence > email_summary_threshold,
        status=decision.status,
        alert_group_id=group_id,
        duplicate_of=duplicate.matched_alert_id if duplicate.is_duplicate else None,
        duplicate_similarity=duplicate.similarity if duplicate.is_duplicate else None,
    )


class GenerationPipeline:
    """Runs the generation pipeline over every configured location and segment."""

    def __init__(
        self,
        config: Config,
        client: GenerationClient,
        store: AlertStore,
        audit: AuditLogger,
        clock: Clock | None = None,
        prompt_builder: PromptBuilder | None = None,
    ) -> None:
        """Initialize the pipeline and its stages."""
        self._config = config
        self._client = client
        self._store = store
        self._audit = audit
        self._clock = clock or SystemClock()
        self._prompts = prompt_builder or PromptBuilder(config)
        self._sanitizer = ResponseSanitizer(config.synonyms.impact_level)
        self._validator = AlertValidator(config)
        self._dedup = DeduplicationEngine(store, config.deduplication)
        self._triage = TriageClassifier(config.triage)
        self._calls_this_run = 0
        self._sequence = 0

    async def run(self, segments: Optional[list[str]] = None) -> GenerationRunSummary:
        """
        Execute one generation run.

        :param segments: Audience segments to generate for; defaults to the configured list.
        :return: Run summary, also written to the audit sink.
        :raises Exception: Re-raises an unexpected run-level failure after the
            failure summary has been written.
        """
        segments = list(segments) if segments else list(self._config.generation.segments)
        started = self._clock.now()
        summary = GenerationRunSummary(started_at=started, segments=segments)
        self._calls_this_run = 0
        self._sequence = 0

        logger.info("=" * 72)
        logger.info("Alert generation run %s", summary.run_id)
        logger.info("Locations: %d  Segments: %s", len(self._config.locations), ", ".join(segments) or "-")
        logger.info("=" * 72)

        try:
            if not segments:
                raise ValueError("No audience segments to generate for")
            for location in self._config.locations.values():
                counters = summary.per_location.setdefault(location.city, RunCounters())
                for segment in segments:
                    try:
                        alert_ids = await self.generate_for_location(location, segment, counters)
                        summary.alert_ids.extend(alert_ids)
                    except (GenerationError, ParseError) as e:
                        counters.errors += 1
                        summary.error_messages.append(f"{location.city}/{segment}: {e}")
                        logger.error("Generation failed for %s/%s: %s", location.city, segment, e)
                logger.info(
                    "%s: persisted=%d approved=%d pending=%d rejected=%d duplicates=%d invalid=%d errors=%d",
                    location.city, counters.persisted, counters.approved, counters.pending,
                    counters.rejected, counters.duplicates, counters.invalid, counters.errors,
                )
            summary.status = "completed"
        except Exception as e:
            summary.status = "failed"
            summary.failure = str(e)
            logger.exception("Alert generation run %s failed", summary.run_id)
            raise
        finally:
            for counters in summary.per_location.values():
                summary.totals.add(counters)
            summary.completed_at = self._clock.now()
            summary.duration_ms = int((summary.completed_at - started).total_seconds() * 1000)
            event = EVENT_GENERATION_COMPLETED if summary.status == "completed" else EVENT_GENERATION_FAILED
            await emit_audit_event(self._audit, event, summary.model_dump(mode="json"))
            logger.info(
                "Run %s %s in %d ms: persisted=%d approved=%d pending=%d rejected=%d duplicates=%d errors=%d",
                summary.run_id, summary.status, summary.duration_ms, summary.totals.persisted,
                summary.totals.approved, summary.totals.pending, summary.totals.rejected,
                summary.totals.duplicates, summary.totals.errors,
            )
        return summary

    async def _call_service(self, purpose: LLMPurpose, system: str, user: str) -> str:
        if self._calls_this_run:
            await self._clock.sleep(self._config.generation.inter_call_delay_seconds)
        self._calls_this_run += 1
        request = build_request(self._config.llm, purpose, system, user)
        result = await self._client.generate(request)
        return result.content

    async def generate_for_location(
        self,
        location: LocationDefinition,
        segment: str,
        counters: RunCounters,
    ) -> list[str]:
        """
        Generate, validate and persist alerts for one location and segment.

        :return: Ids of the persisted alerts.
        :raises GenerationError: If either service call fails.
        :raises ParseError: If the synthesis response is irrecoverable.
        """
        today = self._validator.local_today(self._clock.now())
        logger.info("Generating alerts for %s / %s", location.city, segment)

        discovery = self._prompts.build_discovery(location, segment, today)
        raw_candidates = await self._call_service(LLMPurpose.DISCOVERY, discovery.system, discovery.user)

        synthesis = self._prompts.build_synthesis(location, segment, today, raw_candidates)
        raw_alerts = await self._call_service(LLMPurpose.SYNTHESIS, synthesis.system, synthesis.user)

        records = self._sanitizer.parse_records(raw_alerts)
        logger.info("%s / %s: %d candidate(s) returned", location.city, segment, len(records))

        persisted: list[str] = []
        for raw in records:
            alert = await self.process_record(raw, location, segment, counters)
            if alert is not None:
                persisted.append(alert.id)
        return persisted

    async def process_record(
        self,
        raw: dict[str, Any],
        location: LocationDefinition,
        segment: str,
        counters: RunCounters,
    ) -> Optional[Alert]:
        """Validate, deduplicate, triage and persist one raw record; failures are counted, not raised."""
        counters.generated += 1
        now = self._clock.now()
        try:
            candidate = self._validator.validate(raw, location, now)
        except AlertValidationError as e:
            counters.invalid += 1
            logger.info("Rejected candidate %r for %s: %s", raw.get("title"), location.city, e)
            return None
        except Exception:
            counters.invalid += 1
            logger.exception("Unexpected failure validating %r for %s", raw.get("title"), location.city)
            return None

        try:
            duplicate = await self._dedup.check(candidate, now)
            decision = self._triage.triage(candidate, duplicate)
            self._sequence += 1
            alert = build_alert(
                candidate, decision, duplicate, segment, now, self._sequence,
                self._config.triage.email_summary_threshold,
            )
            await self._store.create(alert)
        except DBError as e:
            counters.errors += 1
            logger.error("Could not persist %r: %s", candidate.title, e)
            return None
        except Exception:
            counters.errors += 1
            logger.exception("Unexpected failure processing %r", candidate.title)
            return None

        counters.persisted += 1
        counters.record_status(alert.status)
        if duplicate.is_duplicate:
            counters.duplicates += 1
        logger.info(
            "Stored %s [%s] confidence=%.2f basis=%s: %s",
            alert.id, alert.status, decision.confidence_used, decision.basis, alert.title,
        )
        return alert
