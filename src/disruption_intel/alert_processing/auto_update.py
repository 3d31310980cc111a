"""
Automatic re-examination of published alerts.

The scanner selects approved, followed, non-suppressed alerts whose last
check is older than the cooldown. For each one the synthesizer stamps the
check time first, then asks the generative service whether the situation
has materially changed. A confident "yes" creates a pending child alert
linked to its parent through ``is_update_of`` / ``update_history``.

Operators can run the same check for a single alert regardless of
eligibility, and suppress or re-enable automatic checks per alert.
"""
from datetime import datetime, timedelta
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from disruption_intel.alert_processing.clock import Clock, SystemClock
from disruption_intel.alert_processing.config_interface import AutoUpdateSettings, Config, LLMPurpose
from disruption_intel.alert_processing.data_models import Alert, AlertStatus, UpdateSource
from disruption_intel.alert_processing.database_interface import (
    AlertNotFoundError,
    AlertQuery,
    AlertSort,
    AlertStore,
    AuditLogger,
    DBError,
    emit_audit_event,
)
from disruption_intel.alert_processing.llm_interface import GenerationClient, GenerationError, build_request
from disruption_intel.alert_processing.prompt_builder import PromptBuilder
from disruption_intel.alert_processing.response_sanitizer import ParseError, ResponseSanitizer
from disruption_intel.logger import get_logger

logger = get_logger(__name__)

EVENT_UPDATE_CREATED = "alert_auto_update_created"
EVENT_SCAN_COMPLETED = "auto_update_process_completed"
EVENT_SCAN_FAILED = "auto_update_process_failed"
EVENT_SUPPRESSED = "alert_auto_update_suppressed"
EVENT_ENABLED = "alert_auto_update_enabled"

SYSTEM_OPERATOR = "system"
UPDATE_TITLE_PREFIX = "Update: "
DEFAULT_UPDATE_DESCRIPTION = "Update to previous alert"


class UpdateAssessment(BaseModel):
    """Structured answer to 'does this alert need an update?'."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    needs_update: bool = Field(default=False, validation_alias=AliasChoices("needsUpdate", "needs_update"))
    reason: str = ""
    update_summary: str = Field(default="", validation_alias=AliasChoices("updateSummary", "update_summary"))
    confidence: float = Field(default=0.0, ge=0, le=1)

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp(cls, v: Any) -> float:
        """Missing or malformed confidence counts as zero; numbers are clamped into [0, 1]."""
        try:
            number = float(v)
        except (TypeError, ValueError):
            return 0.0
        if number != number:
            return 0.0
        return min(1.0, max(0.0, number))

    @field_validator("reason", "update_summary", mode="before")
    @classmethod
    def text_or_empty(cls, v: Any) -> str:
        """Null text fields become empty strings."""
        return "" if v is None else str(v).strip()


class UpdateCheckOutcome(BaseModel):
    """Result of checking one alert."""

    model_config = ConfigDict(extra="forbid")

    alert_id: str
    title: str
    needs_update: bool = False
    confidence: float = 0.0
    reason: str = ""
    update_created: bool = False
    update_alert_id: Optional[str] = None
    error: Optional[str] = None


class UpdateScanSummary(BaseModel):
    """Audit summary of one update scan."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    run_id: str = Field(default_factory=lambda: uuid4().hex)
    status: Literal["running", "completed", "failed"] = "running"
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: int = 0
    alerts_checked: int = 0
    updates_created: int = 0
    no_updates: int = 0
    errors: int = 0
    success_rate: float = 0.0
    update_rate: float = 0.0
    update_details: list[UpdateCheckOutcome] = Field(default_factory=list)
    error_details: list[UpdateCheckOutcome] = Field(default_factory=list)
    failure: Optional[str] = None


class UpdateScanner:
    """Selects alerts due for an update check."""

    def __init__(self, store: AlertStore, settings: AutoUpdateSettings) -> None:
        """Initialize the scanner."""
        self._store = store
        self._settings = settings

    def eligibility_query(self, now: datetime) -> AlertQuery:
        """Approved, enabled, not suppressed, followed, and not checked within the cooldown."""
        return AlertQuery(
            statuses=[AlertStatus.APPROVED],
            auto_update_enabled=True,
            auto_update_suppressed=False,
            last_check_before_or_unset=now - timedelta(days=self._settings.cooldown_days),
            has_followers=True,
        )

    async def select_eligible(self, now: datetime, limit: Optional[int] = None) -> list[Alert]:
        """Eligible alerts, oldest first."""
        return await self._store.find(
            self.eligibility_query(now),
            sort=AlertSort(field="created_at", descending=False),
            limit=limit,
        )


class UpdateSynthesizer:
    """Asks the generative service about one alert and creates the successor when warranted."""

    def __init__(
        self,
        config: Config,
        client: GenerationClient,
        store: AlertStore,
        audit: AuditLogger,
        clock: Clock,
        prompt_builder: PromptBuilder,
    ) -> None:
        """Initialize the synthesizer."""
        self._config = config
        self._client = client
        self._store = store
        self._audit = audit
        self._clock = clock
        self._prompts = prompt_builder
        self._sanitizer = ResponseSanitizer(config.synonyms.impact_level)

    async def assess(self, alert: Alert) -> UpdateAssessment:
        """
        Ask whether *alert* needs an update.

        :raises GenerationError: If the service call fails.
        :raises ParseError: If the answer is not a recoverable JSON object.
        """
        prompt = self._prompts.build_update_check(alert, self._clock.now().date())
        request = build_request(self._config.llm, LLMPurpose.UPDATE_CHECK, prompt.system, prompt.user)
        result = await self._client.generate(request)
        data = self._sanitizer.parse(result.content).data
        if not isinstance(data, dict):
            raise ParseError("update check answer is not a JSON object")
        return UpdateAssessment.model_validate(data)

    async def check_alert(
        self,
        alert: Alert,
        source: UpdateSource,
        operator: str,
        stamp_check: bool = True,
    ) -> UpdateCheckOutcome:
        """
        Run the update check for one alert.

        :param stamp_check: Write ``last_auto_update_check_at`` before the service
            call so an overlapping or repeated scan skips this alert.
        """
        if stamp_check:
            now = self._clock.now()
            alert.last_auto_update_check_at = now
            alert.updated_at = now
            await self._store.save(alert)

        assessment = await self.assess(alert)
        outcome = UpdateCheckOutcome(
            alert_id=alert.id,
            title=alert.title,
            needs_update=assessment.needs_update,
            confidence=assessment.confidence,
            reason=assessment.reason,
        )
        if assessment.needs_update and assessment.confidence > self._config.auto_update.confidence_threshold:
            child = await self.create_update(alert, assessment, source, operator)
            outcome.update_created = True
            outcome.update_alert_id = child.id
        else:
            logger.info(
                "No update for %s (needs_update=%s confidence=%.2f)",
                alert.id, assessment.needs_update, assessment.confidence,
            )
        return outcome

    async def create_update(
        self,
        parent: Alert,
        assessment: UpdateAssessment,
        source: UpdateSource,
        operator: str,
    ) -> Alert:
        """Create the pending successor of *parent* and record it in the parent's history."""
        now = self._clock.now()
        note_prefix = "Auto-update" if source == UpdateSource.AUTO else "Admin review"
        child = Alert(
            created_at=now,
            updated_at=now,
            title=f"{UPDATE_TITLE_PREFIX}{parent.title}",
            description=assessment.update_summary or DEFAULT_UPDATE_DESCRIPTION,
            category=parent.category,
            sub_category=parent.sub_category,
            target_audiences=list(parent.target_audiences),
            impact_level=parent.impact_level,
            priority=parent.priority,
            mitigation=parent.mitigation,
            recommended_action=parent.recommended_action,
            origin_location=parent.origin_location,
            impact_locations=list(parent.impact_locations),
            expected_start=parent.expected_start,
            expected_end=parent.expected_end,
            confidence=assessment.confidence,
            source_name=parent.source_name,
            source_url=parent.source_url,
            segment=parent.segment,
            status=AlertStatus.PENDING,
            alert_group_id=parent.alert_group_id,
            is_update_of=parent.id,
            update_source=source,
            previous_version_notes=f"{note_prefix}: {assessment.reason}" if assessment.reason else note_prefix,
        )
        await self._store.create(child)

        parent.update_history = [*parent.update_history, child.id]
        parent.update_count += 1
        parent.last_update_at = now
        parent.last_update_by = operator
        parent.updated_at = now
        await self._store.save(parent)

        logger.info("Created update %s for alert %s", child.id, parent.id)
        await emit_audit_event(self._audit, EVENT_UPDATE_CREATED, {
            "parent_alert_id": parent.id,
            "update_alert_id": child.id,
            "reason": assessment.reason,
            "confidence": assessment.confidence,
            "update_source": source.value,
            "operator": operator,
        })
        return child


class AutoUpdateService:
    """Update scan plus the operator-facing per-alert controls."""

    def __init__(
        self,
        config: Config,
        client: GenerationClient,
        store: AlertStore,
        audit: AuditLogger,
        clock: Clock | None = None,
        prompt_builder: PromptBuilder | None = None,
    ) -> None:
        """Initialize the service."""
        self._config = config
        self._store = store
        self._audit = audit
        self._clock = clock or SystemClock()
        self.scanner = UpdateScanner(store, config.auto_update)
        self.synthesizer = UpdateSynthesizer(
            config, client, store, audit, self._clock, prompt_builder or PromptBuilder(config)
        )

    async def run_scan(self) -> UpdateScanSummary:
        """
        Check every eligible alert once.

        Per-alert failures are counted and the scan continues. The summary is
        written to the audit sink whether the scan completes or fails.
        """
        started = self._clock.now()
        summary = UpdateScanSummary(started_at=started)
        logger.info("=" * 72)
        logger.info("Auto-update scan %s", summary.run_id)
        logger.info("=" * 72)

        try:
            eligible = await self.scanner.select_eligible(started)
            logger.info("%d alert(s) eligible for an update check", len(eligible))
            for index, alert in enumerate(eligible):
                if index:
                    await self._clock.sleep(self._config.auto_update.inter_call_delay_seconds)
                summary.alerts_checked += 1
                try:
                    outcome = await self.synthesizer.check_alert(alert, UpdateSource.AUTO, SYSTEM_OPERATOR)
                except (GenerationError, ParseError, DBError) as e:
                    summary.errors += 1
                    summary.error_details.append(UpdateCheckOutcome(alert_id=alert.id, title=alert.title, error=str(e)))
                    logger.error("Update check failed for %s: %s", alert.id, e)
                    continue
                except Exception as e:
                    summary.errors += 1
                    summary.error_details.append(UpdateCheckOutcome(alert_id=alert.id, title=alert.title, error=str(e)))
                    logger.exception("Unexpected failure checking %s", alert.id)
                    continue
                if outcome.update_created:
                    summary.updates_created += 1
                    summary.update_details.append(outcome)
                else:
                    summary.no_updates += 1
            summary.status = "completed"
        except Exception as e:
            summary.status = "failed"
            summary.failure = str(e)
            logger.exception("Auto-update scan %s failed", summary.run_id)
            raise
        finally:
            summary.completed_at = self._clock.now()
            summary.duration_ms = int((summary.completed_at - started).total_seconds() * 1000)
            if summary.alerts_checked:
                summary.success_rate = round(
                    (summary.alerts_checked - summary.errors) / summary.alerts_checked * 100, 2
                )
                summary.update_rate = round(summary.updates_created / summary.alerts_checked * 100, 2)
            event = EVENT_SCAN_COMPLETED if summary.status == "completed" else EVENT_SCAN_FAILED
            await emit_audit_event(self._audit, event, summary.model_dump(mode="json"))
            logger.info(
                "Scan %s %s: checked=%d updates=%d no_update=%d errors=%d",
                summary.run_id, summary.status, summary.alerts_checked,
                summary.updates_created, summary.no_updates, summary.errors,
            )
        return summary

    async def _require(self, alert_id: str) -> Alert:
        alert = await self._store.get(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        return alert

    async def check_one_alert(self, alert_id: str, operator: str) -> UpdateCheckOutcome:
        """
        Operator-triggered check of one alert, bypassing eligibility.

        The check time is not stamped, so the alert's automatic schedule is unchanged.

        :raises AlertNotFoundError: If the alert does not exist.
        :raises GenerationError: If the service call fails.
        :raises ParseError: If the answer is unreadable.
        """
        alert = await self._require(alert_id)
        logger.info("Manual update check of %s by %s", alert_id, operator)
        return await self.synthesizer.check_alert(alert, UpdateSource.ADMIN, operator, stamp_check=False)

    async def suppress_updates(self, alert_id: str, reason: str, operator: str) -> Alert:
        """Stop automatic update checks for one alert."""
        alert = await self._require(alert_id)
        now = self._clock.now()
        alert.auto_update_suppressed = True
        alert.auto_update_suppressed_by = operator
        alert.auto_update_suppressed_at = now
        alert.auto_update_suppressed_reason = reason
        alert.updated_at = now
        await self._store.save(alert)
        await emit_audit_event(self._audit, EVENT_SUPPRESSED, {
            "alert_id": alert_id, "operator": operator, "reason": reason,
        })
        logger.info("Auto-updates suppressed for %s by %s: %s", alert_id, operator, reason)
        return alert

    async def enable_updates(self, alert_id: str, operator: str) -> Alert:
        """Resume automatic update checks for one alert."""
        alert = await self._require(alert_id)
        alert.auto_update_suppressed = False
        alert.auto_update_suppressed_by = None
        alert.auto_update_suppressed_at = None
        alert.auto_update_suppressed_reason = None
        alert.updated_at = self._clock.now()
        await self._store.save(alert)
        await emit_audit_event(self._audit, EVENT_ENABLED, {"alert_id": alert_id, "operator": operator})
        logger.info("Auto-updates enabled for %s by %s", alert_id, operator)
        return alert

    async def update_statistics(self) -> dict[str, int]:
        """Counts of eligible, updated and suppressed alerts."""
        now = self._clock.now()
        return {
            "eligible": await self._store.count_documents(self.scanner.eligibility_query(now)),
            "with_updates": await self._store.count_documents(AlertQuery(has_updates=True)),
            "suppressed": await self._store.count_documents(AlertQuery(auto_update_suppressed=True)),
        }
