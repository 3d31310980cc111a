"""
Scheduling of generation runs and update scans.

Each run kind has its own cadence and its own single-flight guard. A trigger
that arrives while a run of the same kind is active is rejected at once with
an "already running" result; it is neither queued nor retried. The guard is
released in a ``finally`` block whatever the run's outcome.

The guard is process-local: two processes sharing one store can still run
concurrently.
"""
import asyncio
import threading
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from enum import StrEnum
from typing import Any, Awaitable, Callable, Iterator, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field

from disruption_intel.alert_processing.auto_update import AutoUpdateService
from disruption_intel.alert_processing.clock import Clock, SystemClock
from disruption_intel.alert_processing.config_interface import WEEKDAY_INDEX, CadenceDefinition, Config
from disruption_intel.alert_processing.generation_pipeline import GenerationPipeline
from disruption_intel.logger import get_logger

logger = get_logger(__name__)

# a weekly or day-of-month cadence always matches within this many days
MAX_CADENCE_LOOKAHEAD_DAYS = 62


class RunKind(StrEnum):
    """Independently guarded run kinds."""

    GENERATION = "generation"
    UPDATE_SCAN = "update_scan"


class RunState(StrEnum):
    """Single-flight guard states."""

    IDLE = "idle"
    RUNNING = "running"


class AnotherRunActiveError(Exception):
    """Raised when a run of the same kind is already active."""

    def __init__(self, run_kind: str) -> None:
        """Initialize the exception."""
        self.run_kind = run_kind
        super().__init__(f"A {run_kind} run is already running")


class SingleFlightGuard:
    """Idle/Running state machine with compare-and-set transitions under a mutex."""

    def __init__(self, run_kind: str) -> None:
        """Initialize the guard in the idle state."""
        self.run_kind = run_kind
        self._lock = threading.Lock()
        self._state = RunState.IDLE

    @property
    def state(self) -> RunState:
        """Current state."""
        return self._state

    def try_acquire(self) -> bool:
        """Move Idle -> Running; False if already running."""
        with self._lock:
            if self._state is RunState.RUNNING:
                return False
            self._state = RunState.RUNNING
            return True

    def release(self) -> None:
        """Move back to Idle."""
        with self._lock:
            self._state = RunState.IDLE

    @contextmanager
    def hold(self) -> Iterator[None]:
        """
        Hold the guard for the duration of the block.

        :raises AnotherRunActiveError: If the guard is already held.
        """
        if not self.try_acquire():
            raise AnotherRunActiveError(self.run_kind)
        try:
            yield
        finally:
            self.release()


class Cadence:
    """
    Fire times for one run kind in a local timezone.

    Weekly cadences fire on the listed weekdays; stepping cadences fire on
    days of the month where ``(day - 1) % every_n_days == 0``, like a ``*/N``
    cron day field.
    """

    def __init__(self, definition: CadenceDefinition, tz_name: str) -> None:
        """Initialize the cadence."""
        self._definition = definition
        self._tz = ZoneInfo(tz_name)
        self._weekdays = {WEEKDAY_INDEX[d] for d in definition.days or []}

    def matches(self, day: date) -> bool:
        """True if the cadence fires on *day*."""
        if self._definition.days is not None:
            return day.weekday() in self._weekdays
        assert self._definition.every_n_days is not None
        return (day.day - 1) % self._definition.every_n_days == 0

    def next_fire_after(self, instant: datetime) -> datetime:
        """
        First fire time strictly after *instant*.

        :param instant: Aware datetime.
        :return: Aware UTC datetime.
        """
        local = instant.astimezone(self._tz)
        for offset in range(MAX_CADENCE_LOOKAHEAD_DAYS):
            day = local.date() + timedelta(days=offset)
            if not self.matches(day):
                continue
            candidate = datetime.combine(day, self._definition.at, tzinfo=self._tz)
            if candidate > local:
                return candidate.astimezone(timezone.utc)
        raise ValueError(f"Cadence never fires: {self.describe()}")

    def describe(self) -> str:
        """Human-readable cadence."""
        at = self._definition.at.strftime("%H:%M")
        if self._definition.days is not None:
            return f"{','.join(self._definition.days)} at {at} {self._tz.key}"
        return f"every {self._definition.every_n_days} days at {at} {self._tz.key}"


class TriggerResult(BaseModel):
    """Outcome of a trigger request."""

    model_config = ConfigDict(extra="forbid")

    run_kind: RunKind
    accepted: bool
    succeeded: bool = False
    message: str
    summary: Optional[dict[str, Any]] = None


class SchedulerStatus(BaseModel):
    """Snapshot of scheduler state."""

    model_config = ConfigDict(extra="forbid")

    running: dict[RunKind, bool]
    last_run: dict[RunKind, Optional[datetime]]
    next_run: dict[RunKind, datetime]
    cadences: dict[RunKind, str]
    jobs_scheduled: int = Field(ge=0)


class Scheduler:
    """Fires generation runs and update scans on their cadences without overlap."""

    def __init__(
        self,
        config: Config,
        generation: GenerationPipeline,
        auto_update: AutoUpdateService,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the scheduler."""
        self._generation = generation
        self._auto_update = auto_update
        self._clock = clock or SystemClock()
        tz_name = config.schedule.timezone
        self._cadences = {
            RunKind.GENERATION: Cadence(config.schedule.generation, tz_name),
            RunKind.UPDATE_SCAN: Cadence(config.schedule.update_scan, tz_name),
        }
        self._guards = {kind: SingleFlightGuard(kind.value) for kind in RunKind}
        self._last_run: dict[RunKind, Optional[datetime]] = {kind: None for kind in RunKind}
        self._tasks: set[asyncio.Task] = set()

    def is_running(self, kind: RunKind) -> bool:
        """True while a run of *kind* is active."""
        return self._guards[kind].state is RunState.RUNNING

    async def _execute(self, kind: RunKind, runner: Callable[[], Awaitable[BaseModel]]) -> TriggerResult:
        self._last_run[kind] = self._clock.now()
        try:
            summary = await runner()
        except Exception as e:
            logger.exception("%s run failed", kind)
            return TriggerResult(run_kind=kind, accepted=True, succeeded=False, message=f"{kind} run failed: {e}")
        return TriggerResult(
            run_kind=kind,
            accepted=True,
            succeeded=True,
            message=f"{kind} run completed",
            summary=summary.model_dump(mode="json"),
        )

    async def _trigger(self, kind: RunKind, runner: Callable[[], Awaitable[BaseModel]]) -> TriggerResult:
        try:
            with self._guards[kind].hold():
                return await self._execute(kind, runner)
        except AnotherRunActiveError as e:
            logger.warning("%s trigger rejected: %s", kind, e)
            return TriggerResult(run_kind=kind, accepted=False, message=str(e))

    async def trigger_generation(self, segments: Optional[list[str]] = None) -> TriggerResult:
        """Run the generation pipeline now unless one is already running."""
        return await self._trigger(RunKind.GENERATION, lambda: self._generation.run(segments))

    async def trigger_update_scan(self) -> TriggerResult:
        """Run the update scan now unless one is already running."""
        return await self._trigger(RunKind.UPDATE_SCAN, self._auto_update.run_scan)

    def _runner_for(self, kind: RunKind) -> Callable[[], Awaitable[TriggerResult]]:
        if kind is RunKind.GENERATION:
            return self.trigger_generation
        return self.trigger_update_scan

    def status(self) -> SchedulerStatus:
        """Running flags, last and next run per kind."""
        now = self._clock.now()
        return SchedulerStatus(
            running={kind: self.is_running(kind) for kind in RunKind},
            last_run=dict(self._last_run),
            next_run={kind: cadence.next_fire_after(now) for kind, cadence in self._cadences.items()},
            cadences={kind: cadence.describe() for kind, cadence in self._cadences.items()},
            jobs_scheduled=len(self._cadences),
        )

    async def _sleep_unless_stopped(self, seconds: float, stop: Optional[asyncio.Event]) -> None:
        """Sleep on the clock; return early once ``stop`` is set."""
        if stop is None:
            await self._clock.sleep(seconds)
            return
        sleeper = asyncio.ensure_future(self._clock.sleep(seconds))
        stopper = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            stopper.cancel()

    async def run(self, stop: Optional[asyncio.Event] = None, max_fires: Optional[int] = None) -> int:
        """
        Sleep until the next cadence fire time, start that run in the background, repeat.

        Runs of different kinds may overlap; runs of the same kind are guarded.

        :param stop: Event that ends the loop when set.
        :param max_fires: Stop after this many fires.
        :return: Number of fires.
        """
        start = self._clock.now()
        next_fire = {kind: cadence.next_fire_after(start) for kind, cadence in self._cadences.items()}
        for kind, when in next_fire.items():
            logger.info("Scheduled %s: %s (next %s)", kind, self._cadences[kind].describe(), when.isoformat())

        fires = 0
        while (stop is None or not stop.is_set()) and (max_fires is None or fires < max_fires):
            kind = min(next_fire, key=lambda k: next_fire[k])
            fire_at = next_fire[kind]
            delay = (fire_at - self._clock.now()).total_seconds()
            if delay > 0:
                await self._sleep_unless_stopped(delay, stop)
            if stop is not None and stop.is_set():
                break
            logger.info("Cadence fired for %s at %s", kind, fire_at.isoformat())
            task = asyncio.create_task(self._runner_for(kind)())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            next_fire[kind] = self._cadences[kind].next_fire_after(fire_at)
            fires += 1

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        return fires
