import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
import yaml

from disruption_intel.alert_processing.config_interface import Config, load_config
from disruption_intel.alert_processing.data_models import Alert, AlertStatus, Location
from disruption_intel.alert_processing.database_interface import (
    DatabaseInterface,
    SQLiteAlertStore,
    SQLiteAuditLogger,
)
from disruption_intel.alert_processing.llm_interface import GenerationClient

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"

# Monday; Europe/London is on GMT so local and UTC dates agree
START = datetime(2025, 3, 3, 10, 0, tzinfo=timezone.utc)

EDINBURGH = Location(city="Edinburgh", country="United Kingdom", latitude=55.9533, longitude=-3.1883)


class FakeClock:
    """Clock whose sleeps advance time instantly."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start
        self.slept: list[float] = []

    def now(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.current += timedelta(seconds=seconds)
        await asyncio.sleep(0)

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeCompletions:
    """Stands in for ``AsyncOpenAI().chat.completions`` with scripted answers."""

    def __init__(self, responses: list) -> None:
        self.responses = list(responses)
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        await asyncio.sleep(0)
        if not self.responses:
            raise AssertionError("unexpected completion call")
        answer = self.responses.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=answer))],
            usage=SimpleNamespace(prompt_tokens=100, completion_tokens=50),
        )


class FakeOpenAI:
    def __init__(self, responses: list) -> None:
        self.chat = SimpleNamespace(completions=FakeCompletions(responses))

    @property
    def calls(self) -> list[dict]:
        return self.chat.completions.calls


def read_raw_config() -> dict:
    """config.yaml with the synonym map inlined, as a mutable dict."""
    raw = yaml.safe_load((CONFIG_DIR / "config.yaml").read_text(encoding="utf-8"))
    raw["synonyms"] = yaml.safe_load((CONFIG_DIR / "synonyms.yaml").read_text(encoding="utf-8"))
    return raw


def build_config(locations: list[str] | None = None, segments: list[str] | None = None) -> Config:
    raw = read_raw_config()
    if locations is not None:
        raw["locations"] = {key: raw["locations"][key] for key in locations}
    if segments is not None:
        raw["generation"]["segments"] = segments
    return Config.model_validate(raw)


def make_client(config: Config, responses: list) -> tuple[GenerationClient, FakeOpenAI]:
    fake = FakeOpenAI(responses)
    return GenerationClient(config.llm, client=fake), fake


def make_alert(**overrides) -> Alert:
    fields = {
        "created_at": START - timedelta(days=1),
        "updated_at": START - timedelta(days=1),
        "title": "Rail workers strike across Scottish network",
        "description": "ScotRail drivers walk out over pay, most services cancelled.",
        "category": "Industrial Action",
        "sub_category": "Strike",
        "target_audiences": ["Hotel"],
        "origin_location": EDINBURGH,
        "impact_locations": [EDINBURGH],
        "expected_start": START + timedelta(days=2),
        "expected_end": START + timedelta(days=3),
        "confidence": 0.9,
        "source_name": "BBC News",
        "source_url": "https://www.bbc.co.uk/news/scotland",
        "status": AlertStatus.APPROVED,
    }
    fields.update(overrides)
    return Alert(**fields)


@pytest.fixture
def config() -> Config:
    return load_config(CONFIG_DIR / "config.yaml")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db():
    database = DatabaseInterface(":memory:")
    database.open()
    yield database
    database.close()


@pytest.fixture
def store(db) -> SQLiteAlertStore:
    return SQLiteAlertStore(db)


@pytest.fixture
def audit(db, clock) -> SQLiteAuditLogger:
    return SQLiteAuditLogger(db, clock)
