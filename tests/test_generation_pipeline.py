import asyncio
import json

import pytest
from openai import OpenAIError

from conftest import START, FakeClock, build_config, make_alert, make_client
from disruption_intel.alert_processing.data_models import AlertStatus
from disruption_intel.alert_processing.database_interface import (
    AlertQuery,
    AuditLogger,
    PersistenceError,
    SQLiteAlertStore,
)
from disruption_intel.alert_processing.generation_pipeline import (
    EVENT_GENERATION_COMPLETED,
    EVENT_GENERATION_FAILED,
    GenerationPipeline,
)
from disruption_intel.alert_processing.prompt_builder import PromptBuilder
from disruption_intel.alert_processing.validation import AlertValidator


def words(indices) -> str:
    return " ".join(f"word{i}" for i in indices)


def alert_payload(title: str, description: str, confidence: float, **extra) -> dict:
    record = {
        "title": title,
        "description": description,
        "category": "Industrial Action",
        "subCategory": "Strike",
        "targetAudiences": ["Hotel"],
        "impactLevel": "Moderate",
        "expectedStart": "2025-03-05T06:00:00",
        "expectedEnd": "2025-03-06T23:00:00",
        "confidence": confidence,
        "sourceName": "BBC News",
        "sourceUrl": "https://www.bbc.co.uk/news/scotland",
    }
    record.update(extra)
    return record


def edinburgh_payload() -> str:
    alerts = [
        alert_payload("Council workers strike closes waste depots", "Bin collections suspended citywide.", 0.9),
        alert_payload("Tram drivers announce walkout next week", "Edinburgh Trams expects no service on Wednesday.", 0.95),
        alert_payload("Rail strike repeats across Scottish network", words([*range(1, 18), 20]), 0.95),
        alert_payload("Airport security staff vote on action", "Unite ballot result due at Edinburgh Airport.", 0.6),
        alert_payload("Possible taxi rank protest in Old Town", "Unconfirmed social media reports of a protest.", 0.3),
    ]
    del alerts[0]["sourceUrl"]
    return json.dumps({"alerts": alerts})


def test_edinburgh_run_triages_and_persists(db, store, audit):
    config = build_config(locations=["edinburgh"], segments=["Hotel"])
    clock = FakeClock()
    seeded = make_alert(description=words(range(1, 20)), status=AlertStatus.APPROVED)
    asyncio.run(store.create(seeded))
    client, fake = make_client(config, ["Raw research notes about Edinburgh.", edinburgh_payload()])

    pipeline = GenerationPipeline(config, client, store, audit, clock)
    summary = asyncio.run(pipeline.run())

    totals = summary.totals
    assert summary.status == "completed"
    assert (totals.generated, totals.invalid, totals.persisted) == (5, 1, 4)
    assert (totals.approved, totals.pending, totals.rejected) == (1, 2, 1)
    assert totals.duplicates == 1

    stored = asyncio.run(store.find(AlertQuery(ids=summary.alert_ids)))
    by_title = {alert.title: alert for alert in stored}
    assert by_title["Tram drivers announce walkout next week"].status is AlertStatus.APPROVED
    assert by_title["Tram drivers announce walkout next week"].add_to_email_summary

    duplicate = by_title["Rail strike repeats across Scottish network"]
    assert duplicate.status is AlertStatus.PENDING
    assert duplicate.duplicate_of == seeded.id
    assert duplicate.duplicate_similarity == 0.85
    assert duplicate.alert_group_id == f"duplicate_{seeded.id}"

    assert by_title["Airport security staff vote on action"].status is AlertStatus.PENDING
    assert by_title["Possible taxi rank protest in Old Town"].status is AlertStatus.REJECTED
    assert all(alert.segment == "Hotel" for alert in stored)

    # discovery then synthesis, separated by the configured pause
    assert len(fake.calls) == 2
    assert clock.slept == [config.generation.inter_call_delay_seconds]
    assert fake.calls[0]["extra_body"] == {"top_k": 20}

    events = audit.list_events(EVENT_GENERATION_COMPLETED)
    assert len(events) == 1
    assert events[0].details["totals"]["persisted"] == 4


def test_service_failure_is_contained_to_its_location(store, audit):
    config = build_config(locations=["edinburgh", "glasgow"], segments=["Hotel"])
    glasgow_alert = alert_payload("Subway closure for signalling upgrade", "SPT closes the Glasgow Subway.", 0.92)
    client, _ = make_client(config, [
        OpenAIError("connection reset"),
        "Raw research notes about Glasgow.",
        json.dumps({"alerts": [glasgow_alert]}),
    ])

    summary = asyncio.run(GenerationPipeline(config, client, store, audit, FakeClock()).run())

    assert summary.status == "completed"
    assert summary.per_location["Edinburgh"].errors == 1
    assert summary.per_location["Glasgow"].persisted == 1
    assert len(summary.error_messages) == 1
    assert asyncio.run(store.count_documents(AlertQuery(origin_city="Glasgow"))) == 1


def test_unparseable_synthesis_is_counted_as_error(store, audit):
    config = build_config(locations=["edinburgh"], segments=["Hotel"])
    client, _ = make_client(config, ["notes", "Sorry, I found nothing worth reporting."])

    summary = asyncio.run(GenerationPipeline(config, client, store, audit, FakeClock()).run())

    assert summary.totals.errors == 1
    assert summary.totals.persisted == 0
    assert len(audit.list_events(EVENT_GENERATION_COMPLETED)) == 1


def test_each_location_and_segment_pair_gets_two_calls(store, audit):
    config = build_config(locations=["edinburgh"], segments=["Hotel", "Airline"])
    client, fake = make_client(config, ["notes", '{"alerts": []}', "notes", '{"alerts": []}'])
    clock = FakeClock()

    summary = asyncio.run(GenerationPipeline(config, client, store, audit, clock).run())

    assert summary.segments == ["Hotel", "Airline"]
    assert len(fake.calls) == 4
    assert len(clock.slept) == 3
    assert "Airline" in fake.calls[2]["messages"][1]["content"]


def test_segments_override_configured_list(store, audit):
    config = build_config(locations=["edinburgh"], segments=["Hotel", "Airline"])
    client, fake = make_client(config, ["notes", '{"alerts": []}'])

    summary = asyncio.run(GenerationPipeline(config, client, store, audit, FakeClock()).run(["Tour Operator"]))

    assert summary.segments == ["Tour Operator"]
    assert len(fake.calls) == 2
    assert summary.started_at == START


class FailingSecondInsertStore(SQLiteAlertStore):
    def __init__(self, db) -> None:
        super().__init__(db)
        self.inserts = 0

    async def create(self, alert):
        self.inserts += 1
        if self.inserts == 2:
            raise PersistenceError("disk I/O error")
        return await super().create(alert)


class UnreachableAudit(AuditLogger):
    async def log_system(self, event_name, details):
        raise ConnectionError("audit sink down")


class GlasgowTemplatesBroken(PromptBuilder):
    def build_discovery(self, location, segment, today):
        if location.city == "Glasgow":
            raise RuntimeError("template directory unmounted")
        return super().build_discovery(location, segment, today)


def single_alert_answers(title: str, description: str) -> list[str]:
    return ["notes", json.dumps({"alerts": [alert_payload(title, description, 0.95)]})]


def test_out_of_range_date_rejects_only_its_record(store, audit):
    config = build_config(locations=["edinburgh", "glasgow"], segments=["Hotel"])
    far_future = alert_payload("Strike planned at the end of time", "Nobody will see this.", 0.95,
                               expectedStart="9999-12-31T23:00:00-05:00", expectedEnd=None)
    valid = alert_payload("Tram drivers announce walkout next week", "No trams on Wednesday.", 0.95)
    client, _ = make_client(config, [
        "notes", json.dumps({"alerts": [far_future, valid]}),
        *single_alert_answers("Subway closure for signalling upgrade", "SPT closes the Glasgow Subway."),
    ])

    summary = asyncio.run(GenerationPipeline(config, client, store, audit, FakeClock()).run())

    assert summary.status == "completed"
    assert summary.per_location["Edinburgh"].invalid == 1
    assert summary.per_location["Edinburgh"].persisted == 1
    assert summary.per_location["Glasgow"].persisted == 1
    assert asyncio.run(store.count_documents(AlertQuery())) == 2


def test_unexpected_validator_failure_is_counted(store, audit, monkeypatch):
    config = build_config(locations=["edinburgh"], segments=["Hotel"])
    original = AlertValidator.validate

    def validate(self, raw, origin, now):
        if raw["title"].startswith("Broken"):
            raise KeyError("latitude")
        return original(self, raw, origin, now)

    monkeypatch.setattr(AlertValidator, "validate", validate)
    records = [
        alert_payload("Broken record from the service", "Missing pieces.", 0.95),
        alert_payload("Tram drivers announce walkout next week", "No trams on Wednesday.", 0.95),
    ]
    client, _ = make_client(config, ["notes", json.dumps({"alerts": records})])

    summary = asyncio.run(GenerationPipeline(config, client, store, audit, FakeClock()).run())

    assert summary.status == "completed"
    assert (summary.totals.generated, summary.totals.invalid, summary.totals.persisted) == (2, 1, 1)


def test_persistence_failure_keeps_earlier_records(db, audit):
    config = build_config(locations=["edinburgh"], segments=["Hotel"])
    store = FailingSecondInsertStore(db)
    records = [
        alert_payload("Tram drivers announce walkout next week", "No trams on Wednesday.", 0.95),
        alert_payload("Storm warning for the Forth bridges", "High winds may close both crossings.", 0.95,
                      category="Extreme Weather", subCategory="Storm"),
        alert_payload("Airport baggage handlers ballot on pay", "Unite expects the result on Friday.", 0.95),
    ]
    client, _ = make_client(config, ["notes", json.dumps({"alerts": records})])

    summary = asyncio.run(GenerationPipeline(config, client, store, audit, FakeClock()).run())

    assert summary.status == "completed"
    assert (summary.totals.persisted, summary.totals.errors) == (2, 1)
    titles = {alert.title for alert in asyncio.run(store.find(AlertQuery()))}
    assert titles == {
        "Tram drivers announce walkout next week",
        "Airport baggage handlers ballot on pay",
    }


def test_run_failure_still_writes_failed_summary(store, audit):
    config = build_config(locations=["edinburgh", "glasgow"], segments=["Hotel"])
    client, _ = make_client(
        config, single_alert_answers("Tram drivers announce walkout next week", "No trams on Wednesday."),
    )
    pipeline = GenerationPipeline(
        config, client, store, audit, FakeClock(), prompt_builder=GlasgowTemplatesBroken(config),
    )

    with pytest.raises(RuntimeError, match="template directory unmounted"):
        asyncio.run(pipeline.run())

    assert audit.list_events(EVENT_GENERATION_COMPLETED) == []
    events = audit.list_events(EVENT_GENERATION_FAILED)
    assert len(events) == 1
    assert events[0].details["status"] == "failed"
    assert events[0].details["failure"] == "template directory unmounted"
    assert events[0].details["totals"]["persisted"] == 1


def test_audit_sink_failure_does_not_fail_run(store):
    config = build_config(locations=["edinburgh"], segments=["Hotel"])
    client, _ = make_client(
        config, single_alert_answers("Tram drivers announce walkout next week", "No trams on Wednesday."),
    )

    summary = asyncio.run(GenerationPipeline(config, client, store, UnreachableAudit(), FakeClock()).run())

    assert summary.status == "completed"
    assert summary.totals.persisted == 1
