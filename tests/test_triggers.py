import datetime

import pytest
from sqlalchemy import create_engine, text

from ruleflow.core.errors import EvaluationError, RuleValidationError
from ruleflow.services.databases import DatabaseGateway
from ruleflow.services.system_stats import SystemSnapshot
from ruleflow.services.triggers import (
    TRIGGER_KINDS,
    EvaluationContext,
    UploadEvent,
    describe_trigger,
)

NOW = datetime.datetime(2026, 10, 18, 9, 0, 30, tzinfo=datetime.timezone.utc)


def _system(storage: float = 50.0, cpu: float = 10.0, samples=(), history_start=None) -> SystemSnapshot:
    return SystemSnapshot(
        taken_at=NOW,
        storage_percent=storage,
        cpu_percent=cpu,
        cpu_samples=tuple(samples),
        history_start=history_start,
    )


def _evaluate(kind: str, config: dict, **context):
    trigger = TRIGGER_KINDS[kind]
    return trigger.evaluate(trigger.validate(config), EvaluationContext(now=NOW, **context))


def test_storage_threshold_matches_at_or_above():
    verdict = _evaluate("storage_threshold", {"threshold": 90}, system=_system(storage=90.0))
    assert verdict.matched
    assert verdict.payload == {"storage_percent": 90.0, "threshold": 90.0, "timestamp": NOW.isoformat()}
    assert not _evaluate("storage_threshold", {"threshold": 90}, system=_system(storage=89.9)).matched


def test_storage_threshold_without_metrics_is_an_error():
    with pytest.raises(EvaluationError):
        _evaluate("storage_threshold", {}, system=None)


def test_storage_threshold_rejects_out_of_range():
    with pytest.raises(RuleValidationError) as exc_info:
        TRIGGER_KINDS["storage_threshold"].validate({"threshold": 120})
    assert exc_info.value.errors[0].startswith("trigger_config.threshold")


def test_cpu_threshold_instantaneous():
    verdict = _evaluate("cpu_threshold", {"threshold": 80}, system=_system(cpu=85.0))
    assert verdict.matched
    assert verdict.payload["cpu_percent"] == 85.0
    assert "duration_minutes" not in verdict.payload


def test_cpu_threshold_sustained_requires_every_sample():
    samples = [(NOW - datetime.timedelta(minutes=m), 95.0) for m in range(0, 6)]
    system = _system(cpu=95.0, samples=samples, history_start=NOW - datetime.timedelta(minutes=10))
    verdict = _evaluate("cpu_threshold", {"threshold": 80, "duration_minutes": 5}, system=system)
    assert verdict.matched
    assert verdict.payload["duration_minutes"] == 5

    samples[2] = (samples[2][0], 40.0)
    system = _system(cpu=95.0, samples=samples, history_start=NOW - datetime.timedelta(minutes=10))
    assert not _evaluate("cpu_threshold", {"threshold": 80, "duration_minutes": 5}, system=system).matched


def test_cpu_threshold_sustained_needs_full_history():
    samples = [(NOW - datetime.timedelta(minutes=m), 95.0) for m in range(0, 3)]
    system = _system(cpu=95.0, samples=samples, history_start=NOW - datetime.timedelta(minutes=2))
    assert not _evaluate("cpu_threshold", {"threshold": 80, "duration_minutes": 5}, system=system).matched


def test_file_upload_filters_type_and_size():
    config = {"file_types": [".JPG", "png", "jpg"], "min_size_mb": 1}
    assert TRIGGER_KINDS["file_upload"].validate(config)["file_types"] == ["jpg", "png"]

    upload = UploadEvent(owner_id="o1", file_name="Holiday.JPG", file_size_bytes=2 * 1024 * 1024, uploaded_at=NOW)
    verdict = _evaluate("file_upload", config, upload=upload)
    assert verdict.matched
    assert verdict.payload["file_type"] == "jpg"
    assert verdict.payload["file_size_mb"] == "2.00"
    assert verdict.payload["upload_time"] == NOW.isoformat()

    small = UploadEvent(owner_id="o1", file_name="a.jpg", file_size_bytes=500_000)
    assert not _evaluate("file_upload", config, upload=small).matched
    other = UploadEvent(owner_id="o1", file_name="notes.txt", file_size_bytes=5 * 1024 * 1024)
    assert not _evaluate("file_upload", config, upload=other).matched


def test_file_upload_without_types_matches_any_file():
    upload = UploadEvent(owner_id="o1", file_name="README", file_size_bytes=10)
    verdict = _evaluate("file_upload", {}, upload=upload)
    assert verdict.matched
    assert verdict.payload["file_type"] == ""


def test_file_upload_has_no_cooldown():
    assert TRIGGER_KINDS["file_upload"].cooldown({}) == datetime.timedelta(0)


def test_scheduled_fires_once_per_window():
    previous = NOW - datetime.timedelta(minutes=1)
    verdict = _evaluate("scheduled", {"cron": "0 9 * * *"}, previous_tick=previous, timezone="UTC")
    assert verdict.matched
    assert verdict.payload["scheduled_at"] == "2026-10-18T09:00:00+00:00"

    later = _evaluate(
        "scheduled",
        {"cron": "0 9 * * *"},
        previous_tick=NOW,
        timezone="UTC",
    )
    assert not later.matched


def test_scheduled_uses_configured_timezone():
    now = datetime.datetime(2026, 10, 18, 13, 0, 30, tzinfo=datetime.timezone.utc)
    trigger = TRIGGER_KINDS["scheduled"]
    context = EvaluationContext(
        now=now,
        previous_tick=now - datetime.timedelta(minutes=1),
        timezone="America/New_York",
    )
    verdict = trigger.evaluate({"cron": "0 9 * * *"}, context)
    assert verdict.matched
    assert verdict.payload["scheduled_at"] == "2026-10-18T13:00:00+00:00"


def test_scheduled_unknown_timezone_is_an_error():
    with pytest.raises(EvaluationError):
        _evaluate("scheduled", {"cron": "* * * * *"}, timezone="Mars/Olympus")


def test_scheduled_rejects_bad_cron():
    with pytest.raises(RuleValidationError):
        TRIGGER_KINDS["scheduled"].validate({"cron": "0 9 * *"})
    with pytest.raises(RuleValidationError):
        TRIGGER_KINDS["scheduled"].validate({"cron": "99 9 * * *"})
    assert TRIGGER_KINDS["scheduled"].validate({"cron": " 0  9 * * 1 "})["cron"] == "0 9 * * 1"


def _inventory_gateway(tmp_path) -> DatabaseGateway:
    url = f"sqlite+pysqlite:///{tmp_path / 'inventory.db'}"
    engine = create_engine(url)
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE inventory (name TEXT, quantity INTEGER, reorder_threshold INTEGER)"))
        conn.execute(
            text(
                "INSERT INTO inventory VALUES ('bolts', 2, 10), ('nuts', 4, 10), ('screws', 50, 10)"
            )
        )
    engine.dispose()
    return DatabaseGateway(registry={"inv": {"name": "Inventory", "url": url}})


def test_database_query_payload_exposes_first_row(tmp_path):
    gateway = _inventory_gateway(tmp_path)
    config = {
        "database_id": "inv",
        "query": "SELECT name, quantity FROM inventory WHERE quantity < reorder_threshold ORDER BY name;",
    }
    verdict = _evaluate("database_query", config, databases=gateway)
    gateway.dispose()
    assert verdict.matched
    assert verdict.payload["row_count"] == 2
    assert verdict.payload["rows"] == [{"name": "bolts", "quantity": 2}, {"name": "nuts", "quantity": 4}]
    assert verdict.payload["name"] == "bolts"
    assert verdict.payload["quantity"] == 2


def test_database_query_no_rows_is_no_match(tmp_path):
    gateway = _inventory_gateway(tmp_path)
    config = {"database_id": "inv", "query": "SELECT name FROM inventory WHERE quantity > 1000"}
    assert not _evaluate("database_query", config, databases=gateway).matched
    gateway.dispose()


def test_database_query_unknown_database_is_an_error():
    with pytest.raises(EvaluationError):
        _evaluate(
            "database_query",
            {"database_id": "missing", "query": "SELECT 1"},
            databases=DatabaseGateway(registry={}),
        )


def test_database_query_cooldown_is_debounce_minutes():
    trigger = TRIGGER_KINDS["database_query"]
    config = trigger.validate({"database_id": "inv", "query": "SELECT 1", "debounce_minutes": 15})
    assert trigger.cooldown(config) == datetime.timedelta(minutes=15)


def test_describe_trigger():
    assert describe_trigger("storage_threshold", {"threshold": 90.0}) == "Storage usage exceeds 90%"
    assert describe_trigger("cpu_threshold", {"threshold": 75, "duration_minutes": 5}) == "CPU usage exceeds 75% for 5 min"
    assert describe_trigger("file_upload", {}) == "File uploaded (any file)"
    assert describe_trigger("scheduled", {"cron": "0 9 * * *"}) == "Scheduled: 0 9 * * *"
    assert describe_trigger("unknown_kind", {}) == "unknown_kind"
