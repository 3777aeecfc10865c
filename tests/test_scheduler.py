import datetime
import threading

import pytest
from sqlalchemy import create_engine, text

from ruleflow.models.execution_log import STATUS_FAILED, STATUS_SUCCESS, ExecutionLog
from ruleflow.models.notification import DashboardNotification
from ruleflow.models.rule import ENFORCED, ENFORCEMENT_ERROR, SUSPENDED_BY_GATE, AutomationRule
from ruleflow.services.databases import DatabaseGateway
from ruleflow.services.actions import ActionContext
from ruleflow.services.dispatcher import ActionDispatcher
from ruleflow.services.scheduler import RuleScheduler
from ruleflow.services.system_stats import SystemMonitor
from ruleflow.services.triggers import UploadEvent

T0 = datetime.datetime(2026, 10, 18, 9, 0, 30, tzinfo=datetime.timezone.utc)


class Clock:
    def __init__(self, now: datetime.datetime) -> None:
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs) -> datetime.datetime:
        self.now = self.now + datetime.timedelta(**kwargs)
        return self.now


def _add_rule(session_factory, **overrides) -> int:
    data = dict(
        owner_id="o1",
        name="Disk alert",
        active=True,
        enforcement_status=ENFORCED,
        trigger_kind="storage_threshold",
        trigger_config={"threshold": 80},
        action_kind="dashboard_alert",
        action_config={"title": "Disk {{storage_percent}}%"},
    )
    data.update(overrides)
    with session_factory() as db:
        rule = AutomationRule(**data)
        db.add(rule)
        db.commit()
        return rule.id


@pytest.fixture
def clock():
    return Clock(T0)


@pytest.fixture
def scheduler(session_factory, clock):
    monitor = SystemMonitor(cpu_reader=lambda: 10.0, storage_reader=lambda: 91.5)
    sched = RuleScheduler(
        session_factory,
        clock=clock,
        interval_sec=60,
        monitor=monitor,
        databases=DatabaseGateway(registry={}),
        dispatcher=ActionDispatcher(session_factory, max_attempts=1, backoff=[0], sleep=lambda _: None),
        evaluation_workers=2,
        dispatch_workers=2,
        timezone="UTC",
    )
    yield sched
    sched.stop(timeout=5)


def _logs(session_factory, rule_id=None):
    with session_factory() as db:
        query = db.query(ExecutionLog)
        if rule_id is not None:
            query = query.filter(ExecutionLog.rule_id == rule_id)
        return query.order_by(ExecutionLog.id.asc()).all()


def test_tick_fires_and_dispatches(session_factory, scheduler, clock):
    rule_id = _add_rule(session_factory)
    report = scheduler.tick()
    assert report.evaluated == 1
    assert report.fired == 1
    assert scheduler.wait_idle(timeout=5)

    logs = _logs(session_factory, rule_id)
    assert [log.status for log in logs] == [STATUS_SUCCESS]
    assert logs[0].attempt_count == 1
    assert logs[0].trigger_payload["storage_percent"] == 91.5
    with session_factory() as db:
        note = db.query(DashboardNotification).one()
        assert note.title == "Disk 91.5%"
        assert db.get(AutomationRule, rule_id).last_triggered is not None


def test_cooldown_suppresses_refire(session_factory, scheduler, clock):
    rule_id = _add_rule(session_factory)
    assert scheduler.tick().fired == 1
    clock.advance(minutes=1)
    assert scheduler.tick().fired == 0
    clock.advance(minutes=5)
    assert scheduler.tick().fired == 1
    scheduler.wait_idle(timeout=5)
    assert len(_logs(session_factory, rule_id)) == 2


def test_persisted_last_triggered_seeds_cooldown(session_factory, scheduler, clock):
    _add_rule(session_factory, last_triggered=T0 - datetime.timedelta(minutes=2))
    assert scheduler.tick().fired == 0


def test_inactive_and_suspended_rules_are_skipped(session_factory, scheduler):
    _add_rule(session_factory, active=False)
    _add_rule(session_factory, enforcement_status=SUSPENDED_BY_GATE)
    report = scheduler.tick()
    assert report.evaluated == 0
    assert report.fired == 0


def test_evaluation_errors_are_logged_and_isolated(session_factory, scheduler):
    broken = _add_rule(
        session_factory,
        trigger_kind="database_query",
        trigger_config={"database_id": "missing", "query": "SELECT 1"},
    )
    healthy = _add_rule(session_factory)
    report = scheduler.tick()
    assert report.errors == 1
    assert report.fired == 1
    scheduler.wait_idle(timeout=5)

    failed = _logs(session_factory, broken)
    assert len(failed) == 1
    assert failed[0].status == STATUS_FAILED
    assert failed[0].attempt_count == 0
    assert failed[0].error_message.startswith("Evaluation failed:")
    assert [log.status for log in _logs(session_factory, healthy)] == [STATUS_SUCCESS]


def test_invalid_stored_definition_marks_rule_error(session_factory, scheduler):
    rule_id = _add_rule(session_factory, trigger_config={"threshold": "lots"})
    report = scheduler.tick()
    assert report.errors == 1
    with session_factory() as db:
        assert db.get(AutomationRule, rule_id).enforcement_status == ENFORCEMENT_ERROR
    assert _logs(session_factory, rule_id)[0].error_message.startswith("Invalid rule definition")
    # rules in error are not evaluated again
    assert scheduler.tick().evaluated == 0


def test_scheduled_rule_fires_once_per_cron_slot(session_factory, scheduler, clock):
    rule_id = _add_rule(session_factory, trigger_kind="scheduled", trigger_config={"cron": "0 9 * * *"})
    assert scheduler.tick().fired == 1
    clock.advance(minutes=1)
    assert scheduler.tick().fired == 0
    scheduler.wait_idle(timeout=5)
    logs = _logs(session_factory, rule_id)
    assert logs[0].trigger_payload["scheduled_at"] == "2026-10-18T09:00:00+00:00"


def test_file_upload_push_path(session_factory, scheduler):
    match = _add_rule(
        session_factory,
        trigger_kind="file_upload",
        trigger_config={"file_types": ["pdf"]},
        action_config={"title": "Uploaded {{file_name}}"},
    )
    _add_rule(session_factory, owner_id="o2", trigger_kind="file_upload", trigger_config={})

    fired = scheduler.handle_file_upload(UploadEvent(owner_id="o1", file_name="report.pdf", file_size_bytes=1024))
    assert fired == 1
    assert scheduler.handle_file_upload(UploadEvent(owner_id="o1", file_name="photo.png", file_size_bytes=10)) == 0
    scheduler.wait_idle(timeout=5)
    with session_factory() as db:
        notes = db.query(DashboardNotification).all()
        assert [n.title for n in notes] == ["Uploaded report.pdf"]
        assert notes[0].rule_id == match

    # file uploads are not polled on ticks
    assert scheduler.tick().evaluated == 0


def test_rule_disabled_between_evaluation_and_proceed(session_factory, scheduler, clock):
    rule_id = _add_rule(session_factory)
    snapshots, _ = scheduler._load_rules()
    with session_factory() as db:
        db.get(AutomationRule, rule_id).active = False
        db.commit()
    assert scheduler._proceed(snapshots[0], {"storage_percent": 91.5}, clock()) is False
    assert _logs(session_factory, rule_id) == []


def test_background_loop_start_stop(session_factory, scheduler):
    _add_rule(session_factory)
    scheduler.start()
    assert scheduler.running
    scheduler.stop(timeout=5)
    assert not scheduler.running
    status = scheduler.status()
    assert status["running"] is False
    assert status["interval_sec"] == 60


@pytest.fixture
def inventory(tmp_path):
    url = f"sqlite+pysqlite:///{tmp_path / 'inventory.db'}"
    engine = create_engine(url)
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE inventory (name TEXT, quantity INTEGER)"))
        conn.execute(text("INSERT INTO inventory VALUES ('bolts', 2), ('nuts', 40)"))
    engine.dispose()
    gateway = DatabaseGateway(registry={"inv": {"name": "Inventory", "url": url}})
    yield gateway
    gateway.dispose()


def _query_rule(session_factory, query: str, debounce_minutes: int = 5) -> int:
    return _add_rule(
        session_factory,
        name="Low stock",
        trigger_kind="database_query",
        trigger_config={"database_id": "inv", "query": query, "debounce_minutes": debounce_minutes},
        action_config={"title": "{{row_count}} low: {{name}}"},
    )


def test_database_query_without_rows_fires_nothing(session_factory, scheduler, inventory):
    scheduler.databases = inventory
    rule_id = _query_rule(session_factory, "SELECT name FROM inventory WHERE quantity < 0")

    report = scheduler.tick()
    assert report.evaluated == 1
    assert report.matched == 0
    assert report.fired == 0
    scheduler.wait_idle(timeout=5)

    assert _logs(session_factory, rule_id) == []
    with session_factory() as db:
        assert db.query(DashboardNotification).count() == 0
        assert db.get(AutomationRule, rule_id).last_triggered is None


def test_database_query_debounce_suppresses_repeat_matches(session_factory, scheduler, clock, inventory):
    scheduler.databases = inventory
    rule_id = _query_rule(session_factory, "SELECT name, quantity FROM inventory WHERE quantity < 5", 10)

    assert scheduler.tick().fired == 1
    clock.advance(minutes=5)
    report = scheduler.tick()
    assert report.matched == 1
    assert report.fired == 0
    clock.advance(minutes=6)
    assert scheduler.tick().fired == 1
    scheduler.wait_idle(timeout=5)

    logs = _logs(session_factory, rule_id)
    assert [log.status for log in logs] == [STATUS_SUCCESS, STATUS_SUCCESS]
    assert logs[0].trigger_payload["row_count"] == 1
    assert logs[0].trigger_payload["name"] == "bolts"
    with session_factory() as db:
        titles = [note.title for note in db.query(DashboardNotification).all()]
    assert titles == ["1 low: bolts", "1 low: bolts"]


def test_scheduled_rule_fires_once_per_day_with_sub_minute_ticks(session_factory, scheduler, clock):
    rule_id = _add_rule(session_factory, trigger_kind="scheduled", trigger_config={"cron": "30 14 * * *"})
    fired = 0
    for _ in range(24 * 60 * 3):
        clock.advance(seconds=20)
        fired += scheduler.tick().fired
    scheduler.wait_idle(timeout=5)

    assert fired == 1
    logs = _logs(session_factory, rule_id)
    assert len(logs) == 1
    assert logs[0].trigger_payload["scheduled_at"] == "2026-10-18T14:30:00+00:00"


def test_enqueued_firing_completes_after_rule_is_disabled(session_factory, scheduler):
    release = threading.Event()
    calls = []

    class SlowHttp:
        def request(self, method, url, data=None, headers=None, timeout=None):
            calls.append(url)
            release.wait(timeout=5)
            return type("Resp", (), {"status_code": 200})()

    scheduler.dispatcher = ActionDispatcher(
        session_factory,
        context=ActionContext(session_factory=session_factory, http=SlowHttp()),
        max_attempts=1,
        backoff=[0],
        sleep=lambda _: None,
    )
    rule_id = _add_rule(session_factory, action_kind="webhook", action_config={"url": "https://example.com/hook"})
    assert scheduler.tick().fired == 1

    with session_factory() as db:
        db.get(AutomationRule, rule_id).active = False
        db.commit()
    release.set()
    assert scheduler.wait_idle(timeout=5)

    logs = _logs(session_factory, rule_id)
    assert [log.status for log in logs] == [STATUS_SUCCESS]
    assert logs[0].rule_name == "Disk alert"
    assert calls == ["https://example.com/hook"]
    assert scheduler.tick().evaluated == 0


def test_host_metrics_sampled_only_for_system_rules(session_factory, clock):
    reads = []
    monitor = SystemMonitor(cpu_reader=lambda: reads.append("cpu") or 10.0, storage_reader=lambda: 50.0)
    sched = RuleScheduler(
        session_factory,
        clock=clock,
        interval_sec=60,
        monitor=monitor,
        databases=DatabaseGateway(registry={}),
        dispatcher=ActionDispatcher(session_factory, max_attempts=1, backoff=[0], sleep=lambda _: None),
        timezone="UTC",
    )
    try:
        _add_rule(session_factory, trigger_kind="scheduled", trigger_config={"cron": "0 3 * * *"})
        sched.tick()
        assert reads == []

        _add_rule(session_factory, trigger_kind="cpu_threshold", trigger_config={"threshold": 95})
        clock.advance(minutes=1)
        sched.tick()
        assert reads == ["cpu"]
    finally:
        sched.stop(timeout=5)
