import dataclasses
import datetime
import json

from ruleflow.core.errors import ActionError, TransientActionError
from ruleflow.models.execution_log import STATUS_FAILED, STATUS_SUCCESS, ExecutionLog
from ruleflow.services.actions import ActionContext
from ruleflow.services.dispatcher import ActionDispatcher
from ruleflow.services.firing import Firing, RuleSnapshot


class ScriptedHttp:
    """Returns the scripted outcomes in order; exceptions are raised."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def request(self, method, url, data=None, headers=None, timeout=None):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return type("Resp", (), {"status_code": outcome})()


def _firing(action_kind: str = "webhook", action_config=None) -> Firing:
    rule = RuleSnapshot(
        id=3,
        owner_id="o1",
        name="Hook",
        trigger_kind="scheduled",
        trigger_config={"cron": "* * * * *"},
        action_kind=action_kind,
        action_config=action_config if action_config is not None else {"url": "https://example.com/hook"},
    )
    return Firing(rule=rule, payload={"scheduled_at": "2026-10-18T09:00:00+00:00"})


def _dispatcher(session_factory, http, sleeps):
    context = ActionContext(session_factory=session_factory, http=http)
    return ActionDispatcher(
        session_factory,
        context=context,
        max_attempts=3,
        backoff=[0, 2, 4],
        sleep=sleeps.append,
    )


def test_success_on_first_attempt(session_factory):
    sleeps = []
    entry = _dispatcher(session_factory, ScriptedHttp([200]), sleeps).dispatch(_firing())
    assert entry.status == STATUS_SUCCESS
    assert entry.attempt_count == 1
    assert entry.action_result == {"status": 200}
    assert entry.trigger_payload == {"scheduled_at": "2026-10-18T09:00:00+00:00"}
    assert sleeps == []


def test_transient_failures_retry_with_backoff(session_factory):
    sleeps = []
    http = ScriptedHttp([503, 503, 200])
    entry = _dispatcher(session_factory, http, sleeps).dispatch(_firing())
    assert entry.status == STATUS_SUCCESS
    assert entry.attempt_count == 3
    assert sleeps == [2, 4]


def test_gives_up_after_max_attempts(session_factory):
    sleeps = []
    http = ScriptedHttp([503, 502, 500])
    entry = _dispatcher(session_factory, http, sleeps).dispatch(_firing())
    assert entry.status == STATUS_FAILED
    assert entry.attempt_count == 3
    assert "returned 500" in entry.error_message
    with session_factory() as db:
        assert db.query(ExecutionLog).count() == 1


def test_permanent_failure_stops_immediately(session_factory):
    sleeps = []
    http = ScriptedHttp([400, 200])
    entry = _dispatcher(session_factory, http, sleeps).dispatch(_firing())
    assert entry.status == STATUS_FAILED
    assert entry.attempt_count == 1
    assert http.calls == 1


def test_missing_endpoint_fails_without_sending(session_factory):
    http = ScriptedHttp([])
    entry = _dispatcher(session_factory, http, []).dispatch(_firing(action_config={}))
    assert entry.status == STATUS_FAILED
    assert entry.attempt_count == 1
    assert "no URL configured" in entry.error_message
    assert http.calls == 0


def test_invalid_config_is_logged_without_attempts(session_factory):
    entry = _dispatcher(session_factory, ScriptedHttp([]), []).dispatch(
        _firing(action_config={"url": "ftp://nope"})
    )
    assert entry.status == STATUS_FAILED
    assert entry.attempt_count == 0
    assert "action_config.url" in entry.error_message


def test_unexpected_errors_are_contained(session_factory):
    class Exploding:
        def send(self, msg, timeout):
            raise RuntimeError("boom")

    context = ActionContext(session_factory=session_factory, email_sender=Exploding())
    dispatcher = ActionDispatcher(session_factory, context=context, max_attempts=3, backoff=[0], sleep=lambda _: None)
    entry = dispatcher.dispatch(_firing("email", {"to": "me@example.com"}))
    assert entry.status == STATUS_FAILED
    assert entry.attempt_count == 1
    assert entry.error_message == "Unexpected error: boom"


def test_error_classes():
    assert TransientActionError("x").transient is True
    assert ActionError("x").transient is False


def test_default_webhook_body_is_stamped_with_firing_time(session_factory):
    bodies = []

    class RecordingHttp:
        def request(self, method, url, data=None, headers=None, timeout=None):
            bodies.append(json.loads(data))
            return type("Resp", (), {"status_code": 200})()

    fired_at = datetime.datetime(2026, 10, 18, 9, 0, tzinfo=datetime.timezone.utc)
    firing = dataclasses.replace(_firing(), fired_at=fired_at)
    entry = _dispatcher(session_factory, RecordingHttp(), []).dispatch(firing)
    assert entry.status == STATUS_SUCCESS
    assert bodies[0]["timestamp"] == "2026-10-18T09:00:00+00:00"
    assert bodies[0]["rule"] == "Hook"
