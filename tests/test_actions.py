import datetime
import json
import smtplib
from email.message import EmailMessage

import pytest
import requests

from ruleflow.core.errors import ActionError, TransientActionError
from ruleflow.models.notification import DashboardNotification
from ruleflow.models.owner_plan import OwnerPlan
from ruleflow.services.actions import ACTION_KINDS, ActionContext, SmtpEmailSender, describe_action
from ruleflow.services.firing import RuleSnapshot


def _snapshot(action_kind: str, action_config: dict, name: str = "Disk alert") -> RuleSnapshot:
    return RuleSnapshot(
        id=7,
        owner_id="o1",
        name=name,
        trigger_kind="storage_threshold",
        trigger_config={"threshold": 90},
        action_kind=action_kind,
        action_config=action_config,
    )


class FakeResponse:
    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code


class FakeHttp:
    def __init__(self, status_code: int = 200, exc: Exception | None = None) -> None:
        self.status_code = status_code
        self.exc = exc
        self.calls = []

    def request(self, method, url, data=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "data": data, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        return FakeResponse(self.status_code)


class FakeEmailSender:
    def __init__(self) -> None:
        self.sent = []

    def send(self, msg, timeout):
        self.sent.append(msg)


PAYLOAD = {"storage_percent": 93.2, "threshold": 90.0, "timestamp": "2026-10-18T09:00:00+00:00"}


def test_email_render_and_send(session_factory):
    kind = ACTION_KINDS["email"]
    config = kind.validate({"to": "me@example.com", "body": "Usage {{storage_percent}}%"})
    rule = _snapshot("email", config)
    rendered = kind.render(config, PAYLOAD, rule)
    assert rendered["subject"] == "Alert: Disk alert"
    assert rendered["text"] == "Usage 93.2%"
    assert "storage percent" in rendered["html"]
    assert "timestamp" not in rendered["html"]

    sender = FakeEmailSender()
    result = kind.send(rendered, ActionContext(session_factory=session_factory, email_sender=sender), rule)
    assert result == {"sent_to": "me@example.com"}
    assert sender.sent[0]["To"] == "me@example.com"


def test_email_falls_back_to_owner_address(session_factory):
    with session_factory() as db:
        db.add(OwnerPlan(owner_id="o1", plan_type="free", email="owner@example.com"))
        db.commit()
    kind = ACTION_KINDS["email"]
    config = kind.validate({})
    rule = _snapshot("email", config)
    rendered = kind.render(config, PAYLOAD, rule)
    assert "Trigger data:" in rendered["text"]
    sender = FakeEmailSender()
    result = kind.send(rendered, ActionContext(session_factory=session_factory, email_sender=sender), rule)
    assert result == {"sent_to": "owner@example.com"}


def test_email_uses_owner_from_override(session_factory):
    with session_factory() as db:
        db.add(OwnerPlan(owner_id="o1", plan_type="free", email_from="Home Cloud <alerts@home.example>"))
        db.commit()
    kind = ACTION_KINDS["email"]
    config = kind.validate({"to": "me@example.com"})
    rule = _snapshot("email", config)
    sender = FakeEmailSender()
    kind.send(kind.render(config, PAYLOAD, rule), ActionContext(session_factory=session_factory, email_sender=sender), rule)
    assert sender.sent[0]["From"] == "Home Cloud <alerts@home.example>"
    assert sender.sent[0]["To"] == "me@example.com"


def test_email_without_any_recipient_fails(session_factory):
    kind = ACTION_KINDS["email"]
    config = kind.validate({})
    rule = _snapshot("email", config)
    rendered = kind.render(config, PAYLOAD, rule)
    with pytest.raises(ActionError) as exc_info:
        kind.send(rendered, ActionContext(session_factory=session_factory, email_sender=FakeEmailSender()), rule)
    assert not exc_info.value.transient


def test_email_html_escapes_payload():
    kind = ACTION_KINDS["email"]
    config = kind.validate({"to": "me@example.com"})
    rule = _snapshot("email", config, name="<b>rule</b>")
    rendered = kind.render(config, {"file_name": "<script>x</script>"}, rule)
    assert "<script>" not in rendered["html"]
    assert "&lt;script&gt;" in rendered["html"]


def test_smtp_sender_requires_host():
    sender = SmtpEmailSender(host="")
    with pytest.raises(ActionError):
        sender.send(EmailMessage(), timeout=1)


def test_smtp_temporary_failures_are_transient(monkeypatch):
    class BrokenSMTP:
        def __init__(self, *args, **kwargs):
            raise smtplib.SMTPConnectError(421, b"try later")

    monkeypatch.setattr(smtplib, "SMTP", BrokenSMTP)
    with pytest.raises(TransientActionError):
        SmtpEmailSender(host="mail.local", port=1025).send(EmailMessage(), timeout=1)


def test_discord_default_message_and_truncation(session_factory):
    kind = ACTION_KINDS["discord"]
    config = kind.validate({"webhook_url": "https://discord.com/api/webhooks/1/abc"})
    rule = _snapshot("discord", config)
    rendered = kind.render(config, PAYLOAD, rule)
    assert rendered["content"].startswith("**Disk alert** triggered\n")

    long_config = kind.validate({"webhook_url": "https://discord.com/api/webhooks/1/abc", "message": "x" * 2500})
    assert len(kind.render(long_config, PAYLOAD, rule)["content"]) == 2000

    http = FakeHttp(204)
    result = kind.send(rendered, ActionContext(session_factory=session_factory, http=http, timeout=3), rule)
    assert result == {"status": 204}
    assert json.loads(http.calls[0]["data"]) == {"content": rendered["content"]}
    assert http.calls[0]["timeout"] == 3


def test_webhook_renders_body_and_method(session_factory):
    kind = ACTION_KINDS["webhook"]
    config = kind.validate(
        {"url": "https://example.com/hook", "method": "put", "body": {"usage": "{{storage_percent}}"}}
    )
    assert config["method"] == "PUT"
    rule = _snapshot("webhook", config)
    rendered = kind.render(config, PAYLOAD, rule)
    assert json.loads(rendered["body"]) == {"usage": "93.2"}

    get_config = kind.validate({"url": "https://example.com/hook", "method": "GET"})
    assert kind.render(get_config, PAYLOAD, rule)["body"] is None

    default = kind.render(kind.validate({"url": "https://example.com/hook"}), PAYLOAD, rule)
    body = json.loads(default["body"])
    assert body["rule"] == "Disk alert"
    assert body["trigger"] == PAYLOAD

    fired_at = datetime.datetime(2026, 10, 18, 9, 30, tzinfo=datetime.timezone.utc)
    stamped = kind.render(kind.validate({"url": "https://example.com/hook"}), PAYLOAD, rule, fired_at=fired_at)
    assert json.loads(stamped["body"])["timestamp"] == "2026-10-18T09:30:00+00:00"


@pytest.mark.parametrize(
    "status, exc_type",
    [(500, TransientActionError), (429, TransientActionError), (404, ActionError)],
)
def test_http_status_classification(session_factory, status, exc_type):
    context = ActionContext(session_factory=session_factory, http=FakeHttp(status))
    with pytest.raises(exc_type) as exc_info:
        context.http_send("POST", "https://example.com/hook", body="{}")
    assert exc_info.value.transient is (exc_type is TransientActionError)


def test_http_timeouts_are_transient(session_factory):
    context = ActionContext(session_factory=session_factory, http=FakeHttp(exc=requests.Timeout("slow")))
    with pytest.raises(TransientActionError):
        context.http_send("POST", "https://example.com/hook")


def test_dashboard_alert_creates_notification(session_factory):
    kind = ACTION_KINDS["dashboard_alert"]
    config = kind.validate({"title": "Disk {{storage_percent}}%", "severity": "warning"})
    rule = _snapshot("dashboard_alert", config)
    rendered = kind.render(config, PAYLOAD, rule)
    assert rendered["message"] == 'Rule "Disk alert" triggered.'
    result = kind.send(rendered, ActionContext(session_factory=session_factory), rule)
    assert result["notification_created"] is True
    with session_factory() as db:
        note = db.get(DashboardNotification, result["notification_id"])
        assert note.title == "Disk 93.2%"
        assert note.severity == "warning"
        assert note.owner_id == "o1"
        assert note.rule_id == 7


def test_describe_action():
    assert describe_action("email", {"to": "a@b.co"}) == "Email to a@b.co"
    assert describe_action("webhook", {"url": "https://x.io", "method": "PUT"}) == "Webhook PUT to https://x.io"
    assert describe_action("dashboard_alert", {}) == "Dashboard alert: Notification"
