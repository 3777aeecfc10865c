"""
Action kinds and their transports.

Each action kind is one variant in ``ACTION_KINDS``: it validates its
config, renders the templated fields against a firing payload and sends
the result. Sends raise ``TransientActionError`` for failures worth
retrying and ``ActionError`` for everything else.
"""

from __future__ import annotations

import datetime
import html
import json
import logging
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.clock import utcnow
from ..core.config import settings
from ..core.errors import ActionError, TransientActionError
from ..models.notification import DashboardNotification
from ..models.owner_plan import OwnerPlan
from ..schemas.configs import (
    ActionConfig,
    DashboardAlertConfig,
    DiscordConfig,
    EmailConfig,
    WebhookConfig,
    validate_config,
)
from .firing import RuleSnapshot
from .templates import format_value, render_template
from .triggers import TRIGGER_KINDS


logger = logging.getLogger("actions")

TRANSIENT_HTTP_STATUSES = {408, 425, 429}
DISCORD_MAX_CONTENT = 2000
_EMAIL_SKIP_KEYS = {"rows", "timestamp", "row_count"}


class SmtpEmailSender:
    """SMTP transport for email actions; settings come from SMTP_* variables."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        sender: Optional[str] = None,
        starttls: Optional[bool] = None,
    ) -> None:
        self.host = host if host is not None else settings.smtp_host
        self.port = port if port is not None else settings.smtp_port
        self.user = user if user is not None else settings.smtp_user
        self.password = password if password is not None else settings.smtp_password
        self.sender = sender or settings.smtp_from or self.user or "ruleflow@localhost"
        if starttls is None:
            # MailHog-style local relays on 1025 do not speak TLS
            starttls = settings.smtp_starttls and self.port != 1025
        self.starttls = starttls

    def send(self, msg: EmailMessage, timeout: float) -> None:
        if not self.host:
            raise ActionError("SMTP_HOST is not configured")
        if not msg.get("From"):
            msg["From"] = self.sender
        try:
            with smtplib.SMTP(self.host, self.port, timeout=timeout) as server:
                server.ehlo()
                if self.starttls:
                    server.starttls()
                    server.ehlo()
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError) as exc:
            raise TransientActionError(f"SMTP connection failed: {exc}") from exc
        except smtplib.SMTPResponseException as exc:
            if 400 <= exc.smtp_code < 500:
                raise TransientActionError(f"SMTP temporary failure {exc.smtp_code}: {exc.smtp_error!r}") from exc
            raise ActionError(f"SMTP send failed {exc.smtp_code}: {exc.smtp_error!r}") from exc
        except smtplib.SMTPException as exc:
            raise ActionError(f"SMTP send failed: {exc}") from exc
        except OSError as exc:
            raise TransientActionError(f"SMTP network error: {exc}") from exc


def _owner_addresses(db: Session, owner_id: str) -> Tuple[Optional[str], Optional[str]]:
    """Return the owner's (recipient, From override) from the plan row."""
    plan = db.get(OwnerPlan, owner_id)
    if plan is None:
        return None, None
    return (plan.email or "").strip() or None, (plan.email_from or "").strip() or None


@dataclass
class ActionContext:
    session_factory: Callable[[], Session]
    email_sender: Any = field(default_factory=SmtpEmailSender)
    http: Any = requests
    timeout: float = field(default_factory=lambda: settings.action_timeout_sec)

    def http_send(self, method: str, url: str, *, body: Optional[str] = None) -> requests.Response:
        headers = {"Content-Type": "application/json"}
        try:
            response = self.http.request(method, url, data=body, headers=headers, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientActionError(f"{method} {url} failed: {exc}") from exc
        except requests.RequestException as exc:
            raise ActionError(f"{method} {url} failed: {exc}") from exc
        status = response.status_code
        if status in TRANSIENT_HTTP_STATUSES or status >= 500:
            raise TransientActionError(f"{url} returned {status}")
        if status // 100 != 2:
            raise ActionError(f"{url} returned {status}")
        return response


class ActionKind:
    name: str = ""
    schema: type[ActionConfig] = ActionConfig
    # config fields that must be filled in before the rule may be activated
    endpoint_fields: tuple[str, ...] = ()

    def validate(self, config: Any) -> Dict[str, Any]:
        return validate_config(self.schema, config, "action_config")

    def missing_fields(self, config: Dict[str, Any]) -> List[str]:
        return [name for name in self.endpoint_fields if not str(config.get(name) or "").strip()]

    def render(
        self,
        config: Dict[str, Any],
        payload: Dict[str, Any],
        rule: RuleSnapshot,
        fired_at: Optional[datetime.datetime] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def send(self, rendered: Dict[str, Any], context: ActionContext, rule: RuleSnapshot) -> Dict[str, Any]:
        raise NotImplementedError

    def describe(self, config: Dict[str, Any]) -> str:
        return self.name


def build_html_email(rule: RuleSnapshot, payload: Dict[str, Any], subject: str, body: str) -> str:
    trigger = TRIGGER_KINDS.get(rule.trigger_kind)
    trigger_label = trigger.label if trigger else rule.trigger_kind
    rows = "".join(
        "<tr><td style=\"padding:6px 12px;color:#6B7280;text-transform:capitalize;\">{}</td>"
        "<td style=\"padding:6px 12px;font-family:monospace;\">{}</td></tr>".format(
            html.escape(key.replace("_", " ")),
            html.escape(format_value(value)),
        )
        for key, value in payload.items()
        if key not in _EMAIL_SKIP_KEYS
    )
    data_table = f"<table style=\"border-collapse:collapse;margin:16px 0;\">{rows}</table>" if rows else ""
    custom = (
        f"<p style=\"white-space:pre-wrap;border-left:3px solid #5D5FEF;padding-left:12px;\">{html.escape(body)}</p>"
        if body
        else ""
    )
    return (
        "<!DOCTYPE html><html><head><meta charset=\"UTF-8\">"
        f"<title>{html.escape(subject)}</title></head>"
        "<body style=\"font-family:-apple-system,Segoe UI,Roboto,Arial,sans-serif;\">"
        f"<p style=\"text-transform:uppercase;font-size:11px;color:#6B7280;\">{html.escape(trigger_label)}</p>"
        f"<h1 style=\"font-size:20px;\">{html.escape(rule.name)}</h1>"
        f"{data_table}{custom}"
        "<p style=\"font-size:11px;color:#6B7280;\">You received this because an automation rule you created "
        "was triggered. Deactivate the rule to stop these alerts.</p>"
        "</body></html>"
    )


class EmailAction(ActionKind):
    name = "email"
    schema = EmailConfig

    def render(
        self,
        config: Dict[str, Any],
        payload: Dict[str, Any],
        rule: RuleSnapshot,
        fired_at: Optional[datetime.datetime] = None,
    ) -> Dict[str, Any]:
        subject = render_template(config.get("subject") or f"Alert: {rule.name}", payload)
        body = render_template(config.get("body"), payload)
        text = body
        if not text:
            lines = [f"  {key}: {format_value(value)}" for key, value in payload.items() if key != "rows"]
            text = f'Your automation rule "{rule.name}" was triggered.\n\nTrigger data:\n' + "\n".join(lines)
        return {
            "to": (config.get("to") or "").strip(),
            "subject": subject,
            "text": text,
            "html": build_html_email(rule, payload, subject, body),
        }

    def send(self, rendered: Dict[str, Any], context: ActionContext, rule: RuleSnapshot) -> Dict[str, Any]:
        with context.session_factory() as db:
            owner_to, owner_from = _owner_addresses(db, rule.owner_id)
        to = rendered.get("to") or owner_to or ""
        if not to:
            raise ActionError('Email action: no recipient configured. Set a "to" address on the rule.')
        msg = EmailMessage()
        msg["Subject"] = rendered["subject"]
        msg["To"] = to
        if owner_from:
            msg["From"] = owner_from
        msg.set_content(rendered["text"])
        msg.add_alternative(rendered["html"], subtype="html")
        context.email_sender.send(msg, timeout=context.timeout)
        return {"sent_to": to}

    def describe(self, config: Dict[str, Any]) -> str:
        return f"Email to {config.get('to') or 'configured address'}"


class DiscordAction(ActionKind):
    name = "discord"
    schema = DiscordConfig
    endpoint_fields = ("webhook_url",)

    def render(
        self,
        config: Dict[str, Any],
        payload: Dict[str, Any],
        rule: RuleSnapshot,
        fired_at: Optional[datetime.datetime] = None,
    ) -> Dict[str, Any]:
        template = config.get("message") or f"**{rule.name}** triggered\n{json.dumps(payload, default=str)}"
        message = render_template(template, payload)
        return {"webhook_url": config.get("webhook_url") or "", "content": message[:DISCORD_MAX_CONTENT]}

    def send(self, rendered: Dict[str, Any], context: ActionContext, rule: RuleSnapshot) -> Dict[str, Any]:
        url = rendered.get("webhook_url")
        if not url:
            raise ActionError("Discord action: no webhook_url configured")
        response = context.http_send("POST", url, body=json.dumps({"content": rendered["content"]}))
        return {"status": response.status_code}

    def describe(self, config: Dict[str, Any]) -> str:
        return "Discord message to webhook"


class WebhookAction(ActionKind):
    name = "webhook"
    schema = WebhookConfig
    endpoint_fields = ("url",)

    def render(
        self,
        config: Dict[str, Any],
        payload: Dict[str, Any],
        rule: RuleSnapshot,
        fired_at: Optional[datetime.datetime] = None,
    ) -> Dict[str, Any]:
        method = config.get("method") or "POST"
        if config.get("body"):
            body = render_template(config["body"], payload)
        else:
            body = json.dumps(
                {"rule": rule.name, "trigger": payload, "timestamp": (fired_at or utcnow()).isoformat()},
                default=str,
            )
        return {"url": config.get("url") or "", "method": method, "body": None if method == "GET" else body}

    def send(self, rendered: Dict[str, Any], context: ActionContext, rule: RuleSnapshot) -> Dict[str, Any]:
        url = rendered.get("url")
        if not url:
            raise ActionError("Webhook action: no URL configured")
        response = context.http_send(rendered["method"], url, body=rendered.get("body"))
        return {"status": response.status_code}

    def describe(self, config: Dict[str, Any]) -> str:
        return f"Webhook {config.get('method') or 'POST'} to {config.get('url') or 'configured URL'}"


class DashboardAlertAction(ActionKind):
    name = "dashboard_alert"
    schema = DashboardAlertConfig

    def render(
        self,
        config: Dict[str, Any],
        payload: Dict[str, Any],
        rule: RuleSnapshot,
        fired_at: Optional[datetime.datetime] = None,
    ) -> Dict[str, Any]:
        return {
            "title": render_template(config.get("title") or rule.name, payload),
            "message": render_template(config.get("message") or f'Rule "{rule.name}" triggered.', payload),
            "severity": config.get("severity") or "info",
        }

    def send(self, rendered: Dict[str, Any], context: ActionContext, rule: RuleSnapshot) -> Dict[str, Any]:
        try:
            with context.session_factory() as db:
                note = DashboardNotification(
                    owner_id=rule.owner_id,
                    rule_id=rule.id,
                    title=rendered["title"][:255],
                    message=rendered["message"],
                    severity=rendered["severity"],
                    category="automation",
                )
                db.add(note)
                db.commit()
                note_id = note.id
        except OperationalError as exc:
            raise TransientActionError(f"Notification insert failed: {exc}") from exc
        except SQLAlchemyError as exc:
            raise ActionError(f"Notification insert failed: {exc}") from exc
        return {"notification_created": True, "notification_id": note_id}

    def describe(self, config: Dict[str, Any]) -> str:
        return f"Dashboard alert: {config.get('title') or 'Notification'}"


ACTION_KINDS: Dict[str, ActionKind] = {
    kind.name: kind
    for kind in (
        EmailAction(),
        DiscordAction(),
        WebhookAction(),
        DashboardAlertAction(),
    )
}


def get_action_kind(name: str) -> Optional[ActionKind]:
    return ACTION_KINDS.get(name)


def describe_action(kind: str, config: Optional[Dict[str, Any]]) -> str:
    variant = ACTION_KINDS.get(kind)
    if variant is None:
        return kind
    return variant.describe(config or {})
