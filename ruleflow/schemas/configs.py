"""
Pydantic schemas for trigger and action configurations.

These are the versioned config contracts for each trigger/action kind.
Adding a kind means adding a schema here; existing fields keep their
meaning.
"""

from __future__ import annotations

import json
import re
from typing import Any, List, Literal, Optional

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..core.errors import RuleValidationError
from ..services.databases import ensure_read_only

_EMAIL_RE = re.compile(r"^[^@\s,;]+@[^@\s,;]+\.[^@\s,;]+$")
_URL_RE = re.compile(r"^https?://\S+$", re.IGNORECASE)


class TriggerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")


class StorageThresholdConfig(TriggerConfig):
    threshold: float = Field(default=90, ge=0, le=100)


class CpuThresholdConfig(TriggerConfig):
    threshold: float = Field(default=80, ge=0, le=100)
    duration_minutes: Optional[int] = Field(default=None, ge=1, le=60)


class FileUploadConfig(TriggerConfig):
    file_types: List[str] = Field(default_factory=list)
    min_size_mb: float = Field(default=0, ge=0)

    @field_validator("file_types")
    @classmethod
    def _normalize_types(cls, value: List[str]) -> List[str]:
        normalized: list[str] = []
        for item in value:
            ext = str(item).strip().lower().lstrip(".")
            if ext and ext not in normalized:
                normalized.append(ext)
        return normalized


class ScheduledConfig(TriggerConfig):
    cron: str

    @field_validator("cron")
    @classmethod
    def _check_cron(cls, value: str) -> str:
        expr = " ".join(value.split())
        if len(expr.split(" ")) != 5:
            raise ValueError("cron must have exactly 5 fields (minute hour day-of-month month day-of-week)")
        if not croniter.is_valid(expr):
            raise ValueError(f"invalid cron expression: {value!r}")
        return expr


class DatabaseQueryConfig(TriggerConfig):
    database_id: str = Field(min_length=1)
    query: str = Field(min_length=1)
    debounce_minutes: int = Field(default=5, ge=0, le=1440)

    @field_validator("query")
    @classmethod
    def _check_read_only(cls, value: str) -> str:
        return ensure_read_only(value)


class ActionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")


class EmailConfig(ActionConfig):
    to: str = ""
    subject: str = ""
    body: str = ""

    @field_validator("to")
    @classmethod
    def _check_recipients(cls, value: str) -> str:
        recipients = [part.strip() for part in value.split(",") if part.strip()]
        for addr in recipients:
            if not _EMAIL_RE.match(addr):
                raise ValueError(f"invalid email address: {addr!r}")
        return ", ".join(recipients)


class DiscordConfig(ActionConfig):
    webhook_url: str = ""
    message: str = ""

    @field_validator("webhook_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        value = value.strip()
        if value and not _URL_RE.match(value):
            raise ValueError("webhook_url must be an http(s) URL")
        return value


class WebhookConfig(ActionConfig):
    url: str = ""
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    body: str = ""

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        value = value.strip()
        if value and not _URL_RE.match(value):
            raise ValueError("url must be an http(s) URL")
        return value

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("body", mode="before")
    @classmethod
    def _serialize_body(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return value


class DashboardAlertConfig(ActionConfig):
    title: str = ""
    message: str = ""
    severity: Literal["info", "warning", "error"] = "info"


def _format_error(prefix: str, error: dict) -> str:
    loc = ".".join(str(part) for part in error.get("loc", ()) if part != "__root__")
    msg = str(error.get("msg", "invalid value"))
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    return f"{prefix}.{loc}: {msg}" if loc else f"{prefix}: {msg}"


def validate_config(schema: type[BaseModel], config: Any, prefix: str) -> dict:
    """Validate ``config`` against ``schema`` and return the normalized dict.

    Raises RuleValidationError with one message per violated field.
    """
    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise RuleValidationError([f"{prefix} must be an object"])
    try:
        return schema.model_validate(config).model_dump()
    except ValidationError as exc:
        raise RuleValidationError(_format_error(prefix, err) for err in exc.errors()) from exc
