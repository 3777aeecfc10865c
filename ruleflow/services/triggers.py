"""
Trigger evaluators for automation rules.

Each trigger kind is one variant in ``TRIGGER_KINDS``. A variant validates
its config, evaluates it against an ``EvaluationContext`` and reports the
cool-down applied after it fires. Evaluators never mutate rule state.
"""

from __future__ import annotations

import datetime
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from ..core.clock import ensure_utc
from ..core.config import settings
from ..core.errors import EvaluationError
from ..schemas.configs import (
    CpuThresholdConfig,
    DatabaseQueryConfig,
    FileUploadConfig,
    ScheduledConfig,
    StorageThresholdConfig,
    TriggerConfig,
    validate_config,
)
from .databases import DatabaseGateway
from .system_stats import SystemSnapshot


logger = logging.getLogger("trigger_evaluators")

SCHEDULED_COOLDOWN = datetime.timedelta(seconds=60)
DB_ROWS_IN_PAYLOAD = 10


@dataclass
class Verdict:
    matched: bool
    payload: Optional[Dict[str, Any]] = None


NO_MATCH = Verdict(matched=False)


@dataclass
class UploadEvent:
    owner_id: str
    file_name: str
    file_size_bytes: int
    file_url: Optional[str] = None
    uploaded_at: Optional[datetime.datetime] = None

    @property
    def extension(self) -> str:
        name = os.path.basename(self.file_name or "")
        if "." not in name:
            return ""
        return name.rsplit(".", 1)[1].lower()


@dataclass
class EvaluationContext:
    now: datetime.datetime
    previous_tick: Optional[datetime.datetime] = None
    system: Optional[SystemSnapshot] = None
    databases: Optional[DatabaseGateway] = None
    upload: Optional[UploadEvent] = None
    timezone: str = field(default_factory=lambda: settings.schedule_timezone)

    @property
    def timestamp(self) -> str:
        return ensure_utc(self.now).isoformat()


def _default_cooldown() -> datetime.timedelta:
    return datetime.timedelta(minutes=settings.default_cooldown_minutes)


def _fmt_number(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class TriggerKind:
    name: str = ""
    label: str = ""
    schema: type[TriggerConfig] = TriggerConfig
    # push-driven kinds are evaluated on events, not on scheduler ticks
    push: bool = False
    needs_system: bool = False

    def validate(self, config: Any) -> Dict[str, Any]:
        return validate_config(self.schema, config, "trigger_config")

    def evaluate(self, config: Dict[str, Any], context: EvaluationContext) -> Verdict:
        raise NotImplementedError

    def cooldown(self, config: Dict[str, Any]) -> datetime.timedelta:
        return _default_cooldown()

    def describe(self, config: Dict[str, Any]) -> str:
        return self.name


class StorageThresholdTrigger(TriggerKind):
    name = "storage_threshold"
    label = "Storage Threshold"
    schema = StorageThresholdConfig
    needs_system = True

    def evaluate(self, config: Dict[str, Any], context: EvaluationContext) -> Verdict:
        if context.system is None:
            raise EvaluationError("Storage metrics unavailable")
        threshold = config.get("threshold", 90)
        usage = context.system.storage_percent
        if usage < threshold:
            return NO_MATCH
        return Verdict(True, {"storage_percent": usage, "threshold": threshold, "timestamp": context.timestamp})

    def describe(self, config: Dict[str, Any]) -> str:
        return f"Storage usage exceeds {_fmt_number(config.get('threshold', 90))}%"


class CpuThresholdTrigger(TriggerKind):
    name = "cpu_threshold"
    label = "CPU Threshold"
    schema = CpuThresholdConfig
    needs_system = True

    def evaluate(self, config: Dict[str, Any], context: EvaluationContext) -> Verdict:
        if context.system is None:
            raise EvaluationError("CPU metrics unavailable")
        threshold = config.get("threshold", 80)
        duration = config.get("duration_minutes")
        load = context.system.cpu_percent
        if duration:
            if not context.system.cpu_sustained(threshold, duration):
                return NO_MATCH
        elif load < threshold:
            return NO_MATCH
        payload: Dict[str, Any] = {"cpu_percent": load, "threshold": threshold, "timestamp": context.timestamp}
        if duration:
            payload["duration_minutes"] = duration
        return Verdict(True, payload)

    def describe(self, config: Dict[str, Any]) -> str:
        text = f"CPU usage exceeds {_fmt_number(config.get('threshold', 80))}%"
        if config.get("duration_minutes"):
            text += f" for {config['duration_minutes']} min"
        return text


class FileUploadTrigger(TriggerKind):
    name = "file_upload"
    label = "File Upload"
    schema = FileUploadConfig
    push = True

    def evaluate(self, config: Dict[str, Any], context: EvaluationContext) -> Verdict:
        upload = context.upload
        if upload is None:
            return NO_MATCH
        allowed = config.get("file_types") or []
        ext = upload.extension
        if allowed and ext not in allowed:
            return NO_MATCH
        min_bytes = float(config.get("min_size_mb") or 0) * 1024 * 1024
        if upload.file_size_bytes < min_bytes:
            return NO_MATCH
        uploaded_at = ensure_utc(upload.uploaded_at or context.now).isoformat()
        return Verdict(
            True,
            {
                "file_name": upload.file_name,
                "file_type": ext,
                "file_size_bytes": upload.file_size_bytes,
                "file_size_mb": f"{upload.file_size_bytes / 1024 / 1024:.2f}",
                "upload_time": uploaded_at,
                "file_url": upload.file_url or "",
                "timestamp": context.timestamp,
            },
        )

    def cooldown(self, config: Dict[str, Any]) -> datetime.timedelta:
        return datetime.timedelta(0)

    def describe(self, config: Dict[str, Any]) -> str:
        types = config.get("file_types") or []
        return f"File uploaded ({', '.join(types) if types else 'any file'})"


class ScheduledTrigger(TriggerKind):
    name = "scheduled"
    label = "Scheduled"
    schema = ScheduledConfig

    def evaluate(self, config: Dict[str, Any], context: EvaluationContext) -> Verdict:
        try:
            tz = ZoneInfo(context.timezone or "UTC")
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise EvaluationError(f"Unknown schedule timezone {context.timezone!r}") from exc
        now = ensure_utc(context.now).astimezone(tz)
        previous = context.previous_tick or (context.now - SCHEDULED_COOLDOWN)
        previous = ensure_utc(previous).astimezone(tz)
        if previous >= now:
            return NO_MATCH
        # first fire time strictly after the previous tick
        fire_at = croniter(config["cron"], previous).get_next(datetime.datetime)
        if fire_at > now:
            return NO_MATCH
        scheduled_at = ensure_utc(fire_at).isoformat()
        return Verdict(True, {"scheduled_at": scheduled_at, "timestamp": context.timestamp})

    def cooldown(self, config: Dict[str, Any]) -> datetime.timedelta:
        return SCHEDULED_COOLDOWN

    def describe(self, config: Dict[str, Any]) -> str:
        return f"Scheduled: {config.get('cron') or '* * * * *'}"


class DatabaseQueryTrigger(TriggerKind):
    name = "database_query"
    label = "Database Query"
    schema = DatabaseQueryConfig

    def evaluate(self, config: Dict[str, Any], context: EvaluationContext) -> Verdict:
        if context.databases is None:
            raise EvaluationError("No database gateway configured")
        rows = context.databases.run_read_query(config["database_id"], config["query"])
        if not rows:
            return NO_MATCH
        payload: Dict[str, Any] = {
            "row_count": len(rows),
            "rows": rows[:DB_ROWS_IN_PAYLOAD],
            "timestamp": context.timestamp,
        }
        # first-row columns are addressable as {{column}} in action templates
        payload.update(rows[0])
        return Verdict(True, payload)

    def cooldown(self, config: Dict[str, Any]) -> datetime.timedelta:
        return datetime.timedelta(minutes=int(config.get("debounce_minutes", 5)))

    def describe(self, config: Dict[str, Any]) -> str:
        database_id = config.get("database_id")
        target = f"database ({database_id[:8]}…)" if database_id else "database"
        return f"DB query on {target} returns rows"


TRIGGER_KINDS: Dict[str, TriggerKind] = {
    kind.name: kind
    for kind in (
        StorageThresholdTrigger(),
        CpuThresholdTrigger(),
        FileUploadTrigger(),
        ScheduledTrigger(),
        DatabaseQueryTrigger(),
    )
}


def get_trigger_kind(name: str) -> Optional[TriggerKind]:
    return TRIGGER_KINDS.get(name)


def describe_trigger(kind: str, config: Optional[Dict[str, Any]]) -> str:
    variant = TRIGGER_KINDS.get(kind)
    if variant is None:
        return kind
    return variant.describe(config or {})
