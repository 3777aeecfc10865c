"""Detached rule snapshots handed from the scheduler to the dispatcher."""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..models.rule import AutomationRule


@dataclass(frozen=True)
class RuleSnapshot:
    id: int
    owner_id: str
    name: str
    trigger_kind: str
    trigger_config: Dict[str, Any]
    action_kind: str
    action_config: Dict[str, Any]
    last_triggered: Optional[datetime.datetime] = None

    @classmethod
    def from_model(cls, rule: AutomationRule) -> "RuleSnapshot":
        return cls(
            id=rule.id,
            owner_id=rule.owner_id,
            name=rule.name,
            trigger_kind=rule.trigger_kind,
            trigger_config=dict(rule.trigger_config or {}),
            action_kind=rule.action_kind,
            action_config=dict(rule.action_config or {}),
            last_triggered=rule.last_triggered,
        )


@dataclass(frozen=True)
class Firing:
    rule: RuleSnapshot
    payload: Dict[str, Any] = field(default_factory=dict)
    fired_at: Optional[datetime.datetime] = None
