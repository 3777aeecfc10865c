"""
Plan capability gate for automation rules.

The plan table is the single source of truth for what each plan allows.
``resolve_capabilities`` is pure; the database helpers read the owner's
plan row and count the rules that occupy quota.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Dict, FrozenSet, Iterator, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.errors import CapabilityGateError
from ..models.owner_plan import OwnerPlan
from ..models.rule import ENFORCED, AutomationRule

ALL_TRIGGERS = frozenset({"storage_threshold", "cpu_threshold", "file_upload", "scheduled", "database_query"})
ALL_ACTIONS = frozenset({"email", "discord", "webhook", "dashboard_alert"})

PLAN_TYPES = ("free", "startup", "growth")
DEGRADED_BILLING = {"past_due", "canceled"}


@dataclass(frozen=True)
class PlanFeatures:
    label: str
    max_active_rules: int
    allowed_triggers: FrozenSet[str]
    allowed_actions: FrozenSet[str]


PLAN_FEATURES: Dict[str, PlanFeatures] = {
    "free": PlanFeatures(
        label="Personal (Free)",
        max_active_rules=3,
        allowed_triggers=frozenset({"storage_threshold", "scheduled"}),
        allowed_actions=frozenset({"email", "dashboard_alert"}),
    ),
    "startup": PlanFeatures(
        label="Startup",
        max_active_rules=50,
        allowed_triggers=ALL_TRIGGERS,
        allowed_actions=ALL_ACTIONS,
    ),
    "growth": PlanFeatures(
        label="Growth",
        max_active_rules=500,
        allowed_triggers=ALL_TRIGGERS,
        allowed_actions=ALL_ACTIONS,
    ),
}

_TRIGGER_LABELS = {
    "cpu_threshold": "CPU threshold triggers",
    "file_upload": "File upload triggers",
    "database_query": "Database query triggers",
}
_ACTION_LABELS = {
    "discord": "Discord actions",
    "webhook": "Webhook actions",
}
_UPGRADE_HINT = "Upgrade in Settings → Plan & Billing."


@dataclass(frozen=True)
class CapabilityProfile:
    plan_type: str
    account_type: str
    billing_status: str
    label: str
    is_active: bool
    max_active_rules: int
    allowed_triggers: FrozenSet[str]
    allowed_actions: FrozenSet[str]

    def as_dict(self) -> dict:
        data = asdict(self)
        data["allowed_triggers"] = sorted(self.allowed_triggers)
        data["allowed_actions"] = sorted(self.allowed_actions)
        return data


def resolve_capabilities(
    plan_type: Optional[str],
    account_type: Optional[str] = "personal",
    billing_status: Optional[str] = "none",
) -> CapabilityProfile:
    plan_key = plan_type if plan_type in PLAN_FEATURES else "free"
    billing = billing_status or "none"
    features = PLAN_FEATURES[plan_key]
    # keep the plan label but fall back to the free feature set
    if billing in DEGRADED_BILLING:
        effective = PLAN_FEATURES["free"]
    else:
        effective = features
    return CapabilityProfile(
        plan_type=plan_key,
        account_type=account_type or "personal",
        billing_status=billing,
        label=features.label,
        is_active=plan_key == "free" or billing == "active",
        max_active_rules=effective.max_active_rules,
        allowed_triggers=effective.allowed_triggers,
        allowed_actions=effective.allowed_actions,
    )


def can_use_trigger(trigger_kind: str, caps: CapabilityProfile) -> bool:
    return trigger_kind in caps.allowed_triggers


def can_use_action(action_kind: str, caps: CapabilityProfile) -> bool:
    return action_kind in caps.allowed_actions


def trigger_gate_message(trigger_kind: str) -> str:
    label = _TRIGGER_LABELS.get(trigger_kind) or f'The "{trigger_kind}" trigger'
    return f"{label} require the Startup or Growth plan. {_UPGRADE_HINT}"


def action_gate_message(action_kind: str) -> str:
    label = _ACTION_LABELS.get(action_kind) or f'The "{action_kind}" action'
    return f"{label} require the Startup or Growth plan. {_UPGRADE_HINT}"


def rule_count_gate_message(current: int, maximum: int) -> str:
    return (
        f"You have reached your automation rule limit ({current}/{maximum}). "
        f"Upgrade to the Startup plan to run up to {PLAN_FEATURES['startup'].max_active_rules} rules."
    )


def get_owner_plan(db: Session, owner_id: str) -> Optional[OwnerPlan]:
    return db.get(OwnerPlan, owner_id)


def get_owner_capabilities(db: Session, owner_id: str) -> CapabilityProfile:
    plan = get_owner_plan(db, owner_id)
    if plan is None:
        return resolve_capabilities("free", "personal", "none")
    return resolve_capabilities(plan.plan_type, plan.account_type, plan.billing_status)


def count_active_rules(db: Session, owner_id: str, exclude_rule_id: Optional[int] = None) -> int:
    query = db.query(func.count(AutomationRule.id)).filter(
        AutomationRule.owner_id == owner_id,
        AutomationRule.active.is_(True),
        AutomationRule.enforcement_status == ENFORCED,
    )
    if exclude_rule_id is not None:
        query = query.filter(AutomationRule.id != exclude_rule_id)
    return int(query.scalar() or 0)


def check_rule_allowed(
    db: Session,
    owner_id: str,
    trigger_kind: str,
    action_kind: str,
    *,
    check_quota: bool = True,
    exclude_rule_id: Optional[int] = None,
) -> CapabilityProfile:
    """Raise CapabilityGateError when the owner's plan rejects the rule.

    Order matches what the owner has to fix first: quota, trigger, action.
    """
    caps = get_owner_capabilities(db, owner_id)
    if check_quota:
        current = count_active_rules(db, owner_id, exclude_rule_id=exclude_rule_id)
        if current >= caps.max_active_rules:
            raise CapabilityGateError(
                rule_count_gate_message(current, caps.max_active_rules),
                capability="max_active_rules",
                limit=caps.max_active_rules,
            )
    if not can_use_trigger(trigger_kind, caps):
        raise CapabilityGateError(trigger_gate_message(trigger_kind), capability=f"trigger:{trigger_kind}")
    if not can_use_action(action_kind, caps):
        raise CapabilityGateError(action_gate_message(action_kind), capability=f"action:{action_kind}")
    return caps


_owner_locks: Dict[str, threading.RLock] = {}
_owner_locks_guard = threading.Lock()


def _owner_lock(owner_id: str) -> threading.RLock:
    with _owner_locks_guard:
        lock = _owner_locks.get(owner_id)
        if lock is None:
            lock = threading.RLock()
            _owner_locks[owner_id] = lock
        return lock


def _lock_plan_row(db: Session, owner_id: str) -> OwnerPlan:
    query = db.query(OwnerPlan).filter(OwnerPlan.owner_id == owner_id).with_for_update()
    plan = query.one_or_none()
    if plan is not None:
        return plan
    # a default row is the free plan, same as no row
    plan = OwnerPlan(owner_id=owner_id, plan_type="free", account_type="personal", billing_status="none")
    db.add(plan)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        return query.one()
    return plan


@contextmanager
def owner_rules_guard(db: Session, owner_id: str) -> Iterator[OwnerPlan]:
    """Serialize quota checks and rule writes for one owner.

    Yields the owner's plan row. The in-process lock covers request
    threads sharing one engine. The ``FOR UPDATE`` lock on the owner's plan row covers other
    processes on databases that support it; SQLite ignores it.
    The block must commit its writes; an exception rolls the session back.
    """
    with _owner_lock(owner_id):
        plan = _lock_plan_row(db, owner_id)
        try:
            yield plan
        except Exception:
            db.rollback()
            raise
