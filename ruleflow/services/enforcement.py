"""
Plan enforcement after plan or billing changes.

Rules are never deleted on downgrade. Active rules beyond the new limit, or
using kinds the plan no longer allows, are marked ``suspended_by_gate``
and skipped by the scheduler. Running enforcement again with the same plan
changes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.orm import Session

from ..models.execution_log import STATUS_GATED
from ..models.rule import ENFORCED, ENFORCEMENT_ERROR, SUSPENDED_BY_GATE, AutomationRule
from .capabilities import (
    CapabilityProfile,
    action_gate_message,
    can_use_action,
    can_use_trigger,
    get_owner_capabilities,
    owner_rules_guard,
    rule_count_gate_message,
    trigger_gate_message,
)
from .execution_log import record_execution


logger = logging.getLogger("plan_enforcement")


@dataclass
class EnforcementResult:
    capabilities: CapabilityProfile
    suspended: List[int] = field(default_factory=list)
    restored: List[int] = field(default_factory=list)


def _gate_reason(rule: AutomationRule, caps: CapabilityProfile) -> Optional[str]:
    if not can_use_trigger(rule.trigger_kind, caps):
        return trigger_gate_message(rule.trigger_kind)
    if not can_use_action(rule.action_kind, caps):
        return action_gate_message(rule.action_kind)
    return None


def enforce_plan_limits(db: Session, owner_id: str) -> EnforcementResult:
    caps = get_owner_capabilities(db, owner_id)
    result = EnforcementResult(capabilities=caps)
    rules = (
        db.query(AutomationRule)
        .filter(AutomationRule.owner_id == owner_id)
        .order_by(AutomationRule.created_at.asc(), AutomationRule.id.asc())
        .all()
    )
    active_rules = [r for r in rules if r.active]
    slots = caps.max_active_rules
    suspended_reasons: dict[int, str] = {}

    for rule in rules:
        # rules with an invalid stored definition stay in error until edited
        if rule.enforcement_status == ENFORCEMENT_ERROR:
            continue
        reason = _gate_reason(rule, caps)
        if reason is None and rule.active:
            if slots > 0:
                slots -= 1
            else:
                reason = rule_count_gate_message(len(active_rules), caps.max_active_rules)
        target = SUSPENDED_BY_GATE if reason else ENFORCED
        if rule.enforcement_status == target:
            continue
        if target == SUSPENDED_BY_GATE:
            result.suspended.append(rule.id)
            suspended_reasons[rule.id] = reason or ""
        else:
            result.restored.append(rule.id)
        rule.enforcement_status = target
        db.add(rule)

    db.commit()
    for rule in rules:
        if rule.id in suspended_reasons and rule.active:
            record_execution(
                db,
                owner_id=owner_id,
                rule_id=rule.id,
                rule_name=rule.name,
                trigger_kind=rule.trigger_kind,
                action_kind=rule.action_kind,
                status=STATUS_GATED,
                error_message=suspended_reasons[rule.id],
                commit=False,
            )
    db.commit()
    if result.suspended or result.restored:
        logger.info(
            "Plan enforcement owner=%s plan=%s suspended=%s restored=%s",
            owner_id,
            caps.plan_type,
            result.suspended,
            result.restored,
        )
    return result


def set_owner_plan(
    db: Session,
    owner_id: str,
    plan_type: str,
    billing_status: str = "active",
    account_type: Optional[str] = None,
    email: Optional[str] = None,
    email_from: Optional[str] = None,
) -> EnforcementResult:
    with owner_rules_guard(db, owner_id) as plan:
        plan.plan_type = plan_type
        plan.billing_status = billing_status
        if account_type:
            plan.account_type = account_type
        elif plan_type != "free":
            plan.account_type = "organization"
        elif not plan.account_type:
            plan.account_type = "personal"
        if email is not None:
            plan.email = email.strip() or None
        if email_from is not None:
            plan.email_from = email_from.strip() or None
        db.flush()
        logger.info("Owner plan updated owner=%s plan=%s billing=%s", owner_id, plan_type, billing_status)
        return enforce_plan_limits(db, owner_id)
