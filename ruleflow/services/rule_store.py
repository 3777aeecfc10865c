"""
Rule store: validated, gated CRUD over automation rules.

This is the only module that mutates rule definitions. Manual creation and
compiled drafts go through the same ``validate_rule_definition`` and the
same capability gate.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.errors import CapabilityGateError, RuleNotFoundError, RuleValidationError
from ..core.pagination import DEFAULT_PAGE_SIZE, clamp_page_size
from ..models.execution_log import STATUS_GATED
from ..models.rule import ENFORCED, SUSPENDED_BY_GATE, AutomationRule
from ..schemas.rule import RuleCreate, RuleOut, RuleUpdate
from .actions import ACTION_KINDS, describe_action
from .capabilities import (
    can_use_action,
    can_use_trigger,
    check_rule_allowed,
    get_owner_capabilities,
    owner_rules_guard,
)
from .debounce import DebounceTracker
from .execution_log import record_execution
from .triggers import TRIGGER_KINDS, describe_trigger


logger = logging.getLogger("rule_store")

__all__ = [
    "validate_rule_definition",
    "missing_fields",
    "describe_trigger",
    "describe_action",
    "create_rule",
    "update_rule",
    "delete_rule",
    "get_rule",
    "list_rules",
    "rule_to_out",
]


def validate_rule_definition(
    trigger_kind: str,
    trigger_config: Any,
    action_kind: str,
    action_config: Any,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Validate both halves of a rule and return their normalized configs."""
    errors: List[str] = []
    trigger_norm: Dict[str, Any] = {}
    action_norm: Dict[str, Any] = {}

    trigger = TRIGGER_KINDS.get(trigger_kind) if isinstance(trigger_kind, str) else None
    if trigger is None:
        errors.append(f"Unsupported trigger kind: {trigger_kind}. Supported: {', '.join(TRIGGER_KINDS)}")
    else:
        try:
            trigger_norm = trigger.validate(trigger_config)
        except RuleValidationError as exc:
            errors.extend(exc.errors)

    action = ACTION_KINDS.get(action_kind) if isinstance(action_kind, str) else None
    if action is None:
        errors.append(f"Unsupported action kind: {action_kind}. Supported: {', '.join(ACTION_KINDS)}")
    else:
        try:
            action_norm = action.validate(action_config)
        except RuleValidationError as exc:
            errors.extend(exc.errors)

    if errors:
        raise RuleValidationError(errors)
    return trigger_norm, action_norm


def missing_fields(action_kind: str, action_config: Optional[Dict[str, Any]]) -> List[str]:
    action = ACTION_KINDS.get(action_kind)
    if action is None:
        return []
    return [f"action_config.{name}" for name in action.missing_fields(action_config or {})]


def _require_complete(action_kind: str, action_config: Dict[str, Any]) -> None:
    missing = missing_fields(action_kind, action_config)
    if missing:
        raise RuleValidationError(f"{name} is required to activate the rule" for name in missing)


def rule_to_out(rule: AutomationRule) -> RuleOut:
    return RuleOut(
        id=rule.id,
        owner_id=rule.owner_id,
        name=rule.name,
        description=rule.description,
        active=bool(rule.active),
        enforcement_status=rule.enforcement_status,
        trigger_kind=rule.trigger_kind,
        trigger_config=rule.trigger_config or {},
        action_kind=rule.action_kind,
        action_config=rule.action_config or {},
        last_triggered=rule.last_triggered,
        created_at=rule.created_at,
        updated_at=rule.updated_at,
        trigger_description=describe_trigger(rule.trigger_kind, rule.trigger_config),
        action_description=describe_action(rule.action_kind, rule.action_config),
        missing_fields=missing_fields(rule.action_kind, rule.action_config),
    )


def _log_gated(
    db: Session,
    owner_id: str,
    rule_id: Optional[int],
    name: str,
    trigger_kind: str,
    action_kind: str,
    exc: CapabilityGateError,
) -> None:
    db.rollback()
    record_execution(
        db,
        owner_id=owner_id,
        rule_id=rule_id,
        rule_name=name,
        trigger_kind=trigger_kind,
        action_kind=action_kind,
        status=STATUS_GATED,
        error_message=str(exc),
    )


def get_rule(db: Session, owner_id: str, rule_id: int) -> AutomationRule:
    rule = (
        db.query(AutomationRule)
        .filter(AutomationRule.id == rule_id, AutomationRule.owner_id == owner_id)
        .first()
    )
    if rule is None:
        raise RuleNotFoundError(rule_id)
    return rule


def list_rules(
    db: Session,
    owner_id: str,
    *,
    active: Optional[bool] = None,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> Tuple[List[AutomationRule], int]:
    page = max(1, page)
    page_size = clamp_page_size(page_size)
    query = db.query(AutomationRule).filter(AutomationRule.owner_id == owner_id)
    if active is not None:
        query = query.filter(AutomationRule.active.is_(active))
    total = query.count()
    items = (
        query.order_by(AutomationRule.created_at.desc(), AutomationRule.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return items, total


def create_rule(db: Session, owner_id: str, payload: RuleCreate) -> AutomationRule:
    trigger_config, action_config = validate_rule_definition(
        payload.trigger_kind, payload.trigger_config, payload.action_kind, payload.action_config
    )
    if payload.active:
        _require_complete(payload.action_kind, action_config)
    with owner_rules_guard(db, owner_id):
        try:
            check_rule_allowed(db, owner_id, payload.trigger_kind, payload.action_kind, check_quota=True)
        except CapabilityGateError as exc:
            logger.info("Rule creation gated owner=%s capability=%s", owner_id, exc.capability)
            _log_gated(db, owner_id, None, payload.name, payload.trigger_kind, payload.action_kind, exc)
            raise
        rule = AutomationRule(
            owner_id=owner_id,
            name=payload.name,
            description=payload.description,
            active=payload.active,
            enforcement_status=ENFORCED,
            trigger_kind=payload.trigger_kind,
            trigger_config=trigger_config,
            action_kind=payload.action_kind,
            action_config=action_config,
        )
        db.add(rule)
        db.commit()
    db.refresh(rule)
    logger.info("Rule created id=%s owner=%s trigger=%s action=%s", rule.id, owner_id, rule.trigger_kind, rule.action_kind)
    return rule


def update_rule(db: Session, owner_id: str, rule_id: int, changes: RuleUpdate) -> AutomationRule:
    with owner_rules_guard(db, owner_id):
        rule = _apply_update(db, owner_id, rule_id, changes)
    db.refresh(rule)
    return rule


def _apply_update(db: Session, owner_id: str, rule_id: int, changes: RuleUpdate) -> AutomationRule:
    rule = get_rule(db, owner_id, rule_id)
    data = changes.model_dump(exclude_unset=True)
    for key in ("name", "trigger_kind", "action_kind", "active"):
        if key in data and data[key] is None:
            data.pop(key)

    name = data.get("name", rule.name)
    trigger_kind = data.get("trigger_kind", rule.trigger_kind)
    action_kind = data.get("action_kind", rule.action_kind)
    # switching kinds without a new config starts from that kind's defaults
    if "trigger_config" in data and data["trigger_config"] is not None:
        raw_trigger = data["trigger_config"]
    elif trigger_kind != rule.trigger_kind:
        raw_trigger = {}
    else:
        raw_trigger = rule.trigger_config
    if "action_config" in data and data["action_config"] is not None:
        raw_action = data["action_config"]
    elif action_kind != rule.action_kind:
        raw_action = {}
    else:
        raw_action = rule.action_config
    trigger_config, action_config = validate_rule_definition(trigger_kind, raw_trigger, action_kind, raw_action)

    will_be_active = data.get("active", rule.active)
    if will_be_active:
        _require_complete(action_kind, action_config)
        counted = bool(rule.active) and rule.enforcement_status == ENFORCED
        try:
            check_rule_allowed(
                db,
                owner_id,
                trigger_kind,
                action_kind,
                check_quota=not counted,
                exclude_rule_id=rule.id,
            )
        except CapabilityGateError as exc:
            logger.info("Rule update gated id=%s owner=%s capability=%s", rule.id, owner_id, exc.capability)
            _log_gated(db, owner_id, rule.id, name, trigger_kind, action_kind, exc)
            raise
        status = ENFORCED
    else:
        caps = get_owner_capabilities(db, owner_id)
        compliant = can_use_trigger(trigger_kind, caps) and can_use_action(action_kind, caps)
        status = ENFORCED if compliant else SUSPENDED_BY_GATE

    rule.name = name
    if "description" in data:
        rule.description = data["description"]
    rule.active = bool(will_be_active)
    rule.trigger_kind = trigger_kind
    rule.trigger_config = trigger_config
    rule.action_kind = action_kind
    rule.action_config = action_config
    if rule.enforcement_status != status:
        logger.info("Rule %s enforcement %s -> %s", rule.id, rule.enforcement_status, status)
    rule.enforcement_status = status
    db.add(rule)
    db.commit()
    return rule


def delete_rule(
    db: Session,
    owner_id: str,
    rule_id: int,
    debounce: Optional[DebounceTracker] = None,
) -> None:
    rule = get_rule(db, owner_id, rule_id)
    db.delete(rule)
    db.commit()
    if debounce is not None:
        debounce.forget(rule_id)
    logger.info("Rule deleted id=%s owner=%s", rule_id, owner_id)
