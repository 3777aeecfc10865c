"""
API endpoints for managing automation rules.
"""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.orm import Session

from ...core.auth import UserContext, get_current_user
from ...core.db import get_db
from ...core.errors import RuleFlowError, to_http_exception
from ...core.pagination import DEFAULT_PAGE_SIZE, clamp_page_size, set_pagination_headers
from ...schemas.rule import CompileRequest, RuleCreate, RuleDraft, RuleOut, RuleUpdate
from ...services import rule_store
from ...services.actions import ACTION_KINDS
from ...services.triggers import TRIGGER_KINDS


router = APIRouter(prefix="/api/v1/rules", tags=["rules"])


@router.get("", response_model=List[RuleOut])
def list_rules(
    response: Response,
    active: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1),
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> List[RuleOut]:
    page_size = clamp_page_size(page_size)
    rules, total = rule_store.list_rules(db, user.owner_id, active=active, page=page, page_size=page_size)
    set_pagination_headers(response, total=total, page=page, page_size=page_size)
    return [rule_store.rule_to_out(rule) for rule in rules]


@router.post("", response_model=RuleOut, status_code=201)
def create_rule(
    payload: RuleCreate,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> RuleOut:
    try:
        rule = rule_store.create_rule(db, user.owner_id, payload)
    except RuleFlowError as exc:
        raise to_http_exception(exc) from exc
    return rule_store.rule_to_out(rule)


@router.get("/kinds")
def list_kinds() -> dict:
    """Trigger and action kinds with the JSON schema of their configs."""
    return {
        "triggers": [
            {"kind": name, "label": kind.label, "push": kind.push, "config_schema": kind.schema.model_json_schema()}
            for name, kind in TRIGGER_KINDS.items()
        ],
        "actions": [
            {
                "kind": name,
                "endpoint_fields": list(kind.endpoint_fields),
                "config_schema": kind.schema.model_json_schema(),
            }
            for name, kind in ACTION_KINDS.items()
        ],
    }


@router.post("/compile", response_model=RuleDraft)
def compile_rule(
    payload: CompileRequest,
    request: Request,
    user: UserContext = Depends(get_current_user),
) -> RuleDraft:
    compiler = request.app.state.compiler
    try:
        return compiler.compile(payload.text, model=payload.model)
    except RuleFlowError as exc:
        raise to_http_exception(exc) from exc


@router.get("/{rule_id}", response_model=RuleOut)
def get_rule(
    rule_id: int,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> RuleOut:
    try:
        rule = rule_store.get_rule(db, user.owner_id, rule_id)
    except RuleFlowError as exc:
        raise to_http_exception(exc) from exc
    return rule_store.rule_to_out(rule)


@router.put("/{rule_id}", response_model=RuleOut)
def update_rule(
    rule_id: int,
    payload: RuleUpdate,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> RuleOut:
    try:
        rule = rule_store.update_rule(db, user.owner_id, rule_id, payload)
    except RuleFlowError as exc:
        raise to_http_exception(exc) from exc
    return rule_store.rule_to_out(rule)


@router.delete("/{rule_id}")
def delete_rule(
    rule_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> dict:
    scheduler = getattr(request.app.state, "scheduler", None)
    debounce = scheduler.debounce if scheduler is not None else None
    try:
        rule_store.delete_rule(db, user.owner_id, rule_id, debounce=debounce)
    except RuleFlowError as exc:
        raise to_http_exception(exc) from exc
    return {"status": "deleted", "id": rule_id}
