"""
Append-only execution log for rule firings, failures and gate rejections.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.pagination import DEFAULT_LOG_LIMIT, clamp_page_size
from ..models.execution_log import STATUS_FAILED, STATUS_GATED, STATUS_SUCCESS, ExecutionLog


logger = logging.getLogger("execution_log")

LOG_STATUSES = (STATUS_SUCCESS, STATUS_FAILED, STATUS_GATED)


def _snapshot(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    # decouple the stored snapshot from the caller's dict and make it JSON-safe
    return json.loads(json.dumps(value, default=str))


def record_execution(
    db: Session,
    *,
    owner_id: str,
    rule_id: Optional[int],
    rule_name: str,
    status: str,
    trigger_kind: Optional[str] = None,
    action_kind: Optional[str] = None,
    trigger_payload: Optional[Dict[str, Any]] = None,
    action_result: Optional[Dict[str, Any]] = None,
    attempt_count: int = 0,
    error_message: Optional[str] = None,
    commit: bool = True,
) -> ExecutionLog:
    if status not in LOG_STATUSES:
        raise ValueError(f"Unknown execution status {status!r}")
    entry = ExecutionLog(
        owner_id=owner_id,
        rule_id=rule_id,
        rule_name=rule_name,
        trigger_kind=trigger_kind,
        action_kind=action_kind,
        status=status,
        trigger_payload=_snapshot(trigger_payload),
        action_result=_snapshot(action_result),
        attempt_count=attempt_count,
        error_message=error_message,
    )
    db.add(entry)
    if commit:
        db.commit()
        db.refresh(entry)
    else:
        db.flush()
    logger.info(
        "Execution logged rule_id=%s status=%s attempts=%s error=%s",
        rule_id,
        status,
        attempt_count,
        error_message,
    )
    return entry


def list_logs(
    db: Session,
    owner_id: str,
    *,
    rule_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = DEFAULT_LOG_LIMIT,
) -> List[ExecutionLog]:
    query = db.query(ExecutionLog).filter(ExecutionLog.owner_id == owner_id)
    if rule_id is not None:
        query = query.filter(ExecutionLog.rule_id == rule_id)
    if status:
        query = query.filter(ExecutionLog.status == status)
    return (
        query.order_by(ExecutionLog.created_at.desc(), ExecutionLog.id.desc())
        .limit(clamp_page_size(limit))
        .all()
    )


def clear_logs(db: Session, owner_id: str) -> int:
    deleted = (
        db.query(ExecutionLog)
        .filter(ExecutionLog.owner_id == owner_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info("Cleared %s execution logs for owner=%s", deleted, owner_id)
    return int(deleted or 0)
