"""
Execution log endpoints.
"""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...core.auth import UserContext, get_current_user
from ...core.db import get_db
from ...core.pagination import DEFAULT_LOG_LIMIT
from ...schemas.execution_log import ExecutionLogOut
from ...services.execution_log import LOG_STATUSES, clear_logs, list_logs


router = APIRouter(prefix="/api/v1/logs", tags=["logs"])


@router.get("", response_model=List[ExecutionLogOut])
def get_logs(
    rule_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None, pattern="^(" + "|".join(LOG_STATUSES) + ")$"),
    limit: int = Query(DEFAULT_LOG_LIMIT, ge=1),
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> List[ExecutionLogOut]:
    return list_logs(db, user.owner_id, rule_id=rule_id, status=status, limit=limit)


@router.delete("")
def delete_logs(
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> dict:
    return {"deleted": clear_logs(db, user.owner_id)}
