"""
Pydantic schemas for rule execution logs.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


class ExecutionLogOut(BaseModel):
    id: int
    rule_id: Optional[int] = None
    rule_name: str
    trigger_kind: Optional[str] = None
    action_kind: Optional[str] = None
    status: str
    trigger_payload: Optional[Dict[str, Any]] = None
    action_result: Optional[Dict[str, Any]] = None
    attempt_count: int
    error_message: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
