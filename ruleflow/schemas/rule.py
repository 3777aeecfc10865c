"""
Pydantic schemas for automation rules and compiled drafts.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RuleBase(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    active: bool = False
    trigger_kind: str
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    action_kind: str
    action_config: Dict[str, Any] = Field(default_factory=dict)


class RuleCreate(RuleBase):
    pass


class RuleUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    active: Optional[bool] = None
    trigger_kind: Optional[str] = None
    trigger_config: Optional[Dict[str, Any]] = None
    action_kind: Optional[str] = None
    action_config: Optional[Dict[str, Any]] = None


class RuleOut(RuleBase):
    id: int
    owner_id: str
    enforcement_status: str
    last_triggered: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    trigger_description: str
    action_description: str
    missing_fields: List[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class CompileRequest(BaseModel):
    text: str = Field(min_length=1, max_length=2000)
    model: Optional[str] = None


class RuleDraft(BaseModel):
    name: str
    description: Optional[str] = None
    trigger_kind: str
    trigger_config: Dict[str, Any]
    action_kind: str
    action_config: Dict[str, Any]
    trigger_description: str
    action_description: str
    missing_fields: List[str] = Field(default_factory=list)
