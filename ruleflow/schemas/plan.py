"""
Pydantic schemas for plan capabilities.
"""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel


class CapabilityProfileOut(BaseModel):
    plan_type: str
    account_type: str
    billing_status: str
    label: str
    is_active: bool
    max_active_rules: int
    allowed_triggers: List[str]
    allowed_actions: List[str]
    active_rules: int


class PlanUpdate(BaseModel):
    plan_type: Literal["free", "startup", "growth"]
    billing_status: Literal["none", "active", "past_due", "canceled"] = "active"
    account_type: Optional[Literal["personal", "organization"]] = None
    email: Optional[str] = None
    email_from: Optional[str] = None


class EnforcementResultOut(BaseModel):
    suspended: List[int]
    restored: List[int]
    capabilities: CapabilityProfileOut
