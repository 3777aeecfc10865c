"""
ORM model for user-defined automation rules.

A rule pairs one trigger (kind + config) with one action (kind + config).
Configs are stored as JSON and validated by the trigger/action registries
before they reach this table.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from . import Base
from ..core.clock import utcnow

ENFORCED = "enforced"
SUSPENDED_BY_GATE = "suspended_by_gate"
ENFORCEMENT_ERROR = "error"
ENFORCEMENT_STATUSES = (ENFORCED, SUSPENDED_BY_GATE, ENFORCEMENT_ERROR)


class AutomationRule(Base):
    __tablename__ = "automation_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=False)
    enforcement_status: Mapped[str] = mapped_column(String(32), default=ENFORCED)  # enforced | suspended_by_gate | error
    trigger_kind: Mapped[str] = mapped_column(String(50), index=True)
    trigger_config: Mapped[dict] = mapped_column(JSONB, default=dict)
    action_kind: Mapped[str] = mapped_column(String(50))
    action_config: Mapped[dict] = mapped_column(JSONB, default=dict)
    last_triggered: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_automation_rules_owner_created", "owner_id", "created_at"),
        Index("ix_automation_rules_active_status", "active", "enforcement_status"),
    )
