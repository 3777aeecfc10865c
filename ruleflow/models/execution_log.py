"""
Append-only audit trail of rule firings.

`rule_id` is a weak reference: deleting a rule keeps its history, so the
rule name is copied into every entry.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from . import Base
from ..core.clock import utcnow

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_GATED = "gated"


class ExecutionLog(Base):
    __tablename__ = "rule_execution_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    rule_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    rule_name: Mapped[str] = mapped_column(String(255))
    trigger_kind: Mapped[str | None] = mapped_column(String(50), nullable=True)
    action_kind: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(String(16))  # success | failed | gated
    trigger_payload: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    action_result: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_rule_execution_logs_owner_created", "owner_id", "created_at"),
        Index("ix_rule_execution_logs_rule_created", "rule_id", "created_at"),
    )
