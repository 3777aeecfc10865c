"""
ORM model for an owner's plan tier and billing state.

Billing itself lives elsewhere; this row mirrors what the gate needs.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from . import Base
from ..core.clock import utcnow


class OwnerPlan(Base):
    __tablename__ = "owner_plans"

    owner_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    plan_type: Mapped[str] = mapped_column(String(32), default="free")  # free | startup | growth
    account_type: Mapped[str] = mapped_column(String(32), default="personal")  # personal | organization
    billing_status: Mapped[str] = mapped_column(String(32), default="none")  # none | active | past_due | canceled
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # From header for email actions; the global SMTP_FROM when unset
    email_from: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
