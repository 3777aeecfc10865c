"""
SQLAlchemy model base class for the RuleFlow backend.

This package defines ORM models for automation rules, their execution
logs, owner plan state and in-product notifications. All models should
inherit from the declarative `Base` defined here.
"""

from __future__ import annotations

from sqlalchemy import JSON
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB


@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return compiler.process(JSON(), **kw)


from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""

    pass


from .rule import AutomationRule  # noqa: E402,F401
from .execution_log import ExecutionLog  # noqa: E402,F401
from .owner_plan import OwnerPlan  # noqa: E402,F401
from .notification import DashboardNotification  # noqa: E402,F401

__all__ = [
    "Base",
    "AutomationRule",
    "ExecutionLog",
    "OwnerPlan",
    "DashboardNotification",
]
