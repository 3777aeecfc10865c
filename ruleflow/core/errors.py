"""
Error types and error-logging helpers shared across the rule engine.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from fastapi import HTTPException


def _format_extra(extra: dict | None) -> str:
    if not extra:
        return ""
    parts: list[str] = []
    for key, value in extra.items():
        if value is None:
            continue
        parts.append(f"{key}={value}")
    return f" {' '.join(parts)}" if parts else ""


def log_exception(logger: logging.Logger, msg: str, *, extra: dict | None = None, exc: Exception | None = None) -> None:
    """
    Log an exception with context. Uses logger.exception for stack traces.
    """
    suffix = _format_extra(extra)
    if exc is not None:
        logger.error(f"{msg}{suffix}: {exc}", exc_info=exc)
        return
    logger.exception(f"{msg}{suffix}")


class RuleFlowError(Exception):
    """Base class for rule engine errors."""


class RuleValidationError(RuleFlowError):
    """A trigger or action definition does not match its schema."""

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors = [str(e) for e in errors] or ["Invalid rule definition"]
        super().__init__("; ".join(self.errors))


class CapabilityGateError(RuleFlowError):
    """The owner's plan does not allow the requested rule."""

    def __init__(self, message: str, *, capability: str, limit: Optional[int] = None) -> None:
        self.capability = capability
        self.limit = limit
        self.upgrade_required = True
        super().__init__(message)


class RuleNotFoundError(RuleFlowError):
    def __init__(self, rule_id: int) -> None:
        self.rule_id = rule_id
        super().__init__(f"Rule {rule_id} not found")


class EvaluationError(RuleFlowError):
    """A trigger evaluator could not compute a verdict."""


class ActionError(RuleFlowError):
    """An action failed in a way that retrying will not fix."""

    transient = False


class TransientActionError(ActionError):
    """An action failed because of a network/timeout condition; retry allowed."""

    transient = True


class LlmError(RuleFlowError):
    """The language model endpoint failed or is not configured."""


class CompilerError(RuleFlowError):
    """Free text could not be compiled into a valid rule draft."""

    def __init__(self, message: str, *, errors: Optional[Iterable[str]] = None) -> None:
        self.errors = list(errors or [])
        super().__init__(message)


def to_http_exception(exc: RuleFlowError) -> HTTPException:
    """Translate a domain error into the HTTP error the API returns for it."""
    if isinstance(exc, RuleValidationError):
        return HTTPException(status_code=422, detail={"error": "Invalid rule definition", "errors": exc.errors})
    if isinstance(exc, CapabilityGateError):
        detail = {"error": str(exc), "upgrade_required": exc.upgrade_required, "capability": exc.capability}
        if exc.limit is not None:
            detail["limit"] = exc.limit
        return HTTPException(status_code=403, detail=detail)
    if isinstance(exc, RuleNotFoundError):
        return HTTPException(status_code=404, detail="Rule not found")
    if isinstance(exc, CompilerError):
        return HTTPException(status_code=422, detail={"error": str(exc), "errors": exc.errors})
    if isinstance(exc, LlmError):
        return HTTPException(status_code=502, detail={"error": str(exc)})
    return HTTPException(status_code=500, detail={"error": str(exc)})
