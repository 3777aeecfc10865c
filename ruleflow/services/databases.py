"""
Read-only access to the owner's user databases for ``database_query`` rules.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from typing import Any, Dict, List, Optional

from sqlalchemy import text

from ..core.config import settings
from ..core.db import build_engine
from ..core.errors import EvaluationError


logger = logging.getLogger("user_databases")

DEFAULT_ROW_LIMIT = 1000

_READ_PREFIXES = ("select", "with")
_WRITE_KEYWORDS = {
    "insert",
    "update",
    "delete",
    "merge",
    "drop",
    "alter",
    "create",
    "truncate",
    "grant",
    "revoke",
    "copy",
    "call",
    "vacuum",
    "attach",
    "detach",
    "pragma",
    "reindex",
}
_STRING_RE = re.compile(r"'(?:[^']|'')*'|\"(?:[^\"]|\"\")*\"")
_COMMENT_RE = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)
_TOKEN_RE = re.compile(r"[a-z_][a-z0-9_]*|[()]")


def ensure_read_only(query: str) -> str:
    """
    Validate that ``query`` is a single read-only SELECT/WITH statement.

    Write keywords are rejected in statement position only: at the start,
    opening a parenthesised body (``WITH x AS (DELETE ...)``) or following
    a CTE list (``WITH x AS (...) UPDATE ...``). Columns or tables named
    ``copy``, ``call`` and the like are accepted elsewhere.

    Returns the query with surrounding whitespace and a trailing semicolon
    removed. Raises ValueError otherwise.
    """
    cleaned = (query or "").strip().rstrip(";").strip()
    if not cleaned:
        raise ValueError("query must not be empty")
    scrubbed = _COMMENT_RE.sub(" ", _STRING_RE.sub("''", cleaned)).lower()
    if ";" in scrubbed:
        raise ValueError("query must be a single statement")
    tokens = _TOKEN_RE.findall(scrubbed)
    words = [tok for tok in tokens if tok not in ("(", ")")]
    if not words or words[0] not in _READ_PREFIXES:
        raise ValueError("query must start with SELECT or WITH")
    forbidden = sorted(
        {tok for prev, tok in zip(tokens, tokens[1:]) if prev in ("(", ")") and tok in _WRITE_KEYWORDS}
    )
    if forbidden:
        raise ValueError(f"query must be read-only (found {', '.join(w.upper() for w in forbidden)})")
    if "into" in words:
        raise ValueError("query must be read-only (SELECT INTO is not allowed)")
    return cleaned


def _json_safe(row: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(row, default=str))


def load_registry(raw: Optional[str] = None) -> Dict[str, Dict[str, str]]:
    raw = settings.ruleflow_user_databases if raw is None else raw
    try:
        data = json.loads(raw or "{}")
    except json.JSONDecodeError as exc:
        logger.error("RULEFLOW_USER_DATABASES is not valid JSON: %s", exc)
        return {}
    if not isinstance(data, dict):
        logger.error("RULEFLOW_USER_DATABASES must be a JSON object")
        return {}
    registry: Dict[str, Dict[str, str]] = {}
    for db_id, entry in data.items():
        if isinstance(entry, str):
            entry = {"url": entry}
        if not isinstance(entry, dict) or not entry.get("url"):
            logger.warning("Skipping user database %s without url", db_id)
            continue
        registry[str(db_id)] = {"name": str(entry.get("name") or db_id), "url": str(entry["url"])}
    return registry


class DatabaseGateway:
    """Registry of user databases with lazily created engines."""

    def __init__(self, registry: Optional[Dict[str, Dict[str, str]]] = None) -> None:
        self._registry = load_registry() if registry is None else dict(registry)
        self._engines: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def list_databases(self) -> List[Dict[str, str]]:
        return [{"id": db_id, "name": entry.get("name") or db_id} for db_id, entry in self._registry.items()]

    def has_database(self, database_id: str) -> bool:
        return database_id in self._registry

    def _engine_for(self, database_id: str):
        entry = self._registry.get(database_id)
        if entry is None:
            raise EvaluationError(f"Unknown database {database_id!r}")
        with self._lock:
            engine = self._engines.get(database_id)
            if engine is None:
                engine = build_engine(entry["url"])
                self._engines[database_id] = engine
            return engine

    def run_read_query(self, database_id: str, query: str, limit: int = DEFAULT_ROW_LIMIT) -> List[Dict[str, Any]]:
        try:
            statement = ensure_read_only(query)
        except ValueError as exc:
            raise EvaluationError(str(exc)) from exc
        engine = self._engine_for(database_id)
        dialect = engine.dialect.name
        try:
            with engine.connect() as conn:
                trans = conn.begin()
                try:
                    if dialect == "postgresql":
                        conn.execute(text("SET TRANSACTION READ ONLY"))
                    elif dialect == "sqlite":
                        conn.execute(text("PRAGMA query_only = ON"))
                    result = conn.execute(text(statement))
                    rows = [_json_safe(dict(row)) for row in result.mappings().fetchmany(limit)]
                finally:
                    trans.rollback()
                    if dialect == "sqlite":
                        conn.execute(text("PRAGMA query_only = OFF"))
        except Exception as exc:
            raise EvaluationError(f"Query on {database_id} failed: {exc}") from exc
        return rows

    def dispose(self) -> None:
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()
