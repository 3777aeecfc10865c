"""
Owner resolution for API requests.

Session management lives in the dashboard's auth layer; it forwards the
authenticated owner id in ``X-Owner-Id`` and authenticates itself to this
service with a bearer service token.
"""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException


@dataclass
class UserContext:
    owner_id: str
    username: Optional[str] = None


def _auth_disabled() -> bool:
    return os.getenv("RULEFLOW_AUTH_DISABLED", "true").lower() in {"1", "true", "yes"}


def _expected_token() -> str:
    token = os.getenv("RULEFLOW_SERVICE_TOKEN")
    if token:
        return token
    env = (os.getenv("RULEFLOW_ENV") or os.getenv("APP_ENV") or "dev").strip().lower()
    if env == "prod":
        return ""
    return "demo-token"


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    if not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", 1)[1].strip()
    return token or None


def get_current_user(
    authorization: Optional[str] = Header(None),
    x_owner_id: Optional[str] = Header(None, alias="X-Owner-Id"),
    x_user_name: Optional[str] = Header(None, alias="X-User-Name"),
) -> UserContext:
    owner_id = (x_owner_id or "").strip()
    if _auth_disabled():
        return UserContext(owner_id=owner_id or "local", username=x_user_name)
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    expected = _expected_token()
    if not expected or not secrets.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Invalid token")
    if not owner_id:
        raise HTTPException(status_code=401, detail="Missing owner context")
    return UserContext(owner_id=owner_id, username=x_user_name)
