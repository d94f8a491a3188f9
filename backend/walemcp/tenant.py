from __future__ import annotations

from typing import Optional

from fastapi import Header

from .models import DEFAULT_USER_ID

USER_ID_HEADER = "X-User-Id"


def resolve_user_id(x_user_id: str | None = Header(default=None, alias=USER_ID_HEADER)) -> str:
    value = (x_user_id or "").strip()
    return value if value else DEFAULT_USER_ID


def effective_user_id(body_user_id: Optional[str], header_user_id: str) -> str:
    """A user id in the request body wins over the header."""
    value = (body_user_id or "").strip()
    return value if value else header_user_id
