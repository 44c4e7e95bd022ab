"""
Security utilities: API key auth and the caller's user id.

Authentication itself happens upstream; the API trusts the ``X-User-Id``
header once the shared ``X-API-Key`` matches.
"""

from __future__ import annotations

import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from triage.core.config import Settings, get_settings
from triage.core.logging import bind_user

# ── API Key authentication ──────────────────────────────────
_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(
    api_key: Annotated[str | None, Security(_api_key_header)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> str:
    if not api_key or not secrets.compare_digest(api_key, settings.api_key):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid or missing API key",
        )
    return api_key


# ── Caller identity ─────────────────────────────────────────
_user_id_header = APIKeyHeader(name="X-User-Id", auto_error=False)


async def current_user_id(
    user_id: Annotated[str | None, Security(_user_id_header)],
) -> str:
    if not user_id or not user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No active user",
        )
    user_id = user_id.strip()
    bind_user(user_id)
    return user_id
