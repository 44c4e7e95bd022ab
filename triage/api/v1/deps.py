"""
Shared FastAPI dependencies for v1 API routes.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from triage.core.config import Settings, get_settings
from triage.core.security import current_user_id, verify_api_key
from triage.services.sql_store import SqlRemoteStore


def get_store(request: Request) -> SqlRemoteStore:
    return request.app.state.store


# Re-export for convenience in route files
ApiKey = Annotated[str, Depends(verify_api_key)]
CurrentUser = Annotated[str, Depends(current_user_id)]
AppSettings = Annotated[Settings, Depends(get_settings)]
Store = Annotated[SqlRemoteStore, Depends(get_store)]
