# -*- coding: utf-8 -*-

from typing import Optional

from fastapi import Header, HTTPException, Request

from ..core.batching.manager import BatchJobManager


def get_manager(request: Request) -> BatchJobManager:
    """The manager attached to the app, built from the settings on first use."""
    manager = getattr(request.app.state, 'manager', None)
    if manager is None:
        manager = BatchJobManager.from_settings(request.app.state.settings)
        request.app.state.manager = manager
    return manager


def get_owner_id(x_owner_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity from the X-Owner-Id header."""
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Owner-Id header")
    return x_owner_id.strip()
