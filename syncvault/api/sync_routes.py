"""
Sync Service routes.

GET    /api/sync/{id}   — Return the stored blob ({} when empty)
POST   /api/sync/{id}   — Claim the id, or overwrite it as its owner
DELETE /api/sync/{id}   — Delete the record and its automation document

The owner credential travels in the X-Sync-Password header.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Header

from syncvault.api.deps import get_sync_service
from syncvault.errors import ValidationError
from syncvault.sync.cloud import TOKEN_HEADER
from syncvault.sync.service import SyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


# ── Routes ──────────────────────────────────────────────────────────────

@router.get("/{sync_id}")
def get_sync(
    sync_id: str,
    token: Optional[str] = Header(None, alias=TOKEN_HEADER),
    service: SyncService = Depends(get_sync_service),
):
    return service.fetch(sync_id, token)


@router.post("/{sync_id}")
def post_sync(
    sync_id: str,
    payload: Any = Body(None),
    token: Optional[str] = Header(None, alias=TOKEN_HEADER),
    service: SyncService = Depends(get_sync_service),
):
    service.upsert(sync_id, token, payload)
    return {"success": True}


@router.delete("/{sync_id}")
def delete_sync(
    sync_id: str,
    token: Optional[str] = Header(None, alias=TOKEN_HEADER),
    service: SyncService = Depends(get_sync_service),
):
    service.delete(sync_id, token)
    return {"success": True}


@router.api_route("/", methods=["GET", "POST", "DELETE"], include_in_schema=False)
def missing_sync_id():
    raise ValidationError("Missing ID or Password header")
