"""
Automation routes.

GET /api/automation/{id}  — Decrypted automation document (+ decryptionErrors)
PUT /api/automation/{id}  — Replace the document; URL fields are sealed at rest
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Header

from syncvault.api.deps import get_automation_service
from syncvault.sync.automation import AutomationService
from syncvault.sync.cloud import TOKEN_HEADER

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/automation", tags=["automation"])


@router.get("/{sync_id}")
def get_automation(
    sync_id: str,
    token: Optional[str] = Header(None, alias=TOKEN_HEADER),
    service: AutomationService = Depends(get_automation_service),
):
    return service.load(sync_id, token)


@router.put("/{sync_id}")
def put_automation(
    sync_id: str,
    document: Any = Body(None),
    token: Optional[str] = Header(None, alias=TOKEN_HEADER),
    service: AutomationService = Depends(get_automation_service),
):
    service.save(sync_id, token, document)
    return {"success": True}
