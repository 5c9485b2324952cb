"""
Request-scoped access to the services built once in the app lifespan.
"""

from fastapi import Request

from syncvault.storage.database import Database
from syncvault.sync.automation import AutomationService
from syncvault.sync.service import SyncService


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_sync_service(request: Request) -> SyncService:
    return request.app.state.sync_service


def get_automation_service(request: Request) -> AutomationService:
    return request.app.state.automation_service
