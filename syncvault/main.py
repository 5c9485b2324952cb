"""
SyncVault Sync Service — FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from syncvault.api.automation_routes import router as automation_router
from syncvault.api.limits import BodySizeLimitMiddleware
from syncvault.api.sync_routes import router as sync_router
from syncvault.config.settings import Settings, settings as default_settings
from syncvault.errors import SyncVaultError
from syncvault.storage.database import Database
from syncvault.sync.automation import AutomationService
from syncvault.sync.secrets import ServerSecretChain
from syncvault.sync.service import SyncService

logger = logging.getLogger(__name__)


def configure_logging(config: Settings) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.log_file:
        handlers.append(logging.FileHandler(config.log_file))
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def create_app(
    config: Optional[Settings] = None,
    database: Optional[Database] = None,
    secrets: Optional[ServerSecretChain] = None,
) -> FastAPI:
    """Build the Sync Service. Injected collaborators are used as-is and not closed."""
    config = config or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("SyncVault Sync Service starting...")
        db = database or Database(config)
        db.init()
        chain = secrets or ServerSecretChain.from_settings(config)
        sync_service = SyncService(db)

        app.state.database = db
        app.state.secrets = chain
        app.state.sync_service = sync_service
        app.state.automation_service = AutomationService(db, chain, sync_service)
        logger.info(
            "Storage: %s. API ready at http://%s:%s",
            db.backend, config.api_host, config.api_port,
        )
        yield
        logger.info("SyncVault Sync Service shutting down...")
        if database is None:
            db.close()

    app = FastAPI(
        title="SyncVault",
        description="Zero-knowledge configuration sync service",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(BodySizeLimitMiddleware, max_body_size=config.max_sync_payload_size)

    @app.exception_handler(SyncVaultError)
    async def handle_sync_error(request: Request, exc: SyncVaultError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(SQLAlchemyError)
    async def handle_database_error(request: Request, exc: SQLAlchemyError):
        logger.error("%s %s database error: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"error": "Database error"})

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_bad_request(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": "Invalid request body"})

    app.include_router(sync_router)
    app.include_router(automation_router)

    @app.get("/api/health")
    def health(request: Request):
        db: Database = request.app.state.database
        if db.health_check():
            return {"status": "ok", "backend": db.backend}
        return JSONResponse(
            status_code=503,
            content={"status": "error", "error": "Database unavailable"},
        )

    return app


configure_logging(default_settings)
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "syncvault.main:app",
        host=default_settings.api_host,
        port=default_settings.api_port,
        reload=False,
    )
