"""Filz Audit API."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from filz_audit.api.audit import CamelModel, get_audit_service
from filz_audit.api.audit import router as audit_router
from filz_audit.api.config import Settings
from filz_audit.api.security import add_security_headers
from filz_audit.audit.service import AuditService
from filz_audit.audit.storage import AuditStorage, create_audit_storage

logger = logging.getLogger(__name__)


class HealthResponse(CamelModel):
    """Health check response."""

    status: str = "ok"
    version: str = "1.0.0"
    chain_length: int = 0


def build_audit_service(settings: Settings, storage: AuditStorage) -> AuditService:
    """Audit service configured from settings."""
    return AuditService(
        storage,
        hash_algorithm=settings.hash_algorithm,
        excluded_actions=settings.excluded_actions,
        fail_open=settings.fail_open,
        verification_interval_seconds=(
            settings.verification_interval_seconds if settings.verification_enabled else None
        ),
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create the API application.

    The audit chain is started (and CHAIN_GENESIS written when needed)
    before the first request is served.
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        storage = await create_audit_storage(
            settings.storage_type,
            settings.storage_path,
            settings.database_url,
        )
        service = build_audit_service(settings, storage)
        genesis = await service.start()
        app.state.audit_service = service
        logger.info("Audit chain ready (genesis hash %s...)", genesis.hash[:16])
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(
        title=settings.api_title,
        description="Tamper-evident audit hash-chain for the document management backend.",
        version=settings.api_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Security headers middleware
    app.middleware("http")(add_security_headers)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )

    app.include_router(audit_router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check(
        service: AuditService = Depends(get_audit_service),
    ) -> HealthResponse:
        """Health check endpoint (no auth required)."""
        return HealthResponse(
            version=settings.api_version,
            chain_length=await service.queries.count(),
        )

    return app


app = create_app()
