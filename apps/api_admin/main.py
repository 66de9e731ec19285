"""
Admin API (FastAPI).

Функции:
- /health
- /metrics
- /v1/admin/*: очереди, DLQ, ручная постановка задач по платежам
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from apps.api_admin.routers.admin import router as admin_router
from wallet_backend.common.logging import get_project_logger
from wallet_backend.common.metrics import setup_metrics_endpoint
from wallet_backend.common.observability import setup_observability
from wallet_backend.services.readiness_service import enforce_startup_readiness

log = get_project_logger()

SERVICE_NAME = "api-admin"


def _create_app() -> FastAPI:
    app = FastAPI(title="Wallet Backend Admin", version="0.1.0")

    setup_metrics_endpoint(app, service=SERVICE_NAME)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True}

    app.include_router(admin_router, prefix="/v1")
    return app


setup_observability(service_name=SERVICE_NAME)
enforce_startup_readiness(service_name=SERVICE_NAME)
app = _create_app()
