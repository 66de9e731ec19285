"""
Observability bootstrap.

Назначение:
- централизованно включить логирование и метрики процесса
- не тянуть лишние зависимости внутрь apps/*
"""

from __future__ import annotations

from wallet_backend.common.logging import get_project_logger, setup_logging
from wallet_backend.common.metrics import start_worker_metrics_server

log = get_project_logger()


def setup_observability(*, service_name: str, metrics_port: int = 0) -> None:
    """
    Вызывается на старте процесса (api/worker).
    metrics_port > 0 поднимает отдельный /metrics (для воркеров без HTTP).
    """
    setup_logging()
    metrics_enabled = start_worker_metrics_server(metrics_port)
    log.info(
        "observability_ready",
        extra={
            "payload": {
                "service": service_name,
                "metrics_port": metrics_port if metrics_enabled else None,
            }
        },
    )
