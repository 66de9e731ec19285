"""
Worker Reconciliation.

Периодический sweep pending-платежей с оборванной цепочкой проверок
(jobs/pending_sweep_job). Ошибка одного прохода не останавливает цикл;
SIGINT/SIGTERM завершают процесс после текущего прохода.
"""

from __future__ import annotations

import signal
import threading
from collections.abc import Callable

from wallet_backend.common.config import get_settings
from wallet_backend.common.logging import get_project_logger
from wallet_backend.common.observability import setup_observability
from wallet_backend.jobs.pending_sweep_job import run as run_sweep
from wallet_backend.queue.redis import close_redis_client
from wallet_backend.services.readiness_service import enforce_startup_readiness

log = get_project_logger()

SERVICE_NAME = "worker-reconciliation"


def run_loop(
    stop: threading.Event,
    *,
    interval_sec: float,
    limit: int,
    sweep: Callable[..., object] = run_sweep,
) -> int:
    """
    Возвращает число выполненных проходов (для тестов и логов завершения).
    """
    passes = 0
    while not stop.is_set():
        try:
            sweep(limit=limit)
        except Exception as e:
            log.error(
                "worker_reconciliation_error",
                extra={"payload": {"err": str(e)[:300], "error_type": e.__class__.__name__}},
            )
        passes += 1
        stop.wait(interval_sec)
    return passes


def main() -> None:
    settings = get_settings()
    setup_observability(service_name=SERVICE_NAME, metrics_port=settings.worker_metrics_port)
    enforce_startup_readiness(service_name=SERVICE_NAME)

    interval_sec = max(5, int(settings.reconciliation_interval_sec))
    limit = int(settings.reconciliation_limit)
    stop = threading.Event()

    def _on_signal(signum, frame) -> None:
        log.info("worker_shutdown_signal", extra={"payload": {"signal": signum}})
        stop.set()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)

    log.info(
        "worker_reconciliation_started",
        extra={
            "payload": {
                "enabled": bool(settings.reconciliation_enabled),
                "interval_sec": interval_sec,
                "limit": limit,
                "stale_sec": int(settings.reconciliation_stale_sec),
            }
        },
    )
    try:
        passes = run_loop(stop, interval_sec=interval_sec, limit=limit)
    finally:
        close_redis_client()
    log.info("worker_reconciliation_stopped", extra={"payload": {"passes": passes}})


if __name__ == "__main__":
    main()
