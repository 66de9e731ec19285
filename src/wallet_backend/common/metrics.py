"""
Метрики Prometheus для сервиса.

Назначение:
- Экспорт /metrics (admin API) и отдельный HTTP-порт метрик для воркера
- Счётчики задач очередей, переходов статусов платежей, деградаций
"""

from __future__ import annotations

import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

# =============================================================================
# СЧЁТЧИКИ И МЕТРИКИ
# =============================================================================

REQUESTS_TOTAL = Counter(
    "wallet_requests_total",
    "Общее количество HTTP запросов",
    ["service", "route", "method", "status"],
)

# Обработка задач очередей
QUEUE_TASKS_TOTAL = Counter(
    "wallet_queue_tasks_total",
    "Количество обработанных задач очереди",
    ["service", "queue", "task_type", "result"],  # result=success|retry|dead|error
)

TASK_LATENCY_MS = Histogram(
    "wallet_task_latency_ms",
    "Время выполнения обработчика задачи (мс)",
    ["task_type"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)

PAYMENT_TRANSITIONS_TOTAL = Counter(
    "wallet_payment_transitions_total",
    "Переходы статусов платежей, выполненные воркером",
    ["source", "from_status", "to_status"],
)

RESCHEDULE_FAILURES_TOTAL = Counter(
    "wallet_reschedule_failures_total",
    "Неудачные перепостановки следующей проверки (задача при этом успешна)",
    ["task_type"],
)

CONTRACT_DRIFT_TOTAL = Counter(
    "wallet_contract_drift_total",
    "Хранилище отвергло статус, выданный воркером (рассинхрон контракта)",
    ["task_type"],
)

QUEUE_DEPTH = Gauge(
    "wallet_queue_depth",
    "Текущая глубина ready-очередей",
    ["queue"],
)

QUEUE_SCHEDULED = Gauge(
    "wallet_queue_scheduled",
    "Количество отложенных задач",
    ["queue"],
)

DLQ_DEPTH = Gauge(
    "wallet_dlq_depth",
    "Текущая глубина DLQ",
    ["queue"],
)

RECONCILIATION_PAYMENTS_TOTAL = Counter(
    "wallet_reconciliation_payments_total",
    "Результаты reconciliation по pending-платежам",
    ["result"],  # result=seeded|skipped|failed
)

METRICS_COLLECTION_ERRORS_TOTAL = Counter(
    "wallet_metrics_collection_errors_total",
    "Ошибки сборки служебных метрик",
    ["source"],
)


@contextmanager
def track_task_latency(task_type: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        TASK_LATENCY_MS.labels(task_type=task_type).observe(elapsed_ms)


def refresh_queue_metrics(queues: Iterable[str] | None = None) -> None:
    try:
        from wallet_backend.common.config import get_settings
        from wallet_backend.queue.dispatcher import get_broker, parse_queue_weights

        broker = get_broker()
        names = list(queues) if queues is not None else list(
            parse_queue_weights(get_settings().worker_queues)
        )
        for queue in names:
            stats = broker.queue_stats(queue)
            QUEUE_DEPTH.labels(queue=queue).set(stats.ready)
            QUEUE_SCHEDULED.labels(queue=queue).set(stats.scheduled)
            DLQ_DEPTH.labels(queue=queue).set(stats.dead)
    except Exception:
        METRICS_COLLECTION_ERRORS_TOTAL.labels(source="queue_metrics").inc()


def start_worker_metrics_server(port: int) -> bool:
    """
    Поднять /metrics для процесса воркера. port <= 0 - выключено.
    """
    if port <= 0:
        return False
    start_http_server(port)
    return True


# =============================================================================
# ENDPOINT /metrics
# =============================================================================
def setup_metrics_endpoint(app: FastAPI, *, service: str = "api-admin") -> None:
    """
    Регистрирует endpoint /metrics для Prometheus.
    """

    @app.middleware("http")
    async def http_metrics(request: Request, call_next):
        response = await call_next(request)
        REQUESTS_TOTAL.labels(
            service=service,
            route=request.url.path,
            method=request.method,
            status=str(response.status_code),
        ).inc()
        return response

    @app.get("/metrics")
    def metrics() -> Response:
        refresh_queue_metrics()
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
