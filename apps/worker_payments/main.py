"""
Worker Payments.

Процесс воркера платежей:
- readiness-проверка конфигурации (fail fast в prod)
- сборка зависимостей: хранилище, шлюз, постановка задач, heartbeat цепочек
- регистрация обработчиков payment:check_status / payment:process
- блокирующий запуск рантайма очередей до SIGINT/SIGTERM

Ошибка на старте (Redis недоступен, неверная конфигурация) фатальна:
процесс завершается с ненулевым кодом.
"""

from __future__ import annotations

import sys

from wallet_backend.common.config import get_settings
from wallet_backend.common.logging import get_project_logger
from wallet_backend.common.observability import setup_observability
from wallet_backend.gateway.factory import build_payment_gateway
from wallet_backend.queue.dispatcher import TaskClient, get_broker, parse_queue_weights
from wallet_backend.queue.idempotency import ChainRegistry
from wallet_backend.queue.redis import close_redis_client, redis_client
from wallet_backend.queue.server import TaskRouter, WorkerServer
from wallet_backend.services.payment_service import PaymentService
from wallet_backend.services.readiness_service import enforce_startup_readiness
from wallet_backend.workers.payment_lifecycle import PaymentWorker

log = get_project_logger()


def build_server() -> WorkerServer:
    settings = get_settings()
    broker = get_broker()

    worker = PaymentWorker(
        PaymentService(),
        TaskClient(broker),
        build_payment_gateway(settings),
        check_interval_sec=settings.payment_check_interval_sec,
        max_retry=settings.retry_max_attempts,
        chain_registry=ChainRegistry(redis_client()),
    )
    router = TaskRouter()
    worker.register(router)

    return WorkerServer(
        broker,
        router,
        concurrency=settings.worker_concurrency,
        queue_weights=parse_queue_weights(settings.worker_queues),
        consumer=settings.worker_consumer_name,
        poll_interval_sec=settings.worker_poll_interval_sec,
        shutdown_timeout_sec=settings.worker_shutdown_timeout_sec,
        retry_base_delay_sec=settings.retry_delay_sec,
        retry_max_delay_sec=settings.retry_max_delay_sec,
        service_name=settings.service_name,
    )


def main() -> None:
    settings = get_settings()
    setup_observability(
        service_name=settings.service_name, metrics_port=settings.worker_metrics_port
    )
    try:
        enforce_startup_readiness(service_name=settings.service_name)
        server = build_server()
        server.run()
    except Exception as e:
        log.critical(
            "worker_payments_fatal",
            extra={"payload": {"err": str(e)[:300], "error_type": e.__class__.__name__}},
        )
        sys.exit(1)
    finally:
        close_redis_client()


if __name__ == "__main__":
    main()
