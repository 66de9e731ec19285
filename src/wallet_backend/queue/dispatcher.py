"""
Диспетчер очередей.

Назначение:
- Единые имена очередей и их веса
- Клиент постановки задач (граница «task submission»)
- Сборка брокера поверх общего Redis-клиента
"""

from __future__ import annotations

from wallet_backend.common.config import get_settings
from wallet_backend.common.errors import SubmissionError, ValidationError
from wallet_backend.common.logging import get_project_logger

from .broker import RedisBroker, TaskInfo
from .redis import redis_client

log = get_project_logger()

# =============================================================================
# ИМЕНА ОЧЕРЕДЕЙ
# =============================================================================
Q_CRITICAL = "critical"
Q_DEFAULT = "default"
Q_LOW = "low"

DEFAULT_QUEUE_WEIGHTS: dict[str, int] = {Q_CRITICAL: 6, Q_DEFAULT: 3, Q_LOW: 1}


def parse_queue_weights(raw: str) -> dict[str, int]:
    """
    "critical=6,default=3,low=1" → {"critical": 6, "default": 3, "low": 1}
    """
    weights: dict[str, int] = {}
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        name, sep, value = part.partition("=")
        name = name.strip()
        if not sep or not name:
            raise ValidationError("Неверный формат WORKER_QUEUES", {"item": part})
        try:
            weight = int(value.strip())
        except ValueError as e:
            raise ValidationError("Вес очереди должен быть целым", {"item": part}) from e
        if weight <= 0:
            raise ValidationError("Вес очереди должен быть > 0", {"item": part})
        weights[name] = weight
    return weights or dict(DEFAULT_QUEUE_WEIGHTS)


# =============================================================================
# КЛИЕНТ ПОСТАНОВКИ ЗАДАЧ
# =============================================================================
class TaskClient:
    """
    Постановка задач в брокер. Передаётся в воркер явно (без глобального клиента).
    """

    def __init__(self, broker: RedisBroker) -> None:
        self.broker = broker

    def enqueue(
        self,
        task_type: str,
        payload: str,
        *,
        queue: str = Q_DEFAULT,
        delay_sec: float = 0,
        max_retry: int = 3,
    ) -> TaskInfo:
        try:
            info = self.broker.enqueue(
                task_type, payload, queue=queue, delay_sec=delay_sec, max_retry=max_retry
            )
        except SubmissionError:
            raise
        except Exception as e:
            raise SubmissionError(
                "Не удалось поставить задачу в очередь",
                {"type": task_type, "queue": queue, "err": str(e)[:200]},
            ) from e

        log.info(
            "enqueue_task",
            extra={
                "payload": {
                    "task_id": info.id,
                    "type": task_type,
                    "queue": queue,
                    "delay_sec": delay_sec,
                    "max_retry": max_retry,
                }
            },
        )
        return info


_broker: RedisBroker | None = None


def get_broker() -> RedisBroker:
    global _broker
    if _broker is None:
        _broker = RedisBroker(redis_client(), prefix=get_settings().queue_key_prefix)
    return _broker


def get_task_client() -> TaskClient:
    return TaskClient(get_broker())
