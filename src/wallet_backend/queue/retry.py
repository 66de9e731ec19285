"""
Retry/DLQ политика для очередей.

Назначение:
- повторная доставка упавших задач с экспоненциальным backoff
- после исчерпания max_retry задача уходит в DLQ (<queue>:dlq)
- из DLQ автоматически ничего не восстанавливается, только вручную (admin API)
"""

from __future__ import annotations

from wallet_backend.common.logging import get_project_logger

from .broker import RedisBroker, TaskMessage

log = get_project_logger()


def backoff_delay(retried: int, *, base_sec: float, max_sec: float) -> float:
    """
    base * 2^retried, но не больше max_sec.
    """
    if base_sec <= 0:
        return 0.0
    exp = min(max(0, retried), 32)
    return float(min(base_sec * (2**exp), max_sec))


def handle_task_failure(
    *,
    broker: RedisBroker,
    msg: TaskMessage,
    consumer: str,
    error: str,
    base_delay_sec: float,
    max_delay_sec: float,
) -> bool:
    """
    Отработать ошибку обработчика.

    Возвращает:
    - True: задача поставлена на повтор
    - False: задача отправлена в DLQ
    """
    if msg.retried >= msg.max_retry:
        broker.dead_letter(msg, consumer, error=error)
        log.warning(
            "task_moved_to_dlq",
            extra={
                "payload": {
                    "task_id": msg.id,
                    "type": msg.type,
                    "queue": msg.queue,
                    "dlq": broker.dlq_key(msg.queue),
                    "retried": msg.retried,
                    "max_retry": msg.max_retry,
                    "err": error[:200],
                }
            },
        )
        return False

    delay = backoff_delay(msg.retried, base_sec=base_delay_sec, max_sec=max_delay_sec)
    broker.retry(msg, consumer, error=error, delay_sec=delay)
    log.warning(
        "task_requeued",
        extra={
            "payload": {
                "task_id": msg.id,
                "type": msg.type,
                "queue": msg.queue,
                "retried": msg.retried,
                "max_retry": msg.max_retry,
                "backoff_sec": delay,
            }
        },
    )
    return True
