"""
Логирование проекта.

- stdout, одна JSON-строка на событие (LOG_FORMAT=text для локальной отладки)
- имя события в msg, контекст в extra={"payload": {...}}
- во время обработки задачи очереди в каждую запись добавляется блок "task"
  (task_id, type, queue, retried): обработчикам не нужно прокидывать его руками
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from wallet_backend.common.config import get_settings

_task_ctx = threading.local()


@contextmanager
def task_log_context(**fields: Any) -> Iterator[None]:
    """
    Контекст задачи для всех логов текущего потока (пул воркера - поток на задачу).
    """
    previous = getattr(_task_ctx, "fields", None)
    _task_ctx.fields = {k: v for k, v in fields.items() if v is not None}
    try:
        yield
    finally:
        _task_ctx.fields = previous


def current_task_context() -> dict[str, Any] | None:
    return getattr(_task_ctx, "fields", None)


class TaskContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        ctx = current_task_context()
        if ctx and not hasattr(record, "task"):
            record.task = dict(ctx)
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "ts": datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        task = getattr(record, "task", None)
        if isinstance(task, dict):
            data["task"] = task
        payload = getattr(record, "payload", None)
        if isinstance(payload, dict):
            data["payload"] = payload
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, ensure_ascii=False, default=str)


def setup_logging() -> None:
    s = get_settings()
    root = logging.getLogger()
    level = getattr(logging, (s.log_level or "INFO").upper(), logging.INFO)
    root.setLevel(level)

    # повторный вызов (api + импорт в тестах) не должен дублировать вывод
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(TaskContextFilter())
    if (s.log_format or "").lower() == "text":
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    else:
        handler.setFormatter(JsonFormatter())
    root.addHandler(handler)

    for noisy in ("uvicorn.error", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(level)


def get_project_logger(name: str = "wallet-backend") -> logging.Logger:
    return logging.getLogger(name)


def get_worker_logger() -> logging.Logger:
    """
    Логгер рантайма очереди (accept-loop, ack/retry/DLQ).
    """
    return logging.getLogger("wallet-backend.worker")
