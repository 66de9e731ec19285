"""
Брокер задач поверх Redis.

Ключи (prefix = QUEUE_KEY_PREFIX, по умолчанию "q"):
- <prefix>:<queue>                    - готовые к выдаче задачи (list, FIFO)
- <prefix>:<queue>:scheduled          - отложенные задачи (zset, score = due epoch sec)
- <prefix>:<queue>:active:<consumer>  - задачи в работе у конкретного консьюмера (list)
- <prefix>:<queue>:dlq                - dead-letter (list)

Гарантии:
- выдача at-least-once: задача атомарно переезжает в active (RPOPLPUSH)
  и удаляется оттуда только после ack / retry / dead_letter
- задачи, брошенные упавшим процессом, возвращаются recover_in_flight() при старте
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from typing import Any

import redis

from wallet_backend.common.errors import SubmissionError
from wallet_backend.common.ids import new_task_id
from wallet_backend.common.logging import get_project_logger
from wallet_backend.common.time import utc_now_iso

from .tasks import Task

log = get_project_logger()

# сколько отложенных задач переносить за один проход
_PROMOTE_BATCH = 100


# =============================================================================
# СООБЩЕНИЕ
# =============================================================================
@dataclass
class TaskMessage:
    id: str
    type: str
    payload: str
    queue: str
    max_retry: int
    retried: int = 0
    enqueued_at: str = field(default_factory=utc_now_iso)
    process_at: float | None = None
    last_error: str | None = None
    last_failed_at: str | None = None

    # исходная строка из Redis (нужна для LREM), не сериализуется
    raw: str | None = field(default=None, repr=False, compare=False)

    def to_json(self) -> str:
        data = asdict(self)
        data.pop("raw", None)
        return json.dumps(data, ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> TaskMessage:
        data: Any = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"task message must be a JSON object, got {type(data).__name__}")
        data.pop("raw", None)
        msg = cls(**data)
        msg.raw = raw
        return msg

    def as_task(self) -> Task:
        return Task(
            type=self.type,
            payload=self.payload,
            id=self.id,
            queue=self.queue,
            retried=self.retried,
            max_retry=self.max_retry,
        )


@dataclass
class TaskInfo:
    id: str
    type: str
    queue: str
    max_retry: int
    state: str  # pending|scheduled
    process_at: float | None = None


@dataclass
class QueueStats:
    queue: str
    ready: int
    scheduled: int
    dead: int


# =============================================================================
# БРОКЕР
# =============================================================================
class RedisBroker:
    def __init__(self, client: redis.Redis, *, prefix: str = "q") -> None:
        self.r = client
        self.prefix = prefix

    # --- имена ключей -------------------------------------------------------
    def ready_key(self, queue: str) -> str:
        return f"{self.prefix}:{queue}"

    def scheduled_key(self, queue: str) -> str:
        return f"{self.prefix}:{queue}:scheduled"

    def active_key(self, queue: str, consumer: str) -> str:
        return f"{self.prefix}:{queue}:active:{consumer}"

    def dlq_key(self, queue: str) -> str:
        return f"{self.prefix}:{queue}:dlq"

    # --- продьюсер ----------------------------------------------------------
    def enqueue(
        self,
        task_type: str,
        payload: str,
        *,
        queue: str,
        delay_sec: float = 0,
        max_retry: int = 3,
    ) -> TaskInfo:
        """
        Поставить задачу. delay_sec > 0 - отложенная доставка.
        Ошибка Redis превращается в SubmissionError.
        """
        msg = TaskMessage(
            id=new_task_id(),
            type=task_type,
            payload=payload,
            queue=queue,
            max_retry=max(0, int(max_retry)),
        )
        try:
            if delay_sec and delay_sec > 0:
                msg.process_at = time.time() + float(delay_sec)
                self.r.zadd(self.scheduled_key(queue), {msg.to_json(): msg.process_at})
                state = "scheduled"
            else:
                self.r.lpush(self.ready_key(queue), msg.to_json())
                state = "pending"
        except redis.RedisError as e:
            raise SubmissionError(
                "Не удалось поставить задачу в очередь",
                {"type": task_type, "queue": queue, "err": str(e)[:200]},
            ) from e

        return TaskInfo(
            id=msg.id,
            type=task_type,
            queue=queue,
            max_retry=msg.max_retry,
            state=state,
            process_at=msg.process_at,
        )

    # --- консьюмер ----------------------------------------------------------
    def promote_due(self, queue: str, now: float | None = None) -> int:
        """
        Перенести наступившие отложенные задачи в ready.
        ZREM служит «замком»: задачу переносит только тот, кто её удалил.
        """
        now = time.time() if now is None else now
        key = self.scheduled_key(queue)
        due = self.r.zrangebyscore(key, "-inf", now, start=0, num=_PROMOTE_BATCH)
        moved = 0
        for raw in due:
            if self.r.zrem(key, raw):
                self.r.lpush(self.ready_key(queue), raw)
                moved += 1
        return moved

    def fetch(self, queue: str, consumer: str) -> TaskMessage | None:
        raw = self.r.rpoplpush(self.ready_key(queue), self.active_key(queue, consumer))
        if raw is None:
            return None
        try:
            return TaskMessage.from_json(raw)
        except (TypeError, ValueError) as e:
            # битое сообщение в очереди: сразу в DLQ, иначе оно будет крутиться вечно
            log.error(
                "task_message_corrupted",
                extra={"payload": {"queue": queue, "raw": str(raw)[:300], "err": str(e)[:200]}},
            )
            self.r.lrem(self.active_key(queue, consumer), 1, raw)
            self.r.lpush(self.dlq_key(queue), raw)
            return None

    def ack(self, msg: TaskMessage, consumer: str) -> None:
        self.r.lrem(self.active_key(msg.queue, consumer), 1, msg.raw or msg.to_json())

    def retry(self, msg: TaskMessage, consumer: str, *, error: str, delay_sec: float) -> None:
        active_raw = msg.raw or msg.to_json()
        msg.retried += 1
        msg.last_error = error[:500]
        msg.last_failed_at = utc_now_iso()
        msg.process_at = time.time() + max(0.0, float(delay_sec))
        self.r.zadd(self.scheduled_key(msg.queue), {msg.to_json(): msg.process_at})
        self.r.lrem(self.active_key(msg.queue, consumer), 1, active_raw)

    def dead_letter(self, msg: TaskMessage, consumer: str, *, error: str) -> None:
        active_raw = msg.raw or msg.to_json()
        msg.last_error = error[:500]
        msg.last_failed_at = utc_now_iso()
        self.r.lpush(self.dlq_key(msg.queue), msg.to_json())
        self.r.lrem(self.active_key(msg.queue, consumer), 1, active_raw)

    def recover_in_flight(self, queue: str, consumer: str) -> int:
        """
        Вернуть в ready задачи, которые остались в active после падения процесса.
        """
        moved = 0
        while self.r.rpoplpush(self.active_key(queue, consumer), self.ready_key(queue)) is not None:
            moved += 1
        return moved

    # --- эксплуатация -------------------------------------------------------
    def ping(self) -> bool:
        return bool(self.r.ping())

    def list_dead(self, queue: str, *, limit: int = 50) -> list[TaskMessage]:
        raws = self.r.lrange(self.dlq_key(queue), 0, max(1, min(limit, 1000)) - 1)
        out: list[TaskMessage] = []
        for raw in raws:
            try:
                out.append(TaskMessage.from_json(raw))
            except (TypeError, ValueError):
                log.warning("dlq_message_unreadable", extra={"payload": {"queue": queue}})
        return out

    def requeue_dead(self, queue: str, task_id: str) -> bool:
        """
        Ручное восстановление: вернуть задачу из DLQ в ready со сброшенным счётчиком.
        """
        for msg in self.list_dead(queue, limit=1000):
            if msg.id != task_id:
                continue
            if not self.r.lrem(self.dlq_key(queue), 1, msg.raw):
                return False
            msg.retried = 0
            msg.process_at = None
            self.r.lpush(self.ready_key(queue), msg.to_json())
            log.info("dlq_task_requeued", extra={"payload": {"queue": queue, "task_id": task_id}})
            return True
        return False

    def queue_stats(self, queue: str) -> QueueStats:
        return QueueStats(
            queue=queue,
            ready=int(self.r.llen(self.ready_key(queue))),
            scheduled=int(self.r.zcard(self.scheduled_key(queue))),
            dead=int(self.r.llen(self.dlq_key(queue))),
        )
