"""
Рантайм воркера: выдача задач из именованных очередей обработчикам.

Алгоритм:
- при старте: ping Redis, возврат брошенных in-flight задач (любая ошибка - fail fast)
- accept-loop: берёт слот конкуренции, выбирает очередь по весам, забирает задачу,
  отдаёт обработчик в пул потоков
- успех → ack; исключение → retry с backoff или DLQ
- stop(): перестаём принимать новые задачи, ждём in-flight до shutdown_timeout

Приоритеты нестрогие: очередь с большим весом чаще опрашивается первой,
но низкоприоритетные очереди не голодают.
"""

from __future__ import annotations

import random
import signal
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

from wallet_backend.common.errors import NotFoundError
from wallet_backend.common.logging import get_worker_logger, task_log_context
from wallet_backend.common.metrics import QUEUE_TASKS_TOTAL, track_task_latency

from .broker import RedisBroker, TaskMessage
from .retry import handle_task_failure
from .tasks import Task

log = get_worker_logger()

Handler = Callable[[Task], None]


# =============================================================================
# РОУТЕР ОБРАБОТЧИКОВ
# =============================================================================
class TaskRouter:
    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(self, task_type: str, handler: Handler) -> None:
        if task_type in self._handlers:
            raise ValueError(f"handler for {task_type!r} already registered")
        self._handlers[task_type] = handler

    def task_types(self) -> list[str]:
        return sorted(self._handlers)

    def dispatch(self, task: Task) -> None:
        handler = self._handlers.get(task.type)
        if handler is None:
            raise NotFoundError("Нет обработчика для типа задачи", {"type": task.type})
        handler(task)


def queue_order(weights: dict[str, int], rng: random.Random) -> list[str]:
    """
    Порядок опроса очередей на одну итерацию: взвешенная случайная перестановка.
    """
    pool = [queue for queue, weight in weights.items() for _ in range(max(1, weight))]
    rng.shuffle(pool)
    seen: set[str] = set()
    order: list[str] = []
    for queue in pool:
        if queue not in seen:
            seen.add(queue)
            order.append(queue)
    return order


# =============================================================================
# СЕРВЕР
# =============================================================================
class WorkerServer:
    def __init__(
        self,
        broker: RedisBroker,
        router: TaskRouter,
        *,
        concurrency: int,
        queue_weights: dict[str, int],
        consumer: str,
        poll_interval_sec: float = 1.0,
        shutdown_timeout_sec: float = 10.0,
        retry_base_delay_sec: float = 30.0,
        retry_max_delay_sec: float = 3600.0,
        service_name: str = "worker-payments",
        rng: random.Random | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if not queue_weights:
            raise ValueError("at least one queue is required")

        self.broker = broker
        self.router = router
        self.concurrency = concurrency
        self.queue_weights = dict(queue_weights)
        self.consumer = consumer
        self.poll_interval_sec = poll_interval_sec
        self.shutdown_timeout_sec = shutdown_timeout_sec
        self.retry_base_delay_sec = retry_base_delay_sec
        self.retry_max_delay_sec = retry_max_delay_sec
        self.service_name = service_name

        self._rng = rng or random.Random()
        self._slots = threading.BoundedSemaphore(concurrency)
        self._stopping = threading.Event()
        self._inflight = 0
        self._inflight_cv = threading.Condition()
        self._last_promote = 0.0
        self._executor: ThreadPoolExecutor | None = None
        self._loop_thread: threading.Thread | None = None

    # --- жизненный цикл -----------------------------------------------------
    def start(self) -> None:
        """
        Старт рантайма. Ошибка на этом этапе фатальна и пробрасывается наверх.
        """
        if not self.broker.ping():
            raise RuntimeError("redis ping failed")

        for queue in self.queue_weights:
            recovered = self.broker.recover_in_flight(queue, self.consumer)
            if recovered:
                log.warning(
                    "in_flight_tasks_recovered",
                    extra={"payload": {"queue": queue, "consumer": self.consumer, "count": recovered}},
                )

        self._stopping.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix=f"{self.service_name}-task"
        )
        self._loop_thread = threading.Thread(
            target=self._accept_loop, name=f"{self.service_name}-accept", daemon=True
        )
        self._loop_thread.start()

        log.info(
            "worker_started",
            extra={
                "payload": {
                    "consumer": self.consumer,
                    "concurrency": self.concurrency,
                    "queues": self.queue_weights,
                    "task_types": self.router.task_types(),
                }
            },
        )

    def stop(self) -> bool:
        """
        Graceful drain. Возвращает True, если все in-flight обработчики успели завершиться.
        Незавершённые задачи остаются в active и вернутся в очередь при следующем старте.
        """
        self._stopping.set()
        if self._loop_thread is not None:
            self._loop_thread.join(timeout=self.poll_interval_sec + 1.0)

        drained = self._wait_inflight(self.shutdown_timeout_sec)
        if not drained:
            log.warning(
                "worker_shutdown_timeout",
                extra={"payload": {"inflight": self._inflight, "timeout_sec": self.shutdown_timeout_sec}},
            )
        if self._executor is not None:
            self._executor.shutdown(wait=drained, cancel_futures=True)

        log.info("worker_stopped", extra={"payload": {"consumer": self.consumer, "drained": drained}})
        return drained

    def run(self) -> None:
        """
        Блокирующий запуск до SIGINT/SIGTERM.
        """

        def _on_signal(signum, frame) -> None:
            log.info("worker_shutdown_signal", extra={"payload": {"signal": signum}})
            self._stopping.set()

        signal.signal(signal.SIGTERM, _on_signal)
        signal.signal(signal.SIGINT, _on_signal)

        self.start()
        try:
            while not self._stopping.wait(1.0):
                pass
        finally:
            self.stop()

    # --- accept-loop --------------------------------------------------------
    def _accept_loop(self) -> None:
        while not self._stopping.is_set():
            if not self._slots.acquire(timeout=self.poll_interval_sec):
                continue
            try:
                msg = self._next_message()
            except Exception as e:
                self._slots.release()
                log.error("worker_fetch_error", extra={"payload": {"err": str(e)[:300]}})
                self._stopping.wait(self.poll_interval_sec)
                continue

            if msg is None:
                self._slots.release()
                self._stopping.wait(self.poll_interval_sec)
                continue

            self._begin()
            try:
                assert self._executor is not None
                self._executor.submit(self._run_slot, msg)
            except RuntimeError:
                # пул уже закрыт: задача остаётся в active и вернётся при следующем старте
                self._slots.release()
                self._end()
                break

    def _next_message(self) -> TaskMessage | None:
        now = time.monotonic()
        if now - self._last_promote >= self.poll_interval_sec:
            self._last_promote = now
            for queue in self.queue_weights:
                self.broker.promote_due(queue)

        for queue in queue_order(self.queue_weights, self._rng):
            msg = self.broker.fetch(queue, self.consumer)
            if msg is not None:
                return msg
        return None

    def _run_slot(self, msg: TaskMessage) -> None:
        try:
            self.process_message(msg)
        finally:
            self._slots.release()
            self._end()

    # --- обработка одной задачи ---------------------------------------------
    def process_message(self, msg: TaskMessage) -> bool:
        """
        Выполнить обработчик и финализировать задачу в брокере.
        Возвращает True при успехе обработчика.
        """
        task = msg.as_task()
        try:
            with (
                task_log_context(
                    task_id=msg.id, type=msg.type, queue=msg.queue, retried=msg.retried
                ),
                track_task_latency(task.type),
            ):
                self.router.dispatch(task)
        except Exception as e:
            self._on_handler_error(msg, e)
            return False

        try:
            self.broker.ack(msg, self.consumer)
        except Exception as e:
            # задача выполнена, но останется в active: при рестарте будет повтор (at-least-once)
            log.error(
                "task_ack_failed",
                extra={"payload": {"task_id": msg.id, "type": msg.type, "err": str(e)[:200]}},
            )
        QUEUE_TASKS_TOTAL.labels(
            service=self.service_name, queue=msg.queue, task_type=msg.type, result="success"
        ).inc()
        return True

    def _on_handler_error(self, msg: TaskMessage, exc: Exception) -> None:
        error = str(exc) or exc.__class__.__name__
        log.error(
            "task_processing_failed",
            extra={
                "payload": {
                    "task_id": msg.id,
                    "type": msg.type,
                    "queue": msg.queue,
                    "payload": msg.payload[:300],
                    "retried": msg.retried,
                    "error_type": exc.__class__.__name__,
                    "err": error[:300],
                }
            },
        )
        try:
            retried = handle_task_failure(
                broker=self.broker,
                msg=msg,
                consumer=self.consumer,
                error=error,
                base_delay_sec=self.retry_base_delay_sec,
                max_delay_sec=self.retry_max_delay_sec,
            )
        except Exception as e:
            log.error(
                "task_failure_handling_error",
                extra={"payload": {"task_id": msg.id, "type": msg.type, "err": str(e)[:200]}},
            )
            QUEUE_TASKS_TOTAL.labels(
                service=self.service_name, queue=msg.queue, task_type=msg.type, result="error"
            ).inc()
            return

        QUEUE_TASKS_TOTAL.labels(
            service=self.service_name,
            queue=msg.queue,
            task_type=msg.type,
            result="retry" if retried else "dead",
        ).inc()

    # --- учёт in-flight -----------------------------------------------------
    def _begin(self) -> None:
        with self._inflight_cv:
            self._inflight += 1

    def _end(self) -> None:
        with self._inflight_cv:
            self._inflight -= 1
            if self._inflight == 0:
                self._inflight_cv.notify_all()

    def _wait_inflight(self, timeout_sec: float) -> bool:
        with self._inflight_cv:
            return self._inflight_cv.wait_for(lambda: self._inflight == 0, timeout=timeout_sec)

    @property
    def inflight(self) -> int:
        return self._inflight
