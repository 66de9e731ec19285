from __future__ import annotations

import json
import random
import threading
import time
from collections import Counter

import pytest

from wallet_backend.common.logging import current_task_context
from wallet_backend.queue.broker import RedisBroker
from wallet_backend.queue.server import TaskRouter, WorkerServer, queue_order
from wallet_backend.queue.tasks import TYPE_CHECK_PAYMENT_STATUS, TYPE_PROCESS_PAYMENT, Task

WEIGHTS = {"critical": 6, "default": 3, "low": 1}


def _server(broker: RedisBroker, router: TaskRouter, **kwargs) -> WorkerServer:
    params = {
        "concurrency": 2,
        "queue_weights": WEIGHTS,
        "consumer": "test-host",
        "poll_interval_sec": 0.01,
        "shutdown_timeout_sec": 2.0,
        "retry_base_delay_sec": 30,
        "retry_max_delay_sec": 3600,
        "rng": random.Random(1),
    }
    params.update(kwargs)
    return WorkerServer(broker, router, **params)


def _wait_until(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _payload(payment_id: int) -> str:
    return json.dumps({"payment_id": payment_id})


# =============================================================================
# роутер и порядок очередей
# =============================================================================
def test_router_rejects_duplicate_registration() -> None:
    router = TaskRouter()
    router.register(TYPE_PROCESS_PAYMENT, lambda task: None)

    with pytest.raises(ValueError):
        router.register(TYPE_PROCESS_PAYMENT, lambda task: None)


def test_queue_order_contains_each_queue_once() -> None:
    rng = random.Random(3)
    for _ in range(50):
        order = queue_order(WEIGHTS, rng)
        assert sorted(order) == sorted(WEIGHTS)


def test_queue_order_prefers_heavier_queues_without_starving_light_ones() -> None:
    rng = random.Random(5)
    firsts = Counter(queue_order(WEIGHTS, rng)[0] for _ in range(3000))

    assert firsts["critical"] > firsts["default"] > firsts["low"] > 0


# =============================================================================
# обработка одной задачи
# =============================================================================
def test_process_message_acks_on_success(fake_redis) -> None:
    broker = RedisBroker(fake_redis)
    seen: list[Task] = []
    router = TaskRouter()
    router.register(TYPE_PROCESS_PAYMENT, seen.append)
    server = _server(broker, router)
    broker.enqueue(TYPE_PROCESS_PAYMENT, _payload(1), queue="critical")
    msg = broker.fetch("critical", "test-host")
    assert msg is not None

    assert server.process_message(msg) is True

    assert [t.payload for t in seen] == [_payload(1)]
    assert seen[0].queue == "critical"
    assert fake_redis.llen("q:critical:active:test-host") == 0


def test_process_message_exposes_task_context_to_handler_logs(fake_redis) -> None:
    broker = RedisBroker(fake_redis)
    seen: list[dict | None] = []
    router = TaskRouter()
    router.register(TYPE_PROCESS_PAYMENT, lambda task: seen.append(current_task_context()))
    server = _server(broker, router)
    info = broker.enqueue(TYPE_PROCESS_PAYMENT, _payload(3), queue="critical")
    msg = broker.fetch("critical", "test-host")
    assert msg is not None

    server.process_message(msg)

    assert seen == [
        {"task_id": info.id, "type": TYPE_PROCESS_PAYMENT, "queue": "critical", "retried": 0}
    ]
    assert current_task_context() is None


def test_process_message_failure_schedules_retry(fake_redis) -> None:
    broker = RedisBroker(fake_redis)
    router = TaskRouter()

    def _fail(task: Task) -> None:
        raise RuntimeError("db unavailable")

    router.register(TYPE_PROCESS_PAYMENT, _fail)
    server = _server(broker, router)
    broker.enqueue(TYPE_PROCESS_PAYMENT, _payload(9), queue="critical", max_retry=3)
    msg = broker.fetch("critical", "test-host")
    assert msg is not None

    assert server.process_message(msg) is False

    assert fake_redis.llen("q:critical:active:test-host") == 0
    assert fake_redis.zcard("q:critical:scheduled") == 1
    raw = fake_redis.zrangebyscore("q:critical:scheduled", "-inf", "+inf")[0]
    assert "db unavailable" in json.loads(raw)["last_error"]


def test_process_message_unknown_type_is_dead_lettered_when_budget_empty(fake_redis) -> None:
    broker = RedisBroker(fake_redis)
    server = _server(broker, TaskRouter())
    broker.enqueue("payment:unknown", _payload(1), queue="low", max_retry=0)
    msg = broker.fetch("low", "test-host")
    assert msg is not None

    assert server.process_message(msg) is False
    assert fake_redis.llen("q:low:dlq") == 1


# =============================================================================
# жизненный цикл
# =============================================================================
def test_start_fails_fast_when_redis_unreachable(fake_redis) -> None:
    fake_redis.ping_ok = False
    server = _server(RedisBroker(fake_redis), TaskRouter())

    with pytest.raises(RuntimeError):
        server.start()


def test_start_recovers_in_flight_tasks_of_same_consumer(fake_redis) -> None:
    broker = RedisBroker(fake_redis)
    broker.enqueue(TYPE_PROCESS_PAYMENT, _payload(1), queue="critical")
    assert broker.fetch("critical", "test-host") is not None

    done = threading.Event()
    router = TaskRouter()
    router.register(TYPE_PROCESS_PAYMENT, lambda task: done.set())
    server = _server(broker, router)

    server.start()
    try:
        assert done.wait(3.0)
    finally:
        assert server.stop() is True
    assert fake_redis.llen("q:critical:active:test-host") == 0


def test_server_consumes_all_queues_within_concurrency_limit(fake_redis) -> None:
    broker = RedisBroker(fake_redis)
    lock = threading.Lock()
    state = {"running": 0, "peak": 0, "done": 0}

    def _handler(task: Task) -> None:
        with lock:
            state["running"] += 1
            state["peak"] = max(state["peak"], state["running"])
        time.sleep(0.05)
        with lock:
            state["running"] -= 1
            state["done"] += 1

    router = TaskRouter()
    router.register(TYPE_PROCESS_PAYMENT, _handler)
    router.register(TYPE_CHECK_PAYMENT_STATUS, _handler)
    server = _server(broker, router, concurrency=2)

    for i in range(3):
        broker.enqueue(TYPE_PROCESS_PAYMENT, _payload(i), queue="critical")
        broker.enqueue(TYPE_CHECK_PAYMENT_STATUS, _payload(i), queue="default")
    broker.enqueue(TYPE_CHECK_PAYMENT_STATUS, _payload(99), queue="low")

    server.start()
    try:
        assert _wait_until(lambda: state["done"] == 7)
    finally:
        assert server.stop() is True

    assert state["peak"] <= 2
    for queue in WEIGHTS:
        assert fake_redis.llen(f"q:{queue}") == 0
        assert fake_redis.llen(f"q:{queue}:active:test-host") == 0


def test_stop_waits_for_in_flight_handler(fake_redis) -> None:
    broker = RedisBroker(fake_redis)
    started = threading.Event()
    release = threading.Event()
    finished = threading.Event()

    def _slow(task: Task) -> None:
        started.set()
        release.wait(5.0)
        finished.set()

    router = TaskRouter()
    router.register(TYPE_PROCESS_PAYMENT, _slow)
    server = _server(broker, router, shutdown_timeout_sec=5.0)
    broker.enqueue(TYPE_PROCESS_PAYMENT, _payload(1), queue="critical")

    server.start()
    assert started.wait(3.0)
    threading.Timer(0.2, release.set).start()

    assert server.stop() is True
    assert finished.is_set()
    assert server.inflight == 0
    assert fake_redis.llen("q:critical:active:test-host") == 0


def test_stop_gives_up_after_shutdown_timeout(fake_redis) -> None:
    broker = RedisBroker(fake_redis)
    started = threading.Event()
    release = threading.Event()

    def _stuck(task: Task) -> None:
        started.set()
        release.wait(5.0)

    router = TaskRouter()
    router.register(TYPE_PROCESS_PAYMENT, _stuck)
    server = _server(broker, router, shutdown_timeout_sec=0.1)
    broker.enqueue(TYPE_PROCESS_PAYMENT, _payload(1), queue="critical")

    server.start()
    assert started.wait(3.0)
    try:
        assert server.stop() is False
        # незавершённая задача остаётся в active до следующего старта
        assert fake_redis.llen("q:critical:active:test-host") == 1
    finally:
        release.set()


def test_no_new_tasks_accepted_after_stop(fake_redis) -> None:
    broker = RedisBroker(fake_redis)
    seen: list[Task] = []
    router = TaskRouter()
    router.register(TYPE_PROCESS_PAYMENT, seen.append)
    server = _server(broker, router)

    server.start()
    assert server.stop() is True
    broker.enqueue(TYPE_PROCESS_PAYMENT, _payload(1), queue="critical")
    time.sleep(0.1)

    assert seen == []
    assert fake_redis.llen("q:critical") == 1
