from __future__ import annotations

import json
import random
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import redis

from wallet_backend.common.errors import (
    DecodeError,
    NotFoundError,
    ProviderError,
    SubmissionError,
    ValidationError,
)
from wallet_backend.common.metrics import CONTRACT_DRIFT_TOTAL, RESCHEDULE_FAILURES_TOTAL
from wallet_backend.domain.enums import PaymentStatus
from wallet_backend.gateway.base import PaymentGateway
from wallet_backend.gateway.simulated import SimulatedPaymentGateway
from wallet_backend.queue.broker import TaskInfo
from wallet_backend.queue.idempotency import ChainRegistry
from wallet_backend.queue.server import TaskRouter
from wallet_backend.queue.tasks import (
    TYPE_CHECK_PAYMENT_STATUS,
    TYPE_PROCESS_PAYMENT,
    Task,
)
from wallet_backend.services.payment_service import PaymentView
from wallet_backend.workers.payment_lifecycle import PaymentWorker

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _payment(payment_id: int, status: PaymentStatus, *, age_sec: int) -> PaymentView:
    created = NOW - timedelta(seconds=age_sec)
    return PaymentView(
        id=payment_id,
        amount=Decimal("10.00"),
        currency="USD",
        status=status,
        description="",
        user_id=1,
        created_at=created,
        updated_at=created,
    )


class _FakeStore:
    def __init__(self, *payments: PaymentView) -> None:
        self.payments = {p.id: p for p in payments}
        self.get_calls: list[int] = []
        self.update_calls: list[tuple[int, PaymentStatus, str]] = []
        self.update_error: Exception | None = None

    def get_payment(self, payment_id: int) -> PaymentView:
        self.get_calls.append(payment_id)
        if payment_id not in self.payments:
            raise NotFoundError("Платёж не найден", {"payment_id": payment_id})
        return self.payments[payment_id]

    def update_payment(self, payment_id: int, *, status, description: str = "") -> PaymentView:
        self.update_calls.append((payment_id, status, description))
        if self.update_error is not None:
            raise self.update_error
        updated = replace(
            self.payments[payment_id],
            status=PaymentStatus.parse(status),
            description=description or self.payments[payment_id].description,
        )
        self.payments[payment_id] = updated
        return updated


class _FakeClient:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[dict] = []
        self.error = error

    def enqueue(self, task_type, payload, *, queue="default", delay_sec=0, max_retry=3) -> TaskInfo:
        self.calls.append(
            {
                "type": task_type,
                "payload": json.loads(payload),
                "queue": queue,
                "delay_sec": delay_sec,
                "max_retry": max_retry,
            }
        )
        if self.error is not None:
            raise self.error
        return TaskInfo(
            id=f"tsk-{len(self.calls)}",
            type=task_type,
            queue=queue,
            max_retry=max_retry,
            state="scheduled" if delay_sec else "pending",
        )


class _FixedGateway(PaymentGateway):
    def __init__(self, status: PaymentStatus = PaymentStatus.pending, success: bool = True) -> None:
        self.status = status
        self.success = success
        self.check_calls = 0
        self.process_calls = 0

    def check_status(self, payment: PaymentView) -> PaymentStatus:
        self.check_calls += 1
        return self.status

    def process(self, payment: PaymentView) -> bool:
        self.process_calls += 1
        return self.success


def _simulated(seed: int = 42) -> SimulatedPaymentGateway:
    return SimulatedPaymentGateway(
        age_threshold_sec=120,
        complete_probability=0.8,
        fail_probability=0.1,
        success_rate=0.9,
        rng=random.Random(seed),
        clock=lambda: NOW,
    )


def _worker(store, client, gateway, **kwargs) -> PaymentWorker:
    return PaymentWorker(
        store, client, gateway, check_interval_sec=300, max_retry=3, **kwargs
    )


def _check_task(payment_id) -> Task:
    return Task(type=TYPE_CHECK_PAYMENT_STATUS, payload=json.dumps({"payment_id": payment_id}), id="t1")


def _process_task(payment_id) -> Task:
    return Task(type=TYPE_PROCESS_PAYMENT, payload=json.dumps({"payment_id": payment_id}), id="t2")


# =============================================================================
# payment:check_status
# =============================================================================
@pytest.mark.parametrize(
    "status", [PaymentStatus.completed, PaymentStatus.failed, PaymentStatus.canceled]
)
def test_check_status_terminal_payment_is_noop(status: PaymentStatus) -> None:
    store = _FakeStore(_payment(8, status, age_sec=3600))
    client = _FakeClient()
    gateway = _FixedGateway(PaymentStatus.failed)

    _worker(store, client, gateway).handle_check_payment_status(_check_task(8))

    assert store.payments[8].status == status
    assert store.update_calls == []
    assert client.calls == []
    assert gateway.check_calls == 0


def test_check_status_scenario_completed_payment_touches_nothing() -> None:
    store = _FakeStore(_payment(8, PaymentStatus.completed, age_sec=600))
    client = _FakeClient()

    _worker(store, client, _simulated()).handle_check_payment_status(_check_task(8))

    assert store.update_calls == []
    assert client.calls == []


def test_check_status_young_payment_stays_pending_and_reschedules_once() -> None:
    for seed in range(20):
        store = _FakeStore(_payment(5, PaymentStatus.pending, age_sec=30))
        client = _FakeClient()

        _worker(store, client, _simulated(seed)).handle_check_payment_status(_check_task(5))

        assert store.payments[5].status == PaymentStatus.pending
        assert store.update_calls == []
        assert len(client.calls) == 1
        call = client.calls[0]
        assert call["type"] == TYPE_CHECK_PAYMENT_STATUS
        assert call["payload"] == {"payment_id": 5}
        assert call["queue"] == "default"
        assert call["delay_sec"] == 300
        assert call["max_retry"] == 3


def test_check_status_scenario_old_pending_payment_resolves_without_reschedule() -> None:
    # rng подобран так, чтобы первая проверка дала терминальный статус
    rng = random.Random()
    rng.random = lambda: 0.05  # type: ignore[method-assign]
    gateway = SimulatedPaymentGateway(rng=rng, clock=lambda: NOW)
    store = _FakeStore(_payment(7, PaymentStatus.pending, age_sec=180))
    client = _FakeClient()

    _worker(store, client, gateway).handle_check_payment_status(_check_task(7))

    assert len(store.update_calls) == 1
    payment_id, status, description = store.update_calls[0]
    assert payment_id == 7
    assert status in {PaymentStatus.completed, PaymentStatus.failed}
    assert description.startswith("Status updated by worker at ")
    assert client.calls == []


def test_check_status_old_pending_payment_converges_to_terminal() -> None:
    store = _FakeStore(_payment(7, PaymentStatus.pending, age_sec=180))
    client = _FakeClient()
    worker = _worker(store, client, _simulated(seed=7))

    for _ in range(50):
        worker.handle_check_payment_status(_check_task(7))
        if store.payments[7].status != PaymentStatus.pending:
            break

    assert store.payments[7].status in {PaymentStatus.completed, PaymentStatus.failed}
    assert len(store.update_calls) == 1
    # каждая проверка, оставившая pending, ставила ровно одну следующую
    assert len(client.calls) == len(store.get_calls) - 1

    # дальнейшие проверки ничего не трогают
    worker.handle_check_payment_status(_check_task(7))
    assert len(store.update_calls) == 1


def test_check_status_refetches_payment_on_every_attempt() -> None:
    store = _FakeStore(_payment(3, PaymentStatus.pending, age_sec=10))
    client = _FakeClient()
    worker = _worker(store, client, _FixedGateway(PaymentStatus.pending))

    worker.handle_check_payment_status(_check_task(3))
    store.payments[3] = replace(store.payments[3], status=PaymentStatus.canceled)
    worker.handle_check_payment_status(_check_task(3))

    assert store.get_calls == [3, 3]
    assert len(client.calls) == 1


def test_check_status_reschedule_failure_does_not_fail_task() -> None:
    store = _FakeStore(_payment(4, PaymentStatus.pending, age_sec=10))
    client = _FakeClient(error=SubmissionError("redis down"))
    counter = RESCHEDULE_FAILURES_TOTAL.labels(task_type=TYPE_CHECK_PAYMENT_STATUS)
    before = counter._value.get()

    _worker(store, client, _FixedGateway(PaymentStatus.pending)).handle_check_payment_status(
        _check_task(4)
    )

    assert len(client.calls) == 1
    assert counter._value.get() == before + 1


def test_check_status_gateway_error_propagates() -> None:
    class _BrokenGateway(_FixedGateway):
        def check_status(self, payment: PaymentView) -> PaymentStatus:
            raise ProviderError("gateway_provider_error", "timeout")

    store = _FakeStore(_payment(4, PaymentStatus.pending, age_sec=10))
    client = _FakeClient()

    with pytest.raises(ProviderError):
        _worker(store, client, _BrokenGateway()).handle_check_payment_status(_check_task(4))
    assert client.calls == []


def test_check_status_store_fetch_error_propagates() -> None:
    store = _FakeStore()
    client = _FakeClient()

    with pytest.raises(NotFoundError):
        _worker(store, client, _FixedGateway()).handle_check_payment_status(_check_task(404))
    assert client.calls == []


def test_check_status_validation_error_counts_contract_drift() -> None:
    store = _FakeStore(_payment(6, PaymentStatus.pending, age_sec=600))
    store.update_error = ValidationError("Недопустимый статус платежа")
    client = _FakeClient()
    counter = CONTRACT_DRIFT_TOTAL.labels(task_type=TYPE_CHECK_PAYMENT_STATUS)
    before = counter._value.get()

    with pytest.raises(ValidationError):
        _worker(store, client, _FixedGateway(PaymentStatus.completed)).handle_check_payment_status(
            _check_task(6)
        )

    assert counter._value.get() == before + 1
    assert client.calls == []


def test_check_status_marks_chain_alive_after_reschedule(fake_redis) -> None:
    store = _FakeStore(_payment(11, PaymentStatus.pending, age_sec=10))
    registry = ChainRegistry(fake_redis)

    _worker(
        store, _FakeClient(), _FixedGateway(PaymentStatus.pending), chain_registry=registry
    ).handle_check_payment_status(_check_task(11))

    assert fake_redis.get("chain:payment_status:11") == "1"
    assert fake_redis.ttl["chain:payment_status:11"] == 600


def test_check_status_heartbeat_failure_is_not_fatal() -> None:
    class _BrokenRegistry:
        def mark_alive(self, payment_id: int, ttl_sec: int) -> None:
            raise redis.ConnectionError("connection refused")

    store = _FakeStore(_payment(12, PaymentStatus.pending, age_sec=10))
    client = _FakeClient()

    _worker(
        store, client, _FixedGateway(PaymentStatus.pending), chain_registry=_BrokenRegistry()
    ).handle_check_payment_status(_check_task(12))

    assert len(client.calls) == 1


@pytest.mark.parametrize(
    "payload",
    [
        '{"payment_id": "abc"}',
        '{"payment_id": -1}',
        '{"payment_id": true}',
        '{"other": 1}',
        "not json",
        "[1, 2]",
    ],
)
def test_malformed_payload_fails_before_store(payload: str) -> None:
    store = _FakeStore(_payment(1, PaymentStatus.pending, age_sec=10))
    client = _FakeClient()
    worker = _worker(store, client, _FixedGateway())

    with pytest.raises(DecodeError):
        worker.handle_check_payment_status(Task(type=TYPE_CHECK_PAYMENT_STATUS, payload=payload))
    with pytest.raises(DecodeError):
        worker.handle_process_payment(Task(type=TYPE_PROCESS_PAYMENT, payload=payload))

    assert store.get_calls == []
    assert store.update_calls == []


# =============================================================================
# payment:process
# =============================================================================
@pytest.mark.parametrize(
    ("success", "expected"),
    [(True, PaymentStatus.completed), (False, PaymentStatus.failed)],
)
def test_process_persists_terminal_status_once(success: bool, expected: PaymentStatus) -> None:
    store = _FakeStore(_payment(9, PaymentStatus.pending, age_sec=5))
    client = _FakeClient()
    gateway = _FixedGateway(success=success)

    _worker(store, client, gateway).handle_process_payment(_process_task(9))

    assert len(store.update_calls) == 1
    _, status, description = store.update_calls[0]
    assert status == expected
    assert description.startswith("Payment processed by worker at ")
    assert store.payments[9].status == expected
    assert client.calls == []


def test_process_scenario_store_failure_propagates_detail() -> None:
    store = _FakeStore(_payment(9, PaymentStatus.pending, age_sec=5))
    store.update_error = RuntimeError("db unavailable")

    with pytest.raises(RuntimeError, match="db unavailable"):
        _worker(store, _FakeClient(), _FixedGateway(success=True)).handle_process_payment(
            _process_task(9)
        )


def test_process_redelivery_on_terminal_payment_is_noop() -> None:
    store = _FakeStore(_payment(9, PaymentStatus.pending, age_sec=5))
    gateway = _FixedGateway(success=True)
    worker = _worker(store, _FakeClient(), gateway)

    worker.handle_process_payment(_process_task(9))
    worker.handle_process_payment(_process_task(9))

    assert len(store.update_calls) == 1
    assert gateway.process_calls == 1


# =============================================================================
# регистрация и постановка
# =============================================================================
def test_register_binds_both_task_types() -> None:
    router = TaskRouter()
    _worker(_FakeStore(), _FakeClient(), _FixedGateway()).register(router)

    assert router.task_types() == sorted([TYPE_CHECK_PAYMENT_STATUS, TYPE_PROCESS_PAYMENT])


def test_worker_schedule_methods_delegate_to_client() -> None:
    client = _FakeClient()
    worker = _worker(_FakeStore(), client, _FixedGateway())

    check_id = worker.schedule_payment_status_check(21)
    process_id = worker.schedule_payment_processing(21)

    assert check_id == "tsk-1"
    assert process_id == "tsk-2"
    assert client.calls[0]["queue"] == "default"
    assert client.calls[0]["delay_sec"] == 300
    assert client.calls[1]["queue"] == "critical"
    assert client.calls[1]["delay_sec"] == 0
