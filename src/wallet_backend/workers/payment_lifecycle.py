"""
Жизненный цикл платежа в фоне.

Две задачи:
- payment:check_status - опрос шлюза; пока платёж pending, задача сама
  ставит следующую проверку через PAYMENT_CHECK_INTERVAL_SEC (цепочка задач
  в брокере, а не sleep-цикл в процессе)
- payment:process      - однократное проведение платежа, critical-очередь

Правила:
- в начале каждого обработчика платёж перечитывается из хранилища,
  снимок между попытками не переиспользуется
- терминальный платёж не трогаем (completed/failed/canceled поглощающие)
- все ошибки пробрасываются диспетчеру (retry/DLQ), кроме одной:
  неудачная перепостановка следующей проверки только логируется
- параллельные задачи по одному платежу не сериализуются: last-writer-wins
  на update_payment
"""

from __future__ import annotations

from typing import Protocol

import redis

from wallet_backend.common.errors import SubmissionError, ValidationError
from wallet_backend.common.logging import get_project_logger
from wallet_backend.common.metrics import (
    CONTRACT_DRIFT_TOTAL,
    PAYMENT_TRANSITIONS_TOTAL,
    RESCHEDULE_FAILURES_TOTAL,
)
from wallet_backend.common.time import audit_stamp
from wallet_backend.domain.enums import PaymentStatus
from wallet_backend.domain.state_machine import is_terminal, transition
from wallet_backend.gateway.base import PaymentGateway
from wallet_backend.queue.broker import TaskInfo
from wallet_backend.queue.dispatcher import Q_CRITICAL, Q_DEFAULT
from wallet_backend.queue.idempotency import ChainRegistry
from wallet_backend.queue.server import TaskRouter
from wallet_backend.queue.tasks import (
    TYPE_CHECK_PAYMENT_STATUS,
    TYPE_PROCESS_PAYMENT,
    CheckPaymentStatusPayload,
    ProcessPaymentPayload,
    Task,
    decode_payment_id,
    encode_payload,
)
from wallet_backend.services.payment_service import PaymentView

log = get_project_logger()


class TaskEnqueuer(Protocol):
    def enqueue(
        self,
        task_type: str,
        payload: str,
        *,
        queue: str = ...,
        delay_sec: float = ...,
        max_retry: int = ...,
    ) -> TaskInfo: ...


class PaymentStore(Protocol):
    def get_payment(self, payment_id: int) -> PaymentView: ...

    def update_payment(
        self, payment_id: int, *, status: PaymentStatus | str, description: str = ""
    ) -> PaymentView: ...


# =============================================================================
# ПОСТАНОВКА ЗАДАЧ
# =============================================================================
class PaymentTaskScheduler:
    def __init__(self, client: TaskEnqueuer, *, check_interval_sec: float, max_retry: int) -> None:
        self.client = client
        self.check_interval_sec = check_interval_sec
        self.max_retry = max_retry

    def schedule_payment_status_check(self, payment_id: int, delay_sec: float | None = None) -> str:
        """
        Отложенная проверка статуса в default-очереди. Возвращает task_id.
        """
        delay = self.check_interval_sec if delay_sec is None else delay_sec
        info = self.client.enqueue(
            TYPE_CHECK_PAYMENT_STATUS,
            encode_payload(CheckPaymentStatusPayload(payment_id=payment_id)),
            queue=Q_DEFAULT,
            delay_sec=delay,
            max_retry=self.max_retry,
        )
        log.info(
            "payment_status_check_scheduled",
            extra={"payload": {"payment_id": payment_id, "delay_sec": delay, "task_id": info.id}},
        )
        return info.id

    def schedule_payment_processing(self, payment_id: int) -> str:
        """
        Немедленное проведение платежа в critical-очереди. Возвращает task_id.
        """
        info = self.client.enqueue(
            TYPE_PROCESS_PAYMENT,
            encode_payload(ProcessPaymentPayload(payment_id=payment_id)),
            queue=Q_CRITICAL,
            delay_sec=0,
            max_retry=self.max_retry,
        )
        log.info(
            "payment_processing_scheduled",
            extra={"payload": {"payment_id": payment_id, "task_id": info.id}},
        )
        return info.id


# =============================================================================
# ВОРКЕР
# =============================================================================
class PaymentWorker:
    def __init__(
        self,
        payment_service: PaymentStore,
        client: TaskEnqueuer,
        gateway: PaymentGateway,
        *,
        check_interval_sec: float,
        max_retry: int,
        chain_registry: ChainRegistry | None = None,
    ) -> None:
        self.payments = payment_service
        self.gateway = gateway
        self.scheduler = PaymentTaskScheduler(
            client, check_interval_sec=check_interval_sec, max_retry=max_retry
        )
        self.check_interval_sec = check_interval_sec
        self.chain_registry = chain_registry

    def register(self, router: TaskRouter) -> None:
        router.register(TYPE_CHECK_PAYMENT_STATUS, self.handle_check_payment_status)
        router.register(TYPE_PROCESS_PAYMENT, self.handle_process_payment)

    # --- обработчики --------------------------------------------------------
    def handle_check_payment_status(self, task: Task) -> None:
        payment_id = self._decode(task)
        log.info("payment_status_check_started", extra={"payload": {"payment_id": payment_id}})

        payment = self._fetch(payment_id, task.type)
        if is_terminal(payment.status):
            log.info(
                "payment_already_final",
                extra={"payload": {"payment_id": payment_id, "status": payment.status.value}},
            )
            return

        # из pending допустим любой статус: важно только, изменился ли он
        resolved = self.gateway.check_status(payment)
        if transition(payment.status, resolved).changed:
            self._persist(
                payment,
                resolved,
                description=f"Status updated by worker at {audit_stamp()}",
                task_type=task.type,
            )

        if resolved == PaymentStatus.pending:
            self._reschedule_status_check(payment_id, task.type)

    def handle_process_payment(self, task: Task) -> None:
        payment_id = self._decode(task)
        log.info("payment_processing_started", extra={"payload": {"payment_id": payment_id}})

        payment = self._fetch(payment_id, task.type)
        if is_terminal(payment.status):
            log.info(
                "payment_already_final",
                extra={"payload": {"payment_id": payment_id, "status": payment.status.value}},
            )
            return

        success = self.gateway.process(payment)
        new_status = PaymentStatus.completed if success else PaymentStatus.failed
        self._persist(
            payment,
            new_status,
            description=f"Payment processed by worker at {audit_stamp()}",
            task_type=task.type,
        )
        log.info(
            "payment_processing_completed",
            extra={
                "payload": {
                    "payment_id": payment_id,
                    "final_status": new_status.value,
                    "success": success,
                }
            },
        )

    # --- постановка (делегирование планировщику) ----------------------------
    def schedule_payment_status_check(self, payment_id: int, delay_sec: float | None = None) -> str:
        return self.scheduler.schedule_payment_status_check(payment_id, delay_sec)

    def schedule_payment_processing(self, payment_id: int) -> str:
        return self.scheduler.schedule_payment_processing(payment_id)

    # --- внутреннее ---------------------------------------------------------
    def _decode(self, task: Task) -> int:
        try:
            return decode_payment_id(task.payload)
        except Exception:
            log.error(
                "task_payload_decode_failed",
                extra={"payload": {"type": task.type, "task_id": task.id, "raw": str(task.payload)[:300]}},
            )
            raise

    def _fetch(self, payment_id: int, task_type: str) -> PaymentView:
        try:
            return self.payments.get_payment(payment_id)
        except Exception as e:
            log.error(
                "payment_fetch_failed",
                extra={"payload": {"payment_id": payment_id, "type": task_type, "err": str(e)[:300]}},
            )
            raise

    def _persist(
        self,
        payment: PaymentView,
        new_status: PaymentStatus,
        *,
        description: str,
        task_type: str,
    ) -> None:
        try:
            self.payments.update_payment(payment.id, status=new_status, description=description)
        except ValidationError as e:
            # статус пришёл из закрытого enum воркера: значит разъехался контракт
            log.error(
                "payment_status_contract_drift",
                extra={
                    "payload": {
                        "payment_id": payment.id,
                        "new_status": new_status.value,
                        "type": task_type,
                        "err": str(e)[:300],
                    }
                },
            )
            CONTRACT_DRIFT_TOTAL.labels(task_type=task_type).inc()
            raise
        except Exception as e:
            log.error(
                "payment_update_failed",
                extra={
                    "payload": {
                        "payment_id": payment.id,
                        "new_status": new_status.value,
                        "type": task_type,
                        "err": str(e)[:300],
                    }
                },
            )
            raise

        PAYMENT_TRANSITIONS_TOTAL.labels(
            source=task_type, from_status=payment.status.value, to_status=new_status.value
        ).inc()
        log.info(
            "payment_status_updated",
            extra={
                "payload": {
                    "payment_id": payment.id,
                    "old_status": payment.status.value,
                    "new_status": new_status.value,
                }
            },
        )

    def _reschedule_status_check(self, payment_id: int, task_type: str) -> None:
        try:
            self.scheduler.schedule_payment_status_check(payment_id, self.check_interval_sec)
        except SubmissionError as e:
            # текущая проверка выполнена; потеряна только следующая, её подберёт reconciliation
            log.error(
                "payment_status_check_reschedule_failed",
                extra={"payload": {"payment_id": payment_id, "err": str(e)[:300]}},
            )
            RESCHEDULE_FAILURES_TOTAL.labels(task_type=task_type).inc()
            return

        if self.chain_registry is not None:
            try:
                self.chain_registry.mark_alive(payment_id, ttl_sec=int(self.check_interval_sec * 2))
            except redis.RedisError as e:
                log.warning(
                    "payment_chain_heartbeat_failed",
                    extra={"payload": {"payment_id": payment_id, "err": str(e)[:200]}},
                )
