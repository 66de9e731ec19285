"""
Service-only admin endpoints.

Назначение:
- состояние очередей и DLQ, ручной requeue из DLQ
- ручная постановка проведения/проверки платежа
- доступ только по service API key
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from apps.api_admin.deps import service_auth_dep
from wallet_backend.common.config import get_settings
from wallet_backend.common.errors import ErrCode, NotFoundError, SubmissionError
from wallet_backend.domain.state_machine import is_terminal
from wallet_backend.queue.broker import RedisBroker
from wallet_backend.queue.dispatcher import get_broker, get_task_client, parse_queue_weights
from wallet_backend.services.payment_service import PaymentService, PaymentView
from wallet_backend.services.readiness_service import evaluate_readiness
from wallet_backend.workers.payment_lifecycle import PaymentTaskScheduler

router = APIRouter(dependencies=[Depends(service_auth_dep)])


class QueueStatsItem(BaseModel):
    queue: str
    ready: int
    scheduled: int
    dead: int


class QueueStatsResponse(BaseModel):
    queues: list[QueueStatsItem]


class DeadTaskItem(BaseModel):
    id: str
    type: str
    payload: str
    retried: int
    max_retry: int
    last_error: str | None = None
    last_failed_at: str | None = None


class DeadTaskListResponse(BaseModel):
    queue: str
    tasks: list[DeadTaskItem]


class RequeueResponse(BaseModel):
    queue: str
    task_id: str
    requeued: bool


class ScheduledTaskResponse(BaseModel):
    payment_id: int
    task_id: str


class ReadinessIssueResponse(BaseModel):
    severity: str
    code: str
    message: str


class SystemReadinessResponse(BaseModel):
    ready: bool
    issues: list[ReadinessIssueResponse]


# =============================================================================
# ЗАВИСИМОСТИ (подменяются в тестах через dependency_overrides)
# =============================================================================
def get_admin_broker() -> RedisBroker:
    return get_broker()


def get_payment_service() -> PaymentService:
    return PaymentService()


def get_payment_scheduler() -> PaymentTaskScheduler:
    settings = get_settings()
    return PaymentTaskScheduler(
        get_task_client(),
        check_interval_sec=settings.payment_check_interval_sec,
        max_retry=settings.retry_max_attempts,
    )


def _known_queues() -> list[str]:
    return list(parse_queue_weights(get_settings().worker_queues))


def _require_queue(queue: str) -> None:
    if queue not in _known_queues():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": ErrCode.NOT_FOUND, "message": "Неизвестная очередь", "details": {"queue": queue}},
        )


def _redis_unavailable(e: Exception) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "code": ErrCode.REDIS_ERROR,
            "message": "Не удалось получить состояние очередей",
            "details": {"err": str(e)[:200]},
        },
    )


def _load_schedulable(payments: PaymentService, payment_id: int) -> PaymentView:
    try:
        payment = payments.get_payment(payment_id)
    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": e.code, "message": e.message, "details": e.details},
        ) from e
    if is_terminal(payment.status):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": ErrCode.VALIDATION,
                "message": "Платёж уже в финальном статусе",
                "details": {"payment_id": payment_id, "status": payment.status.value},
            },
        )
    return payment


def _submission_failed(e: SubmissionError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": e.code, "message": e.message, "details": e.details},
    )


# =============================================================================
# ОЧЕРЕДИ
# =============================================================================
@router.get("/admin/queues", response_model=QueueStatsResponse)
def admin_queues(broker: RedisBroker = Depends(get_admin_broker)) -> QueueStatsResponse:
    try:
        stats = [broker.queue_stats(queue) for queue in _known_queues()]
    except Exception as e:
        raise _redis_unavailable(e) from e
    return QueueStatsResponse(
        queues=[
            QueueStatsItem(queue=s.queue, ready=s.ready, scheduled=s.scheduled, dead=s.dead)
            for s in stats
        ]
    )


@router.get("/admin/queues/{queue}/dlq", response_model=DeadTaskListResponse)
def admin_queue_dlq(
    queue: str,
    limit: int = 50,
    broker: RedisBroker = Depends(get_admin_broker),
) -> DeadTaskListResponse:
    _require_queue(queue)
    try:
        dead = broker.list_dead(queue, limit=limit)
    except Exception as e:
        raise _redis_unavailable(e) from e
    return DeadTaskListResponse(
        queue=queue,
        tasks=[
            DeadTaskItem(
                id=m.id,
                type=m.type,
                payload=m.payload,
                retried=m.retried,
                max_retry=m.max_retry,
                last_error=m.last_error,
                last_failed_at=m.last_failed_at,
            )
            for m in dead
        ],
    )


@router.post("/admin/queues/{queue}/dlq/{task_id}/requeue", response_model=RequeueResponse)
def admin_queue_requeue(
    queue: str,
    task_id: str,
    broker: RedisBroker = Depends(get_admin_broker),
) -> RequeueResponse:
    _require_queue(queue)
    try:
        requeued = broker.requeue_dead(queue, task_id)
    except Exception as e:
        raise _redis_unavailable(e) from e
    if not requeued:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "code": ErrCode.NOT_FOUND,
                "message": "Задача не найдена в DLQ",
                "details": {"queue": queue, "task_id": task_id},
            },
        )
    return RequeueResponse(queue=queue, task_id=task_id, requeued=True)


# =============================================================================
# ПЛАТЕЖИ
# =============================================================================
@router.post("/admin/payments/{payment_id}/process", response_model=ScheduledTaskResponse)
def admin_payment_process(
    payment_id: int,
    payments: PaymentService = Depends(get_payment_service),
    scheduler: PaymentTaskScheduler = Depends(get_payment_scheduler),
) -> ScheduledTaskResponse:
    _load_schedulable(payments, payment_id)
    try:
        task_id = scheduler.schedule_payment_processing(payment_id)
    except SubmissionError as e:
        raise _submission_failed(e) from e
    return ScheduledTaskResponse(payment_id=payment_id, task_id=task_id)


@router.post("/admin/payments/{payment_id}/check", response_model=ScheduledTaskResponse)
def admin_payment_check(
    payment_id: int,
    payments: PaymentService = Depends(get_payment_service),
    scheduler: PaymentTaskScheduler = Depends(get_payment_scheduler),
) -> ScheduledTaskResponse:
    _load_schedulable(payments, payment_id)
    try:
        task_id = scheduler.schedule_payment_status_check(payment_id, delay_sec=0)
    except SubmissionError as e:
        raise _submission_failed(e) from e
    return ScheduledTaskResponse(payment_id=payment_id, task_id=task_id)


@router.get("/admin/system/readiness", response_model=SystemReadinessResponse)
def admin_system_readiness() -> SystemReadinessResponse:
    state = evaluate_readiness()
    return SystemReadinessResponse(
        ready=state.ready,
        issues=[
            ReadinessIssueResponse(severity=i.severity, code=i.code, message=i.message)
            for i in state.issues
        ],
    )
