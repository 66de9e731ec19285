"""
Reconciliation job: подбор оборванных цепочек проверки статуса.

Назначение:
- цепочка payment:check_status обрывается, если перепостановка не удалась
- job находит pending-платежи старше RECONCILIATION_STALE_SEC без живого heartbeat
  и ставит для них немедленную проверку

Правила:
- сам платёж job не меняет, только ставит задачу
- терминальные платежи не трогает
- heartbeat захватывается до постановки (SET NX), иначе две job-итерации
  или job и живая цепочка наплодили бы дубликаты
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from wallet_backend.common.config import get_settings
from wallet_backend.common.errors import SubmissionError
from wallet_backend.common.logging import get_project_logger
from wallet_backend.common.metrics import RECONCILIATION_PAYMENTS_TOTAL
from wallet_backend.common.time import utc_now
from wallet_backend.domain.state_machine import is_terminal
from wallet_backend.queue.dispatcher import get_task_client
from wallet_backend.queue.idempotency import ChainRegistry
from wallet_backend.queue.redis import redis_client
from wallet_backend.services.payment_service import PaymentService, PaymentView
from wallet_backend.workers.payment_lifecycle import PaymentTaskScheduler

log = get_project_logger()


@dataclass
class SweepResult:
    scanned: int = 0
    seeded: int = 0
    skipped: int = 0
    failed: int = 0


def _sweep_one(
    payment: PaymentView,
    scheduler: PaymentTaskScheduler,
    registry: ChainRegistry,
    heartbeat_ttl_sec: int,
    result: SweepResult,
) -> None:
    if is_terminal(payment.status):
        result.skipped += 1
        return
    if not registry.claim_orphan(payment.id, ttl_sec=heartbeat_ttl_sec):
        result.skipped += 1
        return

    try:
        task_id = scheduler.schedule_payment_status_check(payment.id, delay_sec=0)
    except SubmissionError as e:
        registry.release(payment.id)
        result.failed += 1
        log.warning(
            "reconciliation_seed_failed",
            extra={"payload": {"payment_id": payment.id, "err": str(e)[:300]}},
        )
        return

    result.seeded += 1
    log.info(
        "reconciliation_chain_seeded",
        extra={"payload": {"payment_id": payment.id, "task_id": task_id}},
    )


def sweep_orphaned_chains(
    *,
    payments: PaymentService,
    scheduler: PaymentTaskScheduler,
    registry: ChainRegistry,
    stale_sec: int,
    limit: int,
    heartbeat_ttl_sec: int,
) -> SweepResult:
    """
    limit ограничивает число захваченных цепочек за проход, а не размер выборки:
    кандидаты читаются keyset-страницами по id, живые цепочки пропускаются
    и не занимают место оборванных.
    """
    result = SweepResult()
    older_than = utc_now() - timedelta(seconds=max(0, stale_sec))
    page_size = max(1, limit)
    after_id = 0

    while result.seeded + result.failed < page_size:
        page = payments.list_stale_pending(older_than=older_than, limit=page_size, after_id=after_id)
        for payment in page:
            after_id = payment.id
            result.scanned += 1
            _sweep_one(payment, scheduler, registry, heartbeat_ttl_sec, result)
            if result.seeded + result.failed >= page_size:
                break
        if len(page) < page_size:
            break

    RECONCILIATION_PAYMENTS_TOTAL.labels(result="seeded").inc(result.seeded)
    RECONCILIATION_PAYMENTS_TOTAL.labels(result="skipped").inc(result.skipped)
    RECONCILIATION_PAYMENTS_TOTAL.labels(result="failed").inc(result.failed)
    return result


def run(
    *,
    limit: int | None = None,
    payments: PaymentService | None = None,
    scheduler: PaymentTaskScheduler | None = None,
    registry: ChainRegistry | None = None,
) -> SweepResult | None:
    settings = get_settings()
    if not settings.reconciliation_enabled:
        log.info("reconciliation_job_skipped", extra={"payload": {"reason": "disabled"}})
        return None

    reconcile_limit = int(limit if limit is not None else settings.reconciliation_limit)
    log.info("reconciliation_job_started", extra={"payload": {"limit": reconcile_limit}})

    result = sweep_orphaned_chains(
        payments=payments or PaymentService(),
        scheduler=scheduler
        or PaymentTaskScheduler(
            get_task_client(),
            check_interval_sec=settings.payment_check_interval_sec,
            max_retry=settings.retry_max_attempts,
        ),
        registry=registry or ChainRegistry(redis_client()),
        stale_sec=settings.reconciliation_stale_sec,
        limit=reconcile_limit,
        heartbeat_ttl_sec=2 * settings.payment_check_interval_sec,
    )
    log.info(
        "reconciliation_job_finished",
        extra={
            "payload": {
                "scanned": result.scanned,
                "seeded": result.seeded,
                "skipped": result.skipped,
                "failed": result.failed,
            }
        },
    )
    return result
