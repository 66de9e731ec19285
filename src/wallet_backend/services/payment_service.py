"""
Граница хранилища платежей для воркера.

Назначение:
- get_payment(id)      → PaymentView | NotFoundError
- update_payment(id)   → PaymentView | ValidationError | NotFoundError
- list_stale_pending() → кандидаты для reconciliation

Важно:
- каждый вызов открывает свою сессию и читает свежее состояние из БД
- PaymentView - неизменяемый снимок, его нельзя переиспользовать между попытками
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from wallet_backend.common.errors import NotFoundError, ValidationError
from wallet_backend.common.logging import get_project_logger
from wallet_backend.common.time import ensure_utc, utc_now
from wallet_backend.domain.enums import PaymentStatus
from wallet_backend.storage.db import SessionScope, db_session
from wallet_backend.storage.models import Payment
from wallet_backend.storage.repositories import PaymentRepository

log = get_project_logger()


@dataclass(frozen=True)
class PaymentView:
    id: int
    amount: Decimal
    currency: str
    status: PaymentStatus
    description: str
    user_id: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, payment: Payment) -> PaymentView:
        return cls(
            id=payment.id,
            amount=Decimal(payment.amount),
            currency=payment.currency,
            status=PaymentStatus.parse(payment.status),
            description=payment.description or "",
            user_id=payment.user_id,
            created_at=ensure_utc(payment.created_at),
            updated_at=ensure_utc(payment.updated_at),
        )


class PaymentService:
    def __init__(self, session_factory: SessionScope = db_session) -> None:
        self._session_factory = session_factory

    def get_payment(self, payment_id: int) -> PaymentView:
        with self._session_factory() as session:
            payment = PaymentRepository(session).get(payment_id)
            if payment is None:
                raise NotFoundError("Платёж не найден", {"payment_id": payment_id})
            return PaymentView.from_model(payment)

    def update_payment(
        self,
        payment_id: int,
        *,
        status: PaymentStatus | str,
        description: str = "",
    ) -> PaymentView:
        """
        Обновить статус (и описание) платежа.

        Статус валидируется до любой записи: неизвестное значение - ValidationError.
        Пустое описание не затирает предыдущее. updated_at обновляется всегда.
        """
        try:
            new_status = PaymentStatus.parse(status)
        except ValueError as e:
            raise ValidationError(
                "Недопустимый статус платежа", {"payment_id": payment_id, "status": str(status)}
            ) from e

        with self._session_factory() as session:
            repo = PaymentRepository(session)
            payment = repo.get(payment_id)
            if payment is None:
                raise NotFoundError("Платёж не найден", {"payment_id": payment_id})

            payment.status = new_status
            if description:
                payment.description = description[:500]
            payment.updated_at = utc_now()
            repo.save(payment)
            view = PaymentView.from_model(payment)

        # только после commit
        log.info(
            "payment_updated",
            extra={"payload": {"payment_id": payment_id, "status": new_status.value}},
        )
        return view

    def list_stale_pending(
        self, *, older_than: datetime, limit: int = 200, after_id: int = 0
    ) -> list[PaymentView]:
        with self._session_factory() as session:
            rows = PaymentRepository(session).list_pending_created_before(
                before=older_than, after_id=after_id, limit=limit
            )
            return [PaymentView.from_model(p) for p in rows]
