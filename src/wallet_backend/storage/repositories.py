"""
Репозитории (DAO слой).

Правила:
- Никакой бизнес-логики
- Только CRUD и запросы
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from wallet_backend.domain.enums import PaymentStatus

from .models import Payment


# =============================================================================
# PAYMENT REPOSITORY
# =============================================================================
class PaymentRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, payment_id: int) -> Payment | None:
        return self.session.get(Payment, payment_id)

    def save(self, payment: Payment) -> None:
        self.session.add(payment)
        self.session.flush()

    def list_pending_created_before(
        self, *, before: datetime, after_id: int = 0, limit: int = 200
    ) -> list[Payment]:
        """
        Keyset-страница pending-платежей по возрастанию id (id > after_id).
        """
        stmt = (
            select(Payment)
            .where(Payment.status == PaymentStatus.pending)
            .where(Payment.created_at < before)
            .where(Payment.id > after_id)
            .order_by(Payment.id)
            .limit(max(1, min(limit, 5000)))
        )
        return list(self.session.scalars(stmt))
