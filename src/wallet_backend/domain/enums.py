"""
Доменные перечисления (enum).

Используются во всей системе:
- статус платежа
"""

from __future__ import annotations

import enum


class PaymentStatus(str, enum.Enum):
    """
    Статус платежа. Закрытое перечисление: всё остальное - ошибка валидации.
    """

    pending = "pending"
    completed = "completed"
    failed = "failed"
    canceled = "canceled"

    @classmethod
    def parse(cls, value: str | PaymentStatus) -> PaymentStatus:
        """
        Строгий разбор статуса. Бросает ValueError на неизвестном значении.
        """
        if isinstance(value, cls):
            return value
        return cls((value or "").strip().lower())
