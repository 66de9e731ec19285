"""
Контракт платёжного шлюза.

Воркер зависит только от этой абстракции:
симулятор и реальный HTTP-клиент взаимозаменяемы.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from wallet_backend.domain.enums import PaymentStatus
from wallet_backend.services.payment_service import PaymentView


class PaymentGateway(ABC):
    """
    Интерфейс платёжного шлюза.
    """

    name: str = "base"

    @abstractmethod
    def check_status(self, payment: PaymentView) -> PaymentStatus:
        """
        Текущий статус платежа на стороне шлюза.
        """
        raise NotImplementedError

    @abstractmethod
    def process(self, payment: PaymentView) -> bool:
        """
        Провести платёж. True - успех, False - отказ.
        """
        raise NotImplementedError
