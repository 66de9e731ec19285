"""
Симулятор платёжного шлюза для dev и тестов.

Это заглушка на месте реальной интеграции:
- платежи старше порога с вероятностью complete_probability → completed,
  с вероятностью fail_probability → failed, иначе остаются pending
- process() успешен с вероятностью success_rate

Пороги и вероятности - демо-значения, задаются конфигом.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from datetime import datetime, timedelta

from wallet_backend.common.time import ensure_utc, utc_now
from wallet_backend.domain.enums import PaymentStatus
from wallet_backend.services.payment_service import PaymentView

from .base import PaymentGateway


class SimulatedPaymentGateway(PaymentGateway):
    name = "simulated"

    def __init__(
        self,
        *,
        age_threshold_sec: float = 120,
        complete_probability: float = 0.8,
        fail_probability: float = 0.1,
        success_rate: float = 0.9,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not 0.0 <= complete_probability <= 1.0 or not 0.0 <= fail_probability <= 1.0:
            raise ValueError("probabilities must be within [0, 1]")
        if complete_probability + fail_probability > 1.0:
            raise ValueError("complete_probability + fail_probability must be <= 1")
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError("success_rate must be within [0, 1]")

        self.age_threshold = timedelta(seconds=age_threshold_sec)
        self.complete_probability = complete_probability
        self.fail_probability = fail_probability
        self.success_rate = success_rate
        self._rng = rng or random.Random()
        self._clock = clock

    def check_status(self, payment: PaymentView) -> PaymentStatus:
        elapsed = self._clock() - ensure_utc(payment.created_at)
        if elapsed <= self.age_threshold:
            return PaymentStatus.pending

        roll = self._rng.random()
        if roll < self.complete_probability:
            return PaymentStatus.completed
        if roll < self.complete_probability + self.fail_probability:
            return PaymentStatus.failed
        return PaymentStatus.pending

    def process(self, payment: PaymentView) -> bool:
        return self._rng.random() < self.success_rate
