"""
Выбор реализации платёжного шлюза по PAYMENT_GATEWAY_PROVIDER.
"""

from __future__ import annotations

import random

from wallet_backend.common.config import Settings
from wallet_backend.common.errors import ErrCode, ProviderError

from .base import PaymentGateway
from .http_client import HttpGatewayConfig, HttpPaymentGateway
from .simulated import SimulatedPaymentGateway


def build_payment_gateway(settings: Settings) -> PaymentGateway:
    provider = (settings.payment_gateway_provider or "").strip().lower()

    if provider == "simulated":
        rng = random.Random(settings.gateway_sim_seed) if settings.gateway_sim_seed is not None else None
        return SimulatedPaymentGateway(
            age_threshold_sec=settings.gateway_sim_age_threshold_sec,
            complete_probability=settings.gateway_sim_complete_probability,
            fail_probability=settings.gateway_sim_fail_probability,
            success_rate=settings.gateway_sim_process_success_rate,
            rng=rng,
        )

    if provider == "http":
        return HttpPaymentGateway(
            HttpGatewayConfig(
                base_url=settings.payment_gateway_base_url or "",
                api_key=settings.payment_gateway_api_key,
                timeout_s=int(settings.payment_gateway_timeout_sec),
            )
        )

    raise ProviderError(
        ErrCode.GATEWAY_PROVIDER_ERROR,
        "Неизвестный PAYMENT_GATEWAY_PROVIDER",
        {"provider": provider},
    )
