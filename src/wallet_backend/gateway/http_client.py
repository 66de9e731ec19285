"""
HTTP-клиент внешнего платёжного шлюза.

Контракт шлюза:
- GET  {base}/payments/{id}/status  → {"status": "pending|completed|failed|canceled"}
- POST {base}/payments/{id}/process → {"success": true|false}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import requests

from wallet_backend.common.errors import ErrCode, ProviderError
from wallet_backend.domain.enums import PaymentStatus
from wallet_backend.services.payment_service import PaymentView

from .base import PaymentGateway

log = logging.getLogger(__name__)


@dataclass
class HttpGatewayConfig:
    """Настройки HTTP-шлюза."""

    base_url: str
    api_key: str | None = None
    timeout_s: int = 10


class HttpPaymentGateway(PaymentGateway):
    name = "http"

    def __init__(self, cfg: HttpGatewayConfig, session: requests.Session | None = None) -> None:
        if not (cfg.base_url or "").strip():
            raise ProviderError(ErrCode.GATEWAY_PROVIDER_ERROR, "PAYMENT_GATEWAY_BASE_URL не задан")
        self.cfg = cfg
        self._session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.cfg.api_key:
            headers["Authorization"] = f"Bearer {self.cfg.api_key}"
        return headers

    def _call(self, method: str, path: str, json_body: dict | None = None) -> dict[str, Any]:
        url = self.cfg.base_url.rstrip("/") + path
        try:
            resp = self._session.request(
                method, url, headers=self._headers(), json=json_body, timeout=self.cfg.timeout_s
            )
        except requests.RequestException as e:
            log.error(
                "gateway_http_error",
                extra={"payload": {"url": url, "err": str(e)[:300]}},
            )
            raise ProviderError(
                ErrCode.GATEWAY_PROVIDER_ERROR,
                "Ошибка HTTP при вызове платёжного шлюза",
                {"err": str(e)},
            ) from e

        if resp.status_code >= 400:
            raise ProviderError(
                ErrCode.GATEWAY_PROVIDER_ERROR,
                "Платёжный шлюз вернул ошибку",
                {"status": resp.status_code, "text_head": resp.text[:500]},
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(
                ErrCode.GATEWAY_PROVIDER_ERROR,
                "Платёжный шлюз вернул невалидный JSON",
                {"err": str(e), "text_head": resp.text[:500]},
            ) from e

        if not isinstance(data, dict):
            raise ProviderError(
                ErrCode.GATEWAY_PROVIDER_ERROR,
                "Неожиданный формат ответа шлюза",
                {"data_head": str(data)[:500]},
            )
        return data

    def check_status(self, payment: PaymentView) -> PaymentStatus:
        data = self._call("GET", f"/payments/{payment.id}/status")
        try:
            return PaymentStatus.parse(str(data.get("status", "")))
        except ValueError as e:
            raise ProviderError(
                ErrCode.GATEWAY_PROVIDER_ERROR,
                "Шлюз вернул неизвестный статус",
                {"payment_id": payment.id, "status": data.get("status")},
            ) from e

    def process(self, payment: PaymentView) -> bool:
        data = self._call(
            "POST",
            f"/payments/{payment.id}/process",
            {
                "payment_id": payment.id,
                "amount": str(payment.amount),
                "currency": payment.currency,
            },
        )
        success = data.get("success")
        if not isinstance(success, bool):
            raise ProviderError(
                ErrCode.GATEWAY_PROVIDER_ERROR,
                "Шлюз не вернул признак success",
                {"payment_id": payment.id, "data_head": str(data)[:500]},
            )
        return success
