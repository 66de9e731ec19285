"""
Контракты задач очереди.

Правила:
- типы задач - фиксированные строки, общие для продьюсера и консьюмера
- payload - JSON вида {"payment_id": <unsigned int>}
- невалидный payload - DecodeError (до любых обращений к хранилищу)
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any

from wallet_backend.common.errors import DecodeError

# =============================================================================
# ТИПЫ ЗАДАЧ
# =============================================================================
TYPE_CHECK_PAYMENT_STATUS = "payment:check_status"
TYPE_PROCESS_PAYMENT = "payment:process"


@dataclass
class CheckPaymentStatusPayload:
    payment_id: int


@dataclass
class ProcessPaymentPayload:
    payment_id: int


@dataclass
class Task:
    """
    Задача, как её видит обработчик.
    """

    type: str
    payload: str
    id: str = ""
    queue: str = ""
    retried: int = 0
    max_retry: int = 0


def encode_payload(payload: CheckPaymentStatusPayload | ProcessPaymentPayload) -> str:
    return json.dumps(asdict(payload), ensure_ascii=False)


def decode_payment_id(raw: str | bytes) -> int:
    """
    Достать payment_id из payload задачи.
    """
    try:
        data: Any = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise DecodeError("payload не является JSON", {"err": str(e)[:200]}) from e

    if not isinstance(data, dict) or "payment_id" not in data:
        raise DecodeError("в payload нет payment_id", {"payload_head": str(raw)[:200]})

    payment_id = data["payment_id"]
    # bool - подкласс int, отсекаем явно
    if isinstance(payment_id, bool) or not isinstance(payment_id, int) or payment_id < 0:
        raise DecodeError(
            "payment_id должен быть беззнаковым целым",
            {"payment_id": str(payment_id)[:50]},
        )
    return payment_id
