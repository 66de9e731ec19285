"""
Единые ошибки и коды ошибок.

Назначение:
- предсказуемые коды для HTTP/очередей/DLQ
- единый стиль исключений по проекту
"""

from __future__ import annotations

from dataclasses import dataclass


class ErrCode:
    # Общие
    UNKNOWN = "unknown"
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"

    # Очереди
    DECODE = "decode"
    SUBMISSION = "submission"

    # Провайдеры
    GATEWAY_PROVIDER_ERROR = "gateway_provider_error"

    # Инфра
    REDIS_ERROR = "redis_error"


@dataclass
class AppError(Exception):
    """
    Базовая ошибка приложения.
    - code: стабильный код ошибки
    - message: безопасное сообщение
    - details: доп. данные (без секретов/PII)
    """

    code: str
    message: str
    details: dict | None = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(AppError):
    def __init__(self, message: str = "Ошибка валидации", details: dict | None = None) -> None:
        super().__init__(ErrCode.VALIDATION, message, details)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Не авторизован", details: dict | None = None) -> None:
        super().__init__(ErrCode.UNAUTHORIZED, message, details)


class NotFoundError(AppError):
    def __init__(self, message: str = "Не найдено", details: dict | None = None) -> None:
        super().__init__(ErrCode.NOT_FOUND, message, details)


class DecodeError(AppError):
    """
    Невалидный payload задачи. Для попытки - фатально,
    дальше решает политика ретраев диспетчера.
    """

    def __init__(self, message: str = "Невалидный payload задачи", details: dict | None = None) -> None:
        super().__init__(ErrCode.DECODE, message, details)


class SubmissionError(AppError):
    def __init__(
        self, message: str = "Не удалось поставить задачу в очередь", details: dict | None = None
    ) -> None:
        super().__init__(ErrCode.SUBMISSION, message, details)


class ProviderError(AppError):
    def __init__(self, code: str, message: str, details: dict | None = None) -> None:
        super().__init__(code, message, details)
