"""
Авторизация service-only admin API.

Правила:
- ключи берутся из ADMIN_API_KEYS (через запятую)
- пустой список ключей допустим только вне prod (dev/test без авторизации)
"""

from __future__ import annotations

from dataclasses import dataclass

from .config import get_settings
from .errors import UnauthorizedError


def _parse_api_keys(raw: str) -> set[str]:
    """
    Разбор строки ключей из ENV в множество.
    """
    return {k.strip() for k in (raw or "").split(",") if k.strip()}


def _is_prod_env(app_env: str | None) -> bool:
    env = (app_env or "").strip().lower()
    return env in {"prod", "production"}


@dataclass(frozen=True)
class AuthContext:
    subject: str
    auth_type: str  # service_api_key|none


def require_service_key(x_api_key: str | None) -> AuthContext:
    settings = get_settings()
    keys = _parse_api_keys(settings.admin_api_keys)

    if not keys:
        if _is_prod_env(settings.app_env):
            raise UnauthorizedError("ADMIN_API_KEYS не настроен в APP_ENV=prod")
        return AuthContext(subject="anonymous", auth_type="none")

    if not x_api_key or x_api_key not in keys:
        raise UnauthorizedError("Неверный API ключ")
    return AuthContext(subject="service", auth_type="service_api_key")
