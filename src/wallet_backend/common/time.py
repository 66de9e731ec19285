"""
Время: всё хранится и сравнивается в UTC.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    return datetime.now(UTC)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def ensure_utc(value: datetime) -> datetime:
    """
    SQLite (и часть драйверов) отдаёт naive datetime - считаем его UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def audit_stamp(now: datetime | None = None) -> str:
    """
    Метка времени для описаний изменений платежа: секунды, смещение UTC.
    """
    return ensure_utc(now or utc_now()).isoformat(timespec="seconds")
