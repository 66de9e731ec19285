"""
Генерация идентификаторов задач очереди.
"""

from __future__ import annotations

import secrets
from datetime import UTC, datetime


def new_task_id(prefix: str = "tsk") -> str:
    """
    Идентификатор задачи очереди.
    Формат: <prefix>_<UTCYYYYMMDDHHMMSS>_<rand>
    """
    ts = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    rnd = secrets.token_hex(6)
    return f"{prefix}_{ts}_{rnd}"
