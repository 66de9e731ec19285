"""
Машина состояний платежа.

pending → {completed, failed, canceled}
completed / failed / canceled - терминальные (поглощающие) состояния:
после них воркер платёж больше не трогает.
"""

from __future__ import annotations

from dataclasses import dataclass

from .enums import PaymentStatus

# =============================================================================
# ТЕРМИНАЛЬНЫЕ СОСТОЯНИЯ
# =============================================================================
TERMINAL_STATUSES: frozenset[PaymentStatus] = frozenset(
    {PaymentStatus.completed, PaymentStatus.failed, PaymentStatus.canceled}
)

_ALLOWED: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.pending: frozenset(
        {PaymentStatus.pending, PaymentStatus.completed, PaymentStatus.failed, PaymentStatus.canceled}
    ),
    PaymentStatus.completed: frozenset(),
    PaymentStatus.failed: frozenset(),
    PaymentStatus.canceled: frozenset(),
}


def is_terminal(status: PaymentStatus | str) -> bool:
    return PaymentStatus.parse(status) in TERMINAL_STATUSES


# =============================================================================
# РЕЗУЛЬТАТ ПЕРЕХОДА
# =============================================================================
@dataclass
class TransitionResult:
    ok: bool
    changed: bool = False
    status: PaymentStatus | None = None
    reason: str | None = None


def transition(current: PaymentStatus, resolved: PaymentStatus) -> TransitionResult:
    """
    Правила перехода:
    - из терминального состояния   → отказ (no-op для воркера)
    - pending → pending            → без изменений, нужна следующая проверка
    - pending → терминальное       → запись нового статуса
    """
    if current in TERMINAL_STATUSES:
        return TransitionResult(ok=False, status=current, reason="already_final")

    if resolved not in _ALLOWED[current]:
        return TransitionResult(ok=False, status=current, reason="illegal_transition")

    return TransitionResult(ok=True, changed=resolved != current, status=resolved)
