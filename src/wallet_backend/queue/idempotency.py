"""
Heartbeat цепочек проверки статуса.

Зачем нужно:
- цепочка проверок живёт в очереди: каждая проверка ставит следующую
- если перепостановка не удалась, цепочка тихо обрывается
- reconciliation должен отличать живую цепочку от оборванной,
  не плодя дубликаты

Реализация:
- ключ "chain:<scope>:<payment_id>" с TTL
- воркер продлевает ключ при каждой успешной перепостановке
- reconciliation захватывает ключ через SET NX, только тогда ставит задачу
"""

from __future__ import annotations

import redis

_KEY_PREFIX = "chain"


class ChainRegistry:
    def __init__(self, client: redis.Redis, *, scope: str = "payment_status") -> None:
        self.r = client
        self.scope = scope

    def _key(self, payment_id: int) -> str:
        return f"{_KEY_PREFIX}:{self.scope}:{payment_id}"

    def mark_alive(self, payment_id: int, ttl_sec: int) -> None:
        self.r.set(name=self._key(payment_id), value="1", ex=max(1, int(ttl_sec)))

    def claim_orphan(self, payment_id: int, ttl_sec: int) -> bool:
        """
        True, если живой цепочки нет и ключ захвачен (можно ставить проверку).
        """
        ok = self.r.set(name=self._key(payment_id), value="1", nx=True, ex=max(1, int(ttl_sec)))
        return bool(ok)

    def release(self, payment_id: int) -> None:
        self.r.delete(self._key(payment_id))
