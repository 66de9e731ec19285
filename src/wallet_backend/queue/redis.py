"""
Общее подключение к Redis: брокер задач, heartbeat цепочек, admin API.

Таймауты сокета ограничивают зависание accept-loop при сетевых сбоях:
ошибка всплывает как redis.RedisError и обрабатывается вызывающим кодом.
"""

from __future__ import annotations

import redis

from wallet_backend.common.config import get_settings

_client: redis.Redis | None = None


def redis_client() -> redis.Redis:
    global _client
    if _client is None:
        s = get_settings()
        _client = redis.Redis.from_url(
            s.redis_url,
            decode_responses=True,
            socket_timeout=s.redis_socket_timeout_sec,
            socket_connect_timeout=s.redis_socket_timeout_sec,
            health_check_interval=s.redis_health_check_interval_sec,
        )
    return _client


def close_redis_client() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None
