"""
Подключение к хранилищу платежей (SQLAlchemy 2.0).

Схема таблиц принадлежит основному API кошелька и создаётся его миграциями;
init_schema() нужен только для локального запуска и тестов на SQLite.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from wallet_backend.common.config import get_settings

SessionScope = Callable[[], AbstractContextManager[Session]]


def build_engine(dsn: str) -> Engine:
    """
    Postgres - пул с pre-ping; SQLite (тесты, локально) - одно соединение
    на процесс, доступное из потоков пула воркера.
    """
    if dsn.startswith("sqlite"):
        return create_engine(
            dsn,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(dsn, pool_pre_ping=True)


def session_scope(factory: sessionmaker[Session]) -> SessionScope:
    """
    Unit-of-work поверх фабрики сессий: commit при выходе, rollback на исключении.
    """

    @contextmanager
    def _scope() -> Iterator[Session]:
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return _scope


def init_schema(bind: Engine) -> None:
    from wallet_backend.storage.models import Base

    Base.metadata.create_all(bind)


# =============================================================================
# ПРОЦЕССНЫЕ ENGINE / SESSION
# =============================================================================
engine = build_engine(get_settings().postgres_dsn)

# после commit обработчик работает со снимком, а не с ленивыми атрибутами
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

db_session = session_scope(SessionLocal)
