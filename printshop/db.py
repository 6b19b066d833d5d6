from __future__ import annotations

from collections.abc import Iterator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from printshop.config import settings
from printshop.models import Base


def build_engine(url: str | None = None, *, timeout_seconds: int | None = None) -> Engine:
    url = url or settings.database_url_normalized
    timeout = timeout_seconds if timeout_seconds is not None else settings.store_timeout_seconds
    if url.startswith('sqlite'):
        connect_args = {'timeout': timeout, 'check_same_thread': False}
    else:
        connect_args = {'options': f'-c statement_timeout={timeout * 1000}'}
    return create_engine(url, pool_pre_ping=True, future=True, connect_args=connect_args)


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


engine = build_engine()
SessionLocal = build_session_factory(engine)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_models(bind: Engine | None = None) -> None:
    Base.metadata.create_all(bind or engine)
