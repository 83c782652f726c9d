from __future__ import annotations

import os
import threading

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from app.core.config import DATABASE_URL


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}

    return {
        "pool_pre_ping": True,
        "pool_size": int(os.getenv("DB_POOL_SIZE", "2")),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "0")),
        "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", "30")),
        "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", "1800")),
    }


engine = create_engine(DATABASE_URL, **_engine_kwargs(DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Avoid running DDL more than once per process
_SCHEMA_ENSURED = False
_SCHEMA_LOCK = threading.Lock()


def ensure_schema_once(bind: Engine | None = None) -> None:
    """
    Creates missing tables and indexes at most once per process.
    Production deployments should migrate the schema ahead of time.
    """
    global _SCHEMA_ENSURED
    if _SCHEMA_ENSURED:
        return

    with _SCHEMA_LOCK:
        if _SCHEMA_ENSURED:
            return

        from app.models.base import Base
        import app.models.marketplace  # noqa: F401  (registers tables)

        Base.metadata.create_all(bind=bind or engine)
        _SCHEMA_ENSURED = True


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()          # persist changes
    except Exception:
        db.rollback()        # undo partial changes on error
        raise
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    """
    Background effects run after the request session is closed, so they open
    their own sessions from this factory.
    """
    return SessionLocal
