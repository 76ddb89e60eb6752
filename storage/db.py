# taskify/storage/db.py
from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

from core.settings import DB_PATH

# Ensure SQLModel metadata is populated
import models.local_record  # noqa: F401
import models.pending_op  # noqa: F401


SessionFactory = Callable[[], Session]

_engine: Optional[Engine] = None


def create_db_engine(path: Optional[Path | str] = None) -> Engine:
    # Persistence writes run in worker threads.
    if path == ":memory:":
        return create_engine(
            "sqlite://",
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    target = Path(path or DB_PATH)
    target.parent.mkdir(parents=True, exist_ok=True)
    return create_engine(
        f"sqlite:///{target.as_posix()}",
        echo=False,
        connect_args={"check_same_thread": False},
    )


def init_db(engine: Optional[Engine] = None) -> Engine:
    engine = engine or get_engine()
    SQLModel.metadata.create_all(engine)
    return engine


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = create_db_engine()
    return _engine


def session_factory_for(engine: Engine) -> SessionFactory:
    def factory() -> Session:
        return Session(engine)

    return factory


def get_session() -> Session:
    return Session(get_engine())


__all__ = ["SessionFactory", "create_db_engine", "get_engine", "get_session", "init_db", "session_factory_for"]
