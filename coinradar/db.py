from __future__ import annotations

import threading
from pathlib import Path

from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import Session, sessionmaker

from coinradar.models import AppSettings, Base

_lock = threading.Lock()
_engine = None
_SessionLocal = None


def _enable_foreign_keys(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            from coinradar.config import get_settings
            db_path = get_settings().database_path
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
        event.listen(_engine, "connect", _enable_foreign_keys)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _seed_settings(_SessionLocal)


def _seed_settings(factory) -> None:
    """Insert the default settings row if the table is empty."""
    with factory() as session:
        seed_default_settings(session)


def seed_default_settings(session: Session) -> AppSettings:
    row = session.execute(select(AppSettings).where(AppSettings.id == 1)).scalar_one_or_none()
    if row is None:
        row = AppSettings(id=1)
        session.add(row)
        session.commit()
    return row


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]
