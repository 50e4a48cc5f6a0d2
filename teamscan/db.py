from __future__ import annotations

import threading
from pathlib import Path

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from teamscan.models import Base

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal = None


def make_engine(url: str) -> Engine:
    """Create an engine; SQLite gets thread sharing and enforced foreign keys."""
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return create_engine(url, pool_pre_ping=True)
    if parsed.database and parsed.database != ":memory:":
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(url, connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def init_db(database_url: str) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        _engine = make_engine(database_url)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        seed_survey_questions(_engine)


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


def seed_survey_questions(engine: Engine) -> None:
    """Seed the default question set (version 1) if no questions exist yet."""
    with engine.connect() as conn:
        count = conn.execute(text("SELECT COUNT(*) FROM survey_questions")).scalar()
        if count:
            return
    from teamscan.survey import DEFAULT_QUESTIONS
    with engine.begin() as conn:
        for order, (dimension, question_text) in enumerate(DEFAULT_QUESTIONS, start=1):
            conn.execute(text(
                "INSERT INTO survey_questions (version, dimension, question_text, question_order, active) "
                "VALUES (1, :dimension, :question_text, :question_order, 1)"
            ), {"dimension": dimension, "question_text": question_text, "question_order": order})
