"""
Engine and request-scoped sessions for the trip ledger.

Blueprints and the correction orchestrator reach the session through
get_db(); services never open sessions of their own.
"""

import logging
import time

from config import Config
from flask import g
from models import get_engine
from sqlalchemy import event
from sqlalchemy.orm import scoped_session, sessionmaker

logger = logging.getLogger(__name__)

engine = get_engine(Config.DATABASE_URL)
SessionLocal = scoped_session(sessionmaker(bind=engine))

MAX_LOGGED_STATEMENT = 200


@event.listens_for(engine, "before_cursor_execute")
def _start_query_timer(conn, cursor, statement, parameters, context, executemany):
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


@event.listens_for(engine, "after_cursor_execute")
def _log_slow_query(conn, cursor, statement, parameters, context, executemany):
    """Warn about statements slower than Config.LOGGING_SLOW_THRESHOLD_MS."""
    duration_ms = (time.perf_counter() - conn.info["query_start_time"].pop()) * 1000
    if duration_ms <= Config.LOGGING_SLOW_THRESHOLD_MS:
        return

    if len(statement) > MAX_LOGGED_STATEMENT:
        statement = statement[:MAX_LOGGED_STATEMENT] + "..."
    logger.warning(
        f"Slow ledger query: {duration_ms:.2f}ms - {statement}",
        extra={"duration_ms": duration_ms, "executemany": executemany},
    )


def get_db():
    """Session bound to the current app context, created on first use."""
    if "db" not in g:
        g.db = SessionLocal()
    return g.db


def close_db(exception=None):
    """
    Teardown hook: discard uncommitted work when the request failed, then
    release the scoped session.
    """
    db = g.pop("db", None)
    if db is None:
        return
    if exception is not None:
        db.rollback()
    SessionLocal.remove()


def init_app(app):
    app.teardown_appcontext(close_db)


def create_schema():
    """Create any missing vehicles, trips and trip_corrections tables."""
    from models import Base

    Base.metadata.create_all(engine)
    logger.info("Ledger schema ensured")
