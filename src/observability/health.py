from __future__ import annotations

import time
from typing import Any, Dict

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session


def check_database_health(session: Session) -> Dict[str, Any]:
    """
    Run ``SELECT 1`` and report status plus round-trip time.

    Uses the caller's session, which may already hold the SQLite write
    lock for the current request.
    """
    dialect = session.get_bind().dialect.name
    started = time.perf_counter()
    try:
        session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        session.rollback()
        return {"status": "DOWN", "dialect": dialect, "detail": str(exc)}
    return {
        "status": "UP",
        "dialect": dialect,
        "latency_ms": round((time.perf_counter() - started) * 1000, 2),
    }
