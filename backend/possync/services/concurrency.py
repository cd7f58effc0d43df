# Overview: Retry and write-lock helpers shared by every sync write path.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


# Lock contention and optimistic-version conflicts: safe to replay the whole unit
RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def begin_write() -> None:
    """
    Start the write transaction up front on SQLite (BEGIN IMMEDIATE) so two
    writers serialize on the database lock instead of deadlocking on upgrade.
    Other databases rely on row locks and the unique constraints.
    """
    if db.engine.dialect.name == "sqlite":
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int = 5, backoff_base: float = 0.05, retry_on=RETRYABLE_ERRORS):
    """
    Execute one unit of DB work with retry on concurrency-related failures.

    func must be safe to replay from scratch: the session is rolled back
    before every retry, so nothing from a failed attempt survives.
    """
    for attempt in range(attempts):
        try:
            return func()
        except retry_on as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            current_app.logger.warning(
                "Retrying after %s (attempt %d/%d)", type(exc).__name__, attempt + 1, attempts
            )
            time.sleep(backoff_base * (2 ** attempt))
    return None
