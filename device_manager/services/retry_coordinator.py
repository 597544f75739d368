from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from device_manager.services.transition_errors import (
    Deadlock,
    LockContention,
    LockContentionExhausted,
    LockWaitTimeout,
    StorageError,
)

LOGGER = logging.getLogger("device_manager.retry")

TRANSITION_MAX_ATTEMPTS = int(os.environ.get("TRANSITION_MAX_ATTEMPTS") or "3")
TRANSITION_LOCK_TIMEOUT_SECONDS = int(os.environ.get("TRANSITION_LOCK_TIMEOUT_SECONDS") or "30")

T = TypeVar("T")

# Connection execution option that makes the SQLite begin hook take the write lock.
WRITER_LOCK_OPTION = "device_manager_writer_lock"

# Driver error numbers differ per backend: 1205 is a lock wait timeout on
# MySQL but a deadlock victim on SQL Server.
_MYSQL_CODES = {1205: LockWaitTimeout, 1213: Deadlock}
_MSSQL_CODES = {1222: LockWaitTimeout, 1205: Deadlock}
_SQLSTATES = {"55P03": LockWaitTimeout, "40P01": Deadlock, "40001": Deadlock}
_MESSAGE_PATTERNS = [
    (re.compile(r"deadlock", re.IGNORECASE), Deadlock),
    (
        re.compile(
            r"lock wait timeout|lock request time ?out|database is locked|database table is locked"
            r"|could not obtain lock|lock timeout",
            re.IGNORECASE,
        ),
        LockWaitTimeout,
    ),
]


def linear_backoff(attempt: int) -> float:
    return float(attempt)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = TRANSITION_MAX_ATTEMPTS
    backoff: Callable[[int], float] = linear_backoff
    lock_timeout_seconds: int = TRANSITION_LOCK_TIMEOUT_SECONDS


def _driver_code(orig) -> int | None:
    args = getattr(orig, "args", None) or ()
    if args and isinstance(args[0], int):
        return args[0]
    return None


def _sqlstate(orig) -> str | None:
    state = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if state:
        return str(state)
    args = getattr(orig, "args", None) or ()
    # pyodbc puts the SQLSTATE first.
    if args and isinstance(args[0], str) and len(args[0]) == 5:
        return args[0]
    return None


def classify_contention(exc: DBAPIError, dialect_name: str | None = None) -> type[LockContention] | None:
    """Map a database error to ``LockWaitTimeout``/``Deadlock``, or ``None`` if it is not contention."""
    orig = exc.orig
    code = _driver_code(orig)
    if code is not None:
        if dialect_name in ("mysql", "mariadb") and code in _MYSQL_CODES:
            return _MYSQL_CODES[code]
        if dialect_name == "mssql" and code in _MSSQL_CODES:
            return _MSSQL_CODES[code]

    state = _sqlstate(orig)
    if state in _SQLSTATES:
        return _SQLSTATES[state]

    message = str(orig) if orig is not None else str(exc)
    for pattern, kind in _MESSAGE_PATTERNS:
        if pattern.search(message):
            return kind
    return None


def apply_lock_timeout(db: Session, seconds: int) -> None:
    seconds = max(int(seconds), 1)
    dialect = db.get_bind().dialect.name
    if dialect in ("mysql", "mariadb"):
        db.execute(text(f"SET SESSION innodb_lock_wait_timeout = {seconds}"))
    elif dialect == "postgresql":
        db.execute(text(f"SET LOCAL lock_timeout = '{seconds}s'"))
    elif dialect == "mssql":
        db.execute(text(f"SET LOCK_TIMEOUT {seconds * 1000}"))
    elif dialect == "sqlite":
        db.execute(text(f"PRAGMA busy_timeout = {seconds * 1000}"))


class RetryCoordinator:
    """Runs a transactional unit of work, retrying it whole on lock contention.

    Every attempt gets a fresh session and transaction, so the unit always
    re-reads and re-validates device state. Only errors classified as lock
    wait timeouts or deadlocks are retried; anything else raised by the unit
    rolls the attempt back and propagates.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self.session_factory = session_factory
        self.policy = policy or RetryPolicy()
        self.sleep = sleep or time.sleep

    def run(self, unit: Callable[[Session], T], label: str = "transition") -> T:
        max_attempts = max(self.policy.max_attempts, 1)
        last_error: LockContention | None = None
        last_exc: DBAPIError | None = None

        for attempt in range(1, max_attempts + 1):
            db = self.session_factory()
            try:
                with db.begin():
                    db.connection(execution_options={WRITER_LOCK_OPTION: True})
                    apply_lock_timeout(db, self.policy.lock_timeout_seconds)
                    result = unit(db)
                if attempt > 1:
                    LOGGER.info("%s committed on attempt %s/%s", label, attempt, max_attempts)
                return result
            except DBAPIError as exc:
                kind = classify_contention(exc, db.get_bind().dialect.name)
                if kind is None:
                    LOGGER.error("%s failed with a storage error: %s", label, exc.orig or exc)
                    raise StorageError() from exc
                last_error = kind()
                last_exc = exc
                if attempt >= max_attempts:
                    break
                delay = self.policy.backoff(attempt)
                LOGGER.warning(
                    "%s hit %s on attempt %s/%s; retrying in %.1fs",
                    label,
                    last_error.code,
                    attempt,
                    max_attempts,
                    delay,
                )
                self.sleep(delay)
            finally:
                db.close()

        LOGGER.error("%s gave up after %s attempts: %s", label, max_attempts, last_error.code if last_error else "")
        raise LockContentionExhausted(max_attempts, last_error) from last_exc
