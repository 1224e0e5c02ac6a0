from __future__ import annotations

import re
import time
from typing import Callable, TypeVar

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

from ..errors import DatabaseUnavailableError
from ..events import log_event

T = TypeVar("T")

DB_RETRY_DELAY_SECONDS = 0.12

_TRANSIENT_DB_MESSAGE = re.compile(
    r"connection (?:terminated|reset|refused|closed)|server closed the connection|"
    r"could not connect|timeout expired|ssl syscall error|broken pipe",
    re.IGNORECASE,
)


def is_transient_db_error(exc: BaseException) -> bool:
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return bool(_TRANSIENT_DB_MESSAGE.search(str(exc)))


def run_with_db_retry(
    operation: Callable[[], T],
    *,
    label: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    try:
        return operation()
    except DBAPIError as exc:
        if not is_transient_db_error(exc):
            raise
        log_event("db_transient_error_retry", level="warning", operation=label, error=str(exc.orig or exc))

    sleep(DB_RETRY_DELAY_SECONDS)
    try:
        return operation()
    except DBAPIError as exc:
        if not is_transient_db_error(exc):
            raise
        log_event("db_transient_error_exhausted", level="error", operation=label, error=str(exc.orig or exc))
        raise DatabaseUnavailableError(
            "Database connection was interrupted. Please retry.",
        ) from exc
