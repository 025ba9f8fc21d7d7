"""
Durable-store helpers: timeout translation and one transparent retry
"""
import functools
import logging

from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt

from app.config import settings
from app.exceptions import StoreTimeoutError

logger = logging.getLogger(__name__)

_TIMEOUT_MARKERS = (
    "statement timeout",
    "canceling statement",
    "lock timeout",
    "database is locked",
    "timeout expired",
)


def is_timeout(exc: OperationalError) -> bool:
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in _TIMEOUT_MARKERS)


def store_operation(func):
    """
    Wrap a service method whose second positional argument is the db session.

    Store timeouts roll the session back and become StoreTimeoutError; the
    whole operation is then retried once before the error is surfaced.
    """

    @retry(
        retry=retry_if_exception_type(StoreTimeoutError),
        stop=stop_after_attempt(settings.STORE_RETRY_ATTEMPTS),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    @functools.wraps(func)
    def wrapper(self, db, *args, **kwargs):
        try:
            return func(self, db, *args, **kwargs)
        except PoolTimeoutError as e:
            db.rollback()
            raise StoreTimeoutError("Durable store did not respond in time") from e
        except OperationalError as e:
            db.rollback()
            if not is_timeout(e):
                raise
            raise StoreTimeoutError("Durable store did not respond in time") from e

    return wrapper
