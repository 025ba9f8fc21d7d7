"""
Tests for store timeout translation and the transparent retry
"""
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError

from app.exceptions import StoreTimeoutError
from app.utils.store import is_timeout, store_operation


class FlakyService:
    """Fails with the queued errors, then succeeds"""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    @store_operation
    def run(self, db, value):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return value


def locked():
    return OperationalError("UPDATE quiz_attempts", {}, Exception("database is locked"))


class TestStoreOperation:

    def test_timeout_is_retried_once(self):
        service = FlakyService(locked())
        db = MagicMock()

        assert service.run(db, "ok") == "ok"
        assert service.calls == 2
        db.rollback.assert_called_once()

    def test_second_timeout_surfaces(self):
        service = FlakyService(locked(), PoolTimeoutError("pool exhausted"))
        db = MagicMock()

        with pytest.raises(StoreTimeoutError):
            service.run(db, "ok")
        assert service.calls == 2

    def test_other_operational_errors_are_not_retried(self):
        error = OperationalError("SELECT", {}, Exception("no such table: quizzes"))
        service = FlakyService(error)

        with pytest.raises(OperationalError):
            service.run(MagicMock(), "ok")
        assert service.calls == 1

    def test_timeout_markers(self):
        assert is_timeout(locked())
        assert is_timeout(OperationalError("x", {}, Exception("canceling statement due to statement timeout")))
        assert not is_timeout(OperationalError("x", {}, Exception("syntax error")))
