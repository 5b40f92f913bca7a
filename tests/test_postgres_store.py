import contextlib
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import OperationalError, errors

from loanease.logging import get_logger
from loanease.service.audit import StoreAuditSink, record_audit
from loanease.storage.errors import ConstraintViolation, StorageUnavailable
from loanease.storage.models import AuditEntry, InvitationStatus
from loanease.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows, rowcount=None):
        self.rows = rows
        self.rowcount = len(rows) if rowcount is None else rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, responses):
        self.responses = responses
        self.statements = []
        self.rolled_back = False

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        response = self.responses.pop(0) if self.responses else []
        if isinstance(response, Exception):
            raise response
        return FakeCursor(response)

    def rollback(self):
        self.rolled_back = True


class FakePool:
    def __init__(self, *responses, error=None):
        self.conn = FakeConnection(list(responses))
        self.error = error

    @contextlib.contextmanager
    def connection(self, timeout=None):
        if self.error is not None:
            raise self.error
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.timeout = 1.0
    store.logger = get_logger("tests.postgres")
    return store


def _user_row(**overrides):
    row = {
        "id": "user-1",
        "email": "user@example.com",
        "role": "referrer_team",
        "organisation_id": "org-1",
        "is_active": True,
        "two_fa_enabled": False,
        "email_verified": False,
        "password_hash": None,
        "first_name": "Sam",
        "surname": "Lee",
        "created_at": NOW,
        "last_login_at": None,
    }
    row.update(overrides)
    return row


def test_operational_error_becomes_storage_unavailable():
    store = _store(FakePool(error=OperationalError("connection refused")))
    with pytest.raises(StorageUnavailable):
        store.get_user("user-1")


def test_unique_violation_becomes_constraint_violation():
    store = _store(FakePool(errors.UniqueViolation("duplicate key")))
    with pytest.raises(ConstraintViolation):
        store.create_user("user@example.com")


def test_get_user_by_email_normalizes_and_maps_row():
    pool = FakePool([_user_row()])
    user = _store(pool).get_user_by_email("  User@Example.com ")

    assert user.id == "user-1"
    assert user.display_name == "Sam Lee"
    _, params = pool.conn.statements[0]
    assert params == ("user@example.com",)


def test_consume_one_time_code_is_conditional_update():
    pool = FakePool([{"id": "code-1"}], [])
    store = _store(pool)

    assert store.consume_one_time_code("code-1", NOW) is True
    assert store.consume_one_time_code("code-1", NOW) is False
    sql, params = pool.conn.statements[0]
    assert "consumed = FALSE" in sql
    assert "RETURNING id" in sql
    assert params == (NOW, "code-1", NOW)


def test_mark_reset_token_used_returns_none_when_lost():
    pool = FakePool([])
    assert _store(pool).mark_reset_token_used("abc", NOW) is None
    sql, _ = pool.conn.statements[0]
    assert "used_at IS NULL" in sql


def test_transition_invitation_checks_current_status():
    row = {
        "id": "inv-1",
        "token": "tok",
        "email": "a@example.com",
        "organisation_id": "org-1",
        "status": "accepted",
        "role": "referrer_team",
        "force_2fa": False,
        "invited_by": None,
        "resent_count": 0,
        "last_resent_at": None,
        "accepted_at": NOW,
        "expires_at": NOW + timedelta(days=7),
        "created_at": NOW,
    }
    pool = FakePool([row])
    record = _store(pool).transition_invitation(
        "inv-1", InvitationStatus.PENDING, InvitationStatus.ACCEPTED, at=NOW
    )

    assert record.status == InvitationStatus.ACCEPTED
    _, params = pool.conn.statements[0]
    assert "pending" in params
    assert "accepted" in params


def _reset_row(**overrides):
    row = {
        "token": "abc",
        "user_id": "user-1",
        "created_at": NOW,
        "expires_at": NOW + timedelta(hours=1),
        "used_at": NOW,
    }
    row.update(overrides)
    return row


class FakeUpdateConnection(FakeConnection):
    """Connection whose second statement reports ``rowcount`` affected rows."""

    def __init__(self, responses, rowcount):
        super().__init__(responses)
        self.rowcount = rowcount

    def execute(self, sql, params=None):
        cursor = super().execute(sql, params)
        if len(self.statements) == 2:
            cursor.rowcount = self.rowcount
        return cursor


class TestCompletePasswordReset:
    def test_burns_token_and_writes_password_together(self):
        pool = FakePool()
        pool.conn = FakeUpdateConnection([[_reset_row()], []], rowcount=1)

        record = _store(pool).complete_password_reset("abc", "argon-hash", NOW)

        assert record.user_id == "user-1"
        (burn_sql, _), (write_sql, write_params) = pool.conn.statements
        assert "used_at IS NULL" in burn_sql
        assert "UPDATE app_user SET password_hash" in write_sql
        assert write_params == ("argon-hash", "user-1")
        assert pool.conn.rolled_back is False

    def test_lost_token_writes_nothing(self):
        pool = FakePool([])
        assert _store(pool).complete_password_reset("abc", "argon-hash", NOW) is None
        assert len(pool.conn.statements) == 1

    def test_missing_user_rolls_back_the_burn(self):
        pool = FakePool()
        pool.conn = FakeUpdateConnection([[_reset_row()], []], rowcount=0)
        assert _store(pool).complete_password_reset("abc", "argon-hash", NOW) is None
        assert pool.conn.rolled_back is True


class TestConfirmEmailVerification:
    def test_marks_token_and_user(self):
        pool = FakePool([{"user_id": "user-1"}], [_user_row(email_verified=True)])
        user = _store(pool).confirm_email_verification("tok", NOW)

        assert user.email_verified is True
        burn_sql, burn_params = pool.conn.statements[0]
        assert "used_at IS NULL" in burn_sql
        assert burn_params == (NOW, "tok", NOW)
        assert "email_verified = TRUE" in pool.conn.statements[1][0]

    def test_lost_token_leaves_user_alone(self):
        pool = FakePool([])
        assert _store(pool).confirm_email_verification("tok", NOW) is None
        assert len(pool.conn.statements) == 1

    def test_missing_user_rolls_back(self):
        pool = FakePool([{"user_id": "user-1"}], [])
        assert _store(pool).confirm_email_verification("tok", NOW) is None
        assert pool.conn.rolled_back is True


def test_invalidate_email_verification_tokens_counts_rows():
    pool = FakePool([{"token": "a"}, {"token": "b"}])
    assert _store(pool).invalidate_email_verification_tokens("user-1", NOW) == 2
    sql, _ = pool.conn.statements[0]
    assert "used_at IS NULL" in sql


def test_audit_driver_error_becomes_storage_unavailable():
    store = _store(FakePool(errors.DataError("value too long for type character varying(64)")))
    entry = AuditEntry(action="login", timestamp=NOW, user_agent="x" * 1000)

    with pytest.raises(StorageUnavailable) as excinfo:
        store.append_audit_entry(entry)
    assert excinfo.value.operation == "append_audit_entry"


def test_record_audit_survives_audit_driver_error():
    store = _store(FakePool(errors.DataError("value too long")))
    assert record_audit(StoreAuditSink(store), "login", subject_id="user-1") is None
