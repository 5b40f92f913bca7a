from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Iterator, List, Optional

import psycopg
from psycopg import Connection, OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from loanease.logging import get_logger
from loanease.storage.errors import ConstraintViolation, StorageUnavailable
from loanease.storage.models import (
    AuditEntry,
    EmailVerificationToken,
    Invitation,
    InvitationStatus,
    OneTimeCode,
    PasswordResetToken,
    User,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL,
        organisation_id TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        two_fa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        password_hash TEXT,
        first_name TEXT,
        surname TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    "ALTER TABLE app_user ADD COLUMN IF NOT EXISTS email_verified BOOLEAN NOT NULL DEFAULT FALSE",
    """
    CREATE TABLE IF NOT EXISTS one_time_code (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        code TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        consumed BOOLEAN NOT NULL DEFAULT FALSE,
        consumed_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS one_time_code_user_code_idx ON one_time_code (user_id, code)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        token TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_verification_token (
        token TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_invitation (
        id TEXT PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL,
        organisation_id TEXT NOT NULL,
        status TEXT NOT NULL,
        role TEXT NOT NULL,
        force_2fa BOOLEAN NOT NULL DEFAULT FALSE,
        invited_by TEXT,
        resent_count INTEGER NOT NULL DEFAULT 0,
        last_resent_at TIMESTAMPTZ,
        accepted_at TIMESTAMPTZ,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id TEXT PRIMARY KEY,
        action TEXT NOT NULL,
        actor_user_id TEXT,
        subject_id TEXT,
        table_name TEXT NOT NULL,
        description TEXT,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
)


def _user_from_row(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        role=row["role"],
        organisation_id=row.get("organisation_id"),
        is_active=row.get("is_active", True),
        two_fa_enabled=row.get("two_fa_enabled", False),
        email_verified=row.get("email_verified", False),
        password_hash=row.get("password_hash"),
        first_name=row.get("first_name"),
        surname=row.get("surname"),
        created_at=row["created_at"],
        last_login_at=row.get("last_login_at"),
    )


def _code_from_row(row: dict) -> OneTimeCode:
    return OneTimeCode(
        id=str(row["id"]),
        user_id=row["user_id"],
        code=row["code"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        consumed=row["consumed"],
        consumed_at=row.get("consumed_at"),
    )


def _reset_token_from_row(row: dict) -> PasswordResetToken:
    return PasswordResetToken(
        token=row["token"],
        user_id=row["user_id"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        used_at=row.get("used_at"),
    )


def _verification_token_from_row(row: dict) -> EmailVerificationToken:
    return EmailVerificationToken(
        token=row["token"],
        user_id=row["user_id"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        used_at=row.get("used_at"),
    )


def _invitation_from_row(row: dict) -> Invitation:
    return Invitation(
        id=str(row["id"]),
        token=row["token"],
        email=row["email"],
        organisation_id=row["organisation_id"],
        status=InvitationStatus(row["status"]),
        role=row["role"],
        force_2fa=row.get("force_2fa", False),
        invited_by=row.get("invited_by"),
        resent_count=row.get("resent_count", 0),
        last_resent_at=row.get("last_resent_at"),
        accepted_at=row.get("accepted_at"),
        expires_at=row["expires_at"],
        created_at=row["created_at"],
    )


def _audit_from_row(row: dict) -> AuditEntry:
    return AuditEntry(
        id=str(row["id"]),
        action=row["action"],
        timestamp=row["created_at"],
        actor_user_id=row.get("actor_user_id"),
        subject_id=row.get("subject_id"),
        ip_address=row.get("ip_address"),
        table_name=row["table_name"],
        description=row.get("description"),
        user_agent=row.get("user_agent"),
    )


class PostgresStore:
    """Postgres-backed store for users and single-use credential records.

    Consumption of single-use records is always a conditional ``UPDATE``
    so concurrent requests cannot both win.
    """

    def __init__(self, dsn: str, *, timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.timeout = timeout
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Connection]:
        try:
            with self.pool.connection(timeout=self.timeout) as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StorageUnavailable(str(exc)) from exc

    def _ensure_schema(self) -> None:
        """Create credential tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- users -----------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        role: str = "referrer_team",
        organisation_id: Optional[str] = None,
        password_hash: Optional[str] = None,
        first_name: Optional[str] = None,
        surname: Optional[str] = None,
        is_active: bool = True,
        two_fa_enabled: bool = False,
        email_verified: bool = False,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, role, organisation_id, is_active, two_fa_enabled,
                                          email_verified, password_hash, first_name, surname)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email.strip().lower(),
                        role,
                        organisation_id,
                        is_active,
                        two_fa_enabled,
                        email_verified,
                        password_hash,
                        first_name,
                        surname,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return _user_from_row(row) if row else None

    def update_user_password(self, user_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s",
                (password_hash, user_id),
            )
            return cur.rowcount == 1

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def update_user_role(
        self, user_id: str, role: str, organisation_id: Optional[str] = None
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, organisation_id = %s WHERE id = %s RETURNING *",
                (role, organisation_id, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def record_login(self, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE app_user SET last_login_at = %s WHERE id = %s", (at, user_id))

    # -- one-time codes ----------------------------------------------------------

    def create_one_time_code(self, record: OneTimeCode) -> OneTimeCode:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO one_time_code (id, user_id, code, created_at, expires_at, consumed)
                VALUES (%s, %s, %s, %s, %s, FALSE)
                """,
                (record.id, record.user_id, record.code, record.created_at, record.expires_at),
            )
        return record

    def find_one_time_codes(self, user_id: str, code: str) -> List[OneTimeCode]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM one_time_code WHERE user_id = %s AND code = %s ORDER BY created_at DESC",
                (user_id, code),
            ).fetchall()
        return [_code_from_row(row) for row in rows]

    def consume_one_time_code(self, code_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE one_time_code SET consumed = TRUE, consumed_at = %s
                WHERE id = %s AND consumed = FALSE AND expires_at >= %s
                RETURNING id
                """,
                (now, code_id, now),
            ).fetchone()
        return row is not None

    # -- password reset tokens ----------------------------------------------------

    def create_reset_token(self, record: PasswordResetToken) -> PasswordResetToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset_token (token, user_id, created_at, expires_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (record.token, record.user_id, record.created_at, record.expires_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("reset token already exists", {"field": "token"})
        return record

    def get_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token = %s", (token,)
            ).fetchone()
        return _reset_token_from_row(row) if row else None

    def delete_unused_reset_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM password_reset_token WHERE user_id = %s AND used_at IS NULL",
                (user_id,),
            )
            return cur.rowcount

    def mark_reset_token_used(self, token: str, now: datetime) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token SET used_at = %s
                WHERE token = %s AND used_at IS NULL AND expires_at >= %s
                RETURNING *
                """,
                (now, token, now),
            ).fetchone()
        return _reset_token_from_row(row) if row else None

    def complete_password_reset(
        self, token: str, password_hash: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        """Burn ``token`` and store ``password_hash`` in one transaction."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token SET used_at = %s
                WHERE token = %s AND used_at IS NULL AND expires_at >= %s
                RETURNING *
                """,
                (now, token, now),
            ).fetchone()
            if row is None:
                return None
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s",
                (password_hash, row["user_id"]),
            )
            if cur.rowcount != 1:
                conn.rollback()
                return None
        return _reset_token_from_row(row)

    # -- email verification tokens -------------------------------------------------

    def create_email_verification_token(
        self, record: EmailVerificationToken
    ) -> EmailVerificationToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO email_verification_token (token, user_id, created_at, expires_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (record.token, record.user_id, record.created_at, record.expires_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("verification token already exists", {"field": "token"})
        return record

    def get_email_verification_token(self, token: str) -> Optional[EmailVerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM email_verification_token WHERE token = %s", (token,)
            ).fetchone()
        return _verification_token_from_row(row) if row else None

    def invalidate_email_verification_tokens(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE email_verification_token SET used_at = %s
                WHERE user_id = %s AND used_at IS NULL
                """,
                (now, user_id),
            )
            return cur.rowcount

    def confirm_email_verification(self, token: str, now: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE email_verification_token SET used_at = %s
                WHERE token = %s AND used_at IS NULL AND expires_at >= %s
                RETURNING user_id
                """,
                (now, token, now),
            ).fetchone()
            if row is None:
                return None
            user_row = conn.execute(
                "UPDATE app_user SET email_verified = TRUE WHERE id = %s RETURNING *",
                (row["user_id"],),
            ).fetchone()
            if user_row is None:
                conn.rollback()
                return None
        return _user_from_row(user_row)

    # -- invitations --------------------------------------------------------------

    def create_invitation(self, record: Invitation) -> Invitation:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_invitation (id, token, email, organisation_id, status, role,
                                                 force_2fa, invited_by, resent_count, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.token,
                        record.email,
                        record.organisation_id,
                        record.status.value,
                        record.role,
                        record.force_2fa,
                        record.invited_by,
                        record.resent_count,
                        record.expires_at,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("invitation token already exists", {"field": "token"})
        return record

    def get_invitation(self, invitation_id: str) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_invitation WHERE id = %s", (invitation_id,)
            ).fetchone()
        return _invitation_from_row(row) if row else None

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_invitation WHERE token = %s", (token,)
            ).fetchone()
        return _invitation_from_row(row) if row else None

    def find_pending_invitation(self, email: str, organisation_id: str) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM user_invitation
                WHERE email = %s AND organisation_id = %s AND status = %s
                ORDER BY created_at DESC LIMIT 1
                """,
                (email.strip().lower(), organisation_id, InvitationStatus.PENDING.value),
            ).fetchone()
        return _invitation_from_row(row) if row else None

    def list_invitations(
        self, organisation_id: str, status: Optional[InvitationStatus] = None
    ) -> List[Invitation]:
        with self._connect() as conn:
            if status is not None:
                rows = conn.execute(
                    """
                    SELECT * FROM user_invitation WHERE organisation_id = %s AND status = %s
                    ORDER BY created_at DESC
                    """,
                    (organisation_id, status.value),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM user_invitation WHERE organisation_id = %s ORDER BY created_at DESC",
                    (organisation_id,),
                ).fetchall()
        return [_invitation_from_row(row) for row in rows]

    def transition_invitation(
        self,
        invitation_id: str,
        from_status: InvitationStatus,
        to_status: InvitationStatus,
        *,
        at: datetime,
    ) -> Optional[Invitation]:
        accepted_at = at if to_status == InvitationStatus.ACCEPTED else None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_invitation
                SET status = %s, accepted_at = COALESCE(%s, accepted_at)
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (to_status.value, accepted_at, invitation_id, from_status.value),
            ).fetchone()
        return _invitation_from_row(row) if row else None

    def reissue_invitation_token(
        self,
        invitation_id: str,
        *,
        expected_resent_count: int,
        token: str,
        expires_at: datetime,
        at: datetime,
    ) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_invitation
                SET token = %s, expires_at = %s, resent_count = resent_count + 1, last_resent_at = %s
                WHERE id = %s AND status = %s AND resent_count = %s
                RETURNING *
                """,
                (
                    token,
                    expires_at,
                    at,
                    invitation_id,
                    InvitationStatus.PENDING.value,
                    expected_resent_count,
                ),
            ).fetchone()
        return _invitation_from_row(row) if row else None

    # -- audit --------------------------------------------------------------------

    def append_audit_entry(self, entry: AuditEntry) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_log (id, action, actor_user_id, subject_id, table_name,
                                           description, ip_address, user_agent, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        entry.id,
                        entry.action,
                        entry.actor_user_id,
                        entry.subject_id,
                        entry.table_name,
                        entry.description,
                        entry.ip_address,
                        entry.user_agent,
                        entry.timestamp,
                    ),
                )
        except psycopg.Error as exc:
            # Any driver error on an audit row surfaces as StorageUnavailable
            self.logger.warning(
                "postgres_audit_insert_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise StorageUnavailable(str(exc), operation="append_audit_entry") from exc

    def list_audit_entries(
        self, *, subject_id: Optional[str] = None, action: Optional[str] = None
    ) -> List[AuditEntry]:
        clauses = []
        params: list = []
        if subject_id is not None:
            clauses.append("subject_id = %s")
            params.append(subject_id)
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY created_at", params
            ).fetchall()
        return [_audit_from_row(row) for row in rows]
