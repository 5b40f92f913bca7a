from __future__ import annotations

import hmac
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from loanease.logging import get_logger
from loanease.storage.errors import ConstraintViolation
from loanease.storage.models import (
    AuditEntry,
    EmailVerificationToken,
    Invitation,
    InvitationStatus,
    OneTimeCode,
    PasswordResetToken,
    User,
)


class MemoryStore:
    """In-process backing store for tests and local development.

    Records are copied on the way in and out so callers observe the same
    snapshot semantics as with Postgres; every conditional update runs under
    one lock.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.one_time_codes: Dict[str, OneTimeCode] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.email_verification_tokens: Dict[str, EmailVerificationToken] = {}
        self.invitations: Dict[str, Invitation] = {}
        self.audit_entries: List[AuditEntry] = []
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

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
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                role=role,
                organisation_id=organisation_id,
                is_active=is_active,
                two_fa_enabled=two_fa_enabled,
                email_verified=email_verified,
                password_hash=password_hash,
                first_name=first_name,
                surname=surname,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def update_user_password(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            return True

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            return replace(user)

    def update_user_role(
        self, user_id: str, role: str, organisation_id: Optional[str] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.organisation_id = organisation_id
            return replace(user)

    def record_login(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = at

    # -- one-time codes ----------------------------------------------------------

    def create_one_time_code(self, record: OneTimeCode) -> OneTimeCode:
        with self._data_lock:
            self.one_time_codes[record.id] = replace(record)
            return replace(record)

    def find_one_time_codes(self, user_id: str, code: str) -> List[OneTimeCode]:
        with self._data_lock:
            return [
                replace(record)
                for record in self.one_time_codes.values()
                if record.user_id == user_id and hmac.compare_digest(record.code, code)
            ]

    def consume_one_time_code(self, code_id: str, now: datetime) -> bool:
        with self._data_lock:
            record = self.one_time_codes.get(code_id)
            if not record or record.consumed or record.is_expired(now):
                return False
            record.consumed = True
            record.consumed_at = now
            return True

    # -- password reset tokens ----------------------------------------------------

    def create_reset_token(self, record: PasswordResetToken) -> PasswordResetToken:
        with self._data_lock:
            if record.token in self.reset_tokens:
                raise ConstraintViolation("reset token already exists", {"field": "token"})
            self.reset_tokens[record.token] = replace(record)
            return replace(record)

    def get_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            record = self.reset_tokens.get(token)
            return replace(record) if record else None

    def delete_unused_reset_tokens(self, user_id: str) -> int:
        with self._data_lock:
            stale = [
                key
                for key, record in self.reset_tokens.items()
                if record.user_id == user_id and record.used_at is None
            ]
            for key in stale:
                del self.reset_tokens[key]
            return len(stale)

    def mark_reset_token_used(self, token: str, now: datetime) -> Optional[PasswordResetToken]:
        with self._data_lock:
            record = self.reset_tokens.get(token)
            if not record or record.used_at is not None or record.is_expired(now):
                return None
            record.used_at = now
            return replace(record)

    def complete_password_reset(
        self, token: str, password_hash: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        """Burn ``token`` and store ``password_hash`` for its owner in one step."""
        with self._data_lock:
            record = self.reset_tokens.get(token)
            if not record or record.used_at is not None or record.is_expired(now):
                return None
            user = self.users.get(record.user_id)
            if not user:
                return None
            record.used_at = now
            user.password_hash = password_hash
            return replace(record)

    # -- email verification tokens -------------------------------------------------

    def create_email_verification_token(
        self, record: EmailVerificationToken
    ) -> EmailVerificationToken:
        with self._data_lock:
            if record.token in self.email_verification_tokens:
                raise ConstraintViolation("verification token already exists", {"field": "token"})
            self.email_verification_tokens[record.token] = replace(record)
            return replace(record)

    def get_email_verification_token(self, token: str) -> Optional[EmailVerificationToken]:
        with self._data_lock:
            record = self.email_verification_tokens.get(token)
            return replace(record) if record else None

    def invalidate_email_verification_tokens(self, user_id: str, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for record in self.email_verification_tokens.values():
                if record.user_id == user_id and record.used_at is None:
                    record.used_at = now
                    count += 1
            return count

    def confirm_email_verification(self, token: str, now: datetime) -> Optional[User]:
        with self._data_lock:
            record = self.email_verification_tokens.get(token)
            if not record or record.used_at is not None or record.is_expired(now):
                return None
            user = self.users.get(record.user_id)
            if not user:
                return None
            record.used_at = now
            user.email_verified = True
            return replace(user)

    # -- invitations --------------------------------------------------------------

    def create_invitation(self, record: Invitation) -> Invitation:
        with self._data_lock:
            if any(inv.token == record.token for inv in self.invitations.values()):
                raise ConstraintViolation("invitation token already exists", {"field": "token"})
            self.invitations[record.id] = replace(record)
            return replace(record)

    def get_invitation(self, invitation_id: str) -> Optional[Invitation]:
        with self._data_lock:
            record = self.invitations.get(invitation_id)
            return replace(record) if record else None

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        with self._data_lock:
            record = next((i for i in self.invitations.values() if i.token == token), None)
            return replace(record) if record else None

    def find_pending_invitation(self, email: str, organisation_id: str) -> Optional[Invitation]:
        normalized = email.strip().lower()
        with self._data_lock:
            record = next(
                (
                    i
                    for i in self.invitations.values()
                    if i.email == normalized
                    and i.organisation_id == organisation_id
                    and i.status == InvitationStatus.PENDING
                ),
                None,
            )
            return replace(record) if record else None

    def list_invitations(
        self, organisation_id: str, status: Optional[InvitationStatus] = None
    ) -> List[Invitation]:
        with self._data_lock:
            results = [
                replace(i)
                for i in self.invitations.values()
                if i.organisation_id == organisation_id and (status is None or i.status == status)
            ]
        return sorted(results, key=lambda i: i.created_at, reverse=True)

    def transition_invitation(
        self,
        invitation_id: str,
        from_status: InvitationStatus,
        to_status: InvitationStatus,
        *,
        at: datetime,
    ) -> Optional[Invitation]:
        with self._data_lock:
            record = self.invitations.get(invitation_id)
            if not record or record.status != from_status:
                return None
            record.status = to_status
            if to_status == InvitationStatus.ACCEPTED:
                record.accepted_at = at
            return replace(record)

    def reissue_invitation_token(
        self,
        invitation_id: str,
        *,
        expected_resent_count: int,
        token: str,
        expires_at: datetime,
        at: datetime,
    ) -> Optional[Invitation]:
        with self._data_lock:
            record = self.invitations.get(invitation_id)
            if (
                not record
                or record.status != InvitationStatus.PENDING
                or record.resent_count != expected_resent_count
            ):
                return None
            record.token = token
            record.expires_at = expires_at
            record.resent_count += 1
            record.last_resent_at = at
            return replace(record)

    # -- audit --------------------------------------------------------------------

    def append_audit_entry(self, entry: AuditEntry) -> None:
        with self._data_lock:
            self.audit_entries.append(replace(entry))

    def list_audit_entries(
        self, *, subject_id: Optional[str] = None, action: Optional[str] = None
    ) -> List[AuditEntry]:
        with self._data_lock:
            return [
                replace(entry)
                for entry in self.audit_entries
                if (subject_id is None or entry.subject_id == subject_id)
                and (action is None or entry.action == action)
            ]
