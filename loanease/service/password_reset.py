from __future__ import annotations

import secrets
from datetime import datetime
from typing import Optional, Protocol, Union

from loanease.config import Settings
from loanease.logging import get_logger
from loanease.service.audit import AuditSink, record_audit
from loanease.service.clock import Clock, SystemClock
from loanease.service.errors import Rejection, RejectionKind, ValidationError
from loanease.service.notifier import Notifier
from loanease.service.passwords import hash_password
from loanease.storage.errors import StorageUnavailable
from loanease.storage.models import PasswordResetToken, User

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


class PasswordResetStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_reset_token(self, record: PasswordResetToken) -> PasswordResetToken: ...

    def get_reset_token(self, token: str) -> Optional[PasswordResetToken]: ...

    def delete_unused_reset_tokens(self, user_id: str) -> int: ...

    def mark_reset_token_used(self, token: str, now: datetime) -> Optional[PasswordResetToken]: ...

    def complete_password_reset(
        self, token: str, password_hash: str, now: datetime
    ) -> Optional[PasswordResetToken]: ...


class PasswordResetService:
    """Opaque single-use reset tokens.

    ``verify`` is read-only so the confirm page can check a link without
    burning it. ``consume`` and ``complete_reset`` are the only paths that
    mark a token used, and ``complete_reset`` writes the new password in
    that same conditional update.
    """

    def __init__(
        self,
        store: PasswordResetStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.store = store
        self.ttl = settings.password_reset_ttl
        self.clock = clock or SystemClock()
        self.notifier = notifier
        self.audit = audit

    def issue(self, user_id: str) -> Union[str, Rejection]:
        now = self.clock.now()
        record = PasswordResetToken(
            token=secrets.token_hex(32),
            user_id=user_id,
            created_at=now,
            expires_at=now + self.ttl,
        )
        try:
            removed = self.store.delete_unused_reset_tokens(user_id)
            self.store.create_reset_token(record)
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)
        logger.info("password_reset_token_issued", user_id=user_id, superseded=removed)
        return record.token

    def verify(self, token: str) -> Union[str, Rejection]:
        """Return the owning user id if ``token`` is live; never consumes it."""
        try:
            record = self.store.get_reset_token(token)
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)
        if record is None:
            return Rejection(RejectionKind.NOT_FOUND)
        if record.is_used:
            return Rejection(RejectionKind.ALREADY_CONSUMED)
        if record.is_expired(self.clock.now()):
            return Rejection(RejectionKind.EXPIRED)
        return record.user_id

    def consume(self, token: str) -> Union[PasswordResetToken, Rejection]:
        try:
            record = self.store.mark_reset_token_used(token, self.clock.now())
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)
        if record is None:
            return Rejection(RejectionKind.INVALID)
        return record

    def request_reset(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[Rejection]:
        """Start a reset for ``email`` without revealing whether it exists.

        Unknown and inactive accounts return the same ``None`` as a real
        request; only an unreachable store is reported.
        """
        try:
            user = self.store.get_user_by_email(email)
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)
        if user is None or not user.is_active:
            logger.info("password_reset_request_ignored")
            return None

        token = self.issue(user.id)
        if isinstance(token, Rejection):
            return token
        if self.notifier is not None:
            result = self.notifier.send_password_reset(user.email, token, user.display_name)
            if not result.success:
                logger.warning("password_reset_delivery_failed", user_id=user.id, error=result.error)
        record_audit(
            self.audit,
            "password_reset_requested",
            clock=self.clock,
            actor_user_id=user.id,
            subject_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            description="Password reset requested",
        )
        return None

    def complete_reset(
        self,
        token: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Union[User, Rejection]:
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        user_id = self.verify(token)
        if isinstance(user_id, Rejection):
            logger.warning("password_reset_rejected", reason=user_id.kind.value)
            return user_id
        try:
            user = self.store.get_user(user_id)
            if user is None:
                return Rejection(RejectionKind.USER_NOT_FOUND)
            password_hash = hash_password(new_password)
            # The token is burned and the password written in one conditional step
            consumed = self.store.complete_password_reset(token, password_hash, self.clock.now())
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)
        if consumed is None:
            # Another request consumed the token between verify and this write
            logger.warning("password_reset_consume_race", user_id=user.id)
            return Rejection(RejectionKind.INVALID)

        record_audit(
            self.audit,
            "password_reset_completed",
            clock=self.clock,
            actor_user_id=user.id,
            subject_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            description="Password reset completed",
        )
        logger.info("password_reset_completed", user_id=user.id)
        return user
