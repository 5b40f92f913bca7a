from __future__ import annotations

import secrets
from datetime import datetime
from typing import Optional, Protocol, Union

from loanease.config import Settings
from loanease.logging import get_logger
from loanease.service.audit import AuditSink, record_audit
from loanease.service.clock import Clock, SystemClock
from loanease.service.errors import Rejection, RejectionKind
from loanease.service.notifier import Notifier
from loanease.storage.errors import StorageUnavailable
from loanease.storage.models import EmailVerificationToken, User

logger = get_logger(__name__)

ALREADY_VERIFIED = "email is already verified"


class EmailVerificationStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_email_verification_token(
        self, record: EmailVerificationToken
    ) -> EmailVerificationToken: ...

    def get_email_verification_token(self, token: str) -> Optional[EmailVerificationToken]: ...

    def invalidate_email_verification_tokens(self, user_id: str, now: datetime) -> int: ...

    def confirm_email_verification(self, token: str, now: datetime) -> Optional[User]: ...


class EmailVerificationService:
    """Single-use links that confirm a user owns their email address.

    Issuing a link retires every earlier unused link for the user, so old
    emails report ``already_consumed`` rather than ``not_found``. Consumption
    marks the link used and sets ``email_verified`` in one conditional step.
    """

    def __init__(
        self,
        store: EmailVerificationStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.store = store
        self.ttl = settings.email_verification_ttl
        self.clock = clock or SystemClock()
        self.notifier = notifier
        self.audit = audit

    def issue(self, user_id: str) -> Union[str, Rejection]:
        now = self.clock.now()
        record = EmailVerificationToken(
            token=secrets.token_hex(32),
            user_id=user_id,
            created_at=now,
            expires_at=now + self.ttl,
        )
        try:
            retired = self.store.invalidate_email_verification_tokens(user_id, now)
            self.store.create_email_verification_token(record)
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)
        logger.info("email_verification_token_issued", user_id=user_id, superseded=retired)
        return record.token

    def verify(self, token: str) -> Union[str, Rejection]:
        """Return the owning user id if ``token`` is live; never consumes it."""
        try:
            record = self.store.get_email_verification_token(token)
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)
        if record is None:
            return Rejection(RejectionKind.NOT_FOUND)
        if record.is_used:
            return Rejection(RejectionKind.ALREADY_CONSUMED)
        if record.is_expired(self.clock.now()):
            return Rejection(RejectionKind.EXPIRED)
        return record.user_id

    def consume(self, token: str) -> Union[User, Rejection]:
        try:
            user = self.store.confirm_email_verification(token, self.clock.now())
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)
        if user is None:
            return Rejection(RejectionKind.INVALID)
        return user

    def deliver(self, user: User) -> Optional[Rejection]:
        token = self.issue(user.id)
        if isinstance(token, Rejection):
            return token
        if self.notifier is not None:
            result = self.notifier.send_email_verification(user.email, token, user.display_name)
            if not result.success:
                logger.warning(
                    "email_verification_delivery_failed", user_id=user.id, error=result.error
                )
        return None

    def request_verification(self, email: str) -> Optional[Rejection]:
        """Send a fresh link to ``email``.

        Unknown addresses return ``None`` like a real send. An address that
        is already verified is reported so the caller can point at login.
        """
        try:
            user = self.store.get_user_by_email(email)
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)
        if user is None:
            logger.info("email_verification_request_ignored")
            return None
        if user.email_verified:
            return Rejection(RejectionKind.ALREADY_CONSUMED, ALREADY_VERIFIED)
        return self.deliver(user)

    def confirm_email(
        self,
        token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Union[User, Rejection]:
        user_id = self.verify(token)
        if isinstance(user_id, Rejection):
            logger.warning("email_verification_rejected", reason=user_id.kind.value)
            return user_id
        try:
            user = self.store.get_user(user_id)
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)
        if user is None:
            return Rejection(RejectionKind.USER_NOT_FOUND)
        if user.email_verified:
            return Rejection(RejectionKind.ALREADY_CONSUMED, ALREADY_VERIFIED)

        confirmed = self.consume(token)
        if isinstance(confirmed, Rejection):
            logger.warning(
                "email_verification_consume_race", user_id=user_id, reason=confirmed.kind.value
            )
            return confirmed

        record_audit(
            self.audit,
            "email_verified",
            clock=self.clock,
            actor_user_id=confirmed.id,
            subject_id=confirmed.id,
            ip_address=ip_address,
            user_agent=user_agent,
            table_name="app_user",
            description="Email verified",
        )
        logger.info("email_verified", user_id=confirmed.id)
        return confirmed
