from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Union

from loanease.config import Settings
from loanease.logging import get_logger
from loanease.service.audit import AuditSink, record_audit
from loanease.service.clock import Clock, SystemClock
from loanease.service.errors import Rejection, RejectionKind, ValidationError
from loanease.service.notifier import DeliveryResult, Notifier
from loanease.service.passwords import hash_password
from loanease.service.roles import ALL_ROLES, REFERRER_TEAM
from loanease.storage.errors import ConstraintViolation, StorageUnavailable
from loanease.storage.models import Invitation, InvitationStatus, User

logger = get_logger(__name__)

MIN_REGISTRATION_PASSWORD_LENGTH = 10


class InvitationStore(Protocol):
    def create_invitation(self, record: Invitation) -> Invitation: ...

    def get_invitation(self, invitation_id: str) -> Optional[Invitation]: ...

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]: ...

    def find_pending_invitation(self, email: str, organisation_id: str) -> Optional[Invitation]: ...

    def list_invitations(
        self, organisation_id: str, status: Optional[InvitationStatus] = None
    ) -> List[Invitation]: ...

    def transition_invitation(
        self,
        invitation_id: str,
        from_status: InvitationStatus,
        to_status: InvitationStatus,
        *,
        at: datetime,
    ) -> Optional[Invitation]: ...

    def reissue_invitation_token(
        self,
        invitation_id: str,
        *,
        expected_resent_count: int,
        token: str,
        expires_at: datetime,
        at: datetime,
    ) -> Optional[Invitation]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_user(self, email: str, **kwargs) -> User: ...


def _status_rejection(record: Invitation) -> Rejection:
    if record.status == InvitationStatus.ACCEPTED:
        return Rejection(RejectionKind.ALREADY_ACCEPTED)
    return Rejection(RejectionKind.EXPIRED, "invitation has expired")


class InvitationService:
    """Organisation invitations: pending -> accepted, or pending -> expired.

    Expiry is applied lazily: a pending invitation found past its deadline
    is moved to ``expired`` by whichever read notices it first.
    """

    def __init__(
        self,
        store: InvitationStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.store = store
        self.ttl = settings.invitation_ttl
        self.max_resends = settings.max_invitation_resends
        self.resend_interval = timedelta(seconds=settings.invitation_resend_interval_seconds)
        self.clock = clock or SystemClock()
        self.notifier = notifier
        self.audit = audit

    def _expire(self, record: Invitation, now: datetime) -> None:
        moved = self.store.transition_invitation(
            record.id, InvitationStatus.PENDING, InvitationStatus.EXPIRED, at=now
        )
        if moved is not None:
            logger.info("invitation_expired", invitation_id=record.id)

    def create(
        self,
        email: str,
        organisation_id: str,
        ttl: Optional[timedelta] = None,
        *,
        invited_by: Optional[str] = None,
        role: str = REFERRER_TEAM,
        force_2fa: bool = False,
    ) -> Union[str, Rejection]:
        if role not in ALL_ROLES:
            raise ValidationError("unknown role", detail={"field": "role"})
        email = email.strip().lower()
        now = self.clock.now()
        try:
            existing = self.store.find_pending_invitation(email, organisation_id)
            if existing is not None:
                if not existing.is_expired(now):
                    return Rejection(
                        RejectionKind.CONFLICT, "a pending invitation already exists for this email"
                    )
                self._expire(existing, now)
            record = Invitation(
                id=str(uuid.uuid4()),
                token=secrets.token_urlsafe(32),
                email=email,
                organisation_id=organisation_id,
                expires_at=now + (ttl or self.ttl),
                role=role,
                force_2fa=force_2fa,
                invited_by=invited_by,
                created_at=now,
            )
            self.store.create_invitation(record)
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)
        logger.info(
            "invitation_created",
            invitation_id=record.id,
            organisation_id=organisation_id,
            role=role,
        )
        return record.token

    def resolve(self, token: str) -> Union[Invitation, Rejection]:
        now = self.clock.now()
        try:
            record = self.store.get_invitation_by_token(token)
            if record is None:
                return Rejection(RejectionKind.NOT_FOUND, "invitation not found")
            if record.status != InvitationStatus.PENDING:
                return _status_rejection(record)
            if record.is_expired(now):
                self._expire(record, now)
                return Rejection(RejectionKind.EXPIRED, "invitation has expired")
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)
        return record

    def accept(self, token: str) -> Union[Invitation, Rejection]:
        resolved = self.resolve(token)
        if isinstance(resolved, Rejection):
            return resolved
        try:
            accepted = self.store.transition_invitation(
                resolved.id,
                InvitationStatus.PENDING,
                InvitationStatus.ACCEPTED,
                at=self.clock.now(),
            )
            if accepted is not None:
                logger.info("invitation_accepted", invitation_id=accepted.id)
                return accepted
            current = self.store.get_invitation(resolved.id)
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)
        if current is None:
            return Rejection(RejectionKind.NOT_FOUND, "invitation not found")
        return _status_rejection(current)

    def resend(
        self, invitation_id: str, *, actor_user_id: Optional[str] = None
    ) -> Union[Invitation, Rejection]:
        """Regenerate token and deadline for a pending invitation and send it again."""
        now = self.clock.now()
        try:
            record = self.store.get_invitation(invitation_id)
            if record is None:
                return Rejection(RejectionKind.NOT_FOUND, "invitation not found")
            if record.status != InvitationStatus.PENDING:
                return _status_rejection(record)
            if record.resent_count >= self.max_resends:
                return Rejection(
                    RejectionKind.RATE_LIMITED,
                    "maximum resend limit reached; create a new invitation",
                )
            if record.last_resent_at and now - record.last_resent_at < self.resend_interval:
                return Rejection(
                    RejectionKind.RATE_LIMITED, "please wait before resending this invitation"
                )
            updated = self.store.reissue_invitation_token(
                record.id,
                expected_resent_count=record.resent_count,
                token=secrets.token_urlsafe(32),
                expires_at=now + self.ttl,
                at=now,
            )
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)
        if updated is None:
            return Rejection(RejectionKind.RATE_LIMITED, "invitation was resent concurrently")

        self.send(updated)
        record_audit(
            self.audit,
            "invitation_resent",
            clock=self.clock,
            actor_user_id=actor_user_id,
            subject_id=updated.id,
            table_name="user_invitation",
            description=f"Invitation resent ({updated.resent_count}/{self.max_resends})",
        )
        return updated

    def send(self, record: Invitation, inviter_name: Optional[str] = None) -> Optional[DeliveryResult]:
        if self.notifier is None:
            return None
        result = self.notifier.send_invitation(
            record.email,
            record.token,
            organisation_id=record.organisation_id,
            expires_at=record.expires_at,
            inviter_name=inviter_name,
        )
        if not result.success:
            logger.warning("invitation_delivery_failed", invitation_id=record.id, error=result.error)
        return result

    def list_for_organisation(
        self, organisation_id: str, status: Optional[InvitationStatus] = None
    ) -> Union[List[Invitation], Rejection]:
        try:
            return self.store.list_invitations(organisation_id, status)
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)

    def register(
        self,
        token: str,
        password: str,
        first_name: str,
        surname: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Union[User, Rejection]:
        """Create the invited user's account and mark the invitation accepted."""
        if len(password) < MIN_REGISTRATION_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_REGISTRATION_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        invitation = self.resolve(token)
        if isinstance(invitation, Rejection):
            return invitation
        try:
            if self.store.get_user_by_email(invitation.email) is not None:
                return Rejection(RejectionKind.CONFLICT, "an account with this email already exists")
            user = self.store.create_user(
                invitation.email,
                role=invitation.role,
                organisation_id=invitation.organisation_id,
                password_hash=hash_password(password),
                first_name=first_name.strip(),
                surname=surname.strip(),
                two_fa_enabled=invitation.force_2fa,
                # The invitation link itself proves the address
                email_verified=True,
            )
        except ConstraintViolation:
            return Rejection(RejectionKind.CONFLICT, "an account with this email already exists")
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)

        accepted = self.accept(token)
        if isinstance(accepted, Rejection):
            logger.warning(
                "invitation_accept_after_register_failed",
                invitation_id=invitation.id,
                user_id=user.id,
                reason=accepted.kind.value,
            )
            return accepted

        record_audit(
            self.audit,
            "user_registered",
            clock=self.clock,
            actor_user_id=user.id,
            subject_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            table_name="app_user",
            description=f"Registered via invitation {invitation.id}",
        )
        logger.info("invitation_registration_completed", user_id=user.id, invitation_id=invitation.id)
        return user
