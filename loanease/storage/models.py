from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    role: str = "referrer_team"
    organisation_id: Optional[str] = None
    is_active: bool = True
    two_fa_enabled: bool = False
    email_verified: bool = False
    password_hash: Optional[str] = None
    first_name: Optional[str] = None
    surname: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def display_name(self) -> Optional[str]:
        parts = [p for p in (self.first_name, self.surname) if p]
        return " ".join(parts) or None


@dataclass
class OneTimeCode:
    id: str
    user_id: str
    code: str
    created_at: datetime
    expires_at: datetime
    consumed: bool = False
    consumed_at: Optional[datetime] = None

    @classmethod
    def new(cls, user_id: str, code: str, *, now: datetime, expires_at: datetime) -> "OneTimeCode":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            code=code,
            created_at=now,
            expires_at=expires_at,
        )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class PasswordResetToken:
    token: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None

    @property
    def is_used(self) -> bool:
        return self.used_at is not None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class EmailVerificationToken:
    token: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None

    @property
    def is_used(self) -> bool:
        return self.used_at is not None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"


@dataclass
class Invitation:
    id: str
    token: str
    email: str
    organisation_id: str
    expires_at: datetime
    status: InvitationStatus = InvitationStatus.PENDING
    role: str = "referrer_team"
    force_2fa: bool = False
    invited_by: Optional[str] = None
    resent_count: int = 0
    last_resent_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class AuditEntry:
    action: str
    timestamp: datetime
    actor_user_id: Optional[str] = None
    subject_id: Optional[str] = None
    ip_address: Optional[str] = None
    table_name: str = "auth"
    description: Optional[str] = None
    user_agent: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
