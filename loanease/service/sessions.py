from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol, Union

from loanease.config import Settings
from loanease.logging import get_logger
from loanease.service.errors import Rejection, RejectionKind
from loanease.service.tokens import TokenCodec, TokenType, VerifiedToken
from loanease.storage.errors import StorageUnavailable
from loanease.storage.models import User

logger = get_logger(__name__)


class UserDirectory(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...


@dataclass(frozen=True)
class IdentityClaims:
    """Identity facts embedded in an access token at issuance time."""

    subject_id: str
    email: str
    role: str
    organisation_id: Optional[str] = None
    two_fa_enabled: bool = False

    @classmethod
    def from_user(cls, user: User) -> "IdentityClaims":
        return cls(
            subject_id=user.id,
            email=user.email,
            role=user.role,
            organisation_id=user.organisation_id,
            two_fa_enabled=user.two_fa_enabled,
        )

    def to_claims(self) -> dict[str, Any]:
        return {
            "sub": self.subject_id,
            "email": self.email,
            "role": self.role,
            "organisation_id": self.organisation_id,
            "two_fa_enabled": self.two_fa_enabled,
        }

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "IdentityClaims":
        """Rebuild identity from verified claims; raises ``ValueError`` if incomplete."""
        subject_id = claims.get("sub")
        email = claims.get("email")
        role = claims.get("role")
        if not isinstance(subject_id, str) or not isinstance(email, str) or not isinstance(role, str):
            raise ValueError("access token is missing identity claims")
        organisation_id = claims.get("organisation_id")
        return cls(
            subject_id=subject_id,
            email=email,
            role=role,
            organisation_id=organisation_id if isinstance(organisation_id, str) else None,
            two_fa_enabled=bool(claims.get("two_fa_enabled", False)),
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    identity: IdentityClaims
    token_type: str = "bearer"


class SessionManager:
    """Issues access/refresh pairs and rotates them from a refresh token.

    Refresh tokens are stateless: validity is signature + expiry + a live,
    active user at rotation time. Rotating the same refresh token twice
    yields two independent pairs.
    """

    def __init__(self, codec: TokenCodec, users: UserDirectory, settings: Settings) -> None:
        self.codec = codec
        self.users = users
        self.access_ttl = settings.access_token_ttl
        self.refresh_ttl = settings.refresh_token_ttl

    def issue_pair(self, identity: IdentityClaims) -> TokenPair:
        now = self.codec.clock.now()
        access = self.codec.sign(identity.to_claims(), TokenType.ACCESS, self.access_ttl)
        refresh = self.codec.sign({"sub": identity.subject_id}, TokenType.REFRESH, self.refresh_ttl)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=now + self.access_ttl,
            refresh_expires_at=now + self.refresh_ttl,
            identity=identity,
        )

    def rotate(self, refresh_token: str) -> Union[TokenPair, Rejection]:
        verified = self.codec.verify(refresh_token, TokenType.REFRESH)
        if isinstance(verified, Rejection):
            logger.info("refresh_rejected", reason=verified.kind.value)
            return verified
        user_id = verified.claims.get("sub")
        if not isinstance(user_id, str):
            return Rejection(RejectionKind.MALFORMED, "refresh token has no subject")
        try:
            user = self.users.get_user(user_id)
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)
        if user is None:
            logger.warning("refresh_user_missing", user_id=user_id)
            return Rejection(RejectionKind.USER_NOT_FOUND)
        if not user.is_active:
            logger.warning("refresh_user_inactive", user_id=user_id)
            return Rejection(RejectionKind.USER_INACTIVE)
        return self.issue_pair(IdentityClaims.from_user(user))

    def identity_from(self, verified: VerifiedToken) -> IdentityClaims:
        return IdentityClaims.from_claims(verified.claims)
