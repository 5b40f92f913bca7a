from __future__ import annotations

from typing import Optional, Union

from loanease.logging import get_logger
from loanease.service.errors import Rejection, RejectionKind
from loanease.service.sessions import IdentityClaims, UserDirectory
from loanease.service.tokens import TokenCodec, TokenType
from loanease.storage.errors import StorageUnavailable
from loanease.storage.models import User

logger = get_logger(__name__)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class CredentialGate:
    """Admits a request by its access token.

    Every failure surfaces as ``UNAUTHENTICATED`` with the codec's reason in
    ``cause``. The gate never refreshes tokens itself. Claims are advisory:
    handlers that change state re-read the user with ``load_live_user``.
    """

    def __init__(self, codec: TokenCodec, users: UserDirectory) -> None:
        self.codec = codec
        self.users = users

    def authenticate(self, raw_token: Optional[str]) -> Union[IdentityClaims, Rejection]:
        if not raw_token:
            return Rejection(RejectionKind.UNAUTHENTICATED)
        verified = self.codec.verify(raw_token, TokenType.ACCESS)
        if isinstance(verified, Rejection):
            logger.info("credential_rejected", reason=verified.kind.value)
            return verified.wrap(RejectionKind.UNAUTHENTICATED)
        try:
            return IdentityClaims.from_claims(verified.claims)
        except ValueError:
            return Rejection(RejectionKind.UNAUTHENTICATED, cause=RejectionKind.MALFORMED)

    def authenticate_request(
        self, authorization: Optional[str], access_cookie: Optional[str]
    ) -> Union[IdentityClaims, Rejection]:
        """Authenticate from ``Authorization: Bearer`` first, then the access cookie."""
        bearer = extract_bearer(authorization)
        return self.authenticate(bearer or access_cookie)

    def require_second_factor(
        self, identity: IdentityClaims, proof: Optional[str]
    ) -> Optional[Rejection]:
        """Refuse 2FA-enabled identities that lack a proof bound to their subject."""
        if not identity.two_fa_enabled:
            return None
        if self.codec.check_second_factor_proof(identity.subject_id, proof):
            return None
        logger.info("second_factor_missing", user_id=identity.subject_id)
        return Rejection(RejectionKind.UNAUTHORIZED, "two-factor verification required")

    def load_live_user(self, identity: IdentityClaims) -> Union[User, Rejection]:
        try:
            user = self.users.get_user(identity.subject_id)
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)
        if user is None:
            return Rejection(RejectionKind.UNAUTHENTICATED, cause=RejectionKind.USER_NOT_FOUND)
        if not user.is_active:
            return Rejection(RejectionKind.UNAUTHENTICATED, cause=RejectionKind.USER_INACTIVE)
        return user

    def refresh_identity(self, identity: IdentityClaims) -> Union[IdentityClaims, Rejection]:
        """Replace advisory claims with facts from the live user record."""
        user = self.load_live_user(identity)
        if isinstance(user, Rejection):
            return user
        return IdentityClaims.from_user(user)
