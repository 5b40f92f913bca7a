from datetime import timedelta

import pytest

from loanease.service.errors import Rejection, RejectionKind
from loanease.service.sessions import IdentityClaims, SessionManager, TokenPair
from loanease.service.tokens import TokenType, VerifiedToken
from loanease.storage.errors import StorageUnavailable


@pytest.fixture
def sessions(codec, store, settings):
    return SessionManager(codec, store, settings)


class TestIssuePair:
    def test_pair_carries_identity_and_lifetimes(self, sessions, codec, clock, active_user, settings):
        pair = sessions.issue_pair(IdentityClaims.from_user(active_user))

        assert isinstance(pair, TokenPair)
        assert pair.access_expires_at == clock.now() + settings.access_token_ttl
        assert pair.refresh_expires_at == clock.now() + settings.refresh_token_ttl

        access = codec.verify(pair.access_token, TokenType.ACCESS)
        assert isinstance(access, VerifiedToken)
        assert access.claims["sub"] == active_user.id
        assert access.claims["role"] == "referrer_admin"
        assert access.claims["organisation_id"] == "org-1"

    def test_refresh_token_only_names_the_subject(self, sessions, codec, active_user):
        pair = sessions.issue_pair(IdentityClaims.from_user(active_user))
        refresh = codec.verify(pair.refresh_token, TokenType.REFRESH)
        assert refresh.claims == {"sub": active_user.id}


class TestRotate:
    def test_rotation_reflects_current_user_record(self, sessions, store, active_user, codec):
        pair = sessions.issue_pair(IdentityClaims.from_user(active_user))
        store.update_user_role(active_user.id, "admin_team", None)

        rotated = sessions.rotate(pair.refresh_token)

        assert isinstance(rotated, TokenPair)
        assert rotated.identity.role == "admin_team"
        assert codec.verify(rotated.access_token, TokenType.ACCESS).claims["role"] == "admin_team"

    def test_refresh_token_can_be_rotated_more_than_once(self, sessions, active_user):
        pair = sessions.issue_pair(IdentityClaims.from_user(active_user))
        assert isinstance(sessions.rotate(pair.refresh_token), TokenPair)
        assert isinstance(sessions.rotate(pair.refresh_token), TokenPair)

    def test_access_token_cannot_rotate(self, sessions, active_user):
        pair = sessions.issue_pair(IdentityClaims.from_user(active_user))
        result = sessions.rotate(pair.access_token)
        assert isinstance(result, Rejection)
        assert result.kind == RejectionKind.WRONG_TYPE

    def test_expired_refresh_token(self, sessions, active_user, clock, settings):
        pair = sessions.issue_pair(IdentityClaims.from_user(active_user))
        clock.advance(settings.refresh_token_ttl)
        assert sessions.rotate(pair.refresh_token).kind == RejectionKind.EXPIRED

    def test_inactive_user_cannot_rotate(self, sessions, store, active_user):
        pair = sessions.issue_pair(IdentityClaims.from_user(active_user))
        store.set_user_active(active_user.id, False)
        assert sessions.rotate(pair.refresh_token).kind == RejectionKind.USER_INACTIVE

    def test_deleted_user_cannot_rotate(self, sessions, codec):
        token = codec.sign({"sub": "ghost"}, TokenType.REFRESH, timedelta(days=1))
        assert sessions.rotate(token).kind == RejectionKind.USER_NOT_FOUND

    def test_store_outage_is_reported(self, codec, settings, active_user):
        class DownStore:
            def get_user(self, user_id):
                raise StorageUnavailable("connection refused", operation="get_user")

            def get_user_by_email(self, email):
                raise StorageUnavailable("connection refused")

        sessions = SessionManager(codec, DownStore(), settings)
        pair = sessions.issue_pair(IdentityClaims.from_user(active_user))
        assert sessions.rotate(pair.refresh_token).kind == RejectionKind.DEPENDENCY_UNAVAILABLE


class TestIdentityClaims:
    def test_from_claims_requires_subject_email_and_role(self):
        with pytest.raises(ValueError):
            IdentityClaims.from_claims({"sub": "user-1", "email": "a@example.com"})

    def test_round_trip_through_claims(self, active_user):
        identity = IdentityClaims.from_user(active_user)
        assert IdentityClaims.from_claims(identity.to_claims()) == identity
