from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Union

from loanease.config import Settings
from loanease.logging import get_logger
from loanease.service.clock import Clock, SystemClock
from loanease.service.errors import Rejection, RejectionKind

logger = get_logger(__name__)

_ALGORITHM = "HS256"
RESERVED_CLAIMS = frozenset({"iss", "aud", "iat", "exp", "token_type"})


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class VerifiedToken:
    """Claims recovered from a token whose signature, type and expiry checked out."""

    claims: dict[str, Any]
    token_type: TokenType
    issued_at: datetime
    expires_at: datetime


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _json_segment(segment: str) -> dict[str, Any]:
    value = json.loads(_decode_segment(segment))
    if not isinstance(value, dict):
        raise ValueError("token segment is not an object")
    return value


class TokenCodec:
    """Signs and verifies HS256 tokens with a separate key per token type.

    The codec is pure apart from reading the clock: it never touches storage,
    so single-use semantics belong to the services that own each record.
    """

    def __init__(self, settings: Settings, clock: Optional[Clock] = None) -> None:
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.leeway = timedelta(seconds=settings.token_leeway_seconds)
        self.clock = clock or SystemClock()
        self._keys = {
            TokenType.ACCESS: settings.jwt_secret.encode(),
            TokenType.REFRESH: settings.jwt_refresh_secret.encode(),
        }

    def _signature(self, token_type: TokenType, signing_input: str) -> str:
        digest = hmac.new(self._keys[token_type], signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def sign(
        self,
        claims: Mapping[str, Any],
        token_type: Union[TokenType, str],
        ttl: timedelta,
    ) -> str:
        token_type = TokenType(token_type)
        reserved = RESERVED_CLAIMS.intersection(claims)
        if reserved:
            raise ValueError(f"reserved claim names: {', '.join(sorted(reserved))}")
        issued = self.clock.now()
        payload = dict(claims)
        payload.update(
            {
                "iss": self.issuer,
                "aud": self.audience,
                "iat": issued.timestamp(),
                "exp": (issued + ttl).timestamp(),
                "token_type": token_type.value,
            }
        )
        header_enc = _encode_segment(
            json.dumps({"alg": _ALGORITHM, "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(token_type, signing_input)}"

    def verify(
        self, token: str, expected_type: Union[TokenType, str]
    ) -> Union[VerifiedToken, Rejection]:
        expected_type = TokenType(expected_type)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
            header = _json_segment(header_b64)
            payload = _json_segment(payload_b64)
        except (AttributeError, ValueError, TypeError, RecursionError):
            return Rejection(RejectionKind.MALFORMED)

        # Reject algorithm confusion before any key is used
        if header.get("alg") != _ALGORITHM:
            logger.warning("token_invalid_algorithm", alg=header.get("alg"))
            return Rejection(RejectionKind.BAD_SIGNATURE)

        try:
            claimed_type = TokenType(payload.get("token_type"))
        except ValueError:
            return Rejection(RejectionKind.MALFORMED, "unknown token type")

        expected_sig = self._signature(claimed_type, f"{header_b64}.{payload_b64}")
        # Byte comparison; compare_digest refuses non-ASCII str operands
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8", "surrogatepass")):
            return Rejection(RejectionKind.BAD_SIGNATURE)

        if payload.get("iss") != self.issuer:
            return Rejection(RejectionKind.MALFORMED, "unexpected issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return Rejection(RejectionKind.MALFORMED, "unexpected audience")

        if claimed_type != expected_type:
            return Rejection(RejectionKind.WRONG_TYPE)

        try:
            issued_at = datetime.fromtimestamp(float(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError):
            return Rejection(RejectionKind.MALFORMED, "missing or invalid timestamps")
        if self.clock.now() >= expires_at + self.leeway:
            return Rejection(RejectionKind.EXPIRED, "token has expired")

        claims = {key: value for key, value in payload.items() if key not in RESERVED_CLAIMS}
        return VerifiedToken(
            claims=claims,
            token_type=claimed_type,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def second_factor_proof(self, subject_id: str) -> str:
        """Value of the two-factor cookie for ``subject_id``, bound to the access key."""
        digest = hmac.new(
            self._keys[TokenType.ACCESS], f"2fa:{subject_id}".encode(), hashlib.sha256
        ).digest()
        return f"{subject_id}.{_encode_segment(digest)}"

    def check_second_factor_proof(self, subject_id: str, proof: Optional[str]) -> bool:
        if not proof:
            return False
        expected = self.second_factor_proof(subject_id)
        return hmac.compare_digest(expected.encode(), proof.encode("utf-8", "surrogatepass"))


__all__ = ["RESERVED_CLAIMS", "TokenCodec", "TokenType", "VerifiedToken"]
