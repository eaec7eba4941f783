from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.errors import InvalidToken

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_token_id: str
    refresh_token_id: str
    access_expires_at: int
    refresh_expires_at: int

    def to_response(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "bearer",
            "expires_at": self.access_expires_at,
        }


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    email: str
    token_id: str
    token_type: str
    issued_at: int
    expires_at: int

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        return cls(
            subject_id=str(payload["sub"]),
            email=str(payload.get("email", "")),
            token_id=str(payload["jti"]),
            token_type=str(payload.get("typ", "")),
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(payload["exp"]),
        )


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


class TokenIssuer:
    """Mints and checks HS256 access/refresh pairs.

    Access and refresh tokens are signed with different secrets so a refresh
    token can never be presented as an access token (and vice versa) even if
    the ``typ`` claim were ignored. No I/O happens here.
    """

    def __init__(
        self, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> None:
        if not settings.jwt_access_secret or not settings.jwt_refresh_secret:
            raise ValueError("JWT signing secrets are not configured")
        self._access_secret = settings.jwt_access_secret
        self._refresh_secret = settings.jwt_refresh_secret
        self._issuer = settings.jwt_issuer
        self._access_ttl = settings.access_token_ttl_seconds
        self._refresh_ttl = settings.refresh_token_ttl_seconds
        self._leeway = settings.clock_skew_leeway_seconds
        self._clock = clock

    @property
    def access_ttl_seconds(self) -> int:
        return self._access_ttl

    @property
    def refresh_ttl_seconds(self) -> int:
        return self._refresh_ttl

    def _encode_jwt(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_sign(secret, signing_input)}"

    def _payload(self, subject_id: str, email: str, token_type: str, ttl: int, now: int) -> dict:
        return {
            "sub": subject_id,
            "email": email,
            "jti": secrets.token_hex(16),
            "typ": token_type,
            "iat": now,
            "exp": now + ttl,
            "iss": self._issuer,
        }

    def issue(self, subject_id: str, email: str) -> TokenPair:
        now = int(self._clock())
        access_payload = self._payload(subject_id, email, ACCESS, self._access_ttl, now)
        refresh_payload = self._payload(subject_id, email, REFRESH, self._refresh_ttl, now)
        return TokenPair(
            access_token=self._encode_jwt(access_payload, self._access_secret),
            refresh_token=self._encode_jwt(refresh_payload, self._refresh_secret),
            access_token_id=access_payload["jti"],
            refresh_token_id=refresh_payload["jti"],
            access_expires_at=access_payload["exp"],
            refresh_expires_at=refresh_payload["exp"],
        )

    def verify_access(self, token: str) -> TokenClaims:
        return self._verify(token, self._access_secret, ACCESS)

    def verify_refresh(self, token: str) -> TokenClaims:
        return self._verify(token, self._refresh_secret, REFRESH)

    def _verify(self, token: Any, secret: str, token_type: str) -> TokenClaims:
        if not isinstance(token, str):
            raise InvalidToken()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidToken() from None

        # Pin the algorithm so a forged "none"/asymmetric header is rejected
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed", token_type=token_type)
            raise InvalidToken() from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidToken()

        expected_sig = _sign(secret, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidToken()
        try:
            payload = json.loads(_decode_segment(payload_b64))
            claims = TokenClaims.from_payload(payload)
        except (ValueError, TypeError, KeyError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidToken() from None
        if payload.get("iss") != self._issuer:
            raise InvalidToken()
        if claims.token_type != token_type:
            raise InvalidToken()
        if claims.expires_at <= self._clock() - self._leeway:
            raise InvalidToken("Token expired")
        return claims

    def decode(self, token: Any) -> Optional[TokenClaims]:
        """Read claims without checking signature or expiry.

        Only for bookkeeping on tokens that may already be invalid, such as
        finding the id of an expired refresh token during logout.
        """
        if not isinstance(token, str):
            return None
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(_decode_segment(payload_b64))
            return TokenClaims.from_payload(payload)
        except (ValueError, TypeError, KeyError, AttributeError):
            return None
