from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from profileauth.logging import get_logger
from profileauth.service.errors import (
    MalformedTokenError,
    SignatureInvalidError,
    TokenExpiredError,
)
from profileauth.service.sources import Clock, RandomSource, SystemClock, SystemRandomSource
from profileauth.storage.models import Role

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
CHALLENGE = "2fa"


@dataclass(frozen=True)
class SigningKey:
    kid: str
    secret: str

    def __repr__(self) -> str:
        return f"SigningKey(kid={self.kid!r}, secret=***)"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


def hash_token(token: str) -> str:
    """SHA-256 hex digest stored in place of a raw refresh token."""
    return hashlib.sha256(token.encode()).hexdigest()


class TokenIssuer:
    """Mint and verify HS256 tokens.

    The signing key is injected; extra verification keys let tokens signed by a
    retired key validate until they expire. Verification never touches storage.
    """

    def __init__(
        self,
        signing_key: SigningKey,
        *,
        verification_keys: Optional[Mapping[str, str]] = None,
        issuer: str = "profileauth",
        audience: str = "profile-clients",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=30),
        challenge_ttl: timedelta = timedelta(minutes=5),
        leeway: timedelta = timedelta(0),
        clock: Optional[Clock] = None,
        random_source: Optional[RandomSource] = None,
    ) -> None:
        self.signing_key = signing_key
        self._keys = dict(verification_keys or {})
        self._keys[signing_key.kid] = signing_key.secret
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.challenge_ttl = challenge_ttl
        self.leeway = leeway
        self.clock = clock or SystemClock()
        self.random = random_source or SystemRandomSource()

    # ---------------------------------------------------------------- issuing

    def issue_access_token(
        self, user_id: str, session_id: str, role: Role | str
    ) -> IssuedToken:
        return self._issue(
            {"typ": ACCESS, "sub": user_id, "sid": session_id, "role": Role(role).value},
            self.access_ttl,
        )

    def issue_refresh_token(
        self,
        user_id: str,
        session_id: str,
        token_version: int,
        *,
        expires_at: Optional[datetime] = None,
    ) -> IssuedToken:
        """Mint a refresh token; ``expires_at`` caps the default TTL."""
        return self._issue(
            {
                "typ": REFRESH,
                "sub": user_id,
                "sid": session_id,
                "token_version": token_version,
            },
            self.refresh_ttl,
            cap=expires_at,
        )

    def issue_challenge_token(self, user_id: str, *, method: str) -> IssuedToken:
        """Short-lived proof that the first factor (``method``) already succeeded."""
        return self._issue(
            {"typ": CHALLENGE, "sub": user_id, "amr": method},
            self.challenge_ttl,
        )

    def _issue(
        self,
        claims: dict[str, Any],
        ttl: timedelta,
        *,
        cap: Optional[datetime] = None,
    ) -> IssuedToken:
        now = self.clock.now()
        expires_at = now + ttl
        if cap is not None and cap < expires_at:
            expires_at = cap
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            # Unique per mint so two tokens never share a hash
            "jti": self.random.token_hex(16),
        }
        return IssuedToken(token=self._encode_jwt(payload), expires_at=expires_at)

    # -------------------------------------------------------------- verifying

    def verify(self, token: str, *, expected_type: Optional[str] = None) -> dict[str, Any]:
        """Return the claims of ``token`` or raise.

        Raises MalformedTokenError, SignatureInvalidError or TokenExpiredError.
        """
        payload = self._decode_jwt(token)
        if expected_type and payload.get("typ") != expected_type:
            raise MalformedTokenError(
                "unexpected token type", detail={"expected": expected_type}
            )
        for claim in ("sub", "typ"):
            if not isinstance(payload.get(claim), str):
                raise MalformedTokenError("token missing claim", detail={"claim": claim})
        if payload["typ"] in (ACCESS, REFRESH) and not isinstance(payload.get("sid"), str):
            raise MalformedTokenError("token missing claim", detail={"claim": "sid"})
        if payload["typ"] == REFRESH and not isinstance(payload.get("token_version"), int):
            raise MalformedTokenError("token missing claim", detail={"claim": "token_version"})
        return payload

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, secret: str, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT", "kid": self.signing_key.kid}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(self.signing_key.secret, signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise MalformedTokenError("token must be a string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedTokenError("token must have three segments") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise MalformedTokenError("token header is not valid JSON") from None
        if not isinstance(header, dict):
            raise MalformedTokenError("token header is not an object")
        # Reject anything but HS256 to rule out algorithm confusion
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise MalformedTokenError("unsupported token algorithm")

        secret = self._keys.get(header.get("kid"))
        if secret is None:
            logger.warning("jwt_unknown_key", kid=header.get("kid"))
            raise SignatureInvalidError("unknown signing key")
        expected_sig = self._sign(secret, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise SignatureInvalidError("token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedTokenError("token payload is not valid JSON") from None
        if not isinstance(payload, dict):
            raise MalformedTokenError("token payload is not an object")
        if payload.get("iss") != self.issuer:
            raise MalformedTokenError("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise MalformedTokenError("token audience mismatch")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise MalformedTokenError("token has no usable expiry") from None
        if exp_ts <= self.clock.now().timestamp() - self.leeway.total_seconds():
            raise TokenExpiredError("token expired")
        return payload
