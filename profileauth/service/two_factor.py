from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass, replace
from datetime import datetime
from typing import List, Optional
from urllib.parse import quote, urlencode

from profileauth.logging import get_logger
from profileauth.service.errors import InvalidCodeError, NotEnabledError
from profileauth.service.sources import Clock, RandomSource, SystemClock, SystemRandomSource
from profileauth.storage.memory import MemoryStore
from profileauth.storage.models import TwoFactorConfig, User

# No 0/O or 1/I so codes survive being read aloud or written down
RECOVERY_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


@dataclass(frozen=True)
class TwoFactorEnrollment:
    secret: str
    otpauth_uri: str
    recovery_codes: List[str]


class TwoFactorController:
    """TOTP enrollment, validation and removal with single-use recovery codes."""

    def __init__(
        self,
        store: MemoryStore,
        *,
        issuer: str = "ProfileAuth",
        interval: int = 30,
        digits: int = 6,
        window: int = 1,
        recovery_code_count: int = 10,
        pepper: str = "",
        clock: Optional[Clock] = None,
        random_source: Optional[RandomSource] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.interval = interval
        self.digits = digits
        self.window = window
        self.recovery_code_count = recovery_code_count
        self._pepper = pepper.encode()
        self.clock = clock or SystemClock()
        self.random = random_source or SystemRandomSource()
        self.logger = get_logger(__name__)

    # ------------------------------------------------------------------ codes

    def _generate_secret(self) -> str:
        return base64.b32encode(self.random.token_bytes(20)).decode().rstrip("=")

    def generate_totp(self, secret: str, at: datetime) -> str:
        return self._code_for_step(secret, self._step(at))

    def _step(self, at: datetime) -> int:
        return int(at.timestamp() // self.interval)

    def _code_for_step(self, secret: str, step: int) -> str:
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        key = base64.b32decode(padded, True)
        # SHA1 per RFC 6238 defaults; authenticator apps assume it
        digest = hmac.new(key, step.to_bytes(8, "big"), hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def _match_step(self, secret: str, code: str) -> Optional[int]:
        current = self._step(self.clock.now())
        for offset in range(-self.window, self.window + 1):
            step = current + offset
            if hmac.compare_digest(self._code_for_step(secret, step), code):
                return step
        return None

    def _is_totp_shaped(self, code: str) -> bool:
        return code.isdigit() and len(code) == self.digits

    def _generate_recovery_codes(self) -> List[str]:
        codes = []
        for _ in range(self.recovery_code_count):
            raw = "".join(self.random.choice(RECOVERY_CODE_ALPHABET) for _ in range(8))
            codes.append(f"{raw[:4]}-{raw[4:]}")
        return codes

    def _hash_recovery_code(self, code: str) -> str:
        normalized = code.replace("-", "").replace(" ", "").upper()
        return hmac.new(self._pepper, normalized.encode(), hashlib.sha256).hexdigest()

    def otpauth_uri(self, secret: str, account: str) -> str:
        label = quote(f"{self.issuer}:{account}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": self.digits,
                "period": self.interval,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    # ------------------------------------------------------------- lifecycle

    def enroll(self, user: User, *, code: Optional[str] = None) -> TwoFactorEnrollment:
        """Stage a fresh secret and recovery codes; nothing changes until confirmed.

        While 2FA is enabled, staging a replacement needs a valid current TOTP or
        recovery code, so a session token alone cannot swap the secret.
        """
        cfg = self.store.get_two_factor(user.id)
        if cfg and cfg.enabled:
            if not code:
                self.logger.info("two_factor_reenroll_refused", user_id=user.id)
                raise InvalidCodeError("current two-factor code required to re-enroll")
            self._consume(cfg, code)
            # Reload so the step claim or burned recovery code is not written back
            cfg = self.store.get_two_factor(user.id)
        secret = self._generate_secret()
        recovery_codes = self._generate_recovery_codes()
        pending_hashes = [self._hash_recovery_code(c) for c in recovery_codes]
        cfg = cfg or TwoFactorConfig(user_id=user.id, created_at=self.clock.now())
        self.store.save_two_factor(
            replace(
                cfg,
                pending_secret=secret,
                pending_recovery_code_hashes=pending_hashes,
            )
        )
        self.logger.info("two_factor_enrollment_started", user_id=user.id)
        return TwoFactorEnrollment(
            secret=secret,
            otpauth_uri=self.otpauth_uri(secret, user.email),
            recovery_codes=recovery_codes,
        )

    def confirm_enrollment(self, user_id: str, code: str) -> None:
        cfg = self.store.get_two_factor(user_id)
        if not cfg or not cfg.pending_secret:
            raise InvalidCodeError("no pending two-factor enrollment")
        code = (code or "").strip()
        step = self._match_step(cfg.pending_secret, code) if self._is_totp_shaped(code) else None
        if step is None:
            self.logger.info("two_factor_confirm_failed", user_id=user_id)
            raise InvalidCodeError("invalid two-factor code")
        self.store.save_two_factor(
            replace(
                cfg,
                secret=cfg.pending_secret,
                enabled=True,
                recovery_code_hashes=list(cfg.pending_recovery_code_hashes),
                pending_secret=None,
                pending_recovery_code_hashes=[],
                last_used_step=step,
                confirmed_at=self.clock.now(),
            )
        )
        self.logger.info("two_factor_enabled", user_id=user_id)

    def _consume(self, cfg: TwoFactorConfig, code: str) -> str:
        """Check ``code`` as TOTP or recovery code; returns the method that matched."""
        code = (code or "").strip()
        if self._is_totp_shaped(code):
            step = self._match_step(cfg.secret, code)
            if step is not None and self.store.claim_totp_step(cfg.user_id, step):
                return "totp"
            self.logger.info("two_factor_code_rejected", user_id=cfg.user_id)
            raise InvalidCodeError("invalid two-factor code")
        remaining = self.store.burn_recovery_code(cfg.user_id, self._hash_recovery_code(code))
        if remaining is None:
            self.logger.info("two_factor_recovery_rejected", user_id=cfg.user_id)
            raise InvalidCodeError("invalid two-factor code")
        self.logger.info(
            "two_factor_recovery_code_used",
            user_id=cfg.user_id,
            recovery_codes_remaining=remaining,
        )
        return "recovery"

    def _enabled_config(self, user_id: str) -> TwoFactorConfig:
        cfg = self.store.get_two_factor(user_id)
        if not cfg or not cfg.enabled or not cfg.secret:
            raise NotEnabledError("two-factor authentication is not enabled")
        return cfg

    def validate(self, user_id: str, code: str) -> str:
        return self._consume(self._enabled_config(user_id), code)

    def disable(self, user_id: str, code: str) -> None:
        """Remove 2FA; a valid TOTP or recovery code is always required."""
        self._consume(self._enabled_config(user_id), code)
        self.store.delete_two_factor(user_id)
        self.logger.info("two_factor_disabled", user_id=user_id)

    def regenerate_recovery_codes(self, user_id: str, code: str) -> List[str]:
        self._consume(self._enabled_config(user_id), code)
        cfg = self._enabled_config(user_id)
        codes = self._generate_recovery_codes()
        self.store.save_two_factor(
            replace(cfg, recovery_code_hashes=[self._hash_recovery_code(c) for c in codes])
        )
        self.logger.info("two_factor_recovery_codes_regenerated", user_id=user_id)
        return codes

    def is_enabled(self, user_id: str) -> bool:
        cfg = self.store.get_two_factor(user_id)
        return bool(cfg and cfg.enabled)

    def status(self, user_id: str) -> dict:
        cfg = self.store.get_two_factor(user_id)
        return {
            "enabled": bool(cfg and cfg.enabled),
            "pending_enrollment": bool(cfg and cfg.pending_secret),
            "recovery_codes_remaining": len(cfg.recovery_code_hashes) if cfg else 0,
        }
