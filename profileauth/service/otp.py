from __future__ import annotations

import asyncio
import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from profileauth.logging import get_logger, redact_target
from profileauth.service.errors import (
    AttemptsExhaustedError,
    ChannelUnavailableError,
    ExpiredError,
    NotFoundError,
    OTPMismatchError,
    ValidationError,
)
from profileauth.service.identifiers import normalize_email, normalize_phone
from profileauth.service.notifier import Notifier, NotifierUnavailable, render_otp_message
from profileauth.service.sources import Clock, RandomSource, SystemClock, SystemRandomSource
from profileauth.storage.memory import MemoryStore
from profileauth.storage.models import Channel, OTPAttemptOutcome, OTPPurpose, OTPRecord
from profileauth.storage.redis_cache import RedisCache


@dataclass(frozen=True)
class OTPIssued:
    record_id: str
    target: str
    purpose: OTPPurpose
    channel: Channel
    expires_at: datetime
    remaining_attempts: int


class OTPManager:
    """Issue, deliver and verify one-time numeric codes.

    At most one live code exists per (target, purpose). Only a peppered, salted
    HMAC of the code is stored. Every verify call is charged one attempt before
    the comparison runs, atomically with it.
    """

    def __init__(
        self,
        store: MemoryStore,
        notifier: Notifier,
        *,
        cache: Optional[RedisCache] = None,
        code_length: int = 6,
        ttl: timedelta = timedelta(minutes=10),
        max_attempts: int = 5,
        pepper: str = "",
        dispatch_timeout: float = 15.0,
        brand: str = "ProfileAuth",
        clock: Optional[Clock] = None,
        random_source: Optional[RandomSource] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.notifier = notifier
        self.code_length = code_length
        self.ttl = ttl
        self.max_attempts = max_attempts
        self._pepper = pepper.encode()
        self.dispatch_timeout = dispatch_timeout
        self.brand = brand
        self.clock = clock or SystemClock()
        self.random = random_source or SystemRandomSource()
        self.logger = get_logger(__name__)

    def normalize_target(self, target: str, channel: Channel) -> str:
        channel = Channel(channel)
        if channel == Channel.EMAIL:
            if "@" not in (target or ""):
                raise ValidationError(
                    "email channel requires an email address", detail={"field": "target"}
                )
            return normalize_email(target)
        if "@" in (target or ""):
            raise ValidationError(
                f"{channel.value} channel requires a phone number", detail={"field": "target"}
            )
        return normalize_phone(target)

    def check_purpose(self, purpose: OTPPurpose, channel: Channel) -> None:
        if purpose == OTPPurpose.VERIFY_EMAIL and channel != Channel.EMAIL:
            raise ValidationError("email verification codes go to email")
        if purpose == OTPPurpose.VERIFY_PHONE and not channel.is_phone:
            raise ValidationError("phone verification codes go to a phone channel")

    def _generate_code(self) -> str:
        return "".join(str(self.random.randbelow(10)) for _ in range(self.code_length))

    def _hash_code(self, salt: str, code: str) -> str:
        return hmac.new(
            self._pepper, f"{salt}:{code}".encode(), hashlib.sha256
        ).hexdigest()

    async def _put(self, record: OTPRecord) -> None:
        if self.cache:
            await self.cache.put_otp(record)
        else:
            self.store.put_otp(record)

    async def _get(self, target: str, purpose: OTPPurpose) -> Optional[OTPRecord]:
        if self.cache:
            return await self.cache.get_otp(target, purpose)
        return self.store.get_otp(target, purpose)

    async def _attempt(
        self, record: OTPRecord, candidate_hash: str, now: datetime
    ) -> Tuple[OTPAttemptOutcome, int]:
        if self.cache:
            return await self.cache.attempt_otp(
                record.target,
                record.purpose,
                record_id=record.id,
                candidate_hash=candidate_hash,
                now=now,
            )
        return self.store.attempt_otp(
            record.target,
            record.purpose,
            record_id=record.id,
            candidate_hash=candidate_hash,
            now=now,
        )

    async def _discard(self, record: OTPRecord) -> None:
        if self.cache:
            await self.cache.discard_otp(record.target, record.purpose, record_id=record.id)
        else:
            self.store.discard_otp(record.target, record.purpose, record_id=record.id)

    async def request(
        self, target: str, purpose: OTPPurpose | str, channel: Channel | str
    ) -> OTPIssued:
        """Issue a code for (target, purpose), superseding any live one, and send it."""
        purpose = OTPPurpose(purpose)
        channel = Channel(channel)
        self.check_purpose(purpose, channel)
        target = self.normalize_target(target, channel)

        now = self.clock.now()
        code = self._generate_code()
        salt = self.random.token_hex(16)
        record = OTPRecord(
            id=self.random.token_hex(12),
            target=target,
            purpose=purpose,
            code_hash=self._hash_code(salt, code),
            salt=salt,
            channel=channel,
            created_at=now,
            expires_at=now + self.ttl,
            remaining_attempts=self.max_attempts,
        )
        await self._put(record)

        payload = render_otp_message(
            purpose,
            code,
            ttl_minutes=int(self.ttl.total_seconds() // 60),
            brand=self.brand,
        )
        try:
            await asyncio.wait_for(
                self.notifier.send(channel, target, payload), timeout=self.dispatch_timeout
            )
        except (NotifierUnavailable, asyncio.TimeoutError) as exc:
            # A code nobody received must not stay verifiable
            await self._discard(record)
            reason = exc.reason if isinstance(exc, NotifierUnavailable) else "timeout"
            self.logger.warning(
                "otp_dispatch_failed",
                channel=channel.value,
                purpose=purpose.value,
                target=redact_target(target),
                reason=reason,
            )
            raise ChannelUnavailableError(
                "notification channel unavailable",
                detail={"channel": channel.value, "reason": reason},
            ) from exc

        self.logger.info(
            "otp_issued",
            channel=channel.value,
            purpose=purpose.value,
            target=redact_target(target),
            code_length=self.code_length,
        )
        return OTPIssued(
            record_id=record.id,
            target=target,
            purpose=purpose,
            channel=channel,
            expires_at=record.expires_at,
            remaining_attempts=record.remaining_attempts,
        )

    async def resend(
        self, target: str, purpose: OTPPurpose | str, channel: Channel | str
    ) -> OTPIssued:
        return await self.request(target, purpose, channel)

    async def verify(self, target: str, purpose: OTPPurpose | str, code: str) -> str:
        """Consume the live code for (target, purpose); returns the normalized target.

        Raises NotFoundError, ExpiredError, AttemptsExhaustedError or OTPMismatchError.
        """
        purpose = OTPPurpose(purpose)
        try:
            target = (
                normalize_email(target) if "@" in (target or "") else normalize_phone(target)
            )
        except ValidationError:
            raise NotFoundError("no active code") from None
        record = await self._get(target, purpose)
        if not record:
            raise NotFoundError("no active code", detail={"purpose": purpose.value})

        now = self.clock.now()
        candidate = self._hash_code(record.salt, (code or "").strip())
        outcome, remaining = await self._attempt(record, candidate, now)
        log_ctx = {"purpose": purpose.value, "target": redact_target(target)}
        if outcome == OTPAttemptOutcome.VERIFIED:
            self.logger.info("otp_verified", **log_ctx)
            return target
        if outcome == OTPAttemptOutcome.MISMATCH:
            self.logger.info("otp_mismatch", remaining_attempts=remaining, **log_ctx)
            raise OTPMismatchError(
                "code does not match", detail={"remaining_attempts": remaining}
            )
        if outcome == OTPAttemptOutcome.EXHAUSTED:
            self.logger.warning("otp_attempts_exhausted", **log_ctx)
            raise AttemptsExhaustedError("too many incorrect codes")
        if outcome == OTPAttemptOutcome.EXPIRED:
            self.logger.info("otp_expired", **log_ctx)
            raise ExpiredError("code expired")
        raise NotFoundError("no active code", detail={"purpose": purpose.value})

    def sweep(self) -> int:
        """Drop expired in-process records; Redis expires its own keys."""
        return self.store.purge_otps(self.clock.now())
