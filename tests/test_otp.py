"""One-time code issue/verify tests."""

import asyncio
import hashlib
import hmac

import pytest

from profileauth.service.errors import (
    AttemptsExhaustedError,
    ChannelUnavailableError,
    ExpiredError,
    NotFoundError,
    OTPMismatchError,
    ValidationError,
)
from profileauth.service.otp import OTPManager
from profileauth.storage.models import Channel, OTPPurpose

EMAIL = "player@example.com"
RESET = OTPPurpose.RESET_PASSWORD


class SlowNotifier:
    async def send(self, channel, target, payload):
        await asyncio.sleep(1)


class TestRequest:
    @pytest.mark.asyncio
    async def test_request_sends_code(self, otp_manager, notifier, clock):
        issued = await otp_manager.request(EMAIL, RESET, Channel.EMAIL)

        channel, target, payload = notifier.sent[-1]
        assert channel == Channel.EMAIL
        assert target == EMAIL
        assert len(notifier.last_code()) == 6
        assert "Reset your password" in payload.subject
        assert issued.remaining_attempts == 5
        assert issued.expires_at == clock.now() + otp_manager.ttl

    @pytest.mark.asyncio
    async def test_only_hash_is_stored(self, otp_manager, memory_store, random_source):
        random_source.queue_code("424242")
        await otp_manager.request(EMAIL, RESET, "email")

        record = memory_store.get_otp(EMAIL, RESET)
        assert record.code_hash != "424242"
        expected = hmac.new(
            b"test-pepper", f"{record.salt}:424242".encode(), hashlib.sha256
        ).hexdigest()
        assert record.code_hash == expected

    @pytest.mark.asyncio
    async def test_target_is_normalized(self, otp_manager, notifier):
        issued = await otp_manager.request("  Player@Example.COM ", RESET, Channel.EMAIL)

        assert issued.target == EMAIL
        assert notifier.sent[-1][1] == EMAIL
        assert await otp_manager.verify(EMAIL, RESET, notifier.last_code()) == EMAIL

    @pytest.mark.asyncio
    async def test_phone_target(self, otp_manager, notifier):
        await otp_manager.request("+1 (555) 123-4567", OTPPurpose.VERIFY_PHONE, Channel.SMS)

        assert notifier.sent[-1][1] == "+15551234567"
        code = notifier.last_code()
        assert await otp_manager.verify("+15551234567", OTPPurpose.VERIFY_PHONE, code) == "+15551234567"

    @pytest.mark.asyncio
    async def test_channel_must_fit_target(self, otp_manager):
        with pytest.raises(ValidationError):
            await otp_manager.request(EMAIL, RESET, Channel.SMS)
        with pytest.raises(ValidationError):
            await otp_manager.request("+15551234567", RESET, Channel.EMAIL)

    @pytest.mark.asyncio
    async def test_channel_must_fit_purpose(self, otp_manager):
        with pytest.raises(ValidationError):
            await otp_manager.request("+15551234567", OTPPurpose.VERIFY_EMAIL, Channel.SMS)
        with pytest.raises(ValidationError):
            await otp_manager.request(EMAIL, OTPPurpose.VERIFY_PHONE, Channel.EMAIL)

    @pytest.mark.asyncio
    async def test_unknown_channel(self, otp_manager):
        with pytest.raises(ValueError):
            await otp_manager.request(EMAIL, RESET, "pigeon")

    @pytest.mark.asyncio
    async def test_undelivered_code_is_discarded(self, otp_manager, notifier, memory_store):
        notifier.fail = True

        with pytest.raises(ChannelUnavailableError) as exc_info:
            await otp_manager.request(EMAIL, RESET, Channel.EMAIL)

        assert exc_info.value.detail == {"channel": "email", "reason": "gateway down"}
        assert memory_store.get_otp(EMAIL, RESET) is None

    @pytest.mark.asyncio
    async def test_dispatch_timeout(self, memory_store, clock, random_source):
        manager = OTPManager(
            memory_store,
            SlowNotifier(),
            dispatch_timeout=0.05,
            clock=clock,
            random_source=random_source,
        )

        with pytest.raises(ChannelUnavailableError) as exc_info:
            await manager.request(EMAIL, RESET, Channel.EMAIL)

        assert exc_info.value.detail["reason"] == "timeout"
        assert memory_store.get_otp(EMAIL, RESET) is None

    @pytest.mark.asyncio
    async def test_new_code_supersedes_old(self, otp_manager, random_source):
        random_source.queue_code("111111")
        await otp_manager.request(EMAIL, RESET, Channel.EMAIL)
        random_source.queue_code("222222")
        await otp_manager.resend(EMAIL, RESET, Channel.EMAIL)

        with pytest.raises(OTPMismatchError):
            await otp_manager.verify(EMAIL, RESET, "111111")
        assert await otp_manager.verify(EMAIL, RESET, "222222") == EMAIL

    @pytest.mark.asyncio
    async def test_codes_are_scoped_by_purpose(self, otp_manager, random_source):
        random_source.queue_code("111111")
        await otp_manager.request(EMAIL, RESET, Channel.EMAIL)
        random_source.queue_code("222222")
        await otp_manager.request(EMAIL, OTPPurpose.VERIFY_EMAIL, Channel.EMAIL)

        assert await otp_manager.verify(EMAIL, RESET, "111111") == EMAIL
        assert await otp_manager.verify(EMAIL, OTPPurpose.VERIFY_EMAIL, "222222") == EMAIL


class TestVerify:
    @pytest.mark.asyncio
    async def test_code_verifies_once(self, otp_manager, notifier):
        await otp_manager.request(EMAIL, RESET, Channel.EMAIL)
        code = notifier.last_code()

        assert await otp_manager.verify(EMAIL, RESET, code) == EMAIL
        with pytest.raises(NotFoundError):
            await otp_manager.verify(EMAIL, RESET, code)

    @pytest.mark.asyncio
    async def test_no_code_requested(self, otp_manager):
        with pytest.raises(NotFoundError):
            await otp_manager.verify(EMAIL, RESET, "123456")

    @pytest.mark.asyncio
    async def test_unparseable_target_is_not_found(self, otp_manager):
        with pytest.raises(NotFoundError):
            await otp_manager.verify("nobody", RESET, "123456")

    @pytest.mark.asyncio
    async def test_mismatch_reports_remaining(self, otp_manager, random_source):
        random_source.queue_code("123456")
        await otp_manager.request(EMAIL, RESET, Channel.EMAIL)

        for remaining in (4, 3, 2, 1):
            with pytest.raises(OTPMismatchError) as exc_info:
                await otp_manager.verify(EMAIL, RESET, "000000")
            assert exc_info.value.detail == {"remaining_attempts": remaining}

        with pytest.raises(AttemptsExhaustedError):
            await otp_manager.verify(EMAIL, RESET, "000000")
        # Even the right code is dead now
        with pytest.raises(NotFoundError):
            await otp_manager.verify(EMAIL, RESET, "123456")

    @pytest.mark.asyncio
    async def test_last_attempt_can_still_succeed(self, otp_manager, random_source):
        random_source.queue_code("123456")
        await otp_manager.request(EMAIL, RESET, Channel.EMAIL)

        for _ in range(4):
            with pytest.raises(OTPMismatchError):
                await otp_manager.verify(EMAIL, RESET, "000000")
        assert await otp_manager.verify(EMAIL, RESET, "123456") == EMAIL

    @pytest.mark.asyncio
    async def test_expired_code(self, otp_manager, notifier, clock):
        await otp_manager.request(EMAIL, RESET, Channel.EMAIL)
        code = notifier.last_code()
        clock.advance(minutes=10)

        with pytest.raises(ExpiredError):
            await otp_manager.verify(EMAIL, RESET, code)
        with pytest.raises(NotFoundError):
            await otp_manager.verify(EMAIL, RESET, code)

    @pytest.mark.asyncio
    async def test_whitespace_around_code_is_ignored(self, otp_manager, notifier):
        await otp_manager.request(EMAIL, RESET, Channel.EMAIL)

        assert await otp_manager.verify(EMAIL, RESET, f" {notifier.last_code()} ") == EMAIL


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_removes_expired(self, otp_manager, memory_store, clock):
        await otp_manager.request(EMAIL, RESET, Channel.EMAIL)
        await otp_manager.request("other@example.com", RESET, Channel.EMAIL)
        clock.advance(minutes=11)
        await otp_manager.request("late@example.com", RESET, Channel.EMAIL)

        assert otp_manager.sweep() == 2
        assert memory_store.get_otp("late@example.com", RESET) is not None
