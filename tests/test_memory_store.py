"""Tests for the in-process credential store."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from profileauth.storage.errors import ConstraintViolation, StorageError, UnknownRecord
from profileauth.storage.memory import MemoryStore
from profileauth.storage.models import (
    Channel,
    OTPAttemptOutcome,
    OTPPurpose,
    OTPRecord,
    RevocationReason,
    SessionRecord,
    TwoFactorConfig,
)

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def _session(user_id, sid="s1", token_hash="h0", **kwargs):
    return SessionRecord(
        id=sid,
        user_id=user_id,
        refresh_token_hash=token_hash,
        issued_at=NOW,
        last_rotated_at=NOW,
        expires_at=NOW + timedelta(days=30),
        **kwargs,
    )


def _otp(target="a@example.com", record_id="otp-1", attempts=3, expires=NOW + timedelta(minutes=10)):
    return OTPRecord(
        id=record_id,
        target=target,
        purpose=OTPPurpose.RESET_PASSWORD,
        code_hash="right",
        salt="salt",
        channel=Channel.EMAIL,
        created_at=NOW,
        expires_at=expires,
        remaining_attempts=attempts,
    )


class TestUsers:
    def test_email_and_username_are_case_insensitive(self, make_user):
        make_user("Player@example.com", username="Player")

        with pytest.raises(ConstraintViolation) as exc_info:
            make_user("player@EXAMPLE.com")
        assert exc_info.value.field == "email"
        with pytest.raises(ConstraintViolation) as exc_info:
            make_user("other@example.com", username="PLAYER")
        assert exc_info.value.field == "username"

    def test_phone_and_public_id_unique(self, memory_store, make_user):
        make_user("a@example.com", phone_number="+15551234567")

        with pytest.raises(ConstraintViolation) as exc_info:
            make_user("b@example.com", phone_number="+15551234567")
        assert exc_info.value.field == "phone_number"
        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_user("c@example.com", public_id="T0000001")
        assert exc_info.value.field == "public_id"

    def test_returned_users_are_copies(self, memory_store, make_user):
        user = make_user()
        user.email = "mutated@example.com"

        assert memory_store.get_user(user.id).email == "user@example.com"

    def test_update_rejects_unknown_fields(self, memory_store, make_user):
        user = make_user()

        with pytest.raises(ValueError):
            memory_store.update_user(user.id, id="other")
        with pytest.raises(UnknownRecord):
            memory_store.update_user("missing", display_name="x")

    def test_delete_refused_with_live_sessions(self, memory_store, make_user):
        user = make_user()
        memory_store.insert_session(_session(user.id))

        with pytest.raises(ConstraintViolation):
            memory_store.delete_user(user.id, now=NOW)

        memory_store.revoke_session("s1", RevocationReason.USER_LOGOUT, at=NOW)
        assert memory_store.delete_user(user.id, now=NOW) is True
        assert memory_store.get_user(user.id) is None
        assert memory_store.get_session("s1") is None


class TestIdentities:
    def test_link_is_idempotent(self, memory_store, make_user):
        user = make_user()
        memory_store.link_identity(user.id, "google", "sub-1")
        memory_store.link_identity(user.id, "google", "sub-1")

        assert len(memory_store.list_identities(user.id)) == 1

    def test_identity_belongs_to_one_user(self, memory_store, make_user):
        a = make_user("a@example.com")
        b = make_user("b@example.com")
        memory_store.link_identity(a.id, "google", "sub-1")

        with pytest.raises(ConstraintViolation):
            memory_store.link_identity(b.id, "google", "sub-1")
        with pytest.raises(ConstraintViolation):
            memory_store.link_identity(a.id, "google", "sub-2")
        assert memory_store.get_user_by_identity("google", "sub-1").id == a.id


class TestSessions:
    def test_swap_requires_current_hash(self, memory_store, make_user):
        user = make_user()
        memory_store.insert_session(_session(user.id))
        later = NOW + timedelta(minutes=1)

        assert memory_store.swap_refresh_token(
            "s1", expected_hash="stale", new_hash="h1", token_version=1,
            rotated_at=later, expires_at=later + timedelta(days=30),
        ) is None
        updated = memory_store.swap_refresh_token(
            "s1", expected_hash="h0", new_hash="h1", token_version=1,
            rotated_at=later, expires_at=later + timedelta(days=30),
        )
        assert updated.refresh_token_hash == "h1"
        assert updated.token_version == 1

    def test_swap_refused_after_revoke(self, memory_store, make_user):
        user = make_user()
        memory_store.insert_session(_session(user.id))
        memory_store.revoke_session("s1", RevocationReason.REUSE_DETECTED, at=NOW)

        assert memory_store.swap_refresh_token(
            "s1", expected_hash="h0", new_hash="h1", token_version=1,
            rotated_at=NOW, expires_at=NOW,
        ) is None

    def test_concurrent_swaps_have_one_winner(self, memory_store, make_user):
        user = make_user()
        memory_store.insert_session(_session(user.id))
        barrier = threading.Barrier(8)
        results = []

        def rotate(n):
            barrier.wait()
            results.append(
                memory_store.swap_refresh_token(
                    "s1", expected_hash="h0", new_hash=f"h-{n}", token_version=1,
                    rotated_at=NOW, expires_at=NOW + timedelta(days=1),
                )
            )

        threads = [threading.Thread(target=rotate, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert memory_store.get_session("s1").refresh_token_hash == winners[0].refresh_token_hash

    def test_revoke_is_idempotent(self, memory_store, make_user):
        user = make_user()
        memory_store.insert_session(_session(user.id))

        assert memory_store.revoke_session("s1", RevocationReason.USER_LOGOUT, at=NOW) is True
        assert memory_store.revoke_session("s1", RevocationReason.REUSE_DETECTED, at=NOW) is False
        assert memory_store.get_session("s1").revocation_reason == RevocationReason.USER_LOGOUT

    def test_session_requires_user(self, memory_store):
        with pytest.raises(UnknownRecord):
            memory_store.insert_session(_session("ghost"))


class TestOneTimeCodes:
    def test_put_supersedes(self, memory_store):
        assert memory_store.put_otp(_otp(record_id="first")) is None
        previous = memory_store.put_otp(_otp(record_id="second"))

        assert previous.id == "first"
        outcome, _ = memory_store.attempt_otp(
            "a@example.com", OTPPurpose.RESET_PASSWORD,
            record_id="first", candidate_hash="right", now=NOW,
        )
        assert outcome == OTPAttemptOutcome.NOT_FOUND

    def test_attempt_outcomes(self, memory_store):
        memory_store.put_otp(_otp(attempts=2))

        def attempt(candidate, now=NOW):
            return memory_store.attempt_otp(
                "a@example.com", OTPPurpose.RESET_PASSWORD,
                record_id="otp-1", candidate_hash=candidate, now=now,
            )

        assert attempt("wrong") == (OTPAttemptOutcome.MISMATCH, 1)
        assert attempt("wrong") == (OTPAttemptOutcome.EXHAUSTED, 0)
        assert attempt("right") == (OTPAttemptOutcome.NOT_FOUND, 0)

        memory_store.put_otp(_otp())
        assert attempt("right", now=NOW + timedelta(minutes=10)) == (OTPAttemptOutcome.EXPIRED, 0)
        assert memory_store.get_otp("a@example.com", OTPPurpose.RESET_PASSWORD) is None

    def test_concurrent_attempts_are_all_charged(self, memory_store):
        memory_store.put_otp(_otp(attempts=5))
        barrier = threading.Barrier(10)
        outcomes = []

        def attempt():
            barrier.wait()
            outcomes.append(
                memory_store.attempt_otp(
                    "a@example.com", OTPPurpose.RESET_PASSWORD,
                    record_id="otp-1", candidate_hash="wrong", now=NOW,
                )[0]
            )

        threads = [threading.Thread(target=attempt) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(OTPAttemptOutcome.MISMATCH) == 4
        assert outcomes.count(OTPAttemptOutcome.EXHAUSTED) == 1
        assert outcomes.count(OTPAttemptOutcome.NOT_FOUND) == 5

    def test_discard_matches_record_id(self, memory_store):
        memory_store.put_otp(_otp())

        assert memory_store.discard_otp("a@example.com", OTPPurpose.RESET_PASSWORD, record_id="other") is False
        assert memory_store.discard_otp("a@example.com", OTPPurpose.RESET_PASSWORD, record_id="otp-1") is True

    def test_count_and_purge(self, memory_store, make_user):
        user = make_user()
        memory_store.insert_session(_session(user.id, sid="live"))
        memory_store.insert_session(_session(user.id, sid="dead"))
        memory_store.revoke_session("dead", RevocationReason.USER_LOGOUT, at=NOW)
        memory_store.put_otp(_otp(expires=NOW))

        assert memory_store.count_purgeable(NOW) == (1, 1)
        assert memory_store.purge_sessions(NOW) == 1
        assert memory_store.purge_otps(NOW) == 1
        assert memory_store.count_purgeable(NOW) == (0, 0)


class TestTwoFactorState:
    def test_recovery_code_burns_once(self, memory_store, make_user):
        user = make_user()
        memory_store.save_two_factor(
            TwoFactorConfig(user_id=user.id, secret="S", enabled=True, recovery_code_hashes=["a", "b"])
        )

        assert memory_store.burn_recovery_code(user.id, "a") == 1
        assert memory_store.burn_recovery_code(user.id, "a") is None

    def test_totp_step_claims_are_monotonic(self, memory_store, make_user):
        user = make_user()
        memory_store.save_two_factor(TwoFactorConfig(user_id=user.id, secret="S", enabled=True))

        assert memory_store.claim_totp_step(user.id, 100) is True
        assert memory_store.claim_totp_step(user.id, 100) is False
        assert memory_store.claim_totp_step(user.id, 99) is False
        assert memory_store.claim_totp_step(user.id, 101) is True

    def test_wrong_key_cannot_decrypt(self, reopen_store, make_user, memory_store):
        user = make_user()
        memory_store.save_two_factor(TwoFactorConfig(user_id=user.id, secret="JBSWY3DPEHPK3PXP", enabled=True))

        other = reopen_store("a-different-key")
        with pytest.raises(StorageError):
            other.get_two_factor(user.id)


class TestPersistence:
    def test_state_survives_reload(self, reopen_store, memory_store, make_user):
        user = make_user(username="player")
        memory_store.save_password(user.id, "argon-hash", "argon2id")
        memory_store.link_identity(user.id, "github", "42")
        memory_store.insert_session(_session(user.id))
        memory_store.revoke_session("s1", RevocationReason.REUSE_DETECTED, at=NOW)
        memory_store.put_otp(_otp())
        memory_store.save_two_factor(
            TwoFactorConfig(user_id=user.id, secret="JBSWY3DPEHPK3PXP", enabled=True, last_used_step=7)
        )

        reloaded = reopen_store()

        assert reloaded.get_user_by_username("PLAYER").id == user.id
        assert reloaded.get_password_record(user.id) == ("argon-hash", "argon2id")
        assert reloaded.get_user_by_identity("github", "42").id == user.id
        session = reloaded.get_session("s1")
        assert session.revocation_reason == RevocationReason.REUSE_DETECTED
        assert session.expires_at == NOW + timedelta(days=30)
        assert reloaded.get_otp("a@example.com", OTPPurpose.RESET_PASSWORD).remaining_attempts == 3
        cfg = reloaded.get_two_factor(user.id)
        assert cfg.secret == "JBSWY3DPEHPK3PXP"
        assert cfg.last_used_step == 7

    def test_missing_key_material(self, tmp_path, monkeypatch):
        monkeypatch.delenv("MFA_SECRET_KEY", raising=False)
        monkeypatch.delenv("JWT_SECRET", raising=False)

        with pytest.raises(RuntimeError):
            MemoryStore(fs_root=str(tmp_path / "empty"))
