from __future__ import annotations

import base64
import contextlib
import hashlib
import hmac
import json
import os
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from profileauth.logging import get_logger
from profileauth.storage.errors import ConstraintViolation, StorageError, UnknownRecord
from profileauth.storage.models import (
    Channel,
    LinkedIdentity,
    OTPAttemptOutcome,
    OTPPurpose,
    OTPRecord,
    RevocationReason,
    Role,
    SessionRecord,
    TwoFactorConfig,
    User,
)

_UPDATABLE_USER_FIELDS = {
    "email",
    "username",
    "phone_number",
    "role",
    "email_verified",
    "phone_verified",
    "display_name",
    "avatar_url",
    "is_active",
    "meta",
}


class MemoryStore:
    """In-process credential store persisted to a JSON state file.

    Every public method takes ``_data_lock``; refresh-token rotation also takes a
    lock scoped to the session being rotated so unrelated sessions never wait on
    each other's compare-and-swap.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/profileauth",
        *,
        mfa_encryption_key: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.identities: List[LinkedIdentity] = []
        self.sessions: Dict[str, SessionRecord] = {}
        self.otps: Dict[Tuple[str, str], OTPRecord] = {}
        self.two_factor: Dict[str, TwoFactorConfig] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()
        self._session_locks: Dict[str, threading.Lock] = {}
        self._session_locks_guard = threading.Lock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = (
            key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        )
        if not material:
            raise RuntimeError(
                "MFA encryption key missing; set MFA_SECRET_KEY or JWT_SECRET"
            )
        return Fernet(self._derive_cipher_key(material))

    # ------------------------------------------------------------------ users

    @staticmethod
    def _fold(value: Optional[str]) -> Optional[str]:
        return value.casefold() if value else None

    def _check_user_unique(
        self,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
        phone_number: Optional[str] = None,
        public_id: Optional[str] = None,
        ignore_user_id: Optional[str] = None,
    ) -> None:
        for existing in self.users.values():
            if existing.id == ignore_user_id:
                continue
            if email and self._fold(existing.email) == self._fold(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username and self._fold(existing.username) == self._fold(username):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if phone_number and existing.phone_number == phone_number:
                raise ConstraintViolation(
                    "phone number already exists", {"field": "phone_number"}
                )
            if public_id and existing.public_id == public_id:
                raise ConstraintViolation("public id already exists", {"field": "public_id"})

    def create_user(
        self,
        email: str,
        *,
        public_id: str,
        username: Optional[str] = None,
        phone_number: Optional[str] = None,
        tenant_id: str = "public",
        role: Role = Role.USER,
        email_verified: bool = False,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            self._check_user_unique(
                email=email,
                username=username,
                phone_number=phone_number,
                public_id=public_id,
            )
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                public_id=public_id,
                username=username,
                phone_number=phone_number,
                role=Role(role),
                tenant_id=tenant_id,
                email_verified=email_verified,
                display_name=display_name,
                avatar_url=avatar_url,
                meta=dict(meta) if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        folded = self._fold(email)
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if self._fold(u.email) == folded), None
            )
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        folded = self._fold(username)
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.username and self._fold(u.username) == folded),
                None,
            )
            return replace(user) if user else None

    def get_user_by_phone(self, phone_number: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.phone_number == phone_number), None
            )
            return replace(user) if user else None

    def public_id_exists(self, public_id: str) -> bool:
        with self._data_lock:
            return any(u.public_id == public_id for u in self.users.values())

    def update_user(self, user_id: str, **changes) -> User:
        unknown = set(changes) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise UnknownRecord("user not found", {"user_id": user_id})
            self._check_user_unique(
                email=changes.get("email"),
                username=changes.get("username"),
                phone_number=changes.get("phone_number"),
                ignore_user_id=user_id,
            )
            if "role" in changes:
                changes["role"] = Role(changes["role"])
            updated = replace(user, **changes)
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def delete_user(self, user_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            live = [
                s for s in self.sessions.values() if s.user_id == user_id and s.is_active(now)
            ]
            if live:
                raise ConstraintViolation(
                    "user still has active sessions", {"user_id": user_id, "sessions": len(live)}
                )
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            self.two_factor.pop(user_id, None)
            self.identities = [i for i in self.identities if i.user_id != user_id]
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
            self._persist_state()
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise UnknownRecord("user not found for credentials", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # ------------------------------------------------------------- identities

    def link_identity(self, user_id: str, provider: str, subject_id: str) -> LinkedIdentity:
        """Bind ``(provider, subject_id)`` to a user; repeating the same link is a no-op."""
        with self._data_lock:
            if user_id not in self.users:
                raise UnknownRecord("user not found for identity", {"user_id": user_id})
            for existing in self.identities:
                if existing.provider != provider:
                    continue
                if existing.subject_id == subject_id:
                    if existing.user_id == user_id:
                        return replace(existing)
                    raise ConstraintViolation(
                        "identity linked to another user",
                        {"field": "identity", "provider": provider},
                    )
                if existing.user_id == user_id:
                    raise ConstraintViolation(
                        "user already linked to this provider",
                        {"field": "identity", "provider": provider},
                    )
            identity = LinkedIdentity(user_id=user_id, provider=provider, subject_id=subject_id)
            self.identities.append(identity)
            self._persist_state()
            return replace(identity)

    def get_user_by_identity(self, provider: str, subject_id: str) -> Optional[User]:
        with self._data_lock:
            for identity in self.identities:
                if identity.provider == provider and identity.subject_id == subject_id:
                    user = self.users.get(identity.user_id)
                    return replace(user) if user else None
            return None

    def list_identities(self, user_id: str) -> List[LinkedIdentity]:
        with self._data_lock:
            return [replace(i) for i in self.identities if i.user_id == user_id]

    # --------------------------------------------------------------- sessions

    @contextlib.contextmanager
    def session_lock(self, session_id: str) -> Iterator[None]:
        """Serialize mutations of a single session record."""
        with self._session_locks_guard:
            lock = self._session_locks.setdefault(session_id, threading.Lock())
        with lock:
            yield

    def insert_session(self, record: SessionRecord) -> SessionRecord:
        with self._data_lock:
            if record.user_id not in self.users:
                raise UnknownRecord("user does not exist", {"user_id": record.user_id})
            if record.id in self.sessions:
                raise ConstraintViolation("session id already exists", {"field": "session_id"})
            self.sessions[record.id] = replace(record)
            self._persist_state()
            return replace(record)

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def list_user_sessions(self, user_id: str) -> List[SessionRecord]:
        with self._data_lock:
            return [replace(s) for s in self.sessions.values() if s.user_id == user_id]

    def swap_refresh_token(
        self,
        session_id: str,
        *,
        expected_hash: str,
        new_hash: str,
        token_version: int,
        rotated_at: datetime,
        expires_at: datetime,
    ) -> Optional[SessionRecord]:
        """Compare-and-swap the stored refresh hash.

        Returns the updated record, or None when the stored hash no longer equals
        ``expected_hash`` or the session was revoked in the meantime.
        """
        with self.session_lock(session_id):
            with self._data_lock:
                sess = self.sessions.get(session_id)
                if not sess or sess.is_revoked:
                    return None
                if not hmac.compare_digest(sess.refresh_token_hash, expected_hash):
                    return None
                updated = replace(
                    sess,
                    refresh_token_hash=new_hash,
                    token_version=token_version,
                    last_rotated_at=rotated_at,
                    expires_at=expires_at,
                )
                self.sessions[session_id] = updated
                self._persist_state()
                return replace(updated)

    def revoke_session(
        self, session_id: str, reason: RevocationReason, *, at: datetime
    ) -> bool:
        """Flag a session revoked; returns False when it was already revoked or missing."""
        with self.session_lock(session_id):
            with self._data_lock:
                sess = self.sessions.get(session_id)
                if not sess or sess.is_revoked:
                    return False
                self.sessions[session_id] = replace(
                    sess, revoked_at=at, revocation_reason=RevocationReason(reason)
                )
                self._persist_state()
                return True

    def revoke_user_sessions(
        self,
        user_id: str,
        reason: RevocationReason,
        *,
        at: datetime,
        except_session_id: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            targets = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id
                and sess.is_active(at)
                and sid != except_session_id
            ]
        revoked = 0
        for sid in targets:
            if self.revoke_session(sid, reason, at=at):
                revoked += 1
        return revoked

    def purge_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                sid for sid, sess in self.sessions.items() if not sess.is_active(now)
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
        with self._session_locks_guard:
            for sid in stale:
                self._session_locks.pop(sid, None)
        return len(stale)

    # ------------------------------------------------------------ one-time codes

    @staticmethod
    def _otp_key(target: str, purpose: OTPPurpose | str) -> Tuple[str, str]:
        return (target, OTPPurpose(purpose).value)

    def put_otp(self, record: OTPRecord) -> Optional[OTPRecord]:
        """Store ``record`` as the live code for its (target, purpose); returns the superseded one."""
        with self._data_lock:
            key = self._otp_key(record.target, record.purpose)
            previous = self.otps.get(key)
            self.otps[key] = replace(record)
            self._persist_state()
            return replace(previous) if previous else None

    def get_otp(self, target: str, purpose: OTPPurpose) -> Optional[OTPRecord]:
        with self._data_lock:
            record = self.otps.get(self._otp_key(target, purpose))
            return replace(record) if record else None

    def attempt_otp(
        self,
        target: str,
        purpose: OTPPurpose,
        *,
        record_id: str,
        candidate_hash: str,
        now: datetime,
    ) -> Tuple[OTPAttemptOutcome, int]:
        """Charge one attempt against the live record, then compare.

        Returns the outcome and the attempts left afterwards.
        """
        key = self._otp_key(target, purpose)
        with self._data_lock:
            record = self.otps.get(key)
            if not record or record.id != record_id or record.consumed:
                return OTPAttemptOutcome.NOT_FOUND, 0
            if record.is_expired(now):
                self.otps.pop(key, None)
                self._persist_state()
                return OTPAttemptOutcome.EXPIRED, 0
            remaining = record.remaining_attempts - 1
            if hmac.compare_digest(record.code_hash, candidate_hash):
                self.otps.pop(key, None)
                self._persist_state()
                return OTPAttemptOutcome.VERIFIED, remaining
            if remaining <= 0:
                self.otps.pop(key, None)
                self._persist_state()
                return OTPAttemptOutcome.EXHAUSTED, 0
            self.otps[key] = replace(record, remaining_attempts=remaining)
            self._persist_state()
            return OTPAttemptOutcome.MISMATCH, remaining

    def discard_otp(
        self, target: str, purpose: OTPPurpose, *, record_id: Optional[str] = None
    ) -> bool:
        key = self._otp_key(target, purpose)
        with self._data_lock:
            record = self.otps.get(key)
            if not record or (record_id and record.id != record_id):
                return False
            self.otps.pop(key, None)
            self._persist_state()
            return True

    def purge_otps(self, now: datetime) -> int:
        with self._data_lock:
            stale = [key for key, rec in self.otps.items() if rec.is_expired(now)]
            for key in stale:
                self.otps.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    def count_purgeable(self, now: datetime) -> Tuple[int, int]:
        """Sessions and one-time codes a purge at ``now`` would remove."""
        with self._data_lock:
            sessions = sum(1 for s in self.sessions.values() if not s.is_active(now))
            otps = sum(1 for o in self.otps.values() if o.is_expired(now))
            return sessions, otps

    # ------------------------------------------------------------- two-factor

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            self.logger.error("two_factor_secret_decrypt_failed")
            raise StorageError("two-factor secret cannot be decrypted") from exc

    def save_two_factor(self, config: TwoFactorConfig) -> TwoFactorConfig:
        with self._data_lock:
            if config.user_id not in self.users:
                raise UnknownRecord("user not found for two-factor", {"user_id": config.user_id})
            self.two_factor[config.user_id] = replace(
                config,
                secret=self._encrypt_secret(config.secret),
                pending_secret=self._encrypt_secret(config.pending_secret),
                recovery_code_hashes=list(config.recovery_code_hashes),
                pending_recovery_code_hashes=list(config.pending_recovery_code_hashes),
            )
            self._persist_state()
            return config

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]:
        with self._data_lock:
            cfg = self.two_factor.get(user_id)
            if not cfg:
                return None
            return replace(
                cfg,
                secret=self._decrypt_secret(cfg.secret),
                pending_secret=self._decrypt_secret(cfg.pending_secret),
                recovery_code_hashes=list(cfg.recovery_code_hashes),
                pending_recovery_code_hashes=list(cfg.pending_recovery_code_hashes),
            )

    def delete_two_factor(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.two_factor.pop(user_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def burn_recovery_code(self, user_id: str, code_hash: str) -> Optional[int]:
        """Remove a recovery code hash; returns codes left, or None if it was not present."""
        with self._data_lock:
            cfg = self.two_factor.get(user_id)
            if not cfg or not cfg.enabled:
                return None
            match = next(
                (h for h in cfg.recovery_code_hashes if hmac.compare_digest(h, code_hash)),
                None,
            )
            if match is None:
                return None
            remaining = [h for h in cfg.recovery_code_hashes if h != match]
            self.two_factor[user_id] = replace(cfg, recovery_code_hashes=remaining)
            self._persist_state()
            return len(remaining)

    def claim_totp_step(self, user_id: str, step: int) -> bool:
        """Record ``step`` as used; False when it (or a later step) was already accepted."""
        with self._data_lock:
            cfg = self.two_factor.get(user_id)
            if not cfg:
                return False
            if cfg.last_used_step is not None and step <= cfg.last_used_step:
                return False
            self.two_factor[user_id] = replace(cfg, last_used_step=step)
            self._persist_state()
            return True

    # ------------------------------------------------------------ persistence

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "identities": [
                {
                    "user_id": i.user_id,
                    "provider": i.provider,
                    "subject_id": i.subject_id,
                    "created_at": self._serialize_datetime(i.created_at),
                }
                for i in self.identities
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "otps": [self._serialize_otp(o) for o in self.otps.values()],
            "two_factor": [
                self._serialize_two_factor(cfg) for cfg in self.two_factor.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StorageError(f"failed to persist auth state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.identities = [
            LinkedIdentity(
                user_id=i["user_id"],
                provider=i["provider"],
                subject_id=i["subject_id"],
                created_at=self._deserialize_datetime(i["created_at"]),
            )
            for i in data.get("identities", [])
        ]
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.otps = {}
        for raw in data.get("otps", []):
            record = self._deserialize_otp(raw)
            self.otps[self._otp_key(record.target, record.purpose)] = record
        self.two_factor = {
            cfg["user_id"]: self._deserialize_two_factor(cfg)
            for cfg in data.get("two_factor", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "public_id": user.public_id,
            "username": user.username,
            "phone_number": user.phone_number,
            "role": user.role.value,
            "tenant_id": user.tenant_id,
            "email_verified": user.email_verified,
            "phone_verified": user.phone_verified,
            "display_name": user.display_name,
            "avatar_url": user.avatar_url,
            "is_active": user.is_active,
            "created_at": self._serialize_datetime(user.created_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            public_id=data["public_id"],
            username=data.get("username"),
            phone_number=data.get("phone_number"),
            role=Role(data.get("role", Role.USER.value)),
            tenant_id=data.get("tenant_id", "public"),
            email_verified=bool(data.get("email_verified", False)),
            phone_verified=bool(data.get("phone_verified", False)),
            display_name=data.get("display_name"),
            avatar_url=data.get("avatar_url"),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
            meta=data.get("meta"),
        )

    def _serialize_session(self, session: SessionRecord) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token_hash": session.refresh_token_hash,
            "token_version": session.token_version,
            "issued_at": self._serialize_datetime(session.issued_at),
            "last_rotated_at": self._serialize_datetime(session.last_rotated_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "device_fingerprint": session.device_fingerprint,
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
            "tenant_id": session.tenant_id,
            "revoked_at": self._serialize_datetime(session.revoked_at),
            "revocation_reason": (
                session.revocation_reason.value if session.revocation_reason else None
            ),
        }

    def _deserialize_session(self, data: dict) -> SessionRecord:
        reason = data.get("revocation_reason")
        return SessionRecord(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token_hash=data["refresh_token_hash"],
            token_version=int(data.get("token_version", 0)),
            issued_at=self._deserialize_datetime(data["issued_at"]),
            last_rotated_at=self._deserialize_datetime(data["last_rotated_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            device_fingerprint=data.get("device_fingerprint", "unknown"),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
            tenant_id=data.get("tenant_id", "public"),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revocation_reason=RevocationReason(reason) if reason else None,
        )

    def _serialize_otp(self, record: OTPRecord) -> dict:
        return {
            "id": record.id,
            "target": record.target,
            "purpose": record.purpose.value,
            "code_hash": record.code_hash,
            "salt": record.salt,
            "channel": record.channel.value,
            "created_at": self._serialize_datetime(record.created_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "remaining_attempts": record.remaining_attempts,
            "consumed": record.consumed,
        }

    def _deserialize_otp(self, data: dict) -> OTPRecord:
        return OTPRecord(
            id=data["id"],
            target=data["target"],
            purpose=OTPPurpose(data["purpose"]),
            code_hash=data["code_hash"],
            salt=data["salt"],
            channel=Channel(data["channel"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            remaining_attempts=int(data["remaining_attempts"]),
            consumed=bool(data.get("consumed", False)),
        )

    def _serialize_two_factor(self, cfg: TwoFactorConfig) -> dict:
        # Secrets are stored encrypted in memory already
        return {
            "user_id": cfg.user_id,
            "secret": cfg.secret,
            "enabled": cfg.enabled,
            "recovery_code_hashes": list(cfg.recovery_code_hashes),
            "pending_secret": cfg.pending_secret,
            "pending_recovery_code_hashes": list(cfg.pending_recovery_code_hashes),
            "last_used_step": cfg.last_used_step,
            "created_at": self._serialize_datetime(cfg.created_at),
            "confirmed_at": self._serialize_datetime(cfg.confirmed_at),
        }

    def _deserialize_two_factor(self, data: dict) -> TwoFactorConfig:
        return TwoFactorConfig(
            user_id=data["user_id"],
            secret=data.get("secret"),
            enabled=bool(data.get("enabled", False)),
            recovery_code_hashes=list(data.get("recovery_code_hashes", [])),
            pending_secret=data.get("pending_secret"),
            pending_recovery_code_hashes=list(data.get("pending_recovery_code_hashes", [])),
            last_used_step=data.get("last_used_step"),
            created_at=self._deserialize_datetime(data["created_at"]),
            confirmed_at=self._deserialize_datetime(data.get("confirmed_at")),
        )
