from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of account roles, lowest privilege first."""

    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"


_ROLE_RANK = {Role.USER: 0, Role.MODERATOR: 1, Role.ADMIN: 2}


def role_allows(role: Role | str, required: Role | str) -> bool:
    """Return True when ``role`` grants at least the privileges of ``required``."""
    try:
        have = Role(role)
        need = Role(required)
    except ValueError:
        return False
    return _ROLE_RANK[have] >= _ROLE_RANK[need]


class RevocationReason(str, Enum):
    USER_LOGOUT = "UserLogout"
    USER_LOGOUT_ALL = "UserLogoutAll"
    REUSE_DETECTED = "ReuseDetected"
    EXPIRED = "Expired"


class OTPPurpose(str, Enum):
    VERIFY_EMAIL = "verify-email"
    VERIFY_PHONE = "verify-phone"
    RESET_PASSWORD = "reset-password"
    LOGIN_CHALLENGE = "login-challenge"


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"

    @property
    def is_phone(self) -> bool:
        return self in (Channel.SMS, Channel.WHATSAPP)


class OTPAttemptOutcome(str, Enum):
    VERIFIED = "verified"
    MISMATCH = "mismatch"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


@dataclass
class User:
    id: str
    email: str
    public_id: str
    username: Optional[str] = None
    phone_number: Optional[str] = None
    role: Role = Role.USER
    tenant_id: str = "public"
    email_verified: bool = False
    phone_verified: bool = False
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None


@dataclass
class LinkedIdentity:
    user_id: str
    provider: str
    subject_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SessionRecord:
    id: str
    user_id: str
    refresh_token_hash: str
    issued_at: datetime
    last_rotated_at: datetime
    expires_at: datetime
    token_version: int = 0
    device_fingerprint: str = "unknown"
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    tenant_id: str = "public"
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[RevocationReason] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_expired(now)


@dataclass(frozen=True)
class SessionSummary:
    session_id: str
    device_fingerprint: str
    user_agent: Optional[str]
    issued_at: datetime
    last_rotated_at: datetime
    expires_at: datetime

    @classmethod
    def from_record(cls, record: SessionRecord) -> "SessionSummary":
        return cls(
            session_id=record.id,
            device_fingerprint=record.device_fingerprint,
            user_agent=record.user_agent,
            issued_at=record.issued_at,
            last_rotated_at=record.last_rotated_at,
            expires_at=record.expires_at,
        )


@dataclass
class OTPRecord:
    id: str
    target: str
    purpose: OTPPurpose
    code_hash: str
    salt: str
    channel: Channel
    created_at: datetime
    expires_at: datetime
    remaining_attempts: int
    consumed: bool = False

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class TwoFactorConfig:
    user_id: str
    secret: Optional[str] = None
    enabled: bool = False
    recovery_code_hashes: List[str] = field(default_factory=list)
    pending_secret: Optional[str] = None
    pending_recovery_code_hashes: List[str] = field(default_factory=list)
    last_used_step: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    confirmed_at: Optional[datetime] = None
