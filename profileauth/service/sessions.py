from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from profileauth.logging import get_logger
from profileauth.service.errors import (
    ExpiredError,
    ForbiddenError,
    InvalidCredentialsError,
    RefreshConflictError,
    SessionCompromisedError,
)
from profileauth.service.sources import Clock, RandomSource, SystemClock, SystemRandomSource
from profileauth.service.tokens import ACCESS, REFRESH, TokenIssuer, hash_token
from profileauth.storage.memory import MemoryStore
from profileauth.storage.models import (
    RevocationReason,
    Role,
    SessionRecord,
    SessionSummary,
    User,
    role_allows,
)


@dataclass(frozen=True)
class DeviceInfo:
    fingerprint: str = "unknown"
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None


@dataclass(frozen=True)
class IssuedSession:
    session_id: str
    user_id: str
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    token_version: int


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    session_id: str
    role: Role
    tenant_id: str


class SessionManager:
    """Session lifecycle: create, rotate on refresh, revoke, list.

    One session is one refresh-token lineage. Rotation swaps the stored hash in
    place with a compare-and-swap scoped to the session; presenting any hash
    other than the current one revokes the session as compromised.
    """

    def __init__(
        self,
        store: MemoryStore,
        issuer: TokenIssuer,
        *,
        refresh_ttl: timedelta = timedelta(days=30),
        max_lifetime: timedelta = timedelta(days=90),
        clock: Optional[Clock] = None,
        random_source: Optional[RandomSource] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.refresh_ttl = refresh_ttl
        self.max_lifetime = max_lifetime
        self.clock = clock or SystemClock()
        self.random = random_source or SystemRandomSource()
        self.logger = get_logger(__name__)

    def _expiry_for(self, issued_at: datetime, now: datetime) -> datetime:
        # Sliding window, never beyond the lineage's absolute lifetime
        return min(now + self.refresh_ttl, issued_at + self.max_lifetime)

    def create(self, user: User, device: Optional[DeviceInfo] = None) -> IssuedSession:
        device = device or DeviceInfo()
        now = self.clock.now()
        session_id = self.random.token_hex(16)
        refresh = self.issuer.issue_refresh_token(
            user.id, session_id, 0, expires_at=self._expiry_for(now, now)
        )
        record = SessionRecord(
            id=session_id,
            user_id=user.id,
            refresh_token_hash=hash_token(refresh.token),
            issued_at=now,
            last_rotated_at=now,
            expires_at=refresh.expires_at,
            token_version=0,
            device_fingerprint=device.fingerprint or "unknown",
            user_agent=device.user_agent,
            ip_addr=device.ip_addr,
            tenant_id=user.tenant_id,
        )
        self.store.insert_session(record)
        access = self.issuer.issue_access_token(user.id, session_id, user.role)
        self.logger.info(
            "session_created",
            user_id=user.id,
            session_id=session_id,
            device_fingerprint=record.device_fingerprint,
        )
        return IssuedSession(
            session_id=session_id,
            user_id=user.id,
            access_token=access.token,
            access_expires_at=access.expires_at,
            refresh_token=refresh.token,
            refresh_expires_at=refresh.expires_at,
            token_version=0,
        )

    def _ensure_live(self, session: SessionRecord, now: datetime) -> None:
        if session.is_revoked:
            if session.revocation_reason == RevocationReason.REUSE_DETECTED:
                raise SessionCompromisedError(
                    "session revoked after refresh token reuse",
                    detail={"session_id": session.id},
                )
            raise InvalidCredentialsError(
                "session revoked",
                detail={
                    "session_id": session.id,
                    "reason": session.revocation_reason.value
                    if session.revocation_reason
                    else None,
                },
            )
        if session.is_expired(now):
            self.store.revoke_session(session.id, RevocationReason.EXPIRED, at=now)
            self.logger.info("session_expired", session_id=session.id)
            raise ExpiredError("session expired", detail={"session_id": session.id})

    def _compromise(self, session: SessionRecord, now: datetime) -> SessionCompromisedError:
        self.store.revoke_session(session.id, RevocationReason.REUSE_DETECTED, at=now)
        self.logger.warning(
            "session_reuse_detected",
            user_id=session.user_id,
            session_id=session.id,
            token_version=session.token_version,
        )
        return SessionCompromisedError(
            "refresh token reuse detected", detail={"session_id": session.id}
        )

    def refresh(self, refresh_token: str) -> IssuedSession:
        """Rotate the session bound to ``refresh_token`` and return a fresh pair."""
        claims = self.issuer.verify(refresh_token, expected_type=REFRESH)
        now = self.clock.now()
        session = self.store.get_session(claims["sid"])
        if not session:
            raise InvalidCredentialsError("session not found")
        self._ensure_live(session, now)
        if session.user_id != claims["sub"]:
            raise InvalidCredentialsError("token subject does not own session")

        presented_hash = hash_token(refresh_token)
        if not hmac.compare_digest(presented_hash, session.refresh_token_hash):
            raise self._compromise(session, now)

        user = self.store.get_user(session.user_id)
        if not user or not user.is_active:
            raise InvalidCredentialsError("user inactive")

        new_version = session.token_version + 1
        refresh = self.issuer.issue_refresh_token(
            user.id,
            session.id,
            new_version,
            expires_at=self._expiry_for(session.issued_at, now),
        )
        rotated = self.store.swap_refresh_token(
            session.id,
            expected_hash=presented_hash,
            new_hash=hash_token(refresh.token),
            token_version=new_version,
            rotated_at=now,
            expires_at=refresh.expires_at,
        )
        if rotated is None:
            current = self.store.get_session(session.id)
            if current:
                self._ensure_live(current, now)
            self.logger.info("session_refresh_conflict", session_id=session.id)
            raise RefreshConflictError(
                "session was rotated by a concurrent refresh",
                detail={"session_id": session.id},
            )

        access = self.issuer.issue_access_token(user.id, session.id, user.role)
        self.logger.info(
            "session_rotated",
            user_id=user.id,
            session_id=session.id,
            token_version=new_version,
        )
        return IssuedSession(
            session_id=session.id,
            user_id=user.id,
            access_token=access.token,
            access_expires_at=access.expires_at,
            refresh_token=refresh.token,
            refresh_expires_at=refresh.expires_at,
            token_version=new_version,
        )

    def revoke(self, session_id: str) -> bool:
        revoked = self.store.revoke_session(
            session_id, RevocationReason.USER_LOGOUT, at=self.clock.now()
        )
        if revoked:
            self.logger.info("session_revoked", session_id=session_id)
        return revoked

    def revoke_all(self, user_id: str, *, except_session_id: Optional[str] = None) -> int:
        count = self.store.revoke_user_sessions(
            user_id,
            RevocationReason.USER_LOGOUT_ALL,
            at=self.clock.now(),
            except_session_id=except_session_id,
        )
        self.logger.info("sessions_revoked_all", user_id=user_id, revoked=count)
        return count

    def list_sessions(self, user_id: str) -> List[SessionSummary]:
        now = self.clock.now()
        live = [s for s in self.store.list_user_sessions(user_id) if s.is_active(now)]
        live.sort(key=lambda s: s.last_rotated_at, reverse=True)
        return [SessionSummary.from_record(s) for s in live]

    def authenticate(
        self, access_token: str, *, required_role: Optional[Role | str] = None
    ) -> AuthContext:
        """Resolve an access token to its still-active session and user."""
        claims = self.issuer.verify(access_token, expected_type=ACCESS)
        now = self.clock.now()
        session = self.store.get_session(claims["sid"])
        if not session:
            raise InvalidCredentialsError("session not found")
        self._ensure_live(session, now)
        if session.user_id != claims["sub"]:
            raise InvalidCredentialsError("token subject does not own session")
        user = self.store.get_user(session.user_id)
        if not user or not user.is_active:
            raise InvalidCredentialsError("user inactive")
        if required_role and not role_allows(user.role, required_role):
            raise ForbiddenError(
                "insufficient role",
                detail={"required": getattr(required_role, "value", required_role)},
            )
        return AuthContext(
            user_id=user.id,
            session_id=session.id,
            role=user.role,
            tenant_id=user.tenant_id,
        )

    def sweep(self) -> int:
        """Drop revoked and expired session records."""
        purged = self.store.purge_sessions(self.clock.now())
        if purged:
            self.logger.info("sessions_swept", purged=purged)
        return purged
