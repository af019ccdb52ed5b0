from __future__ import annotations

import functools
import secrets
from typing import Any, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from profileauth.config import Settings
from profileauth.logging import get_logger, redact_target
from profileauth.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    ServiceError,
    ValidationError,
)
from profileauth.service.identifiers import (
    generate_public_id,
    normalize_email,
    normalize_phone,
    normalize_username,
)
from profileauth.service.oauth import (
    IdentityVerifier,
    OAuthIdentity,
    OAuthIdentityLinker,
    OAuthLoginResult,
    OAuthProvider,
)
from profileauth.service.otp import OTPManager
from profileauth.service.results import AuthResult
from profileauth.service.sessions import AuthContext, DeviceInfo, IssuedSession, SessionManager
from profileauth.service.tokens import CHALLENGE, IssuedToken, TokenIssuer
from profileauth.service.two_factor import TwoFactorController
from profileauth.storage.errors import ConstraintViolation
from profileauth.storage.memory import MemoryStore
from profileauth.storage.models import Channel, OTPPurpose, Role, User

logger = get_logger(__name__)


def _as_result(fn):
    """Run a facade operation and fold service errors into an AuthResult."""

    @functools.wraps(fn)
    async def wrapper(self: "AuthService", *args, **kwargs) -> AuthResult:
        try:
            data = await fn(self, *args, **kwargs)
        except ConstraintViolation as exc:
            err = ConflictError(exc.message, detail={"field": exc.field} if exc.field else {})
            self.logger.info("auth_operation_failed", operation=fn.__name__, kind=err.kind.value)
            return AuthResult.failure(err)
        except ServiceError as exc:
            self.logger.info("auth_operation_failed", operation=fn.__name__, kind=exc.kind.value)
            return AuthResult.failure(exc)
        return AuthResult.ok(data)

    return wrapper


def user_payload(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "public_id": user.public_id,
        "email": user.email,
        "username": user.username,
        "phone_number": user.phone_number,
        "role": user.role.value,
        "tenant_id": user.tenant_id,
        "email_verified": user.email_verified,
        "phone_verified": user.phone_verified,
        "display_name": user.display_name,
        "avatar_url": user.avatar_url,
    }


def session_payload(issued: IssuedSession) -> dict[str, Any]:
    return {
        "session_id": issued.session_id,
        "access_token": issued.access_token,
        "access_expires_at": issued.access_expires_at.isoformat(),
        "refresh_token": issued.refresh_token,
        "refresh_expires_at": issued.refresh_expires_at.isoformat(),
        "token_type": "bearer",
    }


class AuthService:
    """Entry point for controllers: every operation returns an :class:`AuthResult`.

    Login and OTP-request paths answer the same way whether or not the account
    exists.
    """

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        issuer: TokenIssuer,
        sessions: SessionManager,
        otp: OTPManager,
        two_factor: TwoFactorController,
        linker: OAuthIdentityLinker,
        verifier: Optional[IdentityVerifier] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.issuer = issuer
        self.sessions = sessions
        self.otp = otp
        self.two_factor = two_factor
        self.linker = linker
        self.verifier = verifier
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the account is unknown so timing does not leak existence
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    # -------------------------------------------------------------- passwords

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def _check_password_policy(self, password: str) -> None:
        if not password or len(password) < self.settings.password_min_length:
            raise ValidationError(
                f"password must be at least {self.settings.password_min_length} characters",
                detail={"field": "password"},
            )

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.info("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def _burn_password_check(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password or "")
        except (InvalidHash, VerifyMismatchError):
            pass

    def _set_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # ---------------------------------------------------------------- helpers

    def _lookup_identifier(self, identifier: str) -> Optional[User]:
        identifier = (identifier or "").strip()
        if "@" in identifier:
            return self.store.get_user_by_email(identifier.lower())
        if identifier.startswith("+"):
            try:
                return self.store.get_user_by_phone(normalize_phone(identifier))
            except ValidationError:
                return None
        return self.store.get_user_by_username(identifier.lower())

    def _user_for_target(self, target: str) -> Optional[User]:
        if "@" in target:
            return self.store.get_user_by_email(target)
        return self.store.get_user_by_phone(target)

    def _two_factor_methods(self, user: User, first_factor: str) -> list[str]:
        methods = ["totp", "recovery_code"]
        if first_factor != "otp:email":
            methods.append(Channel.EMAIL.value)
        if user.phone_number and user.phone_verified and first_factor != "otp:phone":
            methods += [Channel.SMS.value, Channel.WHATSAPP.value]
        return methods

    def _check_second_channel(self, first_factor: str, channel: Channel) -> None:
        # A code sent to the inbox or phone that proved the first factor is no second factor
        if (first_factor == "otp:email" and channel == Channel.EMAIL) or (
            first_factor == "otp:phone" and channel.is_phone
        ):
            raise ValidationError(
                "second factor must use a different channel",
                detail={"channel": channel.value},
            )

    def _challenge_payload(self, user: User, challenge: IssuedToken, method: str) -> dict[str, Any]:
        return {
            "two_factor_required": True,
            "challenge_token": challenge.token,
            "challenge_expires_at": challenge.expires_at.isoformat(),
            "methods": self._two_factor_methods(user, method),
        }

    def _start_session(
        self, user: User, device: Optional[DeviceInfo], *, method: str
    ) -> dict[str, Any]:
        if self.two_factor.is_enabled(user.id):
            challenge = self.issuer.issue_challenge_token(user.id, method=method)
            self.logger.info("login_two_factor_required", user_id=user.id, method=method)
            return self._challenge_payload(user, challenge, method)
        issued = self.sessions.create(user, device)
        return {"user": user_payload(user), "session": session_payload(issued)}

    def _user_from_challenge(self, challenge_token: str) -> Tuple[User, str]:
        """Resolve a challenge token to its user and the first factor it records."""
        claims = self.issuer.verify(challenge_token, expected_type=CHALLENGE)
        user = self.store.get_user(claims["sub"])
        if not user or not user.is_active:
            raise InvalidCredentialsError("account unavailable")
        return user, claims.get("amr", "")

    def _context_user(self, ctx: AuthContext) -> User:
        user = self.store.get_user(ctx.user_id)
        if not user:
            raise InvalidCredentialsError("account unavailable")
        return user

    # --------------------------------------------------------- registration

    @_as_result
    async def register(
        self,
        email: str,
        password: str,
        *,
        username: Optional[str] = None,
        phone_number: Optional[str] = None,
        display_name: Optional[str] = None,
        tenant_id: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> dict[str, Any]:
        email = normalize_email(email)
        self._check_password_policy(password)
        username = normalize_username(username) if username else None
        phone_number = normalize_phone(phone_number) if phone_number else None
        public_id = generate_public_id(
            self.sessions.random,
            self.store.public_id_exists,
            max_attempts=self.settings.unique_id_max_attempts,
        )
        user = self.store.create_user(
            email,
            public_id=public_id,
            username=username,
            phone_number=phone_number,
            tenant_id=tenant_id or self.settings.default_tenant_id,
            display_name=display_name,
        )
        self._set_password(user.id, password)
        issued = self.sessions.create(user, device)
        self.logger.info("user_registered", user_id=user.id)
        return {"user": user_payload(user), "session": session_payload(issued)}

    @_as_result
    async def check_username(self, username: str) -> dict[str, Any]:
        username = normalize_username(username)
        return {
            "username": username,
            "available": self.store.get_user_by_username(username) is None,
        }

    # ------------------------------------------------------------------ login

    @_as_result
    async def login(
        self,
        identifier: str,
        password: str,
        *,
        device: Optional[DeviceInfo] = None,
    ) -> dict[str, Any]:
        """Password login by email, username or phone number."""
        user = self._lookup_identifier(identifier)
        if not user:
            self._burn_password_check(password)
            raise InvalidCredentialsError("invalid credentials")
        if not self.verify_password(user.id, password) or not user.is_active:
            self.logger.info("login_failed", user_id=user.id)
            raise InvalidCredentialsError("invalid credentials")
        return self._start_session(user, device, method="pwd")

    @_as_result
    async def request_two_factor_code(
        self, challenge_token: str, channel: Channel | str
    ) -> dict[str, Any]:
        """Send a login code over email or a verified phone instead of using TOTP."""
        user, first_factor = self._user_from_challenge(challenge_token)
        channel = Channel(channel)
        self._check_second_channel(first_factor, channel)
        if channel == Channel.EMAIL:
            target = user.email
        elif user.phone_number and user.phone_verified:
            target = user.phone_number
        else:
            raise ValidationError("no verified phone number on the account")
        issued = await self.otp.request(target, OTPPurpose.LOGIN_CHALLENGE, channel)
        return {
            "channel": channel.value,
            "target": redact_target(issued.target),
            "expires_at": issued.expires_at.isoformat(),
        }

    @_as_result
    async def complete_two_factor_login(
        self,
        challenge_token: str,
        code: str,
        *,
        channel: Optional[Channel | str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> dict[str, Any]:
        """Finish a login held at the second factor.

        Without ``channel`` the code is a TOTP or recovery code; with it, the code
        is the one sent by :meth:`request_two_factor_code`.
        """
        user, first_factor = self._user_from_challenge(challenge_token)
        if channel is None:
            method = self.two_factor.validate(user.id, code)
        else:
            channel = Channel(channel)
            self._check_second_channel(first_factor, channel)
            target = user.email if channel == Channel.EMAIL else user.phone_number
            if not target:
                raise ValidationError("no target for channel")
            await self.otp.verify(target, OTPPurpose.LOGIN_CHALLENGE, code)
            method = channel.value
        issued = self.sessions.create(user, device)
        self.logger.info("login_two_factor_completed", user_id=user.id, method=method)
        return {"user": user_payload(user), "session": session_payload(issued)}

    @_as_result
    async def login_with_code(
        self, target: str, code: str, *, device: Optional[DeviceInfo] = None
    ) -> dict[str, Any]:
        """Passwordless login with a ``login-challenge`` code."""
        normalized = await self.otp.verify(target, OTPPurpose.LOGIN_CHALLENGE, code)
        user = self._user_for_target(normalized)
        if not user or not user.is_active:
            raise InvalidCredentialsError("invalid credentials")
        first_factor = "otp:email" if "@" in normalized else "otp:phone"
        return self._start_session(user, device, method=first_factor)

    # --------------------------------------------------------------- sessions

    @_as_result
    async def refresh(self, refresh_token: str) -> dict[str, Any]:
        return {"session": session_payload(self.sessions.refresh(refresh_token))}

    @_as_result
    async def authenticate(
        self, access_token: str, *, required_role: Optional[Role | str] = None
    ) -> dict[str, Any]:
        ctx = self.sessions.authenticate(access_token, required_role=required_role)
        return {
            "user_id": ctx.user_id,
            "session_id": ctx.session_id,
            "role": ctx.role.value,
            "tenant_id": ctx.tenant_id,
        }

    @_as_result
    async def logout(self, access_token: str) -> dict[str, Any]:
        ctx = self.sessions.authenticate(access_token)
        self.sessions.revoke(ctx.session_id)
        return {"revoked": 1}

    @_as_result
    async def logout_all(self, access_token: str) -> dict[str, Any]:
        ctx = self.sessions.authenticate(access_token)
        return {"revoked": self.sessions.revoke_all(ctx.user_id)}

    @_as_result
    async def list_sessions(self, access_token: str) -> dict[str, Any]:
        ctx = self.sessions.authenticate(access_token)
        return {
            "sessions": [
                {
                    "session_id": s.session_id,
                    "device_fingerprint": s.device_fingerprint,
                    "user_agent": s.user_agent,
                    "issued_at": s.issued_at.isoformat(),
                    "last_rotated_at": s.last_rotated_at.isoformat(),
                    "expires_at": s.expires_at.isoformat(),
                    "current": s.session_id == ctx.session_id,
                }
                for s in self.sessions.list_sessions(ctx.user_id)
            ]
        }

    # ---------------------------------------------------------- one-time codes

    @_as_result
    async def request_otp(
        self, target: str, purpose: OTPPurpose | str, channel: Channel | str
    ) -> dict[str, Any]:
        """Send a code to a registered target; unknown targets get the same answer."""
        purpose = OTPPurpose(purpose)
        channel = Channel(channel)
        # Input checks run before the lookup so unknown targets fail the same way
        self.otp.check_purpose(purpose, channel)
        normalized = self.otp.normalize_target(target, channel)
        user = self._user_for_target(normalized)
        if user and user.is_active:
            await self.otp.request(normalized, purpose, channel)
        else:
            self.logger.info(
                "otp_request_unknown_target",
                purpose=purpose.value,
                target=redact_target(normalized),
            )
        return {
            "sent": True,
            "channel": channel.value,
            "expires_in_seconds": int(self.otp.ttl.total_seconds()),
        }

    async def resend_otp(
        self, target: str, purpose: OTPPurpose | str, channel: Channel | str
    ) -> AuthResult:
        return await self.request_otp(target, purpose, channel)

    @_as_result
    async def verify_otp(
        self, target: str, purpose: OTPPurpose | str, code: str
    ) -> dict[str, Any]:
        """Confirm ownership of an email address or phone number."""
        purpose = OTPPurpose(purpose)
        if purpose not in (OTPPurpose.VERIFY_EMAIL, OTPPurpose.VERIFY_PHONE):
            raise ValidationError(
                "use the dedicated operation for this purpose",
                detail={"purpose": purpose.value},
            )
        normalized = await self.otp.verify(target, purpose, code)
        user = self._user_for_target(normalized)
        if not user:
            raise InvalidCredentialsError("account unavailable")
        if purpose == OTPPurpose.VERIFY_EMAIL:
            user = self.store.update_user(user.id, email_verified=True)
        else:
            user = self.store.update_user(user.id, phone_verified=True)
        self.logger.info("contact_verified", user_id=user.id, purpose=purpose.value)
        return {"verified": True, "user": user_payload(user)}

    @_as_result
    async def reset_password(self, target: str, code: str, new_password: str) -> dict[str, Any]:
        """Set a new password with a ``reset-password`` code, then log out everywhere."""
        self._check_password_policy(new_password)
        normalized = await self.otp.verify(target, OTPPurpose.RESET_PASSWORD, code)
        user = self._user_for_target(normalized)
        if not user:
            raise InvalidCredentialsError("account unavailable")
        self._set_password(user.id, new_password)
        revoked = self.sessions.revoke_all(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, revoked=revoked)
        return {"reset": True, "sessions_revoked": revoked}

    # ---------------------------------------------------------------- profile

    @_as_result
    async def change_password(
        self, access_token: str, current_password: str, new_password: str
    ) -> dict[str, Any]:
        """Replace the password and revoke every other session."""
        ctx = self.sessions.authenticate(access_token)
        if not self.verify_password(ctx.user_id, current_password):
            raise InvalidCredentialsError("current password is incorrect")
        self._check_password_policy(new_password)
        self._set_password(ctx.user_id, new_password)
        revoked = self.sessions.revoke_all(ctx.user_id, except_session_id=ctx.session_id)
        self.logger.info("password_changed", user_id=ctx.user_id, revoked=revoked)
        return {"changed": True, "sessions_revoked": revoked}

    @_as_result
    async def request_email_change(self, access_token: str, new_email: str) -> dict[str, Any]:
        ctx = self.sessions.authenticate(access_token)
        new_email = normalize_email(new_email)
        if self.store.get_user_by_email(new_email):
            raise ConflictError("email already in use", detail={"field": "email"})
        issued = await self.otp.request(new_email, OTPPurpose.VERIFY_EMAIL, Channel.EMAIL)
        self.logger.info("email_change_requested", user_id=ctx.user_id)
        return {"target": redact_target(issued.target), "expires_at": issued.expires_at.isoformat()}

    @_as_result
    async def confirm_email_change(
        self, access_token: str, new_email: str, code: str
    ) -> dict[str, Any]:
        ctx = self.sessions.authenticate(access_token)
        normalized = await self.otp.verify(new_email, OTPPurpose.VERIFY_EMAIL, code)
        user = self.store.update_user(ctx.user_id, email=normalized, email_verified=True)
        self.logger.info("email_changed", user_id=user.id)
        return {"user": user_payload(user)}

    @_as_result
    async def request_phone_change(
        self, access_token: str, new_phone: str, channel: Channel | str = Channel.SMS
    ) -> dict[str, Any]:
        ctx = self.sessions.authenticate(access_token)
        channel = Channel(channel)
        if not channel.is_phone:
            raise ValidationError("phone verification needs sms or whatsapp")
        new_phone = normalize_phone(new_phone)
        if self.store.get_user_by_phone(new_phone):
            raise ConflictError("phone number already in use", detail={"field": "phone_number"})
        issued = await self.otp.request(new_phone, OTPPurpose.VERIFY_PHONE, channel)
        self.logger.info("phone_change_requested", user_id=ctx.user_id, channel=channel.value)
        return {"target": redact_target(issued.target), "expires_at": issued.expires_at.isoformat()}

    @_as_result
    async def confirm_phone_change(
        self, access_token: str, new_phone: str, code: str
    ) -> dict[str, Any]:
        ctx = self.sessions.authenticate(access_token)
        normalized = await self.otp.verify(new_phone, OTPPurpose.VERIFY_PHONE, code)
        user = self.store.update_user(ctx.user_id, phone_number=normalized, phone_verified=True)
        self.logger.info("phone_changed", user_id=user.id)
        return {"user": user_payload(user)}

    @_as_result
    async def change_username(self, access_token: str, username: str) -> dict[str, Any]:
        ctx = self.sessions.authenticate(access_token)
        user = self.store.update_user(ctx.user_id, username=normalize_username(username))
        self.logger.info("username_changed", user_id=user.id)
        return {"user": user_payload(user)}

    # ------------------------------------------------------------- two-factor

    @_as_result
    async def enroll_two_factor(
        self, access_token: str, code: Optional[str] = None
    ) -> dict[str, Any]:
        """Start enrollment; replacing an active secret needs a current ``code``."""
        ctx = self.sessions.authenticate(access_token)
        enrollment = self.two_factor.enroll(self._context_user(ctx), code=code)
        return {
            "secret": enrollment.secret,
            "otpauth_uri": enrollment.otpauth_uri,
            "recovery_codes": enrollment.recovery_codes,
        }

    @_as_result
    async def confirm_two_factor(self, access_token: str, code: str) -> dict[str, Any]:
        ctx = self.sessions.authenticate(access_token)
        self.two_factor.confirm_enrollment(ctx.user_id, code)
        return {"enabled": True}

    @_as_result
    async def validate_two_factor(self, access_token: str, code: str) -> dict[str, Any]:
        """Step-up check for an already authenticated session."""
        ctx = self.sessions.authenticate(access_token)
        return {"valid": True, "method": self.two_factor.validate(ctx.user_id, code)}

    @_as_result
    async def disable_two_factor(self, access_token: str, code: str) -> dict[str, Any]:
        ctx = self.sessions.authenticate(access_token)
        self.two_factor.disable(ctx.user_id, code)
        return {"enabled": False}

    @_as_result
    async def regenerate_recovery_codes(self, access_token: str, code: str) -> dict[str, Any]:
        ctx = self.sessions.authenticate(access_token)
        return {"recovery_codes": self.two_factor.regenerate_recovery_codes(ctx.user_id, code)}

    @_as_result
    async def two_factor_status(self, access_token: str) -> dict[str, Any]:
        ctx = self.sessions.authenticate(access_token)
        return self.two_factor.status(ctx.user_id)

    # ------------------------------------------------------------------ oauth

    def _oauth_payload(self, result: OAuthLoginResult) -> dict[str, Any]:
        if result.requires_two_factor:
            payload = self._challenge_payload(result.user, result.challenge, "oauth")
        else:
            payload = {"session": session_payload(result.session)}
        payload["user"] = user_payload(result.user)
        payload["is_new_user"] = result.is_new_user
        return payload

    @_as_result
    async def oauth_login(
        self,
        provider: OAuthProvider | str,
        credential: str,
        *,
        device: Optional[DeviceInfo] = None,
    ) -> dict[str, Any]:
        """Verify a provider credential and log in the linked (or new) account."""
        try:
            provider = OAuthProvider(provider)
        except ValueError:
            raise ValidationError("unsupported provider", detail={"provider": provider}) from None
        if self.verifier is None:
            raise ValidationError("oauth verification not configured")
        identity = await self.verifier.verify(provider, credential)
        return self._oauth_payload(self.linker.complete_oauth_login(identity, device))

    @_as_result
    async def complete_oauth(
        self, identity: OAuthIdentity, *, device: Optional[DeviceInfo] = None
    ) -> dict[str, Any]:
        """Log in from an identity already verified by the caller."""
        return self._oauth_payload(self.linker.complete_oauth_login(identity, device))
