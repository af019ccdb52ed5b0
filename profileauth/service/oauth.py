from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from profileauth.logging import get_logger, redact_target
from profileauth.service.errors import (
    IdentityConflictError,
    InvalidCredentialsError,
    ValidationError,
)
from profileauth.service.identifiers import generate_public_id, normalize_email
from profileauth.service.sessions import DeviceInfo, IssuedSession, SessionManager
from profileauth.service.sources import RandomSource, SystemRandomSource
from profileauth.service.tokens import IssuedToken, TokenIssuer
from profileauth.service.two_factor import TwoFactorController
from profileauth.storage.errors import ConstraintViolation
from profileauth.storage.memory import MemoryStore
from profileauth.storage.models import User

logger = get_logger(__name__)


class OAuthProvider(str, Enum):
    GOOGLE = "google"
    FACEBOOK = "facebook"
    LINKEDIN = "linkedin"
    GITHUB = "github"
    MICROSOFT = "microsoft"


class OAuthIdentity(BaseModel):
    """Provider identity after verification; the only shape that reaches storage."""

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    provider: OAuthProvider
    subject_id: str = Field(min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, max_length=320)
    email_verified: bool = False
    display_name: Optional[str] = Field(default=None, max_length=200)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("email")
    @classmethod
    def _lower_email(cls, value: Optional[str]) -> Optional[str]:
        return value.lower() if value else None


GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_ISSUERS = {"accounts.google.com", "https://accounts.google.com"}

OAUTH_USERINFO = {
    OAuthProvider.GOOGLE: "https://www.googleapis.com/oauth2/v3/userinfo",
    OAuthProvider.GITHUB: "https://api.github.com/user",
    OAuthProvider.MICROSOFT: "https://graph.microsoft.com/v1.0/me",
    OAuthProvider.FACEBOOK: "https://graph.facebook.com/me?fields=id,name,email,picture",
    OAuthProvider.LINKEDIN: "https://api.linkedin.com/v2/userinfo",
}


class IdentityVerifier(Protocol):
    async def verify(self, provider: OAuthProvider, credential: str) -> OAuthIdentity: ...


def parse_oauth_userinfo(provider: OAuthProvider, userinfo: dict[str, Any]) -> dict[str, Any]:
    """Map a provider userinfo document onto :class:`OAuthIdentity` fields."""
    if provider == OAuthProvider.GOOGLE:
        return {
            "subject_id": userinfo.get("sub") or userinfo.get("id"),
            "email": userinfo.get("email"),
            "email_verified": userinfo.get("email_verified") in (True, "true"),
            "display_name": userinfo.get("name"),
            "avatar_url": userinfo.get("picture"),
        }
    if provider == OAuthProvider.GITHUB:
        return {
            "subject_id": str(userinfo.get("id") or ""),
            "email": userinfo.get("email"),
            # /user never attests the address; the emails endpoint does
            "email_verified": False,
            "display_name": userinfo.get("name") or userinfo.get("login"),
            "avatar_url": userinfo.get("avatar_url"),
        }
    if provider == OAuthProvider.MICROSOFT:
        return {
            "subject_id": userinfo.get("id"),
            "email": userinfo.get("mail") or userinfo.get("userPrincipalName"),
            "email_verified": False,
            "display_name": userinfo.get("displayName"),
            "avatar_url": None,
        }
    if provider == OAuthProvider.FACEBOOK:
        picture = (userinfo.get("picture") or {}).get("data") or {}
        return {
            "subject_id": userinfo.get("id"),
            "email": userinfo.get("email"),
            # Facebook only returns confirmed addresses
            "email_verified": bool(userinfo.get("email")),
            "display_name": userinfo.get("name"),
            "avatar_url": picture.get("url"),
        }
    return {
        "subject_id": userinfo.get("sub") or userinfo.get("id"),
        "email": userinfo.get("email"),
        "email_verified": userinfo.get("email_verified") in (True, "true"),
        "display_name": userinfo.get("name"),
        "avatar_url": userinfo.get("picture"),
    }


class HttpIdentityVerifier:
    """Verify provider credentials over HTTP and convert them into OAuthIdentity.

    Google mobile sign-in sends an ID token, checked through the tokeninfo endpoint
    including the audience. Every other provider sends an access token that is
    exchanged for the userinfo document.
    """

    def __init__(
        self,
        *,
        google_client_id: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.google_client_id = google_client_id
        self.timeout = timeout
        self._transport = transport

    async def verify(self, provider: OAuthProvider | str, credential: str) -> OAuthIdentity:
        provider = OAuthProvider(provider)
        if not credential:
            raise InvalidCredentialsError("missing provider credential")
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                if provider == OAuthProvider.GOOGLE:
                    fields = await self._verify_google_id_token(client, credential)
                else:
                    fields = await self._fetch_userinfo(client, provider, credential)
        except httpx.HTTPStatusError as e:
            logger.warning(
                "oauth_verify_http_error",
                provider=provider.value,
                status_code=e.response.status_code,
            )
            raise InvalidCredentialsError(
                "provider rejected credential", detail={"provider": provider.value}
            ) from e
        except httpx.HTTPError as e:
            logger.error("oauth_verify_error", provider=provider.value, error=str(e))
            raise InvalidCredentialsError(
                "provider verification failed", detail={"provider": provider.value}
            ) from e

        try:
            identity = OAuthIdentity(provider=provider, **fields)
        except PydanticValidationError as e:
            logger.warning("oauth_identity_invalid", provider=provider.value, errors=e.error_count())
            raise InvalidCredentialsError(
                "provider returned an unusable identity", detail={"provider": provider.value}
            ) from e
        logger.info("oauth_identity_verified", provider=provider.value)
        return identity

    async def _verify_google_id_token(
        self, client: httpx.AsyncClient, id_token: str
    ) -> dict[str, Any]:
        response = await client.get(GOOGLE_TOKENINFO_URL, params={"id_token": id_token})
        response.raise_for_status()
        claims = response.json()
        if not isinstance(claims, dict):
            raise InvalidCredentialsError("malformed tokeninfo response")
        if claims.get("iss") not in GOOGLE_ISSUERS:
            raise InvalidCredentialsError("id token issuer mismatch")
        if not self.google_client_id or claims.get("aud") != self.google_client_id:
            logger.warning("oauth_google_audience_mismatch")
            raise InvalidCredentialsError("id token audience mismatch")
        return parse_oauth_userinfo(OAuthProvider.GOOGLE, claims)

    async def _fetch_userinfo(
        self, client: httpx.AsyncClient, provider: OAuthProvider, access_token: str
    ) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        if provider == OAuthProvider.GITHUB:
            headers["Accept"] = "application/vnd.github+json"
        response = await client.get(OAUTH_USERINFO[provider], headers=headers)
        response.raise_for_status()
        userinfo = response.json()
        if not isinstance(userinfo, dict):
            raise InvalidCredentialsError("malformed userinfo response")
        fields = parse_oauth_userinfo(provider, userinfo)

        if provider == OAuthProvider.GITHUB:
            emails_response = await client.get(
                "https://api.github.com/user/emails", headers=headers
            )
            if emails_response.status_code == 200:
                primary = next(
                    (
                        e
                        for e in emails_response.json()
                        if isinstance(e, dict) and e.get("primary") and e.get("verified")
                    ),
                    None,
                )
                if primary:
                    fields["email"] = primary["email"]
                    fields["email_verified"] = True
        return fields


@dataclass(frozen=True)
class OAuthLoginResult:
    user: User
    is_new_user: bool
    session: Optional[IssuedSession] = None
    challenge: Optional[IssuedToken] = None

    @property
    def requires_two_factor(self) -> bool:
        return self.challenge is not None


class OAuthIdentityLinker:
    """Find or create the local user for a verified provider identity.

    Resolution is provenance first: (provider, subject) → existing link; else a
    verified email → link in place; else a new pre-linked user.
    """

    def __init__(
        self,
        store: MemoryStore,
        sessions: SessionManager,
        two_factor: TwoFactorController,
        issuer: TokenIssuer,
        *,
        default_tenant_id: str = "public",
        public_id_attempts: int = 10,
        random_source: Optional[RandomSource] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.two_factor = two_factor
        self.issuer = issuer
        self.default_tenant_id = default_tenant_id
        self.public_id_attempts = public_id_attempts
        self.random = random_source or SystemRandomSource()
        self.logger = get_logger(__name__)

    def resolve_user(self, identity: OAuthIdentity) -> Tuple[User, bool]:
        """Return ``(user, is_new_user)``; a lost creation race is re-resolved once."""
        try:
            return self._resolve(identity)
        except ConstraintViolation as exc:
            self.logger.info(
                "oauth_link_race_retry", provider=identity.provider.value, field=exc.field
            )
        try:
            return self._resolve(identity)
        except ConstraintViolation as exc:
            raise IdentityConflictError(
                "identity could not be linked", detail={"field": exc.field}
            ) from exc

    def _resolve(self, identity: OAuthIdentity) -> Tuple[User, bool]:
        provider = identity.provider.value
        user = self.store.get_user_by_identity(provider, identity.subject_id)
        if user:
            return user, False

        if not identity.email:
            raise ValidationError(
                "provider did not supply an email address", detail={"provider": provider}
            )
        email = normalize_email(identity.email)
        existing = self.store.get_user_by_email(email)
        if existing:
            return self._link_existing(existing, identity), False
        return self._create_linked(email, identity), True

    def _link_existing(self, user: User, identity: OAuthIdentity) -> User:
        provider = identity.provider.value
        if not identity.email_verified:
            # An unattested address must never unlock someone else's account
            self.logger.warning(
                "oauth_unverified_email_conflict",
                provider=provider,
                email=redact_target(user.email),
            )
            raise IdentityConflictError(
                "an account with this email already exists", detail={"provider": provider}
            )
        if any(i.provider == provider for i in self.store.list_identities(user.id)):
            self.logger.warning(
                "oauth_identity_conflict", provider=provider, user_id=user.id
            )
            raise IdentityConflictError(
                "account already linked to a different identity for this provider",
                detail={"provider": provider},
            )
        self.store.link_identity(user.id, provider, identity.subject_id)
        if not user.email_verified:
            user = self.store.update_user(user.id, email_verified=True)
        self.logger.info("oauth_identity_linked", provider=provider, user_id=user.id)
        return user

    def _create_linked(self, email: str, identity: OAuthIdentity) -> User:
        provider = identity.provider.value
        public_id = generate_public_id(
            self.random, self.store.public_id_exists, max_attempts=self.public_id_attempts
        )
        user = self.store.create_user(
            email,
            public_id=public_id,
            tenant_id=self.default_tenant_id,
            email_verified=identity.email_verified,
            display_name=identity.display_name,
            avatar_url=identity.avatar_url,
        )
        try:
            self.store.link_identity(user.id, provider, identity.subject_id)
        except ConstraintViolation:
            # Another request linked this identity first; drop the orphan
            self.store.delete_user(user.id, now=self.sessions.clock.now())
            raise
        self.logger.info("oauth_user_created", provider=provider, user_id=user.id)
        return user

    def complete_oauth_login(
        self, identity: OAuthIdentity, device: Optional[DeviceInfo] = None
    ) -> OAuthLoginResult:
        user, is_new_user = self.resolve_user(identity)
        if not user.is_active:
            raise InvalidCredentialsError("account disabled")
        if self.two_factor.is_enabled(user.id):
            challenge = self.issuer.issue_challenge_token(
                user.id, method=f"oauth:{identity.provider.value}"
            )
            self.logger.info("oauth_two_factor_required", user_id=user.id)
            return OAuthLoginResult(user=user, is_new_user=is_new_user, challenge=challenge)
        session = self.sessions.create(user, device)
        return OAuthLoginResult(user=user, is_new_user=is_new_user, session=session)
