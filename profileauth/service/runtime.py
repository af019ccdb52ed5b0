from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from profileauth.config import Settings, get_settings, reset_settings_cache
from profileauth.logging import get_logger
from profileauth.service.auth import AuthService
from profileauth.service.notifier import (
    ChannelRouter,
    EmailNotifier,
    LoggingNotifier,
    Notifier,
    WebhookNotifier,
)
from profileauth.service.oauth import HttpIdentityVerifier, OAuthIdentityLinker
from profileauth.service.otp import OTPManager
from profileauth.service.sessions import SessionManager
from profileauth.service.sources import SystemClock, SystemRandomSource
from profileauth.service.tokens import SigningKey, TokenIssuer
from profileauth.service.two_factor import TwoFactorController
from profileauth.storage.memory import MemoryStore
from profileauth.storage.models import Channel
from profileauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of ``url`` with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def build_notifier(settings: Settings) -> Notifier:
    """Route each channel to its configured transport.

    Channels without a transport are left unrouted and fail as unavailable,
    except under TEST_MODE where they are logged instead.
    """
    routes: Dict[Channel, Notifier] = {}
    if settings.smtp_host:
        routes[Channel.EMAIL] = EmailNotifier(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            timeout=settings.notifier_timeout_seconds,
        )
    for channel, url in (
        (Channel.SMS, settings.sms_webhook_url),
        (Channel.WHATSAPP, settings.whatsapp_webhook_url),
    ):
        if url:
            routes[channel] = WebhookNotifier(
                url,
                api_key=settings.notifier_api_key,
                timeout=settings.notifier_timeout_seconds,
            )
    if settings.test_mode:
        dev = LoggingNotifier()
        for channel in Channel:
            routes.setdefault(channel, dev)
    logger.info(
        "notifier_routes_configured",
        channels=sorted(ch.value for ch in routes),
    )
    return ChannelRouter(routes)


class Runtime:
    """Holds the wired auth services for one process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = MemoryStore(
            fs_root=self.settings.shared_fs_root,
            mfa_encryption_key=self.settings.mfa_secret_key or self.settings.jwt_secret,
        )

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared one-time codes; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; one-time codes are "
                    "held in-process only."
                ),
                mode=fallback_mode,
            )

        s = self.settings
        self.clock = SystemClock()
        self.random = SystemRandomSource()
        self.issuer = TokenIssuer(
            SigningKey(s.jwt_key_id, s.jwt_secret),
            verification_keys=s.verification_keys,
            issuer=s.jwt_issuer,
            audience=s.jwt_audience,
            access_ttl=timedelta(minutes=s.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=s.refresh_token_ttl_days),
            challenge_ttl=timedelta(minutes=s.two_factor_challenge_ttl_minutes),
            leeway=timedelta(seconds=s.clock_skew_leeway_seconds),
            clock=self.clock,
            random_source=self.random,
        )
        self.sessions = SessionManager(
            self.store,
            self.issuer,
            refresh_ttl=timedelta(days=s.refresh_token_ttl_days),
            max_lifetime=timedelta(days=s.session_max_lifetime_days),
            clock=self.clock,
            random_source=self.random,
        )
        self.notifier = build_notifier(s)
        self.otp = OTPManager(
            self.store,
            self.notifier,
            cache=self.cache,
            code_length=s.otp_length,
            ttl=timedelta(minutes=s.otp_ttl_minutes),
            max_attempts=s.otp_max_attempts,
            pepper=s.otp_pepper,
            dispatch_timeout=s.notifier_timeout_seconds + 5,
            brand=s.email_from_name,
            clock=self.clock,
            random_source=self.random,
        )
        self.two_factor = TwoFactorController(
            self.store,
            issuer=s.totp_issuer,
            interval=s.totp_interval,
            digits=s.totp_digits,
            window=s.totp_window,
            recovery_code_count=s.recovery_code_count,
            pepper=s.otp_pepper,
            clock=self.clock,
            random_source=self.random,
        )
        self.verifier = HttpIdentityVerifier(
            google_client_id=s.oauth_google_client_id,
            timeout=s.oauth_http_timeout_seconds,
        )
        self.linker = OAuthIdentityLinker(
            self.store,
            self.sessions,
            self.two_factor,
            self.issuer,
            default_tenant_id=s.default_tenant_id,
            public_id_attempts=s.unique_id_max_attempts,
            random_source=self.random,
        )
        self.auth = AuthService(
            self.store,
            s,
            issuer=self.issuer,
            sessions=self.sessions,
            otp=self.otp,
            two_factor=self.two_factor,
            linker=self.linker,
            verifier=self.verifier,
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            smtp_configured=bool(s.smtp_host),
            signing_kid=s.jwt_key_id,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check prevents two threads building it at once.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
