from __future__ import annotations

import threading
from typing import Optional

from serverpanel.config import Settings, get_settings, reset_settings_cache
from serverpanel.logging import get_logger
from serverpanel.service.auth import UserService
from serverpanel.service.clients import ClientService
from serverpanel.service.email import EmailService
from serverpanel.service.issuance import TokenIssuer
from serverpanel.service.notifications import NotificationDispatcher
from serverpanel.service.oauth import TokenGrantService
from serverpanel.service.otp import OtpService
from serverpanel.service.permissions import PermissionResolver
from serverpanel.service.sessions import SessionService
from serverpanel.service.tokens import TokenConfig
from serverpanel.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            token_algorithm=self.settings.token_algorithm,
            test_mode=self.settings.test_mode,
        )

        self.token_config = TokenConfig(
            key=self.settings.token_secret,
            algorithm=self.settings.token_algorithm,
        )
        self.store = MemoryStore(
            otp_encryption_key=self.settings.otp_encryption_key or self.settings.token_secret
        )
        self.permissions = PermissionResolver(self.store)
        self.users = UserService(self.store, self.permissions)
        self.sessions = SessionService(
            self.store, self.permissions, ttl_seconds=self.settings.session_ttl_seconds
        )
        self.otp = OtpService(self.store, issuer_name=self.settings.otp_issuer)
        self.clients = ClientService(self.store)
        self.issuer = TokenIssuer(self.token_config)
        self.grants = TokenGrantService(
            self.store,
            self.issuer,
            self.users,
            self.permissions,
            self.otp,
            ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.notifications = NotificationDispatcher(self.email)
        logger.info(
            "runtime_init_completed",
            email_configured=self.email.is_configured,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def configure_runtime(settings: Settings) -> Runtime:
    """Replace the runtime singleton with one built from explicit settings."""
    global runtime
    with _runtime_lock:
        runtime = Runtime(settings)
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime()
        return runtime
