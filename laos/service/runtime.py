from __future__ import annotations

import threading
from datetime import timedelta

from laos.config import get_settings, reset_settings_cache
from laos.logging import get_logger
from laos.service.accounts import AccountService
from laos.service.authenticator import RequestAuthenticator
from laos.service.email import EmailService, EmailVerificationService
from laos.service.identity import IdentityResolver
from laos.service.lifecycle import TokenLifecycleManager
from laos.service.oauth import GoogleOAuthClient
from laos.service.tokens import TokenCodec
from laos.storage.memory import MemoryStore
from laos.storage.postgres import PostgresStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.codec = TokenCodec.from_settings(self.settings)
        self.resolver = IdentityResolver(self.codec, self.store)
        self.lifecycle = TokenLifecycleManager(self.codec, self.store)
        self.authenticator = RequestAuthenticator.from_settings(
            self.settings, self.codec, self.resolver, self.lifecycle
        )
        self.oauth = GoogleOAuthClient.from_settings(self.settings)
        self.email = EmailService.from_settings(self.settings)
        self.verification = EmailVerificationService(
            ttl=timedelta(minutes=self.settings.email_code_ttl_minutes)
        )
        self.accounts = AccountService(
            self.store,
            self.lifecycle,
            oauth=self.oauth,
            email=self.email,
            verification=self.verification,
            require_email_verification=self.settings.require_email_verification,
        )
        logger.info("runtime_init_complete", store_type=store_type)

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if callable(close):
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
