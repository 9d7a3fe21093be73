from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from taskboard.config import Settings, get_settings, reset_settings_cache
from taskboard.logging import get_logger
from taskboard.service.passwords import CredentialVerifier
from taskboard.service.refresh_tokens import RefreshTokenStore
from taskboard.service.sessions import ReuseHook, SessionManager
from taskboard.service.tokens import AccessTokenSigner
from taskboard.storage.memory import MemoryStore
from taskboard.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings) -> Union[MemoryStore, PostgresStore]:
    if settings.use_memory_store:
        return MemoryStore()
    return PostgresStore(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        statement_timeout_ms=settings.db_statement_timeout_ms,
    )


class Runtime:
    """Holds the singleton collaborators for the FastAPI app.

    Everything is built here, once, from the frozen settings; nothing else in
    the package constructs services on its own.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        on_reuse: Optional[ReuseHook] = None,
    ):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )
        try:
            self.store = build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.verifier = CredentialVerifier(
            time_cost=self.settings.password_time_cost,
            memory_cost=self.settings.password_memory_cost,
            parallelism=self.settings.password_parallelism,
        )
        self.signer = AccessTokenSigner(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            ttl=self.settings.access_token_ttl,
            leeway=timedelta(seconds=self.settings.jwt_leeway_seconds),
        )
        self.refresh_tokens = RefreshTokenStore(
            self.store, self.settings.refresh_token_expires_in
        )
        self.sessions = SessionManager(
            self.store,
            self.refresh_tokens,
            self.signer,
            self.verifier,
            on_reuse=on_reuse,
        )
        logger.info("runtime_init_completed", store_type=store_type)

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once built.
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
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
