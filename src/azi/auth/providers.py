from __future__ import annotations

import threading
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional

from ..logging import get_logger
from ..util.errors import RefreshRejected, TokenCacheUnavailable
from ..util.time import utc_now
from .cache import TokenCache, TokenRecord
from .device_code import DeviceCodeAuthenticator

LOG = get_logger(__name__)

DEFAULT_EXPIRY_SKEW = timedelta(seconds=120)


@dataclass(frozen=True)
class AuthContext:
    """
    Resolved authentication settings for one invocation.
    """

    account: str
    tenant: str
    client_id: str
    scope: str
    authority: str


class TokenProvider:
    """
    Supplies valid bearer tokens to the HTTP executor.

    Order of resolution: in-memory token, cached record, refresh grant, device
    code flow. Every cache round trip runs under the cache's file lock so
    concurrent CLI invocations do not refresh or authenticate twice. A record
    whose expiry has passed is never returned without a refresh attempt.
    """

    def __init__(
        self,
        cache: TokenCache,
        authenticator: DeviceCodeAuthenticator,
        *,
        account: str,
        expiry_skew: timedelta = DEFAULT_EXPIRY_SKEW,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._cache = cache
        self._authenticator = authenticator
        self.account = account
        self._skew = expiry_skew
        self._now = now
        self._mutex = threading.Lock()
        self._current: Optional[TokenRecord] = None

    def _valid(self, record: Optional[TokenRecord]) -> bool:
        return record is not None and not record.is_expired(self._now(), self._skew)

    @contextmanager
    def _cache_lock(self) -> Iterator[None]:
        stack = ExitStack()
        try:
            stack.enter_context(self._cache.lock())
        except TokenCacheUnavailable as e:
            LOG.warning("Token cache lock unavailable; continuing without it", extra={"error": str(e)})
        with stack:
            yield

    def _store(self, record: TokenRecord) -> None:
        try:
            self._cache.store(self.account, record)
        except TokenCacheUnavailable as e:
            LOG.warning("Token not persisted; it stays valid for this run", extra={"error": str(e)})

    def _clear(self) -> None:
        try:
            self._cache.clear(self.account)
        except TokenCacheUnavailable as e:
            LOG.warning("Could not remove stale token", extra={"error": str(e)})

    def _refresh_or_authenticate(self, record: Optional[TokenRecord]) -> TokenRecord:
        if record is not None and record.refresh_token:
            try:
                refreshed = self._authenticator.refresh(record)
            except RefreshRejected as e:
                LOG.info("Refresh token rejected; starting device code sign-in", extra={"error": str(e)})
                self._clear()
            else:
                self._store(refreshed)
                return refreshed
        fresh = self._authenticator.authenticate()
        self._store(fresh)
        return fresh

    def token_record(self) -> TokenRecord:
        with self._mutex:
            if self._valid(self._current):
                return self._current  # type: ignore[return-value]
            with self._cache_lock():
                record = self._cache.load(self.account)
                if not self._valid(record):
                    record = self._refresh_or_authenticate(record or self._current)
            self._current = record
            return record  # type: ignore[return-value]

    def access_token(self) -> str:
        return self.token_record().access_token

    def refresh(self, stale_token: str) -> str:
        """
        Force a new token after the provider rejected stale_token (HTTP 401).
        When another thread or process already replaced it, that token is used.
        """
        with self._mutex:
            current = self._current
            if current is not None and current.access_token != stale_token and self._valid(current):
                return current.access_token
            with self._cache_lock():
                record = self._cache.load(self.account)
                if record is not None and record.access_token != stale_token and self._valid(record):
                    fresh = record
                else:
                    fresh = self._refresh_or_authenticate(record or current)
            self._current = fresh
            return fresh.access_token

    def login(self) -> TokenRecord:
        """
        Run the device code flow unconditionally and replace the cached record.
        """
        with self._mutex:
            with self._cache_lock():
                record = self._authenticator.authenticate()
                self._store(record)
            self._current = record
            return record

    def logout(self) -> bool:
        with self._mutex:
            self._current = None
            with self._cache_lock():
                return self._cache.clear(self.account)
