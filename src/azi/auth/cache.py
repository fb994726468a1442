from __future__ import annotations

import json
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from filelock import FileLock, Timeout

from ..logging import get_logger
from ..util.errors import TokenCacheUnavailable
from ..util.time import from_iso, to_iso, utc_now

LOG = get_logger(__name__)

CACHE_FILE_NAME = "tokens.json"
CACHE_VERSION = 1
DEFAULT_LOCK_TIMEOUT = -1.0


@dataclass(frozen=True)
class TokenRecord:
    account: str
    tenant_id: str
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime
    scope: str

    def is_expired(self, now: Optional[datetime] = None, skew: timedelta = timedelta(0)) -> bool:
        return (now or utc_now()) + skew >= self.expires_at

    def with_account(self, account: str) -> "TokenRecord":
        return replace(self, account=account)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account": self.account,
            "tenant_id": self.tenant_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": to_iso(self.expires_at),
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenRecord":
        refresh = data.get("refresh_token")
        return cls(
            account=str(data["account"]),
            tenant_id=str(data["tenant_id"]),
            access_token=str(data["access_token"]),
            refresh_token=str(refresh) if refresh else None,
            expires_at=from_iso(str(data["expires_at"])),
            scope=str(data.get("scope") or ""),
        )


class TokenCache:
    """
    On-disk token store: one JSON file holding one TokenRecord per account.

    Writes are atomic (temp file in the same directory, then os.replace) and
    guarded by an advisory lock file next to the cache. The lock is reentrant,
    so callers can hold lock() around a load-refresh-store sequence while
    store()/clear() take it again internally.
    """

    def __init__(self, path: Path, *, lock_timeout: float = DEFAULT_LOCK_TIMEOUT) -> None:
        self.path = Path(path)
        self._lock = FileLock(str(self.path) + ".lock", timeout=lock_timeout)

    @classmethod
    def in_dir(cls, config_dir: Path, **kwargs: Any) -> "TokenCache":
        return cls(Path(config_dir) / CACHE_FILE_NAME, **kwargs)

    @contextmanager
    def lock(self) -> Iterator[None]:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            try:
                self._lock.acquire(timeout=0)
            except Timeout:
                # another azi process may be in the middle of a device code sign-in
                LOG.warning("Waiting for token cache lock held by another process", extra={"path": str(self.path)})
                self._lock.acquire()
        except (OSError, Timeout) as e:
            raise TokenCacheUnavailable(f"Cannot lock token cache {self.path}: {e}") from e
        try:
            yield
        finally:
            self._lock.release()

    def _read_entries(self) -> Dict[str, Dict[str, Any]]:
        try:
            text = self.path.read_text(encoding="utf-8-sig")
        except FileNotFoundError:
            return {}
        except OSError as e:
            LOG.warning("Token cache unreadable; ignoring", extra={"path": str(self.path), "error": str(e)})
            return {}
        try:
            data = json.loads(text)
        except ValueError as e:
            LOG.warning("Token cache corrupt; ignoring", extra={"path": str(self.path), "error": str(e)})
            return {}
        accounts = data.get("accounts") if isinstance(data, dict) else None
        if not isinstance(accounts, dict):
            LOG.warning("Token cache has unexpected shape; ignoring", extra={"path": str(self.path)})
            return {}
        return {str(k): v for k, v in accounts.items() if isinstance(v, dict)}

    def _write_entries(self, entries: Dict[str, Dict[str, Any]]) -> None:
        payload = {"version": CACHE_VERSION, "accounts": entries}
        tmp_name: Optional[str] = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=".tokens-", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2, sort_keys=True)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            raise TokenCacheUnavailable(f"Cannot write token cache {self.path}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

    def load(self, account: str) -> Optional[TokenRecord]:
        """
        Return the stored record for account, or None when absent or unreadable.
        """
        raw = self._read_entries().get(account)
        if raw is None:
            return None
        try:
            return TokenRecord.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            LOG.warning("Discarding malformed token record", extra={"account": account, "error": str(e)})
            return None

    def store(self, account: str, record: TokenRecord) -> None:
        with self.lock():
            entries = self._read_entries()
            data = record.with_account(account).to_dict()
            data["updated_at"] = to_iso(utc_now())
            entries[account] = data
            self._write_entries(entries)
        LOG.debug("Stored token", extra={"account": account})

    def clear(self, account: str) -> bool:
        with self.lock():
            entries = self._read_entries()
            if account not in entries:
                return False
            del entries[account]
            self._write_entries(entries)
        LOG.debug("Cleared token", extra={"account": account})
        return True

    def accounts(self) -> List[str]:
        """
        Known accounts, most recently stored first.
        """
        entries = self._read_entries()
        return sorted(entries, key=lambda k: str(entries[k].get("updated_at") or ""), reverse=True)
