from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, FrozenSet, List, Mapping, Optional, Protocol, Sequence, Tuple

import requests
from requests.adapters import HTTPAdapter

from ..logging import get_logger
from ..util.errors import (
    AuthenticationError,
    OperationCancelled,
    ProviderError,
    RateLimited,
    ResourceNotFound,
    TransportError,
)
from ..util.pagination import paginate

LOG = get_logger(__name__)

DEFAULT_MANAGEMENT_URL = "https://management.azure.com"
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE = 1.0
DEFAULT_BACKOFF_MAX = 30.0
RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})


class TokenSource(Protocol):
    def access_token(self) -> str:
        ...

    def refresh(self, stale_token: str) -> str:
        ...


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_max: float = DEFAULT_BACKOFF_MAX
    retry_statuses: FrozenSet[int] = RETRY_STATUSES

    def backoff(self, attempt: int) -> float:
        """
        Delay before the next try after `attempt` failed tries (1-based).
        """
        return min(self.backoff_max, self.backoff_base * (2 ** max(0, attempt - 1)))


@dataclass(frozen=True)
class Request:
    method: str
    url: str
    params: Optional[Mapping[str, str]] = None
    json: Any = None
    data: Optional[Mapping[str, str]] = None
    headers: Optional[Mapping[str, str]] = None
    paginate: bool = False
    items_path: Tuple[str, ...] = ("value",)
    next_link_path: Tuple[str, ...] = ("nextLink",)
    not_found_ok: bool = False
    authenticated: bool = True
    raise_for_status: bool = True


@dataclass(frozen=True)
class Response:
    status: int
    payload: Any
    headers: Mapping[str, str] = field(default_factory=dict)
    url: str = ""
    items: Tuple[Any, ...] = ()


def get_path(data: Any, path: Sequence[str]) -> Any:
    cur = data
    for key in path:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _set_path(data: Any, path: Sequence[str], value: Any) -> None:
    cur = data
    for key in path[:-1]:
        if not isinstance(cur, dict):
            return
        cur = cur.setdefault(key, {})
    if isinstance(cur, dict):
        cur[path[-1]] = value


def _pop_path(data: Any, path: Sequence[str]) -> None:
    parent = get_path(data, path[:-1]) if len(path) > 1 else data
    if isinstance(parent, dict):
        parent.pop(path[-1], None)


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Parse a Retry-After header given either as delta-seconds or as an HTTP date.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - (now or datetime.now(timezone.utc))).total_seconds())


def _payload(raw: Any) -> Any:
    try:
        return raw.json()
    except ValueError:
        return None


def error_from_response(status: int, payload: Any, text: str, url: str) -> ProviderError:
    """
    Build a typed error from an ARM error envelope ({"error": {"code", "message"}})
    or an OAuth error body ({"error": "...", "error_description": "..."}).
    """
    code: Optional[str] = None
    message = ""
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            code = err.get("code")
            message = str(err.get("message") or "")
        elif isinstance(err, str):
            code = err
            message = str(payload.get("error_description") or "")
    if not message:
        message = (text or "").strip()[:200] or "request failed"
    if status == 404:
        return ResourceNotFound(status, code, message, url=url)
    if status == 429:
        return RateLimited(status, code, message, url=url)
    return ProviderError(status, code, message, url=url)


class HttpExecutor:
    """
    Uniform request/response contract for every provider call.

    - attaches the bearer token from token_source (authenticated requests)
    - follows next-links and returns one merged collection for paginated requests
    - retries throttling, 5xx and connection failures with exponential backoff;
      Retry-After overrides the computed delay
    - a 401 triggers exactly one token refresh and retry
    - 404 is None for not_found_ok requests, ResourceNotFound otherwise
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        token_source: Optional[TokenSource] = None,
        base_url: str = DEFAULT_MANAGEMENT_URL,
        timeout: float = DEFAULT_TIMEOUT,
        retry: RetryPolicy = RetryPolicy(),
        pool_size: Optional[int] = None,
        sleep: Optional[Callable[[float], None]] = None,
        allow_http: bool = False,
    ) -> None:
        self._session = session if session is not None else requests.Session()
        if pool_size is not None and pool_size > 0 and hasattr(self._session, "mount"):
            adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
            self._session.mount("https://", adapter)
            self._session.mount("http://", adapter)
        self.token_source = token_source
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry = retry
        self._allow_http = allow_http
        self._cancelled = threading.Event()
        self._sleep = sleep or self._interruptible_sleep

    @property
    def session(self) -> requests.Session:
        return self._session

    def cancel(self) -> None:
        """
        Abort pending backoff sleeps and refuse further attempts.
        """
        self._cancelled.set()

    def _interruptible_sleep(self, seconds: float) -> None:
        if self._cancelled.wait(seconds):
            raise OperationCancelled("Request cancelled")

    def _check_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise OperationCancelled("Request cancelled")

    def resolve_url(self, url: str) -> str:
        if url.startswith("https://") or url.startswith("http://"):
            return url
        return f"{self.base_url}/{url.lstrip('/')}"

    def execute(self, request: Request) -> Optional[Response]:
        url = self.resolve_url(request.url)
        if not request.paginate:
            return self._send(request, url, request.params)

        first: List[Response] = []

        def fetch(link: Optional[str]) -> Tuple[Sequence[Any], Optional[str]]:
            # next-links already carry the query string
            resp = self._send(request, link or url, None if link else request.params)
            if resp is None:
                return [], None
            if not first:
                first.append(resp)
            items = get_path(resp.payload, request.items_path)
            next_link = get_path(resp.payload, request.next_link_path)
            if next_link:
                LOG.debug("Following next link", extra={"url": url})
            return (items if isinstance(items, list) else []), (str(next_link) if next_link else None)

        items = list(paginate(fetch))
        if not first:
            return None
        head = first[0]
        payload = copy.deepcopy(head.payload) if isinstance(head.payload, dict) else {}
        _set_path(payload, request.items_path, items)
        _pop_path(payload, request.next_link_path)
        return Response(status=head.status, payload=payload, headers=head.headers, url=head.url, items=tuple(items))

    def _token(self) -> str:
        if self.token_source is None:
            raise AuthenticationError("No token source configured for authenticated request")
        return self.token_source.access_token()

    def _send(self, request: Request, url: str, params: Optional[Mapping[str, str]]) -> Optional[Response]:
        if url.startswith("http://") and not self._allow_http:
            raise TransportError(f"Refusing plain HTTP request: {url}")

        token = self._token() if request.authenticated else None
        refreshed = False
        attempt = 0
        policy = self.retry
        while True:
            self._check_cancelled()
            attempt += 1
            headers = {"Accept": "application/json"}
            headers.update(request.headers or {})
            if token:
                headers["Authorization"] = f"Bearer {token}"
            try:
                raw = self._session.request(
                    request.method,
                    url,
                    params=params,
                    json=request.json,
                    data=request.data,
                    headers=headers,
                    timeout=self.timeout,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt >= policy.max_attempts:
                    raise TransportError(f"{request.method} {url} failed after {attempt} attempts: {e}") from e
                delay = policy.backoff(attempt)
                LOG.warning(
                    "Connection failed; retrying",
                    extra={"url": url, "attempt": attempt, "delay_s": delay, "error": str(e)},
                )
                self._sleep(delay)
                continue

            status = int(raw.status_code)
            if status == 401 and request.authenticated:
                if refreshed:
                    raise AuthenticationError(f"Provider rejected refreshed token for {url}")
                LOG.info("Token rejected; refreshing", extra={"url": url})
                token = self.token_source.refresh(token or "")  # type: ignore[union-attr]
                refreshed = True
                continue

            if status in policy.retry_statuses:
                if attempt >= policy.max_attempts:
                    raise error_from_response(status, _payload(raw), getattr(raw, "text", ""), url)
                delay = None
                if status in (429, 503):
                    delay = parse_retry_after(raw.headers.get("Retry-After"))
                if delay is None:
                    delay = policy.backoff(attempt)
                LOG.warning(
                    "Transient response; retrying",
                    extra={"url": url, "status": status, "attempt": attempt, "delay_s": delay},
                )
                self._sleep(delay)
                continue

            if status == 404 and request.not_found_ok:
                LOG.debug("Not found; treated as absent", extra={"url": url})
                return None
            payload = _payload(raw)
            if status >= 400 and request.raise_for_status:
                raise error_from_response(status, payload, getattr(raw, "text", ""), url)
            return Response(status=status, payload=payload, headers=dict(raw.headers), url=url)
