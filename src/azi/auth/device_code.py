from __future__ import annotations

import base64
import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..arm.http import HttpExecutor, Request
from ..logging import get_logger
from ..util.errors import (
    AuthenticationDenied,
    AuthenticationError,
    AuthenticationExpired,
    ProviderError,
    RefreshRejected,
)
from ..util.time import utc_now
from .cache import TokenRecord
from .tenant import is_multi_tenant

LOG = get_logger(__name__)

# Public client id of the Azure CLI application.
DEFAULT_CLIENT_ID = "04b07795-8ddb-461a-bbee-02f9e1bf7b46"
DEFAULT_AUTHORITY = "https://login.microsoftonline.com"
DEFAULT_SCOPE = "https://management.azure.com/.default offline_access"
DEFAULT_INTERVAL = 5.0
DEFAULT_TOKEN_LIFETIME = 3600
SLOW_DOWN_INCREMENT = 5.0
DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"


class AuthState(Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    POLLING = "polling"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    DENIED = "denied"


TERMINAL_STATES = frozenset({AuthState.AUTHENTICATED, AuthState.EXPIRED, AuthState.DENIED})


@dataclass(frozen=True)
class DeviceCodeSession:
    device_code: str
    user_code: str
    verification_url: str
    interval: float
    expires_at: float  # value of the authenticator's clock
    message: str = ""


def decode_jwt_claims(token: str) -> Dict[str, Any]:
    """
    Decode the payload of a JWT without verifying it. Returns {} when the token
    is opaque.
    """
    parts = (token or "").split(".")
    if len(parts) < 3:
        return {}
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return {}
    return claims if isinstance(claims, dict) else {}


def _oauth_error(payload: Any) -> tuple[str, str]:
    if not isinstance(payload, dict):
        return "", ""
    return str(payload.get("error") or ""), str(payload.get("error_description") or "")


class DeviceCodeAuthenticator:
    """
    OAuth2 device authorization grant as an explicit state machine:

        IDLE -> REQUESTED -> POLLING -> AUTHENTICATED | EXPIRED | DENIED

    authenticate() blocks until a terminal state. clock and sleep are injectable
    so tests run without real delays. The same instance also performs
    refresh-token grants for the tenant.
    """

    def __init__(
        self,
        http: HttpExecutor,
        *,
        tenant: str,
        client_id: str = DEFAULT_CLIENT_ID,
        scope: str = DEFAULT_SCOPE,
        authority: str = DEFAULT_AUTHORITY,
        prompt: Optional[Callable[[DeviceCodeSession], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utc_now,
        default_interval: float = DEFAULT_INTERVAL,
    ) -> None:
        self._http = http
        self.tenant = tenant
        self.client_id = client_id
        self.scope = scope
        self.authority = authority.rstrip("/")
        self._prompt = prompt
        self._sleep = sleep
        self._clock = clock
        self._now = now
        self._default_interval = default_interval
        self.state = AuthState.IDLE

    def _endpoint(self, tenant: str, name: str) -> str:
        return f"{self.authority}/{tenant}/oauth2/v2.0/{name}"

    def _post_form(self, url: str, form: Dict[str, str]) -> Any:
        # OAuth errors arrive as 400 bodies, so statuses are inspected here.
        try:
            return self._http.execute(Request("POST", url, data=form, authenticated=False, raise_for_status=False))
        except ProviderError as e:
            raise AuthenticationError(f"Identity endpoint unavailable: {e}") from e

    def _transition(self, state: AuthState) -> None:
        LOG.debug("Device code state change", extra={"from_state": self.state.value, "to_state": state.value})
        self.state = state

    def request_session(self) -> DeviceCodeSession:
        if self.state is not AuthState.IDLE:
            raise AuthenticationError(f"Device code flow already started (state={self.state.value})")
        resp = self._post_form(
            self._endpoint(self.tenant, "devicecode"),
            {"client_id": self.client_id, "scope": self.scope},
        )
        payload = resp.payload if isinstance(resp.payload, dict) else {}
        if resp.status != 200 or not payload.get("device_code"):
            error, description = _oauth_error(payload)
            raise AuthenticationError(f"Device code request failed ({resp.status}): {error} {description}".strip())

        interval = float(payload.get("interval") or self._default_interval)
        expires_in = float(payload.get("expires_in") or 900)
        session = DeviceCodeSession(
            device_code=str(payload["device_code"]),
            user_code=str(payload.get("user_code") or ""),
            verification_url=str(payload.get("verification_uri") or payload.get("verification_url") or ""),
            interval=interval,
            expires_at=self._clock() + expires_in,
            message=str(payload.get("message") or ""),
        )
        self._transition(AuthState.REQUESTED)
        return session

    def poll(self, session: DeviceCodeSession) -> TokenRecord:
        if self.state is not AuthState.REQUESTED:
            raise AuthenticationError(f"Cannot poll in state {self.state.value}")
        self._transition(AuthState.POLLING)
        interval = session.interval
        form = {"grant_type": DEVICE_CODE_GRANT, "client_id": self.client_id, "device_code": session.device_code}
        url = self._endpoint(self.tenant, "token")

        while True:
            if self._clock() >= session.expires_at:
                self._transition(AuthState.EXPIRED)
                raise AuthenticationExpired("Device code expired before sign-in completed; run the command again")
            self._sleep(interval)

            resp = self._post_form(url, form)
            if resp.status == 200:
                record = self._record_from_response(resp.payload, self.tenant)
                self._transition(AuthState.AUTHENTICATED)
                LOG.info("Authenticated", extra={"tenant": record.tenant_id})
                return record

            error, description = _oauth_error(resp.payload)
            if error == "authorization_pending":
                LOG.debug("Authorization pending")
                continue
            if error == "slow_down":
                interval += SLOW_DOWN_INCREMENT
                LOG.debug("Provider asked to slow down", extra={"interval_s": interval})
                continue
            if error in ("expired_token", "code_expired"):
                self._transition(AuthState.EXPIRED)
                raise AuthenticationExpired(description or "Device code expired")
            if error in ("authorization_declined", "access_denied"):
                self._transition(AuthState.DENIED)
                raise AuthenticationDenied(description or "Sign-in was declined")
            self._transition(AuthState.IDLE)
            raise AuthenticationError(f"Token request failed ({resp.status}): {error} {description}".strip())

    def authenticate(self) -> TokenRecord:
        """
        Run the whole flow. The session is surfaced through prompt so the user
        can open the verification URL and enter the code.
        """
        self.state = AuthState.IDLE
        session = self.request_session()
        if self._prompt is not None:
            self._prompt(session)
        return self.poll(session)

    def refresh(self, record: TokenRecord) -> TokenRecord:
        if not record.refresh_token:
            raise RefreshRejected("No refresh token available")
        resp = self._post_form(
            self._endpoint(record.tenant_id or self.tenant, "token"),
            {
                "grant_type": "refresh_token",
                "client_id": self.client_id,
                "refresh_token": record.refresh_token,
                "scope": self.scope,
            },
        )
        if resp.status == 200:
            refreshed = self._record_from_response(resp.payload, record.tenant_id or self.tenant)
            if not refreshed.refresh_token:
                refreshed = TokenRecord(
                    account=refreshed.account,
                    tenant_id=refreshed.tenant_id,
                    access_token=refreshed.access_token,
                    refresh_token=record.refresh_token,
                    expires_at=refreshed.expires_at,
                    scope=refreshed.scope,
                )
            LOG.debug("Refreshed token", extra={"tenant": refreshed.tenant_id})
            return refreshed
        error, description = _oauth_error(resp.payload)
        if error in ("invalid_grant", "interaction_required"):
            raise RefreshRejected(description or "Refresh token rejected")
        raise AuthenticationError(f"Token refresh failed ({resp.status}): {error} {description}".strip())

    def _record_from_response(self, payload: Any, tenant: str) -> TokenRecord:
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise AuthenticationError("Token response did not contain an access token")
        access_token = str(payload["access_token"])
        try:
            lifetime = int(payload.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
        except (TypeError, ValueError):
            lifetime = DEFAULT_TOKEN_LIFETIME
        tenant_id = tenant
        if is_multi_tenant(tenant):
            tenant_id = str(decode_jwt_claims(access_token).get("tid") or tenant)
        refresh = payload.get("refresh_token")
        return TokenRecord(
            account=tenant,
            tenant_id=tenant_id,
            access_token=access_token,
            refresh_token=str(refresh) if refresh else None,
            expires_at=self._now() + timedelta(seconds=lifetime),
            scope=str(payload.get("scope") or self.scope),
        )
