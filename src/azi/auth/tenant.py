from __future__ import annotations

import re
from typing import Optional
from urllib.parse import urlparse

from ..arm.http import Request
from ..logging import get_logger
from ..util.errors import AuthenticationError, ConfigError
from .cache import TokenCache

LOG = get_logger(__name__)

DEFAULT_TENANT = "organizations"
MULTI_TENANT_ALIASES = frozenset({"common", "organizations", "consumers"})

_TENANT_ID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


def is_tenant_id(value: str) -> bool:
    return bool(_TENANT_ID_RE.match(value or ""))


def is_multi_tenant(value: str) -> bool:
    return (value or "").lower() in MULTI_TENANT_ALIASES


def tenant_from_issuer(issuer: str) -> Optional[str]:
    """
    Extract the tenant id from an OpenID issuer URL such as
    https://login.microsoftonline.com/<tid>/v2.0 or https://sts.windows.net/<tid>/.
    """
    segments = [s for s in urlparse(issuer).path.split("/") if s]
    if segments and is_tenant_id(segments[0]):
        return segments[0]
    return None


def resolve_tenant(name: str, http, authority: str) -> str:
    """
    Map a tenant given as id, alias or domain name (contoso.onmicrosoft.com) to
    the value used in authority URLs. Domain names are resolved through the
    tenant's OpenID discovery document.
    """
    value = (name or "").strip()
    if not value:
        raise ConfigError("Tenant must not be empty")
    if is_tenant_id(value) or is_multi_tenant(value):
        return value.lower()

    url = f"{authority.rstrip('/')}/{value}/v2.0/.well-known/openid-configuration"
    resp = http.execute(Request("GET", url, authenticated=False, not_found_ok=True))
    if resp is None:
        raise ConfigError(f"Unknown tenant: {value}")
    issuer = (resp.payload or {}).get("issuer") if isinstance(resp.payload, dict) else None
    tenant_id = tenant_from_issuer(str(issuer or ""))
    if not tenant_id:
        raise AuthenticationError(f"Invalid issuer in discovery document for {value}: {issuer!r}")
    LOG.debug("Resolved tenant", extra={"tenant": value, "tenant_id": tenant_id})
    return tenant_id


def default_account(cache: TokenCache) -> str:
    """
    Tenant to use when none is configured: the most recently used cached
    account, else the multi-tenant 'organizations' endpoint.
    """
    known = cache.accounts()
    if known:
        return known[0]
    return DEFAULT_TENANT
