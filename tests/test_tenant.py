from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

import pytest

from azi.arm.http import Response
from azi.auth.cache import TokenCache, TokenRecord
from azi.auth.tenant import default_account, is_multi_tenant, is_tenant_id, resolve_tenant, tenant_from_issuer
from azi.util.errors import AuthenticationError, ConfigError

TENANT_ID = "72f988bf-86f1-41af-91ab-2d7cd011db47"
AUTHORITY = "https://login.microsoftonline.com"


class FakeIdentity:
    def __init__(self, response: Optional[Response]) -> None:
        self.response = response
        self.requests: List[Any] = []

    def execute(self, request: Any) -> Optional[Response]:
        self.requests.append(request)
        return self.response


def test_tenant_helpers() -> None:
    assert is_tenant_id(TENANT_ID)
    assert not is_tenant_id("contoso.com")
    assert is_multi_tenant("Organizations")
    assert not is_multi_tenant(TENANT_ID)
    assert tenant_from_issuer(f"https://login.microsoftonline.com/{TENANT_ID}/v2.0") == TENANT_ID
    assert tenant_from_issuer(f"https://sts.windows.net/{TENANT_ID}/") == TENANT_ID
    assert tenant_from_issuer("https://example.com/nope") is None


def test_ids_and_aliases_need_no_lookup() -> None:
    identity = FakeIdentity(None)

    assert resolve_tenant(TENANT_ID.upper(), identity, AUTHORITY) == TENANT_ID
    assert resolve_tenant("common", identity, AUTHORITY) == "common"
    assert identity.requests == []


def test_domain_resolved_through_discovery_document() -> None:
    identity = FakeIdentity(Response(status=200, payload={"issuer": f"https://login.microsoftonline.com/{TENANT_ID}/v2.0"}))

    assert resolve_tenant("contoso.onmicrosoft.com", identity, AUTHORITY) == TENANT_ID
    request = identity.requests[0]
    assert request.url == f"{AUTHORITY}/contoso.onmicrosoft.com/v2.0/.well-known/openid-configuration"
    assert request.authenticated is False


def test_unknown_domain_is_config_error() -> None:
    with pytest.raises(ConfigError):
        resolve_tenant("nobody.example", FakeIdentity(None), AUTHORITY)
    with pytest.raises(ConfigError):
        resolve_tenant("  ", FakeIdentity(None), AUTHORITY)


def test_discovery_without_issuer_is_rejected() -> None:
    with pytest.raises(AuthenticationError):
        resolve_tenant("contoso.com", FakeIdentity(Response(status=200, payload={})), AUTHORITY)


def test_default_account_prefers_cached_sign_in(tmp_path) -> None:
    cache = TokenCache.in_dir(tmp_path)
    assert default_account(cache) == "organizations"

    cache.store(
        TENANT_ID,
        TokenRecord(
            account=TENANT_ID,
            tenant_id=TENANT_ID,
            access_token="at",
            refresh_token=None,
            expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
            scope="s",
        ),
    )
    assert default_account(cache) == TENANT_ID
