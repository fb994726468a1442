from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, List

import pytest

import azi.cli as cli
from azi.arm.models import Failure, ListReport, ResourceGroup, Subscription, SubscriptionGroups
from azi.auth.cache import TokenCache, TokenRecord
from azi.auth.device_code import DEFAULT_CLIENT_ID, DeviceCodeSession
from azi.config import RunConfig
from azi.util.errors import ExitCode, PartialFailure

TENANT_ID = "72f988bf-86f1-41af-91ab-2d7cd011db47"


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    for name in ("AZI_TENANT", "AZI_SUBSCRIPTION", "AZI_WORKERS", "AZI_OUTPUT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AZI_CONFIG_DIR", str(tmp_path))
    return tmp_path


def _report(failures: Any = ()) -> ListReport:
    sub = Subscription(id="sub-a", display_name="Alpha")
    return ListReport(
        entries=(SubscriptionGroups(subscription=sub, groups=(ResourceGroup(subscription_id="sub-a", name="rg"),)),),
        failures=tuple(failures),
    )


class FakeEngine:
    def __init__(self, result: Any) -> None:
        self.result = result
        self.requests: List[Any] = []

    def run(self, request: Any) -> Any:
        self.requests.append(request)
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


def _components(result: Any) -> SimpleNamespace:
    return SimpleNamespace(engine=FakeEngine(result), close=lambda: None)


def test_account_key() -> None:
    assert cli.account_key("contoso.com", DEFAULT_CLIENT_ID) == "contoso.com"
    assert cli.account_key("contoso.com", "my-app") == "contoso.com/my-app"


def test_auth_context_defaults_to_last_cached_account(tmp_path) -> None:
    cache = TokenCache.in_dir(tmp_path)
    cache.store(
        f"{TENANT_ID}/my-app",
        TokenRecord(
            account=TENANT_ID,
            tenant_id=TENANT_ID,
            access_token="at",
            refresh_token="rt",
            expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
            scope="s",
        ),
    )

    ctx = cli.resolve_auth_context(RunConfig(config_dir=tmp_path), cache, None)  # type: ignore[arg-type]

    assert ctx.account == f"{TENANT_ID}/my-app"
    assert ctx.tenant == TENANT_ID


def test_build_components_wires_configuration(tmp_path) -> None:
    cfg = RunConfig(config_dir=tmp_path, tenant=TENANT_ID, workers=3, max_attempts=2, http_timeout=10.0)

    components = cli.build_components(cfg)
    try:
        assert components.auth.account == TENANT_ID
        assert components.engine.max_workers == 3
        assert components.http.token_source is components.provider
        assert components.http.retry.max_attempts == 2
        assert components.http.timeout == 10.0
        assert components.identity.token_source is None
        assert components.cache.path == tmp_path / "tokens.json"
    finally:
        components.close()


def test_prompt_goes_to_stderr(capsys) -> None:
    session = DeviceCodeSession(
        device_code="dc",
        user_code="ABCD",
        verification_url="https://microsoft.com/devicelogin",
        interval=5,
        expires_at=900,
    )

    cli.prompt_device_code(session)

    captured = capsys.readouterr()
    assert captured.out == ""
    assert "ABCD" in captured.err


def test_report_command_prints_json(tmp_path, capsys) -> None:
    cfg = RunConfig(config_dir=tmp_path, output="json", subscription="Alpha")
    components = _components(_report())

    assert cli.run("list", cfg, components) == 0  # type: ignore[arg-type]

    data = json.loads(capsys.readouterr().out)
    assert data["entries"][0]["subscription"]["id"] == "sub-a"
    assert components.engine.requests[0].kind == "list"
    assert components.engine.requests[0].subscription == "Alpha"


def test_partial_report_exits_zero_unless_strict(tmp_path) -> None:
    failures = [Failure(scope="subscription", key="sub-b", message="denied")]
    components = _components(_report(failures))

    assert cli.cmd_report("list", RunConfig(config_dir=tmp_path, output="json"), components) == 0  # type: ignore[arg-type]
    with pytest.raises(PartialFailure):
        cli.cmd_report("list", RunConfig(config_dir=tmp_path, output="json", strict=True), components)  # type: ignore[arg-type]


def test_main_maps_strict_failure_to_exit_code(monkeypatch) -> None:
    failures = [Failure(scope="zone", key="example.com", message="denied")]
    monkeypatch.setattr(cli, "build_components", lambda cfg: _components(_report(failures)))

    with pytest.raises(SystemExit) as info:
        cli.main(["list", "--strict", "--output", "json"])

    assert info.value.code == int(ExitCode.PARTIAL_FAILURE)


def _fake_exit(code: int) -> None:
    raise SystemExit(code)


def test_main_maps_interrupt_and_config_errors(monkeypatch) -> None:
    monkeypatch.setattr(cli, "build_components", lambda cfg: _components(KeyboardInterrupt()))
    monkeypatch.setattr(cli.os, "_exit", _fake_exit)

    with pytest.raises(SystemExit) as interrupted:
        cli.main(["domains"])
    with pytest.raises(SystemExit) as bad_period:
        cli.main(["costs", "2024-13"])

    assert interrupted.value.code == int(ExitCode.INTERRUPTED)
    assert bad_period.value.code == int(ExitCode.CONFIG_ERROR)


def test_interrupt_exits_without_waiting_for_blocked_workers(monkeypatch) -> None:
    release = threading.Event()
    exits: List[int] = []

    class StuckEngine:
        def run(self, request: Any) -> Any:
            # a worker left blocked on a slow response
            threading.Thread(target=release.wait, args=(30,)).start()
            raise KeyboardInterrupt

    def record_exit(code: int) -> None:
        exits.append(code)
        raise SystemExit(code)

    monkeypatch.setattr(cli, "build_components", lambda cfg: SimpleNamespace(engine=StuckEngine(), close=lambda: None))
    monkeypatch.setattr(cli.os, "_exit", record_exit)
    started = time.monotonic()
    try:
        with pytest.raises(SystemExit):
            cli.main(["list"])
        assert exits == [int(ExitCode.INTERRUPTED)]
        assert time.monotonic() - started < 5
    finally:
        release.set()


def test_logout_reports_outcome(tmp_path, capsys) -> None:
    provider = SimpleNamespace(logout=lambda: False)
    components = SimpleNamespace(provider=provider, auth=SimpleNamespace(account="contoso.com"))

    assert cli.run("logout", RunConfig(config_dir=tmp_path), components) == 0  # type: ignore[arg-type]
    assert "No cached sign-in for contoso.com" in capsys.readouterr().out
