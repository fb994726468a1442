from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import requests

from .arm.http import HttpExecutor, RetryPolicy
from .arm.models import ReportRequest
from .arm.service import ManagementService
from .auth.cache import TokenCache
from .auth.device_code import DEFAULT_CLIENT_ID, DEFAULT_SCOPE, DeviceCodeAuthenticator, DeviceCodeSession
from .auth.providers import AuthContext, TokenProvider
from .auth.tenant import default_account, resolve_tenant
from .config import RunConfig, load_run_config
from .logging import LogConfig, get_logger, setup_logging
from .output import render_report
from .report import REPORT_KINDS, ReportEngine
from .util.errors import ConfigError, ExitCode, PartialFailure, as_exit_code

LOG = get_logger(__name__)


def prompt_device_code(session: DeviceCodeSession) -> None:
    # stderr, so the instructions never end up in piped report output
    message = session.message or (
        f"To sign in, open {session.verification_url} and enter the code {session.user_code} to authenticate."
    )
    print(message, file=sys.stderr, flush=True)


def account_key(tenant: str, client_id: str) -> str:
    """
    Cache key for a sign-in: the tenant, qualified by the client id when a
    non-default application is used.
    """
    if client_id == DEFAULT_CLIENT_ID:
        return tenant
    return f"{tenant}/{client_id}"


@dataclass
class Components:
    auth: AuthContext
    cache: TokenCache
    identity: HttpExecutor
    provider: TokenProvider
    http: HttpExecutor
    service: ManagementService
    engine: ReportEngine

    def close(self) -> None:
        self.http.session.close()
        self.identity.session.close()


def resolve_auth_context(cfg: RunConfig, cache: TokenCache, identity: HttpExecutor) -> AuthContext:
    if cfg.tenant:
        tenant = resolve_tenant(cfg.tenant, identity, cfg.authority)
        account = account_key(tenant, cfg.client_id)
    else:
        account = default_account(cache)
        tenant = account.split("/", 1)[0]
    return AuthContext(
        account=account,
        tenant=tenant,
        client_id=cfg.client_id,
        scope=DEFAULT_SCOPE,
        authority=cfg.authority,
    )


def build_components(
    cfg: RunConfig,
    *,
    session: Optional[requests.Session] = None,
    identity_session: Optional[requests.Session] = None,
    prompt: Callable[[DeviceCodeSession], None] = prompt_device_code,
) -> Components:
    """
    Wire cache, identity endpoints, token provider, executor, service and
    engine from one RunConfig. Nothing here performs network I/O except
    tenant name resolution.
    """
    retry = RetryPolicy(
        max_attempts=cfg.max_attempts,
        backoff_base=cfg.backoff_base,
        backoff_max=cfg.backoff_max,
    )
    cache = TokenCache.in_dir(cfg.config_dir, lock_timeout=cfg.lock_timeout)
    # The identity platform is called unauthenticated; OAuth errors are 400 bodies.
    identity = HttpExecutor(
        identity_session,
        base_url=cfg.authority,
        timeout=cfg.http_timeout,
        retry=retry,
    )
    auth = resolve_auth_context(cfg, cache, identity)
    authenticator = DeviceCodeAuthenticator(
        identity,
        tenant=auth.tenant,
        client_id=auth.client_id,
        scope=auth.scope,
        authority=auth.authority,
        prompt=prompt,
    )
    provider = TokenProvider(cache, authenticator, account=auth.account)
    http = HttpExecutor(
        session,
        token_source=provider,
        base_url=cfg.management_url,
        timeout=cfg.http_timeout,
        retry=retry,
        pool_size=cfg.workers,
    )
    service = ManagementService(http)
    engine = ReportEngine(service, max_workers=cfg.workers, on_interrupt=http.cancel)
    LOG.debug(
        "Components ready",
        extra={"account": auth.account, "workers": cfg.workers, "config_dir": str(cfg.config_dir)},
    )
    return Components(
        auth=auth,
        cache=cache,
        identity=identity,
        provider=provider,
        http=http,
        service=service,
        engine=engine,
    )


def report_request(command: str, cfg: RunConfig) -> ReportRequest:
    if command not in REPORT_KINDS:
        raise ConfigError(f"Unknown report: {command}")
    return ReportRequest(
        kind=command,
        subscription=cfg.subscription,
        period=cfg.period,
        include_resources=cfg.include_resources,
        with_deployments=cfg.with_deployments,
    )


def cmd_report(command: str, cfg: RunConfig, components: Components) -> int:
    report = components.engine.run(report_request(command, cfg))
    render_report(report, output=cfg.output)
    failures: List[Any] = list(getattr(report, "failures", ()))
    if failures:
        LOG.warning("Report is incomplete", extra={"report": command, "failures": len(failures)})
        if cfg.strict:
            raise PartialFailure(failures)
    return int(ExitCode.OK)


def cmd_login(cfg: RunConfig, components: Components) -> int:
    record = components.provider.login()
    print(f"Signed in to tenant {record.tenant_id}; token valid until {record.expires_at.isoformat()}")
    return int(ExitCode.OK)


def cmd_logout(cfg: RunConfig, components: Components) -> int:
    if components.provider.logout():
        print(f"Signed out of {components.auth.account}")
    else:
        print(f"No cached sign-in for {components.auth.account}")
    return int(ExitCode.OK)


def run(command: str, cfg: RunConfig, components: Components) -> int:
    if command == "login":
        return cmd_login(cfg, components)
    if command == "logout":
        return cmd_logout(cfg, components)
    return cmd_report(command, cfg, components)


def _exit_now(code: int) -> None:
    """
    Leave without joining fan-out workers still blocked on in-flight reads.
    Token cache writes are atomic and the OS drops the cache lock on exit.
    """
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.flush()
        except (OSError, ValueError):
            pass
    os._exit(code)


def main(argv: Optional[List[str]] = None) -> None:
    try:
        command, cfg = load_run_config(argv=argv)
        setup_logging(LogConfig(level=cfg.log_level, json_logs=cfg.json_logs))
        components = build_components(cfg)
        try:
            code = run(command, cfg, components)
        finally:
            components.close()
        sys.exit(code)
    except SystemExit:
        raise
    except KeyboardInterrupt as e:
        LOG.warning("Interrupted")
        _exit_now(as_exit_code(e))
    except BrokenPipeError:
        # Common when users pipe to `head` or similar tools.
        sys.exit(0)
    except Exception as e:
        setup_logging(LogConfig())  # ensure something is configured
        LOG.error("Execution failed", extra={"error": str(e)})
        sys.exit(as_exit_code(e))


if __name__ == "__main__":
    main()
