from __future__ import annotations

import argparse
import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .arm.http import DEFAULT_BACKOFF_BASE, DEFAULT_BACKOFF_MAX, DEFAULT_MANAGEMENT_URL, DEFAULT_MAX_ATTEMPTS, DEFAULT_TIMEOUT
from .auth.device_code import DEFAULT_AUTHORITY, DEFAULT_CLIENT_ID
from .report import DEFAULT_WORKERS
from .util.errors import ConfigError
from .util.time import format_period, parse_period

# --------
# Defaults
# --------
CONFIG_FILE_NAME = "config.yaml"
OUTPUT_FORMATS = ("table", "json")
ALLOWED_CONFIG_KEYS = {
    "tenant",
    "subscription",
    "workers",
    "output",
    "strict",
    "log_level",
    "json_logs",
    "http_timeout",
    "max_attempts",
    "backoff_base",
    "backoff_max",
    "lock_timeout",
    "client_id",
    "authority",
    "management_url",
}
BOOL_CONFIG_KEYS = {"strict", "json_logs"}
INT_CONFIG_KEYS = {"workers", "max_attempts"}
FLOAT_CONFIG_KEYS = {"http_timeout", "backoff_base", "backoff_max", "lock_timeout"}
STR_CONFIG_KEYS = {"tenant", "subscription", "output", "log_level", "client_id", "authority", "management_url"}


@dataclass(frozen=True)
class RunConfig:
    config_dir: Path

    # Scope
    tenant: Optional[str] = None
    subscription: Optional[str] = None

    # Command arguments
    period: Optional[str] = None  # YYYY-MM, None means month to date
    include_resources: bool = False
    with_deployments: bool = False

    # Output
    output: str = "table"
    strict: bool = False
    json_logs: bool = False
    log_level: str = "WARNING"

    # Performance / transport
    workers: int = DEFAULT_WORKERS
    http_timeout: float = DEFAULT_TIMEOUT
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_max: float = DEFAULT_BACKOFF_MAX
    lock_timeout: float = -1.0

    # Identity platform
    client_id: str = DEFAULT_CLIENT_ID
    authority: str = DEFAULT_AUTHORITY
    management_url: str = DEFAULT_MANAGEMENT_URL


def default_config_dir() -> Path:
    explicit = _env_str("AZI_CONFIG_DIR")
    if explicit:
        return Path(explicit).expanduser()
    xdg = _env_str("XDG_CONFIG_HOME")
    base = Path(xdg).expanduser() if xdg else Path.home() / ".config"
    return base / "azi"


def _parse_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            # YAML is a superset of JSON
            data = yaml.safe_load(text) or {}
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("Top-level config must be an object")
    return data


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    if not raw:
        return None
    return raw


def _env_bool(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip().lower()
    if not raw:
        return None
    return raw in {"1", "true", "yes", "on"}


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _coerce_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw in {"1", "true", "yes", "on"}:
            return True
        if raw in {"0", "false", "no", "off"}:
            return False
    raise ConfigError(f"Config field '{key}' must be a boolean")


def _coerce_int(key: str, value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return int(value)
        except ValueError:
            pass
    raise ConfigError(f"Config field '{key}' must be an integer")


def _coerce_float(key: str, value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value)
        except ValueError:
            pass
    raise ConfigError(f"Config field '{key}' must be a number")


def _normalize_config_file(data: Dict[str, Any]) -> Dict[str, Any]:
    unknown = sorted(set(data.keys()) - ALLOWED_CONFIG_KEYS)
    if unknown:
        warnings.warn(f"Unknown config keys ignored: {', '.join(unknown)}")
    normalized: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in ALLOWED_CONFIG_KEYS:
            continue
        if value is None:
            normalized[key] = None
        elif key in BOOL_CONFIG_KEYS:
            normalized[key] = _coerce_bool(key, value)
        elif key in INT_CONFIG_KEYS:
            normalized[key] = _coerce_int(key, value)
        elif key in FLOAT_CONFIG_KEYS:
            normalized[key] = _coerce_float(key, value)
        elif key in STR_CONFIG_KEYS:
            if isinstance(value, str):
                normalized[key] = value
            else:
                raise ConfigError(f"Config field '{key}' must be a string")
    return _compact_dict(normalized)


def _compact_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Drop keys with None values so they don't override lower-precedence config.
    """
    return {k: v for k, v in data.items() if v is not None}


def _merge_dicts(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """
    Shallow merge: values in b override a.
    """
    merged = dict(a)
    merged.update(b)
    return merged


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="azi", description="Azure subscription reporting CLI")

    # Global options are accepted before and after the command.
    def add_common(p: argparse.ArgumentParser, nested: bool) -> None:
        default = argparse.SUPPRESS if nested else None
        p.add_argument("--config", type=Path, default=default, help="Optional YAML/JSON config file")
        p.add_argument("--tenant", default=default, help="Tenant id, domain name, or organizations/common")
        p.add_argument("--subscription", default=default, help="Restrict the report to one subscription (id or name)")
        p.add_argument("--workers", type=int, default=default, help=f"Max concurrent requests (default {DEFAULT_WORKERS})")
        p.add_argument("--output", choices=OUTPUT_FORMATS, default=default, help="Output format (default: table)")
        p.add_argument(
            "--strict",
            action=argparse.BooleanOptionalAction,
            default=default,
            help="Exit non-zero when any part of the report failed",
        )
        p.add_argument("--log-level", default=default, help="Log level (WARNING, INFO, DEBUG, ...)")
        p.add_argument(
            "--json-logs",
            action=argparse.BooleanOptionalAction,
            default=default,
            help="Enable JSON logs",
        )

    add_common(parser, nested=False)
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_list = subparsers.add_parser("list", help="List subscriptions and their resource groups")
    add_common(p_list, nested=True)
    p_list.add_argument("--resources", action="store_true", default=False, help="Also list resources per group")

    p_costs = subparsers.add_parser("costs", help="Costs per resource group for a billing month")
    add_common(p_costs, nested=True)
    p_costs.add_argument("period", nargs="?", default=None, help="Billing month as YYYYMM (default: month to date)")

    p_domains = subparsers.add_parser("domains", help="DNS zones and their A/AAAA/CNAME/TXT records")
    add_common(p_domains, nested=True)

    p_clusters = subparsers.add_parser("clusters", help="Managed Kubernetes clusters")
    add_common(p_clusters, nested=True)
    p_clusters.add_argument(
        "--with-deployments",
        action="store_true",
        default=False,
        help="Also list deployments from each cluster's Kubernetes API",
    )

    p_login = subparsers.add_parser("login", help="Sign in with the device code flow and cache the token")
    add_common(p_login, nested=True)

    p_logout = subparsers.add_parser("logout", help="Remove the cached token")
    add_common(p_logout, nested=True)
    return parser


def load_run_config(
    args: Optional[argparse.Namespace] = None,
    argv: Optional[List[str]] = None,
) -> Tuple[str, RunConfig]:
    """
    Build RunConfig by merging defaults, optional config file, env vars, and CLI args.
    Precedence (low -> high): defaults < config file < env < CLI.

    Without --config, <config_dir>/config.yaml is read when it exists.

    Returns:
      (command, RunConfig) where command is one of list|costs|domains|clusters|login|logout
    """
    ns = args if args is not None else build_parser().parse_args(argv)
    command = ns.command
    config_dir = default_config_dir()

    # defaults
    base: Dict[str, Any] = {
        "tenant": None,
        "subscription": None,
        "workers": DEFAULT_WORKERS,
        "output": "table",
        "strict": False,
        "log_level": "WARNING",
        "json_logs": False,
        "http_timeout": DEFAULT_TIMEOUT,
        "max_attempts": DEFAULT_MAX_ATTEMPTS,
        "backoff_base": DEFAULT_BACKOFF_BASE,
        "backoff_max": DEFAULT_BACKOFF_MAX,
        "lock_timeout": -1.0,
        "client_id": DEFAULT_CLIENT_ID,
        "authority": DEFAULT_AUTHORITY,
        "management_url": DEFAULT_MANAGEMENT_URL,
    }

    # config file
    file_cfg: Dict[str, Any] = {}
    config_path = getattr(ns, "config", None)
    if config_path:
        file_cfg = _normalize_config_file(_parse_config_file(Path(config_path)))
    elif (config_dir / CONFIG_FILE_NAME).is_file():
        file_cfg = _normalize_config_file(_parse_config_file(config_dir / CONFIG_FILE_NAME))

    # env
    env_cfg: Dict[str, Any] = _compact_dict(
        {
            "tenant": _env_str("AZI_TENANT"),
            "subscription": _env_str("AZI_SUBSCRIPTION"),
            "workers": _env_int("AZI_WORKERS"),
            "output": _env_str("AZI_OUTPUT"),
            "log_level": _env_str("AZI_LOG_LEVEL"),
            "json_logs": _env_bool("AZI_JSON_LOGS"),
            "http_timeout": _env_float("AZI_HTTP_TIMEOUT"),
            "max_attempts": _env_int("AZI_MAX_ATTEMPTS"),
        }
    )

    # CLI
    cli_cfg: Dict[str, Any] = _compact_dict(
        {
            "tenant": getattr(ns, "tenant", None),
            "subscription": getattr(ns, "subscription", None),
            "workers": getattr(ns, "workers", None),
            "output": getattr(ns, "output", None),
            "strict": getattr(ns, "strict", None),
            "log_level": getattr(ns, "log_level", None),
            "json_logs": getattr(ns, "json_logs", None),
        }
    )

    merged = _merge_dicts(base, _merge_dicts(file_cfg, _merge_dicts(env_cfg, cli_cfg)))

    # Normalize/construct types
    output = str(merged["output"]).lower()
    if output not in OUTPUT_FORMATS:
        raise ConfigError(f"Output must be one of: {', '.join(OUTPUT_FORMATS)}")
    workers = int(merged["workers"])
    if workers < 1:
        raise ConfigError("Workers must be at least 1")
    max_attempts = int(merged["max_attempts"])
    if max_attempts < 1:
        raise ConfigError("max_attempts must be at least 1")

    period: Optional[str] = None
    raw_period = getattr(ns, "period", None)
    if raw_period:
        try:
            period = format_period(*parse_period(raw_period))
        except ValueError as e:
            raise ConfigError(f"Invalid billing period {raw_period!r}: expected YYYYMM") from e

    tenant = merged.get("tenant")
    subscription = merged.get("subscription")
    cfg = RunConfig(
        config_dir=config_dir,
        tenant=str(tenant) if tenant else None,
        subscription=str(subscription) if subscription else None,
        period=period,
        include_resources=bool(getattr(ns, "resources", False)),
        with_deployments=bool(getattr(ns, "with_deployments", False)),
        output=output,
        strict=bool(merged["strict"]),
        json_logs=bool(merged["json_logs"]),
        log_level=str(merged.get("log_level") or "WARNING").upper(),
        workers=workers,
        http_timeout=float(merged["http_timeout"]),
        max_attempts=max_attempts,
        backoff_base=float(merged["backoff_base"]),
        backoff_max=float(merged["backoff_max"]),
        lock_timeout=float(merged["lock_timeout"]),
        client_id=str(merged["client_id"]),
        authority=str(merged["authority"]).rstrip("/"),
        management_url=str(merged["management_url"]).rstrip("/"),
    )
    return command, cfg


def dump_config(cfg: RunConfig) -> Dict[str, Any]:
    return {
        "config_dir": str(cfg.config_dir),
        "tenant": cfg.tenant,
        "subscription": cfg.subscription,
        "period": cfg.period,
        "include_resources": cfg.include_resources,
        "with_deployments": cfg.with_deployments,
        "output": cfg.output,
        "strict": cfg.strict,
        "json_logs": cfg.json_logs,
        "log_level": cfg.log_level,
        "workers": cfg.workers,
        "http_timeout": cfg.http_timeout,
        "max_attempts": cfg.max_attempts,
        "backoff_base": cfg.backoff_base,
        "backoff_max": cfg.backoff_max,
        "lock_timeout": cfg.lock_timeout,
        "client_id": cfg.client_id,
        "authority": cfg.authority,
        "management_url": cfg.management_url,
    }
