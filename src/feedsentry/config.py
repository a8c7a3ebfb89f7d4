from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import jsonschema
import yaml

from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    drop_dir: str


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str
    max_retries: int
    backoff_seconds: int


@dataclass(frozen=True)
class HealthThresholds:
    reject_fail_ratio: float
    reject_warn_ratio: float
    quarantine_warn_ratio: float


@dataclass(frozen=True)
class ExpiryGuardConfig:
    enabled: bool
    absolute_cap: int
    max_ratio: float
    min_count: int
    min_active: int


@dataclass(frozen=True)
class IngestConfig:
    http: HttpConfig
    thresholds: HealthThresholds
    expiry_guard: ExpiryGuardConfig
    match_batch_size: int
    max_run_errors: int


@dataclass(frozen=True)
class JobsConfig:
    lock_timeout_seconds: int
    lease_ttl_seconds: int
    retention_hours: int
    max_attempts: int
    retry_backoff_seconds: int


@dataclass(frozen=True)
class AlertsConfig:
    claim_stale_seconds: int
    cooldown_seconds: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    ingest: IngestConfig
    jobs: JobsConfig
    alerts: AlertsConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "FeedSentry",
        "timezone": "UTC",
    },
    "paths": {
        "data_dir": "/data",
        "drop_dir": "/data/drop",
    },
    "ingest": {
        "http": {
            "timeout_seconds": 60,
            "user_agent": "FeedSentry/0.1",
            "max_retries": 2,
            "backoff_seconds": 2,
        },
        "thresholds": {
            "reject_fail_ratio": 0.5,
            "reject_warn_ratio": 0.1,
            "quarantine_warn_ratio": 0.3,
        },
        "expiry_guard": {
            "enabled": True,
            "absolute_cap": 500,
            "max_ratio": 0.3,
            "min_count": 10,
            "min_active": 100,
        },
        "match_batch_size": 100,
        "max_run_errors": 100,
    },
    "jobs": {
        "lock_timeout_seconds": 600,
        "lease_ttl_seconds": 600,
        "retention_hours": 24,
        "max_attempts": 3,
        "retry_backoff_seconds": 30,
    },
    "alerts": {
        "claim_stale_seconds": 300,
        "cooldown_seconds": 7 * 24 * 3600,
    },
}

CONFIG_KEY = "config.runtime"

FEEDS_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["feeds"],
    "properties": {
        "feeds": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "locator"],
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "name": {"type": "string"},
                    "locator": {"type": "string", "minLength": 1},
                    "format_kind": {"enum": ["GENERIC", "CSV", "JSON", "RSS"]},
                    "transport": {"enum": ["HTTP", "AUTH_URL", "FILE"]},
                    "username": {"type": "string"},
                    "password": {"type": "string"},
                    "schedule_interval_minutes": {"type": "integer", "minimum": 1},
                    "status": {"enum": ["ENABLED", "DISABLED", "DRAFT"]},
                    "eligible": {"type": "boolean"},
                },
                "additionalProperties": False,
            },
        }
    },
}


def get_state_db_path() -> str:
    data_dir = os.environ.get("FS_DATA_DIR", DEFAULT_CONFIG["paths"]["data_dir"])
    return os.path.join(data_dir, "state.sqlite3")


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return build_config(cfg)


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if not errors:
        _validate_ranges(cfg, errors)
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _validate_ranges(cfg: dict[str, Any], errors: list[str]) -> None:
    for name, ratio in cfg["ingest"]["thresholds"].items():
        if not 0 <= ratio <= 1:
            errors.append(f"config.runtime.ingest.thresholds.{name} must be between 0 and 1")
    guard = cfg["ingest"]["expiry_guard"]
    if not 0 <= guard["max_ratio"] <= 1:
        errors.append("config.runtime.ingest.expiry_guard.max_ratio must be between 0 and 1")
    for name in ("absolute_cap", "min_count", "min_active"):
        if guard[name] < 0:
            errors.append(f"config.runtime.ingest.expiry_guard.{name} must not be negative")
    if cfg["ingest"]["match_batch_size"] < 1:
        errors.append("config.runtime.ingest.match_batch_size must be positive")
    if cfg["ingest"]["http"]["timeout_seconds"] < 1:
        errors.append("config.runtime.ingest.http.timeout_seconds must be positive")
    if cfg["jobs"]["max_attempts"] < 1:
        errors.append("config.runtime.jobs.max_attempts must be positive")


def build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    paths_cfg = cfg.get("paths") or {}
    ingest_cfg = cfg.get("ingest") or {}
    jobs_cfg = cfg.get("jobs") or {}
    alerts_cfg = cfg.get("alerts") or {}

    http_cfg = ingest_cfg.get("http") or {}
    thresholds_cfg = ingest_cfg.get("thresholds") or {}
    guard_cfg = ingest_cfg.get("expiry_guard") or {}

    http = HttpConfig(
        timeout_seconds=int(http_cfg.get("timeout_seconds")),
        user_agent=str(http_cfg.get("user_agent")),
        max_retries=int(http_cfg.get("max_retries")),
        backoff_seconds=int(http_cfg.get("backoff_seconds")),
    )
    thresholds = HealthThresholds(
        reject_fail_ratio=float(thresholds_cfg.get("reject_fail_ratio")),
        reject_warn_ratio=float(thresholds_cfg.get("reject_warn_ratio")),
        quarantine_warn_ratio=float(thresholds_cfg.get("quarantine_warn_ratio")),
    )
    expiry_guard = ExpiryGuardConfig(
        enabled=bool(guard_cfg.get("enabled")),
        absolute_cap=int(guard_cfg.get("absolute_cap")),
        max_ratio=float(guard_cfg.get("max_ratio")),
        min_count=int(guard_cfg.get("min_count")),
        min_active=int(guard_cfg.get("min_active")),
    )
    ingest = IngestConfig(
        http=http,
        thresholds=thresholds,
        expiry_guard=expiry_guard,
        match_batch_size=int(ingest_cfg.get("match_batch_size")),
        max_run_errors=int(ingest_cfg.get("max_run_errors")),
    )
    jobs = JobsConfig(
        lock_timeout_seconds=int(jobs_cfg.get("lock_timeout_seconds")),
        lease_ttl_seconds=int(jobs_cfg.get("lease_ttl_seconds")),
        retention_hours=int(jobs_cfg.get("retention_hours")),
        max_attempts=int(jobs_cfg.get("max_attempts")),
        retry_backoff_seconds=int(jobs_cfg.get("retry_backoff_seconds")),
    )
    alerts = AlertsConfig(
        claim_stale_seconds=int(alerts_cfg.get("claim_stale_seconds")),
        cooldown_seconds=int(alerts_cfg.get("cooldown_seconds")),
    )
    return Config(
        app=AppConfig(
            name=str(app_cfg.get("name")),
            timezone=str(app_cfg.get("timezone")),
        ),
        paths=PathsConfig(
            data_dir=str(paths_cfg.get("data_dir")),
            drop_dir=str(paths_cfg.get("drop_dir")),
        ),
        ingest=ingest,
        jobs=jobs,
        alerts=alerts,
    )


def load_feeds_file(path: str) -> list[dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"feeds file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"feeds file is not valid YAML: {exc}") from exc
    if data is None:
        return []
    try:
        jsonschema.validate(data, FEEDS_FILE_SCHEMA)
    except jsonschema.ValidationError as exc:
        location = "/".join(str(part) for part in exc.absolute_path) or "<root>"
        raise ConfigError(f"invalid feeds file at {location}: {exc.message}") from exc
    return list(data["feeds"])


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
