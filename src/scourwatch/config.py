from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

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
    state_db: str


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str
    max_retries: int
    backoff_seconds: int


@dataclass(frozen=True)
class DedupeConfig:
    enabled: bool
    window_days: int


@dataclass(frozen=True)
class UrlNormalizationConfig:
    strip_tracking_params: bool
    tracking_params: list[str]


@dataclass(frozen=True)
class IngestConfig:
    http: HttpConfig
    dedupe: DedupeConfig
    url_normalization: UrlNormalizationConfig
    min_confidence: float


@dataclass(frozen=True)
class ScourConfig:
    retry_batch_size: int
    flush_interval_seconds: float
    status_log_window: int
    disable_failing_sources: bool
    dispatch: str
    worker_url: str
    worker_timeout_seconds: int


@dataclass(frozen=True)
class EarlySignalsConfig:
    searxng_url: str
    timeout_seconds: int
    max_results: int
    base_confidence: float
    delay_seconds: float
    threat_types: list[str]
    countries: list[str]
    query_templates: list[str]


@dataclass(frozen=True)
class ClientConfig:
    base_url: str
    request_timeout_seconds: float
    run_timeout_seconds: float
    fast_poll_seconds: float
    slow_poll_seconds: float
    max_wait_seconds: float
    log_tail: int
    group_size: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    ingest: IngestConfig
    scour: ScourConfig
    early_signals: EarlySignalsConfig
    client: ClientConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "ScourWatch",
        "timezone": "UTC",
    },
    "paths": {
        "data_dir": "/data",
        "state_db": "/data/state.sqlite3",
    },
    "ingest": {
        "http": {
            "timeout_seconds": 20,
            "user_agent": "ScourWatch/0.1",
            "max_retries": 1,
            "backoff_seconds": 2,
        },
        "dedupe": {
            "enabled": True,
            "window_days": 14,
        },
        "url_normalization": {
            "strip_tracking_params": True,
            "tracking_params": [
                "utm_source",
                "utm_medium",
                "utm_campaign",
                "utm_term",
                "utm_content",
            ],
        },
        "min_confidence": 0.5,
    },
    "scour": {
        "retry_batch_size": 10,
        "flush_interval_seconds": 1.0,
        "status_log_window": 100,
        "disable_failing_sources": True,
        "dispatch": "local",
        "worker_url": "",
        "worker_timeout_seconds": 300,
    },
    "early_signals": {
        "searxng_url": "",
        "timeout_seconds": 10,
        "max_results": 10,
        "base_confidence": 0.6,
        "delay_seconds": 1.0,
        "threat_types": [
            "civil unrest",
            "terrorist attack",
            "armed conflict",
            "natural disaster",
            "disease outbreak",
            "kidnapping",
            "cyber attack",
            "transport disruption",
            "severe weather",
            "infrastructure failure",
        ],
        "countries": [
            "Mexico",
            "Colombia",
            "Nigeria",
            "Kenya",
            "Pakistan",
            "Philippines",
            "Haiti",
            "Ukraine",
        ],
        "query_templates": [
            "{threat} {country}",
            "{threat} travel alert {country}",
            "{country} {threat} warning",
        ],
    },
    "client": {
        "base_url": "http://localhost:8000",
        "request_timeout_seconds": 8.0,
        "run_timeout_seconds": 900.0,
        "fast_poll_seconds": 0.45,
        "slow_poll_seconds": 2.5,
        "max_wait_seconds": 900.0,
        "log_tail": 15,
        "group_size": 50,
    },
}

CONFIG_KEY = "config.runtime"
DISPATCH_MODES = ("local", "http")


def get_state_db_path() -> str:
    data_dir = os.environ.get("SW_DATA_DIR", DEFAULT_CONFIG["paths"]["data_dir"])
    return os.path.join(data_dir, "state.sqlite3")


def load_config_file(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping")
    cfg = _merge_defaults(raw, DEFAULT_CONFIG)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError(f"Invalid config file {path}: " + "; ".join(errors))
    return cfg


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        path = os.environ.get("SW_CONFIG_PATH")
        if path and os.path.exists(path):
            initial = load_config_file(path)
        else:
            initial = _deep_copy(DEFAULT_CONFIG)
        set_setting(conn, CONFIG_KEY, initial)
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
    return build_config(get_runtime_config(conn))


def default_config() -> Config:
    return build_config(_deep_copy(DEFAULT_CONFIG))


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if not errors:
        _validate_ranges(cfg, errors)
    return errors


def _validate_ranges(cfg: dict[str, Any], errors: list[str]) -> None:
    scour = cfg["scour"]
    if scour["retry_batch_size"] < 1:
        errors.append("config.runtime.scour.retry_batch_size must be >= 1")
    if scour["dispatch"] not in DISPATCH_MODES:
        errors.append("config.runtime.scour.dispatch must be one of " + ", ".join(DISPATCH_MODES))
    if scour["dispatch"] == "http" and not scour["worker_url"]:
        errors.append("config.runtime.scour.worker_url is required for http dispatch")
    min_confidence = cfg["ingest"]["min_confidence"]
    if not 0 <= min_confidence <= 1:
        errors.append("config.runtime.ingest.min_confidence must be between 0 and 1")
    early = cfg["early_signals"]
    for key in ("threat_types", "countries", "query_templates"):
        if not early[key]:
            errors.append(f"config.runtime.early_signals.{key} must not be empty")
    if cfg["client"]["group_size"] < 1:
        errors.append("config.runtime.client.group_size must be >= 1")


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
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if not isinstance(item, str):
                errors.append(f"{path} must be a list of strings")
                break
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


def build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    paths_cfg = cfg.get("paths") or {}
    ingest_cfg = cfg.get("ingest") or {}
    scour_cfg = cfg.get("scour") or {}
    early_cfg = cfg.get("early_signals") or {}
    client_cfg = cfg.get("client") or {}

    app = AppConfig(
        name=str(app_cfg.get("name")),
        timezone=str(app_cfg.get("timezone")),
    )

    paths = PathsConfig(
        data_dir=str(paths_cfg.get("data_dir")),
        state_db=str(paths_cfg.get("state_db")),
    )

    http_cfg = ingest_cfg.get("http") or {}
    dedupe_cfg = ingest_cfg.get("dedupe") or {}
    url_norm_cfg = ingest_cfg.get("url_normalization") or {}

    ingest = IngestConfig(
        http=HttpConfig(
            timeout_seconds=int(http_cfg.get("timeout_seconds")),
            user_agent=str(http_cfg.get("user_agent")),
            max_retries=int(http_cfg.get("max_retries")),
            backoff_seconds=int(http_cfg.get("backoff_seconds")),
        ),
        dedupe=DedupeConfig(
            enabled=bool(dedupe_cfg.get("enabled")),
            window_days=int(dedupe_cfg.get("window_days")),
        ),
        url_normalization=UrlNormalizationConfig(
            strip_tracking_params=bool(url_norm_cfg.get("strip_tracking_params")),
            tracking_params=list(url_norm_cfg.get("tracking_params")),
        ),
        min_confidence=float(ingest_cfg.get("min_confidence")),
    )

    scour = ScourConfig(
        retry_batch_size=int(scour_cfg.get("retry_batch_size")),
        flush_interval_seconds=float(scour_cfg.get("flush_interval_seconds")),
        status_log_window=int(scour_cfg.get("status_log_window")),
        disable_failing_sources=bool(scour_cfg.get("disable_failing_sources")),
        dispatch=str(scour_cfg.get("dispatch")),
        worker_url=str(scour_cfg.get("worker_url")),
        worker_timeout_seconds=int(scour_cfg.get("worker_timeout_seconds")),
    )

    early_signals = EarlySignalsConfig(
        searxng_url=str(early_cfg.get("searxng_url")),
        timeout_seconds=int(early_cfg.get("timeout_seconds")),
        max_results=int(early_cfg.get("max_results")),
        base_confidence=float(early_cfg.get("base_confidence")),
        delay_seconds=float(early_cfg.get("delay_seconds")),
        threat_types=list(early_cfg.get("threat_types")),
        countries=list(early_cfg.get("countries")),
        query_templates=list(early_cfg.get("query_templates")),
    )

    client = ClientConfig(
        base_url=str(client_cfg.get("base_url")),
        request_timeout_seconds=float(client_cfg.get("request_timeout_seconds")),
        run_timeout_seconds=float(client_cfg.get("run_timeout_seconds")),
        fast_poll_seconds=float(client_cfg.get("fast_poll_seconds")),
        slow_poll_seconds=float(client_cfg.get("slow_poll_seconds")),
        max_wait_seconds=float(client_cfg.get("max_wait_seconds")),
        log_tail=int(client_cfg.get("log_tail")),
        group_size=int(client_cfg.get("group_size")),
    )

    return Config(
        app=app,
        paths=paths,
        ingest=ingest,
        scour=scour,
        early_signals=early_signals,
        client=client,
    )


def _merge_defaults(value: dict[str, Any], defaults: dict[str, Any]) -> dict[str, Any]:
    merged = _deep_copy(defaults)
    for key, item in value.items():
        if isinstance(item, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_defaults(item, merged[key])
        else:
            merged[key] = item
    return merged


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
