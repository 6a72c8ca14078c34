from __future__ import annotations

import json
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
class SchedulerConfig:
    enabled: bool
    poll_interval_seconds: float


@dataclass(frozen=True)
class JobsConfig:
    workers: int
    poll_seconds: float
    lock_timeout_seconds: int


@dataclass(frozen=True)
class PipelineConfig:
    source_concurrency: int
    source_timeout_seconds: float
    max_items_per_source: int


@dataclass(frozen=True)
class RelevanceConfig:
    threshold: float
    recency_hours: int
    keywords: list[str]


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str
    max_retries: int
    backoff_seconds: int


@dataclass(frozen=True)
class SummarizerConfig:
    provider: str
    max_sentences: int


@dataclass(frozen=True)
class DeliveryConfig:
    max_attempts: int
    backoff_seconds: float
    email_from: str
    email_api_url: str
    telegram_api_url: str


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    scheduler: SchedulerConfig
    jobs: JobsConfig
    pipeline: PipelineConfig
    relevance: RelevanceConfig
    http: HttpConfig
    summarizer: SummarizerConfig
    delivery: DeliveryConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "newsrelay",
        "timezone": "UTC",
    },
    "paths": {
        "data_dir": "/data",
        "state_db": "/data/state.sqlite3",
    },
    "scheduler": {
        "enabled": True,
        "poll_interval_seconds": 30.0,
    },
    "jobs": {
        "workers": 1,
        "poll_seconds": 5.0,
        "lock_timeout_seconds": 120,
    },
    "pipeline": {
        "source_concurrency": 4,
        "source_timeout_seconds": 60.0,
        "max_items_per_source": 20,
    },
    "relevance": {
        "threshold": 0.5,
        "recency_hours": 48,
        "keywords": [],
    },
    "http": {
        "timeout_seconds": 20,
        "user_agent": "newsrelay/0.1",
        "max_retries": 2,
        "backoff_seconds": 2,
    },
    "summarizer": {
        "provider": "extractive",
        "max_sentences": 3,
    },
    "delivery": {
        "max_attempts": 3,
        "backoff_seconds": 2.0,
        "email_from": "newsrelay@localhost",
        "email_api_url": "https://api.resend.com/emails",
        "telegram_api_url": "https://api.telegram.org",
    },
}

CONFIG_KEY = "config.runtime"
SUMMARIZER_PROVIDERS = ("extractive", "llm")


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
    return _build_config(cfg)


def load_config_file(path: str) -> dict[str, Any]:
    """Read a YAML config file and overlay it on the defaults.

    Partial files are allowed; anything not mentioned keeps its default value.
    The merged result is validated before it is returned.
    """
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError("config file must contain a mapping")
    merged = merge_config(DEFAULT_CONFIG, raw)
    errors = validate_runtime_config(merged)
    if errors:
        raise ConfigError("Invalid config file: " + "; ".join(errors))
    return merged


def merge_config(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = _deep_copy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if errors:
        return errors
    if cfg["summarizer"]["provider"] not in SUMMARIZER_PROVIDERS:
        errors.append(
            "config.runtime.summarizer.provider must be one of "
            + ", ".join(SUMMARIZER_PROVIDERS)
        )
    if cfg["jobs"]["workers"] < 0:
        errors.append("config.runtime.jobs.workers must be >= 0")
    if cfg["jobs"]["lock_timeout_seconds"] < 1:
        errors.append("config.runtime.jobs.lock_timeout_seconds must be >= 1")
    if cfg["pipeline"]["source_concurrency"] < 1:
        errors.append("config.runtime.pipeline.source_concurrency must be >= 1")
    if cfg["delivery"]["max_attempts"] < 1:
        errors.append("config.runtime.delivery.max_attempts must be >= 1")
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
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg["app"]
    paths_cfg = cfg["paths"]
    scheduler_cfg = cfg["scheduler"]
    jobs_cfg = cfg["jobs"]
    pipeline_cfg = cfg["pipeline"]
    relevance_cfg = cfg["relevance"]
    http_cfg = cfg["http"]
    summarizer_cfg = cfg["summarizer"]
    delivery_cfg = cfg["delivery"]

    return Config(
        app=AppConfig(name=str(app_cfg["name"]), timezone=str(app_cfg["timezone"])),
        paths=PathsConfig(
            data_dir=str(paths_cfg["data_dir"]),
            state_db=str(paths_cfg["state_db"]),
        ),
        scheduler=SchedulerConfig(
            enabled=bool(scheduler_cfg["enabled"]),
            poll_interval_seconds=float(scheduler_cfg["poll_interval_seconds"]),
        ),
        jobs=JobsConfig(
            workers=int(jobs_cfg["workers"]),
            poll_seconds=float(jobs_cfg["poll_seconds"]),
            lock_timeout_seconds=int(jobs_cfg["lock_timeout_seconds"]),
        ),
        pipeline=PipelineConfig(
            source_concurrency=int(pipeline_cfg["source_concurrency"]),
            source_timeout_seconds=float(pipeline_cfg["source_timeout_seconds"]),
            max_items_per_source=int(pipeline_cfg["max_items_per_source"]),
        ),
        relevance=RelevanceConfig(
            threshold=float(relevance_cfg["threshold"]),
            recency_hours=int(relevance_cfg["recency_hours"]),
            keywords=list(relevance_cfg["keywords"]),
        ),
        http=HttpConfig(
            timeout_seconds=int(http_cfg["timeout_seconds"]),
            user_agent=str(http_cfg["user_agent"]),
            max_retries=int(http_cfg["max_retries"]),
            backoff_seconds=int(http_cfg["backoff_seconds"]),
        ),
        summarizer=SummarizerConfig(
            provider=str(summarizer_cfg["provider"]),
            max_sentences=int(summarizer_cfg["max_sentences"]),
        ),
        delivery=DeliveryConfig(
            max_attempts=int(delivery_cfg["max_attempts"]),
            backoff_seconds=float(delivery_cfg["backoff_seconds"]),
            email_from=str(delivery_cfg["email_from"]),
            email_api_url=str(delivery_cfg["email_api_url"]),
            telegram_api_url=str(delivery_cfg["telegram_api_url"]),
        ),
    )


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
