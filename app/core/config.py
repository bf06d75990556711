"""
Configuration loading for the hash report publisher.

Values come from a YAML file merged over built-in defaults, then deployment
values and secrets from the environment. Components never read this module's
globals directly; they receive the validated ``PipelineSettings`` sections.
"""
from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).resolve().parents[2]
BUNDLED_CONFIG_DIR = ROOT_DIR / "bundled_config"
DEFAULT_CONFIG_PATH = BUNDLED_CONFIG_DIR / "config.yaml"


class ConfigError(Exception):
    """Raised when the configuration cannot be loaded or validated."""


# Environment variable -> dotted config key
ENV_OVERRIDES = {
    "REPORT_TZ": "schedule.timezone",
    "GITHUB_TOKEN": "store.github.token",
    "GITHUB_OWNER": "store.github.owner",
    "GITHUB_REPO": "store.github.repo",
    "GITHUB_BRANCH": "store.github.branch",
    "CMS_GITHUB_BASEDIR": "store.github.base_dir",
    "STORE_BACKEND": "store.backend",
    "BIGQUERY_PROJECT": "metrics.project",
    "BIGQUERY_ACCESS_TOKEN": "metrics.access_token",
    "METRICS_TABLE": "metrics.table",
    "MEAGPOWER_USER": "price.username",
    "MEAGPOWER_PASS": "price.password",
}


DEFAULTS: Dict[str, Any] = {
    "schedule": {
        "timezone": "America/New_York",
        "rules": [
            {"days": ["Mon", "Tue", "Wed", "Thu"], "times": ["06:00 AM", "04:00 PM", "11:59 PM"]},
            {"days": ["Fri", "Sat", "Sun"], "times": ["06:00 AM", "06:00 PM"]},
        ],
    },
    "scheduler": {"enabled": True},
    "publish": {
        "window_hours": 24,
        "manifest_max_entries": 500,
        "page_template": str(BUNDLED_CONFIG_DIR / "templates" / "report_page.html"),
    },
    "store": {
        "backend": "local",
        "local": {"root": "public"},
        "github": {
            "owner": "",
            "repo": "",
            "branch": "main",
            "token": "",
            "base_dir": "public/",
            "api_url": "https://api.github.com",
            "timeout": 30,
        },
    },
    "metrics": {
        "project": "",
        "dataset": "",
        "table": "",
        "access_token": "",
        "location": None,
        "timeout": 60,
        "excluded_tables": ["customer_btc_info", "customer_lmp_prices"],
        "api_url": "https://bigquery.googleapis.com/bigquery/v2",
        "page_size": 10000,
    },
    "weather": {
        "enabled": True,
        "site": "site",
        "latitude": 0.0,
        "longitude": 0.0,
        "timezone": "America/New_York",
        "past_hours": 12,
        "forecast_hours": 12,
        "api_url": "https://api.open-meteo.com/v1/forecast",
        "timeout": 10,
    },
    "price": {
        "enabled": True,
        "username": "",
        "password": "",
        "base_url": "https://b2b.meagpower.org",
        "timeout": 20,
    },
    "slices": [],
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class AppConfig:
    """YAML-backed configuration with dotted-key access."""

    def __init__(self, data: Optional[Dict[str, Any]] = None, path: Optional[Path] = None):
        self.path = path
        self._data: Dict[str, Any] = _deep_merge(DEFAULTS, data or {})

    @classmethod
    def load(cls, path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> "AppConfig":
        """
        Load configuration from YAML and apply environment overrides.

        Args:
            path: YAML file path (defaults to $HASH_REPORT_CONFIG or the bundled config)
            environ: Environment mapping (defaults to os.environ)

        Returns:
            AppConfig instance
        """
        env = os.environ if environ is None else environ
        config_path = Path(path or env.get("HASH_REPORT_CONFIG") or DEFAULT_CONFIG_PATH)

        data: Dict[str, Any] = {}
        if config_path.exists():
            try:
                with open(config_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"Config root must be a mapping: {config_path}")
            logger.info("Loaded config from %s", config_path)
        else:
            logger.warning("Config file not found: %s (using defaults)", config_path)

        config = cls(data, path=config_path)
        for env_name, key in ENV_OVERRIDES.items():
            value = env.get(env_name)
            if value:
                config.set(key, value)
        return config

    def get(self, key: str, default: Any = None) -> Any:
        node: Any = self._data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any) -> None:
        parts = key.split(".")
        node = self._data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)

    def settings(self) -> "PipelineSettings":
        try:
            return PipelineSettings.model_validate(self._data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e


# ============================================================================
# Settings models
# ============================================================================

class ScheduleRuleSettings(BaseModel):
    days: List[str]
    times: List[str]


class ScheduleSettings(BaseModel):
    timezone: str = "America/New_York"
    rules: List[ScheduleRuleSettings] = Field(default_factory=list)


class SchedulerSettings(BaseModel):
    enabled: bool = True


class PublishSettings(BaseModel):
    window_hours: int = 24
    manifest_max_entries: int = 500
    page_template: Optional[str] = None

    @field_validator("window_hours", "manifest_max_entries")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value


class LocalStoreSettings(BaseModel):
    root: str = "public"


class GithubStoreSettings(BaseModel):
    owner: str = ""
    repo: str = ""
    branch: str = "main"
    token: str = ""
    base_dir: str = "public/"
    api_url: str = "https://api.github.com"
    timeout: float = 30


class StoreSettings(BaseModel):
    backend: str = "local"
    local: LocalStoreSettings = Field(default_factory=LocalStoreSettings)
    github: GithubStoreSettings = Field(default_factory=GithubStoreSettings)

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in {"local", "github", "mirror"}:
            raise ValueError(f"unknown store backend '{value}'")
        return value


class MetricsSettings(BaseModel):
    project: str = ""
    dataset: str = ""
    table: str = ""
    access_token: str = ""
    location: Optional[str] = None
    timeout: float = 60
    excluded_tables: List[str] = Field(default_factory=list)
    api_url: str = "https://bigquery.googleapis.com/bigquery/v2"
    page_size: int = 10000


class WeatherSettings(BaseModel):
    enabled: bool = True
    site: str = "site"
    latitude: float = 0.0
    longitude: float = 0.0
    timezone: str = "America/New_York"
    past_hours: int = 12
    forecast_hours: int = 12
    api_url: str = "https://api.open-meteo.com/v1/forecast"
    timeout: float = 10


class PriceSettings(BaseModel):
    enabled: bool = True
    username: str = ""
    password: str = ""
    base_url: str = "https://b2b.meagpower.org"
    timeout: float = 20


class CategorySettings(BaseModel):
    label: str
    match: str
    pattern: str

    @field_validator("match")
    @classmethod
    def _known_match(cls, value: str) -> str:
        if value not in {"pool_url", "worker"}:
            raise ValueError(f"unknown category match '{value}'")
        return value


class TableSettings(BaseModel):
    mode: str = "deployed"
    prefixes: List[str] = Field(default_factory=list)
    allow: List[str] = Field(default_factory=list)

    @field_validator("mode")
    @classmethod
    def _known_mode(cls, value: str) -> str:
        if value not in {"deployed", "uptime"}:
            raise ValueError(f"unknown table mode '{value}'")
        return value


class SliceSettings(BaseModel):
    key: str
    label: str
    client_name: str
    categories: List[CategorySettings] = Field(default_factory=list)
    table: TableSettings = Field(default_factory=TableSettings)
    category_efficiency: List[str] = Field(default_factory=list)


class PipelineSettings(BaseModel):
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    publish: PublishSettings = Field(default_factory=PublishSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    weather: WeatherSettings = Field(default_factory=WeatherSettings)
    price: PriceSettings = Field(default_factory=PriceSettings)
    slices: List[SliceSettings] = Field(default_factory=list)
