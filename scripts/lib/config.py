"""
Configuration for Funnel Hub.
Defaults, overlaid by configs/funnel.yaml, overlaid by environment (.env).

Usage:
    from scripts.lib.config import get_settings
    settings = get_settings()
    settings.debounce_seconds   # 0.5
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from models.funnel_models import StageBenchmark
from scripts.lib.errors import ConfigError
from scripts.lib.logger import setup_logger

logger = setup_logger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
CONFIG_PATH = PROJECT_ROOT / "configs" / "funnel.yaml"

load_dotenv(PROJECT_ROOT / ".env")

DEFAULT_CONFIG: Dict[str, Any] = {
    "proxy_function": "pipedrive-proxy",
    "request_timeout": 30.0,
    "debounce_ms": 500,
    "trend_threshold": 2.0,
    "top_n": 10,
    "lost_reason_limit": 6,
    "pipedrive_domain": "setima",
    "default_pipeline_id": 9,
    "pipelines": [],
    "benchmarks": {},
}

# env var -> (settings field, caster)
ENV_OVERRIDES = {
    "SUPABASE_URL": ("supabase_url", str),
    "SUPABASE_ANON_KEY": ("supabase_anon_key", str),
    "PIPEDRIVE_PROXY_FUNCTION": ("proxy_function", str),
    "FUNNEL_REQUEST_TIMEOUT": ("request_timeout", float),
    "FUNNEL_DEBOUNCE_MS": ("debounce_ms", int),
    "FUNNEL_TREND_THRESHOLD": ("trend_threshold", float),
    "FUNNEL_TOP_N": ("top_n", int),
    "FUNNEL_DEFAULT_PIPELINE_ID": ("default_pipeline_id", int),
}


class PipelineConfig(BaseModel):
    id: int
    name: str
    subtitle: str = ""


class FunnelSettings(BaseModel):
    supabase_url: str = ""
    supabase_anon_key: str = ""
    proxy_function: str = "pipedrive-proxy"
    request_timeout: float = 30.0
    debounce_ms: int = Field(500, ge=0)
    trend_threshold: float = Field(2.0, ge=0)
    top_n: Optional[int] = Field(10, ge=1)
    lost_reason_limit: Optional[int] = Field(6, ge=1)
    pipedrive_domain: str = "setima"
    default_pipeline_id: int = 9
    pipelines: List[PipelineConfig] = Field(default_factory=list)
    # Overrides for the target-vs-actual step benchmarks, keyed by step
    benchmarks: Dict[str, StageBenchmark] = Field(default_factory=dict)

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000

    @property
    def proxy_url(self) -> str:
        return f"{self.supabase_url.rstrip('/')}/functions/v1/{self.proxy_function}"

    def pipeline(self, pipeline_id: int) -> Optional[PipelineConfig]:
        for pipeline in self.pipelines:
            if pipeline.id == pipeline_id:
                return pipeline
        return None

    def pipedrive_url(self, pipeline_id: int) -> str:
        return f"https://{self.pipedrive_domain}.pipedrive.com/pipeline/{pipeline_id}"

    def deal_url(self, deal_id: int) -> str:
        return f"https://{self.pipedrive_domain}.pipedrive.com/deal/{deal_id}"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.debug("No funnel config at %s, using defaults", path)
        return {}

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML: {e}", config_path=str(path)) from e

    if not isinstance(data, dict):
        raise ConfigError("Top level must be a mapping", config_path=str(path))
    return data


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_name, (field, cast) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw in (None, ""):
            continue
        try:
            overrides[field] = cast(raw)
        except ValueError as e:
            raise ConfigError(f"{env_name}={raw!r} is not a valid {cast.__name__}") from e
    return overrides


def load_settings(config_path: Path = None) -> FunnelSettings:
    """
    Build settings from defaults, the YAML file and the environment.

    Raises:
        ConfigError: unreadable YAML, bad env values or invalid fields.
    """
    path = Path(config_path) if config_path else CONFIG_PATH
    merged = {**DEFAULT_CONFIG, **_load_yaml(path), **_env_overrides()}

    try:
        settings = FunnelSettings(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid funnel settings: {e}", config_path=str(path)) from e

    logger.debug(
        "Funnel settings loaded (%d pipelines, debounce %dms)",
        len(settings.pipelines), settings.debounce_ms,
    )
    return settings


_settings: Optional[FunnelSettings] = None


def get_settings() -> FunnelSettings:
    """Process-wide settings (singleton)."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings():
    """Forget cached settings so the next get_settings() reloads."""
    global _settings
    _settings = None
