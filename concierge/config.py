"""Configuration management with Pydantic Settings + optional YAML."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from concierge.utils.platform import get_config_dir, get_data_dir


class ResolverConfig(BaseModel):
    exact_match_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    fuzzy_match_threshold: float = Field(default=0.70, ge=0.0, le=1.0)
    max_candidates: int = Field(default=5, ge=1)
    use_semantic_search: bool = True
    semantic_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    search_limit: int = Field(default=10, ge=1)
    # Minimum lead the top candidate needs over the runner-up to win outright.
    person_ambiguity_gap: float = Field(default=0.20, ge=0.0, le=1.0)
    ambiguity_gap: float = Field(default=0.15, ge=0.0, le=1.0)


class ApprovalExpiryConfig(BaseModel):
    """Hours an approval request stays open, by tool risk level."""
    low: float = 24
    medium: float = 12
    high: float = 4
    critical: float = 1

    def hours_for(self, risk_level: str) -> float:
        return float(getattr(self, risk_level, self.medium))


class ExecutorConfig(BaseModel):
    stop_on_failure: bool = False
    rejection_policy: Literal["skip", "fail"] = "skip"
    default_risk_level: Literal["low", "medium", "high", "critical"] = "medium"
    approval_expiry: ApprovalExpiryConfig = Field(default_factory=ApprovalExpiryConfig)
    max_event_history: int | None = None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CONCIERGE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    resolver: ResolverConfig = Field(default_factory=ResolverConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    data_dir: str = ""
    log_level: str = "INFO"
    log_json: bool = False

    def get_data_dir(self) -> Path:
        if self.data_dir:
            return Path(self.data_dir)
        return get_data_dir()


def _find_config_file(config_path: str | Path | None) -> Path | None:
    if config_path is None:
        config_path = os.environ.get("CONCIERGE_CONFIG")
    if config_path is None:
        config_path = get_config_dir() / "config.yaml"
    path = Path(config_path)
    return path if path.exists() else None


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings from env vars, optionally overlaying a YAML config.

    Keys present in the YAML file are passed to ``Settings`` directly and so
    take precedence over ``CONCIERGE_*`` env vars for those keys.
    """
    yaml_data: dict[str, Any] = {}
    path = _find_config_file(config_path)
    if path is not None:
        with open(path) as f:
            loaded = yaml.safe_load(f)
        if loaded is not None and not isinstance(loaded, dict):
            raise ValueError(f"{path}: expected a mapping at the top level")
        yaml_data = loaded or {}

    return Settings(**yaml_data)
