"""
Configuration
-------------
YAML configuration validated by pydantic, with environment overrides.

Rules:
- Secrets never live in the YAML file; it only names the env vars
- TOOLGATE_<SECTION>_<KEY> overrides any file value, e.g.
  TOOLGATE_CONFIRM_RATE_LIMIT_MAX_REQUESTS=3
- A missing file means defaults (with a warning)
"""

from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union
import json
import logging
import os

import yaml
from pydantic import BaseModel, Field

from api.rate_limiter import RateLimitConfig


ENV_PREFIX = "TOOLGATE_"

logger = logging.getLogger("toolgate.infra.config")


class RateLimitSettings(BaseModel):
    max_requests: int = Field(10, ge=1)
    window_seconds: float = Field(10.0, gt=0)
    cleanup_interval_seconds: Optional[float] = Field(None, gt=0)

    def to_config(self) -> RateLimitConfig:
        return RateLimitConfig(
            max_requests=self.max_requests,
            window_seconds=self.window_seconds,
            cleanup_interval_seconds=self.cleanup_interval_seconds,
        )


class ExecutorSettings(BaseModel):
    default_timeout_seconds: Optional[float] = Field(30.0, gt=0)
    default_cache_ttl_seconds: float = Field(60.0, gt=0)
    cache_max_entries: int = Field(1024, ge=1)
    retry_base_delay_seconds: float = Field(0.1, ge=0)
    retry_max_delay_seconds: float = Field(2.0, ge=0)
    max_workers: int = Field(8, ge=1)


class AuditSettings(BaseModel):
    key_env: str = "TOOLGATE_AUDIT_KEY"
    emit_log: bool = True


class ServerSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(8000, ge=1, le=65535)
    log_level: str = "INFO"
    log_dir: Optional[str] = None
    log_file: bool = False
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost", "http://127.0.0.1"])
    demo_tools: bool = True
    # Read the caller identity from the X-User JSON header (behind a trusted proxy only)
    trust_user_header: bool = False
    # Reject requests whose auth resolver yields no user
    require_auth: bool = False


class SecretsSettings(BaseModel):
    # secret name -> environment variable holding it
    env_vars: Dict[str, str] = Field(default_factory=dict)


class Settings(BaseModel):
    """Top-level settings."""
    execute_rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    confirm_rate_limit: RateLimitSettings = Field(
        default_factory=lambda: RateLimitSettings(max_requests=5, window_seconds=10.0)
    )
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    secrets: SecretsSettings = Field(default_factory=SecretsSettings)
    proposal_ttl_seconds: float = Field(300.0, gt=0)
    proposal_max_pending: int = Field(1000, ge=1)
    proposal_sweep_interval_seconds: float = Field(60.0, gt=0)


def _parse_env_value(raw: str) -> Any:
    stripped = raw.strip()
    if stripped[:1] in ("[", "{"):
        try:
            return json.loads(stripped)
        except json.JSONDecodeError:
            return raw
    return raw


def _apply_env_overrides(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """Overlay TOOLGATE_<SECTION>_<KEY> (or TOOLGATE_<KEY>) onto raw config data."""
    merged = dict(data)

    for name, field_info in Settings.model_fields.items():
        annotation = field_info.annotation
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            section = dict(merged.get(name) or {})
            for key in annotation.model_fields:
                env_key = f"{ENV_PREFIX}{name.upper()}_{key.upper()}"
                if env_key in environ:
                    section[key] = _parse_env_value(environ[env_key])
                    logger.debug(f"Config override from {env_key}")
            if section:
                merged[name] = section
        else:
            env_key = f"{ENV_PREFIX}{name.upper()}"
            if env_key in environ:
                merged[name] = _parse_env_value(environ[env_key])
                logger.debug(f"Config override from {env_key}")

    return merged


def load_settings(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None
) -> Settings:
    """Load settings from YAML (optional) and the environment."""
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        if config_path.exists():
            with open(config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
            if not isinstance(loaded, dict):
                raise ValueError(f"Config root must be a mapping: {config_path}")
            data = loaded
            logger.info(f"Loaded config from {config_path}")
        else:
            logger.warning(f"Config file not found: {config_path}; using defaults")

    return Settings.model_validate(_apply_env_overrides(data, environ))


def load_secrets(
    settings: Settings,
    environ: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
    """
    Resolve configured secrets from the environment.

    Only names are ever logged, never values.
    """
    environ = os.environ if environ is None else environ
    secrets: Dict[str, str] = {}
    for name, env_var in settings.secrets.env_vars.items():
        value = environ.get(env_var)
        if value:
            secrets[name] = value
            logger.debug(f"Loaded secret: {name}")
        else:
            logger.warning(f"Secret {name} not set (expected in {env_var})")
    return secrets


def load_audit_key(
    settings: Settings,
    environ: Optional[Mapping[str, str]] = None
) -> Optional[bytes]:
    environ = os.environ if environ is None else environ
    value = environ.get(settings.audit.key_env)
    return value.encode("utf-8") if value else None
