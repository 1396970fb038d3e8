"""
Typed configuration model with precedence-based loader.

Precedence (lowest to highest):
    defaults < config file (YAML) < profile < env vars < CLI flags
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any

import yaml


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8000
    user_header: str = "X-User-Id"
    cors_origins: list[str] = field(default_factory=list)


@dataclass
class LLMConfig:
    api_base: str = "https://openrouter.ai/api/v1"
    default_model: str = "google/gemini-3-flash-preview"
    title_model: str = "google/gemini-2.5-flash-lite"
    handoff_model: str = "google/gemini-2.5-flash"
    api_key_env: str = "OPENROUTER_API_KEY"
    timeout_seconds: int = 120
    max_retries: int = 2
    max_steps: int = 8
    app_name: str = "parley"
    app_url: str = ""


@dataclass
class SearchConfig:
    api_base: str = "https://api.parallel.ai"
    api_key_env: str = "PARALLEL_API_KEY"
    timeout_seconds: int = 60


@dataclass
class PricingConfig:
    models_url: str = "https://openrouter.ai/api/v1/models"
    ttl_seconds: int = 3600
    timeout_seconds: int = 10


@dataclass
class StorageConfig:
    db_path: str = "~/.parley/chat.db"
    files_dir: str = "~/.parley/files"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str = ""


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class ParleyConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


_SECTIONS: dict[str, type] = {
    "server": ServerConfig,
    "llm": LLMConfig,
    "search": SearchConfig,
    "pricing": PricingConfig,
    "storage": StorageConfig,
    "logging": LoggingConfig,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _apply_dotpath(obj: Any, dotpath: str, value: Any) -> None:
    """Walk obj via dotpath and set the final attribute."""
    parts = dotpath.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    if not hasattr(obj, parts[-1]):
        raise KeyError(f"Unknown config key: {dotpath}")
    setattr(obj, parts[-1], value)


def _deep_merge(base: dict, overlay: dict) -> dict:
    """Recursively merge overlay into base, returning a new dict."""
    merged = dict(base)
    for k, v in overlay.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def _coerce(value: str, target_type: type) -> Any:
    """Coerce a string env value to the target type."""
    if target_type is bool:
        return value.lower() in ("1", "true", "yes", "on")
    if target_type is int:
        return int(value)
    if target_type is list:
        return [s.strip() for s in value.split(",") if s.strip()]
    return value


def _build_section(cls: type, raw: dict) -> Any:
    """Build a dataclass section from a raw dict, ignoring unknown keys."""
    valid_fields = {f.name for f in fields(cls)}
    filtered = {k: v for k, v in (raw or {}).items() if k in valid_fields}
    return cls(**filtered)


# ---------------------------------------------------------------------------
# ENV var mapping
# ---------------------------------------------------------------------------

_ENV_MAP: dict[str, tuple[str, type]] = {
    "PARLEY_SERVER_HOST":         ("server.host", str),
    "PARLEY_SERVER_PORT":         ("server.port", int),
    "PARLEY_SERVER_USER_HEADER":  ("server.user_header", str),
    "PARLEY_SERVER_CORS_ORIGINS": ("server.cors_origins", list),
    "PARLEY_LLM_API_BASE":        ("llm.api_base", str),
    "PARLEY_LLM_DEFAULT_MODEL":   ("llm.default_model", str),
    "PARLEY_LLM_TITLE_MODEL":     ("llm.title_model", str),
    "PARLEY_LLM_HANDOFF_MODEL":   ("llm.handoff_model", str),
    "PARLEY_LLM_TIMEOUT":         ("llm.timeout_seconds", int),
    "PARLEY_LLM_MAX_RETRIES":     ("llm.max_retries", int),
    "PARLEY_LLM_MAX_STEPS":       ("llm.max_steps", int),
    "PARLEY_SEARCH_API_BASE":     ("search.api_base", str),
    "PARLEY_SEARCH_TIMEOUT":      ("search.timeout_seconds", int),
    "PARLEY_PRICING_MODELS_URL":  ("pricing.models_url", str),
    "PARLEY_PRICING_TTL":         ("pricing.ttl_seconds", int),
    "PARLEY_STORAGE_DB_PATH":     ("storage.db_path", str),
    "PARLEY_STORAGE_FILES_DIR":   ("storage.files_dir", str),
    "PARLEY_LOG_LEVEL":           ("logging.level", str),
    "PARLEY_LOG_FILE":            ("logging.file", str),
}


def find_config_path() -> Path | None:
    """Find config file in standard locations."""
    candidates = [
        Path.cwd() / "parley.yaml",
        Path.cwd() / "parley.yml",
        Path.home() / ".config" / "parley" / "config.yaml",
    ]
    for p in candidates:
        if p.is_file():
            return p
    return None


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> ParleyConfig:
    """
    Build a ParleyConfig by layering sources in precedence order.

    Parameters
    ----------
    config_path : path to YAML config file (optional)
    profile : name of a profile to apply from the config file
    cli_overrides : dict of dotpath -> value CLI flag overrides
    """
    raw: dict[str, Any] = {}

    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.is_file():
            with p.open("r", encoding="utf-8") as f:
                file_data = yaml.safe_load(f) or {}
            if not isinstance(file_data, dict):
                raise ValueError(f"Config file {p} must contain a mapping")
            raw = _deep_merge(raw, file_data)

    if profile:
        profile_data = raw.get("profiles", {}).get(profile)
        if profile_data is None:
            raise KeyError(f"Unknown config profile: {profile}")
        raw = _deep_merge(raw, profile_data)

    cfg = ParleyConfig(
        **{name: _build_section(cls, raw.get(name, {})) for name, cls in _SECTIONS.items()},
        profiles=raw.get("profiles", {}),
    )

    for env_var, (dotpath, target_type) in _ENV_MAP.items():
        val = os.environ.get(env_var)
        if val is not None:
            _apply_dotpath(cfg, dotpath, _coerce(val, target_type))

    if cli_overrides:
        for dotpath, value in cli_overrides.items():
            _apply_dotpath(cfg, dotpath, value)

    return cfg
