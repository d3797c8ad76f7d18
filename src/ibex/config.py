"""Configuration loading with environment variable overrides.

Supports loading config from YAML and overriding with environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .cache import DEFAULT_TIER_SECONDS, TTLTier, validate_ttl

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "configs" / "default.yaml"

DEFAULTS: Dict[str, Any] = {
    "cache_enabled": True,
    "cache_max_entries": 1024,
    "cache_ttl_short": DEFAULT_TIER_SECONDS[TTLTier.SHORT],
    "cache_ttl_standard": DEFAULT_TIER_SECONDS[TTLTier.STANDARD],
    "cache_ttl_long": DEFAULT_TIER_SECONDS[TTLTier.LONG],
    "cache_timezone": "UTC",
    "rate_limit_max_requests": 1000,
    "rate_limit_window_seconds": 900,
    "notifications_url": None,
    "notifications_timeout_seconds": 10.0,
    "log_dir": "runs/logs",
    "request_log_enabled": True,
    "seed_path": None,
    "tokens": {},
}


def get_env_bool(key: str, default: bool) -> bool:
    """Get boolean from environment variable.

    Args:
        key: Environment variable name
        default: Default value if not set

    Returns:
        Boolean value
    """
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def get_env_int(key: str, default: Optional[int]) -> Optional[int]:
    """Get integer from environment variable, falling back on bad input."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def get_env_float(key: str, default: Optional[float]) -> Optional[float]:
    """Get float from environment variable, falling back on bad input."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to config.

    Supported environment variables:
    - CACHE_ENABLED: Enable/disable the response cache (true/false)
    - CACHE_MAX_ENTRIES: Maximum cache entries (0 = unbounded)
    - CACHE_TTL_SHORT / CACHE_TTL_STANDARD / CACHE_TTL_LONG: Tier TTLs in seconds
    - CACHE_TIMEZONE: Timezone the cache creation day is computed in
    - RATE_LIMIT_MAX_REQUESTS: Requests allowed per client per window
    - RATE_LIMIT_WINDOW_SECONDS: Rate limit window length
    - NOTIFICATIONS_URL: Push notification function endpoint
    - LOG_DIR: Log directory path
    - REQUEST_LOG_ENABLED: Write gateway.jsonl request log (true/false)
    - SEED_PATH: YAML seed file for the attendance store

    Args:
        config: Base configuration dict

    Returns:
        Configuration with env var overrides applied
    """
    config = config.copy()

    config["cache_enabled"] = get_env_bool("CACHE_ENABLED", config.get("cache_enabled", True))
    config["cache_max_entries"] = get_env_int(
        "CACHE_MAX_ENTRIES", config.get("cache_max_entries", 1024)
    )
    for tier in TTLTier:
        name = f"cache_ttl_{tier.value}"
        config[name] = get_env_int(name.upper(), config.get(name, DEFAULT_TIER_SECONDS[tier]))

    if os.getenv("CACHE_TIMEZONE"):
        config["cache_timezone"] = os.getenv("CACHE_TIMEZONE")

    # Rate limiting
    config["rate_limit_max_requests"] = get_env_int(
        "RATE_LIMIT_MAX_REQUESTS", config.get("rate_limit_max_requests", 1000)
    )
    config["rate_limit_window_seconds"] = get_env_float(
        "RATE_LIMIT_WINDOW_SECONDS", config.get("rate_limit_window_seconds", 900)
    )

    if os.getenv("NOTIFICATIONS_URL"):
        config["notifications_url"] = os.getenv("NOTIFICATIONS_URL")

    # Observability
    if os.getenv("LOG_DIR"):
        config["log_dir"] = os.getenv("LOG_DIR")
    config["request_log_enabled"] = get_env_bool(
        "REQUEST_LOG_ENABLED", config.get("request_log_enabled", True)
    )

    if os.getenv("SEED_PATH"):
        config["seed_path"] = os.getenv("SEED_PATH")

    return config


@dataclass
class Settings:
    """Resolved application settings."""

    cache_enabled: bool = True
    cache_max_entries: int = 1024
    cache_tiers: Dict[TTLTier, int] = field(default_factory=lambda: dict(DEFAULT_TIER_SECONDS))
    cache_timezone: str = "UTC"
    rate_limit_max_requests: int = 1000
    rate_limit_window_seconds: float = 900.0
    notifications_url: Optional[str] = None
    notifications_timeout_seconds: float = 10.0
    log_dir: str = "runs/logs"
    request_log_enabled: bool = True
    seed_path: Optional[str] = None
    tokens: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "Settings":
        """Build settings from a (merged) config dict.

        Raises:
            CacheConfigurationError: if a tier TTL is not a positive integer
        """
        merged = {**DEFAULTS, **{k: v for k, v in config.items() if v is not None}}
        tiers = {
            tier: validate_ttl(merged[f"cache_ttl_{tier.value}"]) for tier in TTLTier
        }
        return cls(
            cache_enabled=bool(merged["cache_enabled"]),
            cache_max_entries=int(merged["cache_max_entries"]),
            cache_tiers=tiers,
            cache_timezone=str(merged["cache_timezone"]),
            rate_limit_max_requests=int(merged["rate_limit_max_requests"]),
            rate_limit_window_seconds=float(merged["rate_limit_window_seconds"]),
            notifications_url=merged.get("notifications_url"),
            notifications_timeout_seconds=float(merged["notifications_timeout_seconds"]),
            log_dir=str(merged["log_dir"]),
            request_log_enabled=bool(merged["request_log_enabled"]),
            seed_path=merged.get("seed_path"),
            tokens=dict(merged.get("tokens") or {}),
        )


def load_config_file(path: Optional[str] = None) -> Dict[str, Any]:
    """Read a YAML config file; missing default file yields {}.

    Raises:
        FileNotFoundError: If an explicit path does not exist
        ValueError: If the YAML top level is not a mapping
    """
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
    else:
        config_path = DEFAULT_CONFIG_PATH
        if not config_path.exists():
            return {}

    with open(config_path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    # Seed paths in the file are relative to the file itself.
    seed_path = data.get("seed_path")
    if seed_path and not Path(seed_path).is_absolute():
        data["seed_path"] = str((config_path.parent / seed_path).resolve())
    return data


def load_settings(path: Optional[str] = None) -> Settings:
    """YAML file, then env overrides, resolved into Settings."""
    return Settings.from_dict(apply_env_overrides(load_config_file(path)))
