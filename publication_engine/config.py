"""
Centralized configuration loader for the publication engine.

Loads settings from ``config/settings.yaml`` and environment variables,
providing sensible defaults when the configuration file is absent.

Provides:
    - Settings: Engine settings loaded from YAML + env vars
    - get_settings(): Singleton accessor for Settings
    - reset_settings(): Drop the cached Settings (tests, hot reload)
    - validate_env(): Startup validation of required environment variables
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from publication_engine.exceptions import ConfigurationError
from publication_engine.utils import normalize_platform

# ---------------------------------------------------------------------------
# Load .env file (no-op if file does not exist)
# ---------------------------------------------------------------------------
load_dotenv()

# ---------------------------------------------------------------------------
# Project root directory (parent of publication_engine/)
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


# Platforms whose credentials belong to a single tenant. Everything else is
# looked up in the global scope.
DEFAULT_TENANT_SCOPED_PLATFORMS: List[str] = ["twitter", "make"]


# ===========================================================================
# ENGINE SETTINGS
# ===========================================================================


@dataclass
class Settings:
    """
    Engine settings.

    Loaded from ``config/settings.yaml`` when available, falling back to
    defaults. Environment variables override YAML values for
    deployment-specific tuning.
    """

    # Scheduler
    tick_interval_seconds: int = 60
    max_concurrent_dispatches: int = 5
    stuck_timeout_minutes: Optional[int] = None

    # Timeouts (seconds)
    store_timeout_seconds: float = 10.0
    dispatch_timeout_seconds: float = 120.0
    http_timeout_seconds: float = 30.0

    # Credential scoping
    tenant_scoped_platforms: List[str] = field(
        default_factory=lambda: list(DEFAULT_TENANT_SCOPED_PLATFORMS)
    )

    # Platforms relayed through an automation webhook
    webhook_platforms: List[str] = field(default_factory=lambda: ["make"])

    # Supabase tables
    jobs_table: str = "publications"
    credentials_table: str = "api_configurations"
    audit_table: str = "logs"

    # Logging
    log_level: str = "INFO"
    audit_log_dir: Optional[str] = None

    def __post_init__(self) -> None:
        self.tenant_scoped_platforms = [
            normalize_platform(p) for p in self.tenant_scoped_platforms
        ]
        self.webhook_platforms = [
            normalize_platform(p) for p in self.webhook_platforms
        ]
        if self.tick_interval_seconds <= 0:
            raise ConfigurationError("tick_interval_seconds must be positive")
        if self.max_concurrent_dispatches <= 0:
            raise ConfigurationError("max_concurrent_dispatches must be positive")

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "Settings":
        """
        Load settings from a YAML file.

        If the file does not exist, returns an instance with all defaults.
        Environment variables override YAML values for specific keys.

        Args:
            path: Path to the YAML file. Defaults to
                ``<PROJECT_ROOT>/config/settings.yaml``.

        Returns:
            Populated Settings instance.

        Raises:
            ConfigurationError: If the YAML file exists but cannot be parsed,
                or an environment override holds an invalid value.
        """
        path = path or PROJECT_ROOT / "config" / "settings.yaml"

        data: Dict[str, Any] = {}
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    data = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(
                    f"Failed to parse settings YAML at {path}: {exc}"
                ) from exc

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Settings YAML at {path} must be a mapping, got {type(data).__name__}"
            )

        scheduler = data.get("scheduler", {}) or {}
        timeouts = data.get("timeouts", {}) or {}
        credentials = data.get("credentials", {}) or {}
        tables = data.get("tables", {}) or {}
        logging_cfg = data.get("logging", {}) or {}

        kwargs: Dict[str, Any] = {
            "tick_interval_seconds": scheduler.get("tick_interval_seconds", 60),
            "max_concurrent_dispatches": scheduler.get("max_concurrent_dispatches", 5),
            "stuck_timeout_minutes": scheduler.get("stuck_timeout_minutes"),
            "store_timeout_seconds": timeouts.get("store_seconds", 10.0),
            "dispatch_timeout_seconds": timeouts.get("dispatch_seconds", 120.0),
            "http_timeout_seconds": timeouts.get("http_seconds", 30.0),
            "tenant_scoped_platforms": credentials.get(
                "tenant_scoped_platforms", list(DEFAULT_TENANT_SCOPED_PLATFORMS)
            ),
            "webhook_platforms": data.get("webhook_platforms", ["make"]),
            "jobs_table": tables.get("jobs", "publications"),
            "credentials_table": tables.get("credentials", "api_configurations"),
            "audit_table": tables.get("audit", "logs"),
            "log_level": logging_cfg.get("level", "INFO"),
            "audit_log_dir": logging_cfg.get("audit_log_dir"),
        }

        # -----------------------------------------------------------------
        # Environment variable overrides
        # -----------------------------------------------------------------
        env_overrides: Dict[str, Any] = {
            "ENGINE_TICK_INTERVAL_SECONDS": ("tick_interval_seconds", int),
            "ENGINE_MAX_CONCURRENT_DISPATCHES": ("max_concurrent_dispatches", int),
            "ENGINE_STORE_TIMEOUT_SECONDS": ("store_timeout_seconds", float),
            "ENGINE_DISPATCH_TIMEOUT_SECONDS": ("dispatch_timeout_seconds", float),
        }
        for env_key, (attr_name, cast_fn) in env_overrides.items():
            env_val = os.environ.get(env_key)
            if env_val is not None:
                kwargs[attr_name] = _cast_positive(env_key, env_val, cast_fn)

        scoped_env = os.environ.get("ENGINE_TENANT_SCOPED_PLATFORMS")
        if scoped_env is not None:
            kwargs["tenant_scoped_platforms"] = [
                p for p in (part.strip() for part in scoped_env.split(",")) if p
            ]

        log_level_env = os.environ.get("LOG_LEVEL")
        if log_level_env:
            kwargs["log_level"] = log_level_env.upper()

        return cls(**kwargs)


def _cast_positive(env_key: str, env_val: str, cast_fn: Callable[[str], Any]) -> Any:
    try:
        value = cast_fn(env_val)
    except (ValueError, TypeError) as exc:
        raise ConfigurationError(
            f"Invalid value for env var {env_key}='{env_val}': {exc}"
        ) from exc
    if value <= 0:
        raise ConfigurationError(
            f"Env var {env_key} must be positive, got {env_val}"
        )
    return value


# ===========================================================================
# SINGLETON SETTINGS ACCESSOR
# ===========================================================================

_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global Settings singleton.

    On first call, loads from ``config/settings.yaml`` (or defaults).
    Subsequent calls return the cached instance.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings.from_yaml()
    return _settings_instance


def reset_settings() -> None:
    """Reset the cached Settings singleton."""
    global _settings_instance
    _settings_instance = None


# ===========================================================================
# ENVIRONMENT VARIABLE VALIDATION
# ===========================================================================

REQUIRED_ENV_VARS: List[str] = [
    "SUPABASE_URL",
    "SUPABASE_SERVICE_KEY",
    "ENCRYPTION_KEY",
]

OPTIONAL_ENV_VARS: List[str] = [
    "TWITTER_CLIENT_ID",
]


def validate_env(strict: bool = True) -> Dict[str, bool]:
    """
    Validate that required environment variables are set.

    Args:
        strict: If ``True``, raise ``ConfigurationError`` when any required
            variable is missing. If ``False``, return the status dict
            without raising.

    Returns:
        Mapping of variable name to whether it is set (non-empty).
    """
    status: Dict[str, bool] = {}
    for var in REQUIRED_ENV_VARS + OPTIONAL_ENV_VARS:
        status[var] = bool(os.environ.get(var, "").strip())

    missing = [var for var in REQUIRED_ENV_VARS if not status[var]]
    if missing and strict:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing)}"
        )
    for var in OPTIONAL_ENV_VARS:
        if not status[var]:
            logger.warning("Optional environment variable %s is not set", var)
    return status
