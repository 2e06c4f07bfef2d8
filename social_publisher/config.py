"""
Settings for the publish scheduler, approval gate and event logging.

Values come from three layers, later ones winning:

    1. dataclass defaults below
    2. ``config/settings.yaml`` (scheduler keys may sit under ``scheduler:``)
    3. ``PUBLISH_*`` / ``LOG_*`` environment variables, ``.env`` included

``get_settings()`` caches one ``Settings`` per process; tests call
``reset_settings()`` between cases. ``validate_env()`` is the startup
check for the Supabase credentials used by ``run.py``.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

from social_publisher.exceptions import ConfigurationError
from social_publisher.models import AggregatePolicy, Platform

load_dotenv()

# Repository root; config/settings.yaml is resolved against it
PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_SETTINGS_PATH = PROJECT_ROOT / "config" / "settings.yaml"

logger = logging.getLogger(__name__)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_list(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


# Environment variable -> (Settings field, parser)
ENV_OVERRIDES: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "PUBLISH_TICK_INTERVAL_SECONDS": ("tick_interval_seconds", float),
    "PUBLISH_MAX_CONCURRENCY": ("max_concurrency", int),
    "PUBLISH_DISPATCH_TIMEOUT_SECONDS": ("dispatch_timeout_seconds", float),
    "PUBLISH_RETRY_BASE_DELAY_SECONDS": ("retry_base_delay_seconds", float),
    "PUBLISH_RETRY_MAX_DELAY_SECONDS": ("retry_max_delay_seconds", float),
    "PUBLISH_DEFAULT_MAX_RETRIES": ("default_max_retries", int),
    "PUBLISH_STUCK_TIMEOUT_MINUTES": ("stuck_timeout_minutes", int),
    "PUBLISH_AGGREGATE_POLICY": ("aggregate_policy", str),
    "PUBLISH_APPROVERS": ("approvers", _parse_list),
    "PUBLISH_DRY_RUN": ("dry_run", _parse_bool),
    "LOG_LEVEL": ("log_level", str),
    "LOG_DIR": ("log_dir", str),
}


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Flattened mapping from *path*; empty when the file is absent."""
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Failed to parse settings YAML at {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings YAML at {path} must be a mapping")
    data.update(data.pop("scheduler", None) or {})
    return data


def _read_env() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for env_key, (attr_name, parse) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_key)
        if raw is None:
            continue
        try:
            values[attr_name] = parse(raw)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError(
                f"Invalid value for env var {env_key}='{raw}': {exc}"
            ) from exc
    return values


@dataclass
class Settings:
    """Tuning for dispatch, retries, approval and logging.

    Construct through ``from_yaml()`` (or ``get_settings()``) to pick up
    the settings file and environment; direct construction gives the
    defaults.
    """

    # Dispatch loop
    tick_interval_seconds: float = 30.0
    max_concurrency: int = 8
    dispatch_timeout_seconds: float = 30.0

    # Retry / backoff
    retry_base_delay_seconds: float = 30.0
    retry_max_delay_seconds: float = 3600.0
    default_max_retries: int = 3
    platform_max_retries: Dict[str, int] = field(default_factory=dict)

    # Recovery
    stuck_timeout_minutes: int = 10

    # Draft aggregation
    aggregate_policy: AggregatePolicy = AggregatePolicy.BEST_EFFORT

    # Users allowed to approve drafts they do not own
    approvers: List[str] = field(default_factory=list)

    # Route every platform to the dry-run publisher
    dry_run: bool = False

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"

    def __post_init__(self) -> None:
        """Validate values after YAML / env loading."""
        if isinstance(self.aggregate_policy, str):
            try:
                self.aggregate_policy = AggregatePolicy(self.aggregate_policy)
            except ValueError as exc:
                raise ConfigurationError(
                    f"Unknown aggregate_policy '{self.aggregate_policy}'"
                ) from exc

        if self.max_concurrency < 1:
            raise ConfigurationError("max_concurrency must be >= 1")
        if self.tick_interval_seconds <= 0:
            raise ConfigurationError("tick_interval_seconds must be > 0")
        if self.dispatch_timeout_seconds <= 0:
            raise ConfigurationError("dispatch_timeout_seconds must be > 0")
        if self.retry_base_delay_seconds < 0:
            raise ConfigurationError("retry_base_delay_seconds must be >= 0")
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ConfigurationError(
                "retry_max_delay_seconds must be >= retry_base_delay_seconds"
            )
        if self.default_max_retries < 0:
            raise ConfigurationError("default_max_retries must be >= 0")
        if self.stuck_timeout_minutes < 1:
            raise ConfigurationError("stuck_timeout_minutes must be >= 1")

        known = {p.value for p in Platform}
        for platform, retries in self.platform_max_retries.items():
            if platform not in known:
                raise ConfigurationError(
                    f"Unknown platform '{platform}' in platform_max_retries"
                )
            if int(retries) < 0:
                raise ConfigurationError(
                    f"platform_max_retries[{platform}] must be >= 0"
                )

    def max_retries_for(self, platform: Platform) -> int:
        """Per-platform override if configured, else ``default_max_retries``."""
        if platform.value in self.platform_max_retries:
            return int(self.platform_max_retries[platform.value])
        return self.default_max_retries

    def can_approve_for_others(self, actor: str) -> bool:
        return actor in self.approvers

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "Settings":
        """
        Build settings from *path* (default ``config/settings.yaml``) plus env.

        A missing file is not an error. Unknown YAML keys are logged and
        skipped.

        Raises:
            ConfigurationError: Unparseable YAML, a non-mapping document,
                an unparseable env value, or a value that fails validation.
        """
        path = path or DEFAULT_SETTINGS_PATH
        data = _read_yaml(path)

        known = cls.__dataclass_fields__
        unknown = sorted(key for key in data if key not in known)
        if unknown:
            logger.warning("Ignoring unknown settings keys: %s", unknown)

        values = {key: value for key, value in data.items() if key in known}
        values.update(_read_env())

        if "platform_max_retries" in values:
            values["platform_max_retries"] = dict(values["platform_max_retries"] or {})
        if "approvers" in values:
            values["approvers"] = [str(a) for a in values["approvers"] or []]

        return cls(**values)


# ===========================================================================
# PROCESS-WIDE SETTINGS
# ===========================================================================

_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """Settings loaded once per process via ``Settings.from_yaml()``."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings.from_yaml()
    return _settings_instance


def reset_settings() -> None:
    global _settings_instance
    _settings_instance = None


# ===========================================================================
# STARTUP ENVIRONMENT CHECK
# ===========================================================================

# Needed by SupabaseStore.create()
REQUIRED_ENV_VARS: List[str] = ["SUPABASE_URL", "SUPABASE_SERVICE_KEY"]

# Reported but never required
OPTIONAL_ENV_VARS: List[str] = [
    "PUBLISH_DRY_RUN",
    "PUBLISH_APPROVERS",
    "LOG_LEVEL",
    "LOG_DIR",
]


def validate_env(strict: bool = True) -> Dict[str, bool]:
    """
    Report which required and optional variables are set.

    Args:
        strict: Raise instead of returning when a required variable is missing.

    Raises:
        ConfigurationError: *strict* and at least one required variable unset.
    """
    status = {var: bool(os.environ.get(var)) for var in REQUIRED_ENV_VARS + OPTIONAL_ENV_VARS}
    missing = [var for var in REQUIRED_ENV_VARS if not status[var]]
    if strict and missing:
        raise ConfigurationError(
            f"Missing required environment variables: {missing}. "
            "Set them in the environment or in .env (see .env.example)."
        )
    return status


__all__ = [
    "PROJECT_ROOT",
    "ENV_OVERRIDES",
    "Settings",
    "get_settings",
    "reset_settings",
    "REQUIRED_ENV_VARS",
    "OPTIONAL_ENV_VARS",
    "validate_env",
]
