"""Load, validate, and hot-reload the engine policy configuration.

The config lives in ``sdk_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sdk_config()`` to re-read from
disk after an update; no restart required.

Usage::

    from src.wearables.config_loader import get_sdk_config

    config = get_sdk_config()
    config.oauth.state_ttl_seconds        # 900
    config.http.backoff_base_seconds      # 0.5
    config.provider("fitbit").get("sleep_max_range_days")   # 100
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from src.wearables.base import DataType

logger = logging.getLogger("wearables.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sdk_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class OAuthPolicy:
    """Authorization-flow settings."""

    state_ttl_seconds: int = 900


@dataclass
class HttpPolicy:
    """Retry / timeout settings for the shared HTTP client."""

    retries: int = 3
    backoff_base_ms: int = 500
    timeout_ms: int = 30_000

    @property
    def backoff_base_seconds(self) -> float:
        return self.backoff_base_ms / 1000.0

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass
class BackfillPolicy:
    """Defaults for the bulk backfill operation."""

    default_days_back: int = 60
    data_types: list[DataType] = field(
        default_factory=lambda: [DataType.ACTIVITIES, DataType.SLEEP, DataType.DAILIES]
    )


@dataclass
class SDKConfig:
    """Complete, validated engine configuration.

    Attributes:
        version:   Config schema version string.
        oauth:     Authorization-flow settings.
        http:      HTTP retry / timeout settings.
        backfill:  Backfill defaults.
        providers: Per-provider tuning, keyed by provider slug.
    """

    version: str = "1.0"
    oauth: OAuthPolicy = field(default_factory=OAuthPolicy)
    http: HttpPolicy = field(default_factory=HttpPolicy)
    backfill: BackfillPolicy = field(default_factory=BackfillPolicy)
    providers: dict[str, dict[str, Any]] = field(default_factory=dict)
    _raw: dict = field(default_factory=dict, repr=False)

    def provider(self, provider_id: str) -> dict[str, Any]:
        """Return the tuning mapping for a provider (empty if unconfigured)."""
        return self.providers.get(provider_id, {})


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sdk_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"SDK config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigValidationError(f"{path} must contain a mapping at the top level")
    return data


def _validate_and_build(raw: dict) -> SDKConfig:
    """Validate the raw YAML dict and construct an SDKConfig.

    Performs structural validation and applies defaults for optional fields.
    All problems are collected and reported together.

    Args:
        raw: Parsed YAML dict.

    Returns:
        Validated SDKConfig instance.

    Raises:
        ConfigValidationError: If any value is missing or invalid.
    """
    errors: list[str] = []

    def _int(section: dict, key: str, default: int, name: str, minimum: int) -> int:
        value = section.get(key, default)
        try:
            number = int(value)
        except (TypeError, ValueError):
            errors.append(f"{name}.{key} must be an integer, got {value!r}")
            return default
        if number < minimum:
            errors.append(f"{name}.{key} = {number} must be >= {minimum}")
        return number

    def _section(key: str) -> dict:
        value = raw.get(key) or {}
        if not isinstance(value, dict):
            errors.append(f"'{key}' must be a mapping")
            return {}
        return value

    version = str(raw.get("version", "1.0"))

    # ── OAuth ──
    oauth_raw = _section("oauth")
    oauth = OAuthPolicy(
        state_ttl_seconds=_int(oauth_raw, "state_ttl_seconds", 900, "oauth", 1),
    )

    # ── HTTP ──
    http_raw = _section("http")
    http = HttpPolicy(
        retries=_int(http_raw, "retries", 3, "http", 0),
        backoff_base_ms=_int(http_raw, "backoff_base_ms", 500, "http", 0),
        timeout_ms=_int(http_raw, "timeout_ms", 30_000, "http", 1),
    )

    # ── Backfill ──
    bf_raw = _section("backfill")
    data_types: list[DataType] = []
    for name in bf_raw.get("data_types", [t.value for t in DataType]) or []:
        try:
            data_types.append(DataType(name))
        except ValueError:
            errors.append(
                f"backfill.data_types contains unknown type {name!r} "
                f"(expected one of {[t.value for t in DataType]})"
            )
    backfill = BackfillPolicy(
        default_days_back=_int(bf_raw, "default_days_back", 60, "backfill", 0),
        data_types=data_types,
    )

    # ── Providers ──
    providers: dict[str, dict[str, Any]] = {}
    for provider_id, tuning in _section("providers").items():
        if tuning is None:
            tuning = {}
        if not isinstance(tuning, dict):
            errors.append(f"providers.{provider_id} must be a mapping")
            continue
        providers[str(provider_id)] = dict(tuning)

    if errors:
        raise ConfigValidationError(
            f"sdk_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SDKConfig(
        version=version,
        oauth=oauth,
        http=http,
        backfill=backfill,
        providers=providers,
        _raw=raw,
    )


def load_sdk_config(path: Path | None = None) -> SDKConfig:
    """Load and validate the SDK config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sdk_config.yaml by default.

    Returns:
        Validated SDKConfig instance.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded SDK config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SDKConfig | None = None
_config_lock = threading.Lock()


def get_sdk_config() -> SDKConfig:
    """Return the global SDKConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_sdk_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sdk_config()
    return _config


def reload_sdk_config(path: Path | None = None) -> SDKConfig:
    """Reload the SDK config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Args:
        path: Override path to YAML. Defaults to bundled sdk_config.yaml.

    Returns:
        The newly loaded SDKConfig.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sdk_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded SDK config: %s → %s", old_version, new_config.version)
    return new_config
