"""Runtime configuration registry for mdrun.

Provides centralized configuration for execution and result persistence.
Environment variables take precedence over YAML config.

Resolution order (highest to lowest):
    1. Environment variables (MDRUN_SHELL, MDRUN_TIMEOUT_MS, ...)
    2. User YAML file named by MDRUN_CONFIG
    3. Packaged runtime.yaml next to this module
    4. Built-in defaults (_default_config)

Usage:
    from mdrun.config.runtime_config import load_mdrun_config, get_timeout_ms

    config = load_mdrun_config()
    executor = Executor(config.execution)
    store = ResultsStore(config.results)

    timeout = get_timeout_ms()  # 30000 unless overridden
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from mdrun.runtime.types import CaptureStrategy

# Module logger for clamping and fallback warnings
logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).parent / "runtime.yaml"
_USER_CONFIG_ENV = "MDRUN_CONFIG"
_cached_config: Optional[Dict[str, Any]] = None

# =============================================================================
# Bounds
# =============================================================================

TIMEOUT_MIN_MS = 100
INLINE_LIMIT_MIN = 0
LOCK_TIMEOUT_MIN_MS = 0

# Fixed grace between the graceful and the forceful termination signal
KILL_GRACE_MS = 500


def _clamp_value(value: int, name: str, min_val: int, max_val: Optional[int] = None) -> int:
    """Clamp a numeric setting to sanity bounds with logging.

    Args:
        value: The configured value
        name: Human-readable name for logging (e.g., "timeout_ms")
        min_val: Minimum allowed value
        max_val: Optional maximum allowed value

    Returns:
        Clamped value
    """
    if value < min_val:
        logger.warning(
            "Setting '%s' value %d is below minimum %d. Clamping to %d.",
            name,
            value,
            min_val,
            min_val,
        )
        return min_val
    if max_val is not None and value > max_val:
        logger.warning(
            "Setting '%s' value %d exceeds maximum %d. Clamping to %d.",
            name,
            value,
            max_val,
            max_val,
        )
        return max_val
    return value


# =============================================================================
# Config loading
# =============================================================================


def _default_config() -> Dict[str, Any]:
    """Return default configuration if runtime.yaml doesn't exist."""
    return {
        "version": "1",
        "execution": {
            "shell": "/bin/sh",
            "timeout_ms": 30000,
            "kill_grace_ms": KILL_GRACE_MS,
            "capture_strategy": "hybrid",
            "wait_ceiling_ms": 60000,
        },
        "results": {
            "inline_limit_lines": 100,
            "base_dir": None,
            "pretty": True,
            "lock_timeout_ms": 2000,
            "stale_lock_seconds": 60,
            "retention": {
                "max_days": None,
                "max_entries": None,
            },
        },
    }


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into a copy of base (override wins)."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Read a YAML mapping; malformed or non-mapping files yield {} with a warning."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to load config %s: %s", path, e)
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("Config %s is not a mapping; ignoring", path)
        return {}
    return data


def _load_config() -> Dict[str, Any]:
    """Load runtime.yaml (plus the MDRUN_CONFIG user file), with caching."""
    global _cached_config
    if _cached_config is not None:
        return _cached_config

    config = _default_config()
    if _CONFIG_PATH.exists():
        config = _deep_merge(config, _read_yaml(_CONFIG_PATH))

    user_path = os.environ.get(_USER_CONFIG_ENV)
    if user_path:
        path = Path(user_path).expanduser()
        if path.exists():
            config = _deep_merge(config, _read_yaml(path))
        else:
            logger.warning("%s points to missing file %s", _USER_CONFIG_ENV, path)

    _cached_config = config
    return _cached_config


def reset_config() -> None:
    """Reset cached config (for testing)."""
    global _cached_config
    _cached_config = None


def reload_config() -> Dict[str, Any]:
    """Drop the cache and load configuration again from disk."""
    reset_config()
    return _load_config()


def _section(name: str) -> Dict[str, Any]:
    value = _load_config().get(name)
    return value if isinstance(value, dict) else {}


def _env_int(var: str) -> Optional[int]:
    """Read an integer environment variable; invalid values are ignored with a warning."""
    raw = os.environ.get(var)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", var, raw)
        return None


def _as_optional_int(value: Any, name: str) -> Optional[int]:
    if value is None:
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-integer setting '%s': %r", name, value)
        return None
    return number if number > 0 else None


# =============================================================================
# Execution settings
# =============================================================================


def get_shell_path() -> str:
    """Interpreter used to run block text (MDRUN_SHELL > config > /bin/sh)."""
    env_value = os.environ.get("MDRUN_SHELL")
    if env_value:
        return env_value
    return str(_section("execution").get("shell") or "/bin/sh")


def get_timeout_ms() -> int:
    """Per-command wall-clock budget in milliseconds."""
    value = _env_int("MDRUN_TIMEOUT_MS")
    if value is None:
        value = int(_section("execution").get("timeout_ms", 30000))
    return _clamp_value(value, "timeout_ms", TIMEOUT_MIN_MS)


def get_kill_grace_ms() -> int:
    """Grace window between SIGTERM and SIGKILL."""
    return _clamp_value(
        int(_section("execution").get("kill_grace_ms", KILL_GRACE_MS)), "kill_grace_ms", 0
    )


def get_wait_ceiling_ms() -> int:
    """Bound on the sequential run-all wait primitive."""
    return _clamp_value(
        int(_section("execution").get("wait_ceiling_ms", 60000)), "wait_ceiling_ms", TIMEOUT_MIN_MS
    )


def get_capture_strategy() -> CaptureStrategy:
    """Environment capture strategy, respecting MDRUN_CAPTURE_STRATEGY.

    Logs a warning and returns HYBRID if an invalid value is configured.
    """
    raw = os.environ.get("MDRUN_CAPTURE_STRATEGY") or _section("execution").get(
        "capture_strategy", "hybrid"
    )
    try:
        return CaptureStrategy(str(raw).lower())
    except ValueError:
        logger.warning(
            "Invalid capture strategy '%s' (valid: %s). Falling back to 'hybrid'.",
            raw,
            ", ".join(s.value for s in CaptureStrategy),
        )
        return CaptureStrategy.HYBRID


# =============================================================================
# Results settings
# =============================================================================


def get_inline_limit_lines() -> int:
    """Line-count ceiling for inlining a stream in the results document."""
    value = _env_int("MDRUN_INLINE_LIMIT_LINES")
    if value is None:
        value = int(_section("results").get("inline_limit_lines", 100))
    return _clamp_value(value, "inline_limit_lines", INLINE_LIMIT_MIN)


def get_results_base_dir() -> Optional[str]:
    """Directory sidecars are mirrored into, or None to keep them beside the document."""
    value = os.environ.get("MDRUN_RESULTS_DIR") or _section("results").get("base_dir")
    return str(value) if value else None


def get_lock_timeout_ms() -> int:
    value = _env_int("MDRUN_LOCK_TIMEOUT_MS")
    if value is None:
        value = int(_section("results").get("lock_timeout_ms", 2000))
    return _clamp_value(value, "lock_timeout_ms", LOCK_TIMEOUT_MIN_MS)


def get_stale_lock_seconds() -> int:
    return _clamp_value(
        int(_section("results").get("stale_lock_seconds", 60)), "stale_lock_seconds", 1
    )


def is_pretty_json() -> bool:
    return bool(_section("results").get("pretty", True))


def get_retention_limits() -> Dict[str, Optional[int]]:
    """Retention limits; None means the limit is disabled."""
    retention = _section("results").get("retention") or {}
    max_days = _env_int("MDRUN_RETENTION_MAX_DAYS")
    max_entries = _env_int("MDRUN_RETENTION_MAX_ENTRIES")
    return {
        "max_days": _as_optional_int(
            max_days if max_days is not None else retention.get("max_days"), "max_days"
        ),
        "max_entries": _as_optional_int(
            max_entries if max_entries is not None else retention.get("max_entries"),
            "max_entries",
        ),
    }


# =============================================================================
# Resolved configuration objects
# =============================================================================


@dataclass
class ExecutionConfig:
    """Resolved execution settings consumed by the Executor."""

    shell: str = "/bin/sh"
    timeout_ms: int = 30000
    kill_grace_ms: int = KILL_GRACE_MS
    capture_strategy: CaptureStrategy = CaptureStrategy.HYBRID
    wait_ceiling_ms: int = 60000


@dataclass
class RetentionConfig:
    """Retention limits; both optional and independent."""

    max_days: Optional[int] = None
    max_entries: Optional[int] = None


@dataclass
class ResultsConfig:
    """Resolved persistence settings consumed by the ResultsStore."""

    inline_limit_lines: int = 100
    base_dir: Optional[str] = None
    pretty: bool = True
    lock_timeout_ms: int = 2000
    stale_lock_seconds: int = 60
    retention: RetentionConfig = field(default_factory=RetentionConfig)


@dataclass
class MdrunConfig:
    """Complete resolved configuration."""

    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    results: ResultsConfig = field(default_factory=ResultsConfig)


def load_mdrun_config() -> MdrunConfig:
    """Resolve every setting (env > user YAML > runtime.yaml > defaults)."""
    retention = get_retention_limits()
    return MdrunConfig(
        execution=ExecutionConfig(
            shell=get_shell_path(),
            timeout_ms=get_timeout_ms(),
            kill_grace_ms=get_kill_grace_ms(),
            capture_strategy=get_capture_strategy(),
            wait_ceiling_ms=get_wait_ceiling_ms(),
        ),
        results=ResultsConfig(
            inline_limit_lines=get_inline_limit_lines(),
            base_dir=get_results_base_dir(),
            pretty=is_pretty_json(),
            lock_timeout_ms=get_lock_timeout_ms(),
            stale_lock_seconds=get_stale_lock_seconds(),
            retention=RetentionConfig(
                max_days=retention["max_days"],
                max_entries=retention["max_entries"],
            ),
        ),
    )
