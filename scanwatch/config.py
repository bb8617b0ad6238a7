"""
Scanwatch Configuration Management.

Handles loading and validating configuration from various sources:
- Default values
- Configuration file (TOML)
- Environment variables

The loaded ``ScanwatchConfig`` is passed explicitly to the components that
need it; there is no process-wide configuration singleton.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

# tomllib is stdlib on Python 3.11+, tomli provides the same API before that
try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore


DEFAULT_CONFIG_DIR = Path.home() / ".config" / "scanwatch"
DEFAULT_CONFIG_FILE = "config.toml"
DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "scanwatch"
DEFAULT_BACKEND = "default"

DEFAULT_SIGNIFICANT_CHECKPOINTS = [
    "batch_started",
    "batch_completed",
    "scan_completed",
    "cleanup_started",
]

_TRUE_VALUES = ("true", "1", "yes", "on")


@dataclass
class ValidationError:
    """Validation error for configuration."""
    field: str
    message: str
    severity: str  # "error" or "warning"

    def __str__(self) -> str:
        return f"[{self.severity.upper()}] {self.field}: {self.message}"


@dataclass
class SchedulerSettings:
    """Configuration for the priority scheduler."""

    # Bounds external dispatch; not enforced by the scheduler itself
    max_concurrent_scans: int = 10
    # Used when a category policy carries no timeout of its own
    scan_timeout_default: int = 300

    # Retry backoff
    retry_delay_minutes: int = 15
    max_retries_per_day: int = 5

    # Interval adjustments
    load_balancing_enabled: bool = True
    adaptive_frequency_enabled: bool = True

    # Claiming
    claim_lease_minutes: int = 60
    running_window_minutes: int = 60
    batch_size: int = 10


@dataclass
class PoolSettings:
    """Bounds for one named backend connection pool."""

    url: str = ""
    min_connections: int = 1
    max_connections: int = 10
    connection_timeout: int = 5  # seconds
    idle_timeout: int = 300  # seconds


@dataclass
class AlertThresholds:
    """Thresholds and severities for execution alerts."""

    failure_rate: float = 50.0  # percent
    avg_execution_time: float = 300.0  # seconds
    memory_usage: float = 90.0  # MB, average peak memory per execution

    failure_rate_severity: str = "critical"
    avg_execution_time_severity: str = "warning"
    memory_usage_severity: str = "warning"


@dataclass
class MonitorSettings:
    """Configuration for the execution tracker."""

    max_execution_time: int = 3600  # seconds
    memory_limit_warning: float = 80.0  # percent of physical memory used by this process
    retention_days: int = 30
    significant_checkpoints: List[str] = field(
        default_factory=lambda: list(DEFAULT_SIGNIFICANT_CHECKPOINTS)
    )
    alert_thresholds: AlertThresholds = field(default_factory=AlertThresholds)


@dataclass
class DaemonSettings:
    """Configuration for the long-running dispatch daemon."""

    backend: str = DEFAULT_BACKEND
    dispatch_interval_seconds: int = 60
    pool_cleanup_interval_seconds: int = 300
    alert_check_interval_seconds: int = 300
    retention_cleanup_interval_seconds: int = 86400


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    # Console level when no --verbose, --debug or --quiet flag is given
    level: str = "WARNING"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: Optional[Path] = None


@dataclass
class ScanwatchConfig:
    """Main configuration container for Scanwatch."""

    # Paths
    config_dir: Path = DEFAULT_CONFIG_DIR
    data_dir: Path = DEFAULT_DATA_DIR

    # Database holding targets, scan results and execution records
    database_url: str = ""

    # Sub-configurations
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    daemon: DaemonSettings = field(default_factory=DaemonSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    pools: Dict[str, PoolSettings] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Initialize derived values."""
        if not self.database_url:
            self.database_url = f"sqlite:///{self.data_dir}/scanwatch.db"
        if DEFAULT_BACKEND not in self.pools:
            self.pools[DEFAULT_BACKEND] = PoolSettings()

    def resolved_pools(self) -> Dict[str, PoolSettings]:
        """Pool settings with URL-less backends pointed at the main database."""
        return {
            name: settings if settings.url else replace(settings, url=self.database_url)
            for name, settings in self.pools.items()
        }


def load_config(
    config_path: Optional[Path] = None,
    env_prefix: str = "SCANWATCH_",
) -> ScanwatchConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file
    3. Default values

    Args:
        config_path: Path to config file (default: ~/.config/scanwatch/config.toml)
        env_prefix: Prefix for environment variables

    Returns:
        Loaded configuration
    """
    config = ScanwatchConfig()
    default_database_url = config.database_url

    if config_path is None:
        env_config_dir = os.environ.get(f"{env_prefix}CONFIG_DIR")
        if env_config_dir:
            config_path = Path(env_config_dir) / DEFAULT_CONFIG_FILE
        else:
            config_path = DEFAULT_CONFIG_DIR / DEFAULT_CONFIG_FILE

    if config_path.exists():
        config = _load_from_file(config_path, config)

    config = _load_from_env(config, env_prefix)

    # The default database lives in data_dir, which may have been moved
    if config.database_url == default_database_url:
        config.database_url = f"sqlite:///{config.data_dir}/scanwatch.db"

    return config


def _apply_section(target: Any, values: Dict[str, Any]) -> None:
    """Copy known keys from a TOML table onto a settings dataclass."""
    for key, value in values.items():
        if hasattr(target, key) and not isinstance(value, dict):
            setattr(target, key, value)


def _load_from_file(path: Path, config: ScanwatchConfig) -> ScanwatchConfig:
    """Load configuration from a TOML file.

    Raises:
        ConfigurationError: If the file cannot be parsed
    """
    from scanwatch.errors import ConfigurationError

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(
            f"Failed to load config from {path}: {e}",
            details={"path": str(path)},
        ) from e

    if "scheduler" in data:
        _apply_section(config.scheduler, data["scheduler"])

    if "monitor" in data:
        _apply_section(config.monitor, data["monitor"])
        thresholds = data["monitor"].get("alert_thresholds")
        if isinstance(thresholds, dict):
            _apply_section(config.monitor.alert_thresholds, thresholds)

    if "daemon" in data:
        _apply_section(config.daemon, data["daemon"])

    if "logging" in data:
        _apply_section(config.logging, data["logging"])
        if config.logging.file is not None:
            config.logging.file = Path(config.logging.file)

    # Pools are nested tables: [pools.<backend>]
    for backend, values in data.get("pools", {}).items():
        if isinstance(values, dict):
            settings = config.pools.get(backend, PoolSettings())
            _apply_section(settings, values)
            config.pools[backend] = settings

    # Top-level settings
    if "config_dir" in data:
        config.config_dir = Path(data["config_dir"])
    if "data_dir" in data:
        config.data_dir = Path(data["data_dir"])
    if "database_url" in data:
        config.database_url = data["database_url"]

    return config


def _load_from_env(config: ScanwatchConfig, prefix: str) -> ScanwatchConfig:
    """Load configuration from environment variables."""

    # Scheduler settings
    if env_val := os.environ.get(f"{prefix}MAX_CONCURRENT_SCANS"):
        config.scheduler.max_concurrent_scans = int(env_val)
    if env_val := os.environ.get(f"{prefix}SCAN_TIMEOUT_DEFAULT"):
        config.scheduler.scan_timeout_default = int(env_val)
    if env_val := os.environ.get(f"{prefix}RETRY_DELAY_MINUTES"):
        config.scheduler.retry_delay_minutes = int(env_val)
    if env_val := os.environ.get(f"{prefix}MAX_RETRIES_PER_DAY"):
        config.scheduler.max_retries_per_day = int(env_val)
    if env_val := os.environ.get(f"{prefix}LOAD_BALANCING_ENABLED"):
        config.scheduler.load_balancing_enabled = env_val.lower() in _TRUE_VALUES
    if env_val := os.environ.get(f"{prefix}ADAPTIVE_FREQUENCY_ENABLED"):
        config.scheduler.adaptive_frequency_enabled = env_val.lower() in _TRUE_VALUES

    # Monitor settings
    if env_val := os.environ.get(f"{prefix}RETENTION_DAYS"):
        config.monitor.retention_days = int(env_val)
    if env_val := os.environ.get(f"{prefix}MAX_EXECUTION_TIME"):
        config.monitor.max_execution_time = int(env_val)
    if env_val := os.environ.get(f"{prefix}ALERT_FAILURE_RATE"):
        config.monitor.alert_thresholds.failure_rate = float(env_val)

    # Logging settings
    if env_val := os.environ.get(f"{prefix}LOG_LEVEL"):
        config.logging.level = env_val.upper()

    # Paths
    if env_val := os.environ.get(f"{prefix}CONFIG_DIR"):
        config.config_dir = Path(env_val)
    if env_val := os.environ.get(f"{prefix}DATA_DIR"):
        config.data_dir = Path(env_val)
    if env_val := os.environ.get(f"{prefix}DATABASE_URL"):
        config.database_url = env_val

    return config


def ensure_directories(config: ScanwatchConfig) -> None:
    """Ensure all required directories exist."""
    config.config_dir.mkdir(parents=True, exist_ok=True)
    config.data_dir.mkdir(parents=True, exist_ok=True)


def validate_config(config: ScanwatchConfig) -> List[ValidationError]:
    """
    Validate configuration and return list of errors.

    Args:
        config: Configuration to validate

    Returns:
        List of validation errors (empty if valid)
    """
    errors: List[ValidationError] = []

    sched = config.scheduler
    if sched.retry_delay_minutes <= 0:
        errors.append(ValidationError(
            field="scheduler.retry_delay_minutes",
            message="Retry delay must be positive.",
            severity="error",
        ))
    if sched.max_retries_per_day < 0:
        errors.append(ValidationError(
            field="scheduler.max_retries_per_day",
            message="Daily retry limit cannot be negative.",
            severity="error",
        ))
    if sched.claim_lease_minutes <= 0:
        errors.append(ValidationError(
            field="scheduler.claim_lease_minutes",
            message="Claim lease must be positive.",
            severity="error",
        ))
    if sched.batch_size > sched.max_concurrent_scans:
        errors.append(ValidationError(
            field="scheduler.batch_size",
            message=(
                f"Batch size {sched.batch_size} exceeds max_concurrent_scans "
                f"{sched.max_concurrent_scans}."
            ),
            severity="warning",
        ))

    for backend, pool in config.pools.items():
        prefix = f"pools.{backend}"
        if pool.max_connections < 1:
            errors.append(ValidationError(
                field=f"{prefix}.max_connections",
                message="Pool must allow at least one connection.",
                severity="error",
            ))
        if pool.min_connections < 0 or pool.min_connections > pool.max_connections:
            errors.append(ValidationError(
                field=f"{prefix}.min_connections",
                message=(
                    f"min_connections {pool.min_connections} must be between 0 "
                    f"and max_connections {pool.max_connections}."
                ),
                severity="error",
            ))
        if pool.idle_timeout <= 0:
            errors.append(ValidationError(
                field=f"{prefix}.idle_timeout",
                message="Idle timeout must be positive.",
                severity="error",
            ))

    if config.daemon.backend not in config.pools:
        errors.append(ValidationError(
            field="daemon.backend",
            message=f"No pool configured for backend '{config.daemon.backend}'.",
            severity="error",
        ))

    thresholds = config.monitor.alert_thresholds
    if not 0 <= thresholds.failure_rate <= 100:
        errors.append(ValidationError(
            field="monitor.alert_thresholds.failure_rate",
            message="Failure rate threshold must be a percentage (0-100).",
            severity="error",
        ))

    if config.monitor.retention_days < 1:
        errors.append(ValidationError(
            field="monitor.retention_days",
            message="Retention window must be at least one day.",
            severity="error",
        ))

    if not config.data_dir.exists():
        errors.append(ValidationError(
            field="data_dir",
            message=f"Data directory does not exist: {config.data_dir}",
            severity="warning",
        ))

    return errors


def config_to_dict(config: ScanwatchConfig, mask_secrets: bool = True) -> Dict[str, Any]:
    """
    Convert configuration to dictionary.

    Args:
        config: Configuration to convert
        mask_secrets: If True, mask passwords embedded in database URLs

    Returns:
        Dictionary representation of config
    """
    def mask_url(url: str) -> str:
        if not mask_secrets or "@" not in url or "://" not in url:
            return url
        scheme, rest = url.split("://", 1)
        credentials, host = rest.rsplit("@", 1)
        user = credentials.split(":", 1)[0]
        return f"{scheme}://{user}:****@{host}"

    thresholds = config.monitor.alert_thresholds

    return {
        "config_dir": str(config.config_dir),
        "data_dir": str(config.data_dir),
        "database_url": mask_url(config.database_url),
        "scheduler": {
            "max_concurrent_scans": config.scheduler.max_concurrent_scans,
            "scan_timeout_default": config.scheduler.scan_timeout_default,
            "retry_delay_minutes": config.scheduler.retry_delay_minutes,
            "max_retries_per_day": config.scheduler.max_retries_per_day,
            "load_balancing_enabled": config.scheduler.load_balancing_enabled,
            "adaptive_frequency_enabled": config.scheduler.adaptive_frequency_enabled,
            "claim_lease_minutes": config.scheduler.claim_lease_minutes,
            "running_window_minutes": config.scheduler.running_window_minutes,
            "batch_size": config.scheduler.batch_size,
        },
        "monitor": {
            "max_execution_time": config.monitor.max_execution_time,
            "memory_limit_warning": config.monitor.memory_limit_warning,
            "retention_days": config.monitor.retention_days,
            "significant_checkpoints": list(config.monitor.significant_checkpoints),
            "alert_thresholds": {
                "failure_rate": thresholds.failure_rate,
                "avg_execution_time": thresholds.avg_execution_time,
                "memory_usage": thresholds.memory_usage,
                "failure_rate_severity": thresholds.failure_rate_severity,
                "avg_execution_time_severity": thresholds.avg_execution_time_severity,
                "memory_usage_severity": thresholds.memory_usage_severity,
            },
        },
        "daemon": {
            "backend": config.daemon.backend,
            "dispatch_interval_seconds": config.daemon.dispatch_interval_seconds,
            "pool_cleanup_interval_seconds": config.daemon.pool_cleanup_interval_seconds,
            "alert_check_interval_seconds": config.daemon.alert_check_interval_seconds,
            "retention_cleanup_interval_seconds": config.daemon.retention_cleanup_interval_seconds,
        },
        "pools": {
            name: {
                "url": mask_url(pool.url),
                "min_connections": pool.min_connections,
                "max_connections": pool.max_connections,
                "connection_timeout": pool.connection_timeout,
                "idle_timeout": pool.idle_timeout,
            }
            for name, pool in config.resolved_pools().items()
        },
        "logging": {
            "level": config.logging.level,
            "format": config.logging.format,
            "file": str(config.logging.file) if config.logging.file else None,
        },
    }


def export_config_yaml(config: ScanwatchConfig, mask_secrets: bool = True) -> str:
    """Export configuration as YAML string."""
    config_dict = config_to_dict(config, mask_secrets)
    return yaml.dump(config_dict, default_flow_style=False, sort_keys=False, allow_unicode=True)


def export_config_json(config: ScanwatchConfig, mask_secrets: bool = True) -> str:
    """Export configuration as JSON string."""
    config_dict = config_to_dict(config, mask_secrets)
    return json.dumps(config_dict, indent=2)
