"""
Configuration management for FleetSync.

This module loads the run configuration from YAML and checks its
structural shape: required keys, value types and the job list. Whether a
destination is well-formed or reachable is decided later by the
destination prober, not here.
"""

import os
import sys
import yaml
import logging
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field

from .errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "FLEETSYNC_CONFIG"

REQUIRED_KEYS = [
    "source_volume_path",
    "engine_path",
    "engine_config_path",
    "log_directory",
    "max_volume_wait_attempts",
    "jobs",
]


@dataclass
class JobSpec:
    """One configured transfer job."""
    source: str
    destination: str
    exclude: Optional[str] = None


@dataclass
class BandwidthSettings:
    """Time-of-day bandwidth policy settings."""
    day_fraction: float = 0.5
    night_fraction: float = 0.75
    day_start_hour: int = 6
    day_end_hour: int = 18
    fallback_mbps: float = 2.4

    def __post_init__(self):
        for name in ("day_fraction", "night_fraction"):
            value = getattr(self, name)
            if not 0 < value <= 1:
                raise ConfigError(f"bandwidth.{name} must be in (0, 1], got {value}")
        if not (0 <= self.day_start_hour < self.day_end_hour <= 24):
            raise ConfigError(
                f"bandwidth day window [{self.day_start_hour}, {self.day_end_hour}) is not a valid hour range"
            )
        if self.fallback_mbps <= 0:
            raise ConfigError(f"bandwidth.fallback_mbps must be positive, got {self.fallback_mbps}")


@dataclass
class FleetConfig:
    """Complete run configuration."""
    source_volume_path: str
    engine_path: str
    engine_config_path: str
    log_directory: str
    max_volume_wait_attempts: int = 10
    jobs: List[JobSpec] = field(default_factory=list)
    bandwidth: BandwidthSettings = field(default_factory=BandwidthSettings)

    def __post_init__(self):
        self.source_volume_path = os.path.expanduser(self.source_volume_path)
        self.engine_path = os.path.expanduser(self.engine_path)
        self.engine_config_path = os.path.expanduser(self.engine_config_path)
        self.log_directory = os.path.expanduser(self.log_directory)

    def validate(self) -> List[str]:
        """Validate the configuration and return any errors."""
        errors = []

        for key in ("source_volume_path", "engine_path", "engine_config_path", "log_directory"):
            if not getattr(self, key):
                errors.append(f"'{key}' cannot be empty")

        if not isinstance(self.max_volume_wait_attempts, int) or self.max_volume_wait_attempts < 1:
            errors.append(
                f"'max_volume_wait_attempts' must be a positive integer, got {self.max_volume_wait_attempts!r}"
            )

        if not self.jobs:
            errors.append("At least one job must be configured")

        for number, job in enumerate(self.jobs, start=1):
            if not job.source:
                errors.append(f"Job {number}: 'source' cannot be empty")
            if not job.destination:
                errors.append(f"Job {number}: 'destination' cannot be empty")

        return errors


def get_default_config_path() -> str:
    """Get default configuration file location."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return os.path.expanduser(override)

    if sys.platform == "win32":
        config_dir = os.path.expandvars(r"%APPDATA%\fleetsync")
    else:
        config_dir = os.path.expanduser("~/.config/fleetsync")

    return os.path.join(config_dir, "config.yaml")


def _deserialize_job(number: int, job_data: Any) -> JobSpec:
    if not isinstance(job_data, dict):
        raise ConfigError(f"Job {number} must be a mapping, got {type(job_data).__name__}")

    missing = [key for key in ("source", "destination") if key not in job_data]
    if missing:
        raise ConfigError(f"Job {number} is missing required keys: {', '.join(missing)}")

    exclude = job_data.get("exclude")
    return JobSpec(
        source=str(job_data["source"]),
        destination=str(job_data["destination"]),
        exclude=str(exclude) if exclude else None,
    )


def parse_config(config_data: Any) -> FleetConfig:
    """Build a FleetConfig from already-parsed YAML data."""
    if not isinstance(config_data, dict):
        raise ConfigError("Configuration must be a mapping at the top level")

    missing = [key for key in REQUIRED_KEYS if key not in config_data]
    if missing:
        raise ConfigError(f"Configuration is missing required keys: {', '.join(missing)}")

    jobs_data = config_data["jobs"]
    if not isinstance(jobs_data, list):
        raise ConfigError("'jobs' must be a list")

    jobs = [_deserialize_job(number, job_data) for number, job_data in enumerate(jobs_data, start=1)]

    bandwidth_data: Dict[str, Any] = config_data.get("bandwidth") or {}
    if not isinstance(bandwidth_data, dict):
        raise ConfigError("'bandwidth' must be a mapping")
    try:
        bandwidth = BandwidthSettings(**bandwidth_data)
    except TypeError as e:
        raise ConfigError(f"Invalid bandwidth settings: {e}", original_error=e)

    try:
        attempts = int(config_data["max_volume_wait_attempts"])
    except (TypeError, ValueError) as e:
        raise ConfigError(
            f"'max_volume_wait_attempts' must be an integer, got {config_data['max_volume_wait_attempts']!r}",
            original_error=e
        )

    config = FleetConfig(
        source_volume_path=str(config_data["source_volume_path"] or ""),
        engine_path=str(config_data["engine_path"] or ""),
        engine_config_path=str(config_data["engine_config_path"] or ""),
        log_directory=str(config_data["log_directory"] or ""),
        max_volume_wait_attempts=attempts,
        jobs=jobs,
        bandwidth=bandwidth,
    )

    errors = config.validate()
    if errors:
        raise ConfigError("Invalid configuration: " + "; ".join(errors))

    return config


def load_config(config_path: Optional[str] = None) -> FleetConfig:
    """Load and validate configuration from a YAML file."""
    config_path = config_path or get_default_config_path()

    if not os.path.exists(config_path):
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not parse configuration file {config_path}: {e}", original_error=e)

    config = parse_config(config_data)
    logger.info(f"Loaded configuration from {config_path} with {len(config.jobs)} jobs")
    return config
