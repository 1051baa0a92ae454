"""Configuration for the memwatch package."""

import fnmatch
import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "appsettings.json"
CONFIG_FOLDER = Path("/config")
LOG_FOLDER = "logs"
LOG_FILE_NAME = "memwatch.log"
AUTH_HEADER_NAME = "Authorization"
DEFAULT_ENDPOINT = "http://localhost:9001"
HOST_SHUTDOWN_TIMEOUT = 30.0

MIN_SCHEDULE_SECONDS = 1.0
MAX_SCHEDULE_SECONDS = 24 * 60 * 60.0

_MATCH_ALL_FILTERS = {"*", "*.*"}
_TIMESPAN_RE = re.compile(r"^(?:(\d+)\.)?(\d{1,2}):(\d{2}):(\d{2}(?:\.\d+)?)$")


@dataclass
class DirectoryOptions:
    """
    One watched root.

    Attributes:
        path: Absolute path of the directory to watch
        filter: Glob applied to file names
        include_subdirectories: Whether to watch the directory recursively
        index: Target index name in the memory service
        initial_scan: Whether to upload every existing file on startup
    """
    path: str = ""
    filter: str = "*.*"
    include_subdirectories: bool = True
    index: str = "default"
    initial_scan: bool = True

    def __post_init__(self):
        if isinstance(self.path, Path):
            self.path = str(self.path)

    def matches(self, file_name: str) -> bool:
        """
        Check if a file name passes the directory filter.

        ``*`` and ``*.*`` match every file, including names without an
        extension.
        """
        if self.filter in _MATCH_ALL_FILTERS:
            return True
        return fnmatch.fnmatch(file_name, self.filter)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DirectoryOptions":
        return cls(
            path=_get(data, "path", ""),
            filter=_get(data, "filter", "*.*"),
            include_subdirectories=_get_bool(data, "include_subdirectories", True),
            index=_get(data, "index", "default"),
            initial_scan=_get_bool(data, "initial_scan", True),
        )


@dataclass
class FileWatcherOptions:
    """Watched directories and startup behaviour."""
    directories: List[DirectoryOptions] = field(default_factory=list)
    wait_for_initial_scans: bool = False

    def __post_init__(self):
        self.directories = [
            DirectoryOptions.from_dict(d) if isinstance(d, dict) else d
            for d in self.directories
        ]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileWatcherOptions":
        return cls(
            directories=[DirectoryOptions.from_dict(d) for d in (_get(data, "directories", None) or [])],
            wait_for_initial_scans=_get_bool(data, "wait_for_initial_scans", False),
        )

    def validate(self) -> List[str]:
        errors = []
        if not self.directories:
            return ["At least one directory must be specified."]

        for directory in self.directories:
            if not directory.path or not str(directory.path).strip():
                errors.append("Directory path cannot be null or empty.")
            elif not Path(directory.path).is_dir():
                errors.append(f"Directory not found: {directory.path}")

            if not directory.filter or not directory.filter.strip():
                errors.append("Directory filter cannot be null or empty.")

            if not directory.index or not directory.index.strip():
                errors.append("Directory index cannot be null or empty.")

        return errors


@dataclass
class MemoryServiceOptions:
    """
    Connection and delivery settings for the memory service.

    Attributes:
        endpoint: Base URL of the service
        api_key: Value for the Authorization header (empty to omit)
        schedule_seconds: Interval between dispatch ticks
        retries: Retry attempts for transient failures
        first_retry_delay: Median delay of the first backoff step in seconds
        circuit_events_before_break: Consecutive failures that open the circuit
        circuit_break_duration: Seconds the circuit stays open
        parallel_uploads: Maximum concurrent requests per tick
        timeout_seconds: Per-request timeout
    """
    endpoint: str = DEFAULT_ENDPOINT
    api_key: str = ""
    schedule_seconds: float = 60.0
    retries: int = 2
    first_retry_delay: float = 1.0
    circuit_events_before_break: int = 5
    circuit_break_duration: float = 30.0
    parallel_uploads: int = 4
    timeout_seconds: float = 100.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryServiceOptions":
        defaults = cls()
        return cls(
            endpoint=_get(data, "endpoint", defaults.endpoint),
            api_key=_get(data, "api_key", defaults.api_key) or "",
            schedule_seconds=parse_duration(_get(data, "schedule", defaults.schedule_seconds)),
            retries=int(_get(data, "retries", defaults.retries)),
            first_retry_delay=parse_duration(_get(data, "first_retry_delay", defaults.first_retry_delay)),
            circuit_events_before_break=int(
                _get(data, "circuit_events_before_break", defaults.circuit_events_before_break)
            ),
            circuit_break_duration=parse_duration(
                _get(data, "circuit_break_duration", defaults.circuit_break_duration)
            ),
            parallel_uploads=int(_get(data, "parallel_uploads", defaults.parallel_uploads)),
            timeout_seconds=parse_duration(_get(data, "timeout", defaults.timeout_seconds)),
        )

    def validate(self) -> List[str]:
        errors = []
        if not self.endpoint or not self.endpoint.strip():
            errors.append("Memory service endpoint cannot be null or empty.")
        else:
            parsed = urlparse(self.endpoint)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                errors.append(f"Memory service endpoint is not a valid URL: {self.endpoint}")

        if not MIN_SCHEDULE_SECONDS <= self.schedule_seconds <= MAX_SCHEDULE_SECONDS:
            errors.append("Schedule must be between 1 second and 1 day.")
        if not 0 <= self.retries <= 10:
            errors.append("Retries must be between 0 and 10.")
        if not 1 <= self.parallel_uploads <= 100:
            errors.append("ParallelUploads must be between 1 and 100.")
        if self.first_retry_delay < 0:
            errors.append("FirstRetryDelay cannot be negative.")
        if self.circuit_events_before_break < 1:
            errors.append("CircuitEventsBeforeBreak must be greater than zero.")
        if self.circuit_break_duration <= 0:
            errors.append("CircuitBreakDuration must be positive.")
        if self.timeout_seconds <= 0:
            errors.append("Timeout must be positive.")
        return errors


@dataclass
class ServiceConfig:
    """Top-level configuration."""
    file_watcher: FileWatcherOptions = field(default_factory=FileWatcherOptions)
    memory_service: MemoryServiceOptions = field(default_factory=MemoryServiceOptions)
    log_dir: Optional[Path] = None
    shutdown_timeout: float = HOST_SHUTDOWN_TIMEOUT

    def __post_init__(self):
        if isinstance(self.file_watcher, dict):
            self.file_watcher = FileWatcherOptions.from_dict(self.file_watcher)
        if isinstance(self.memory_service, dict):
            self.memory_service = MemoryServiceOptions.from_dict(self.memory_service)
        if isinstance(self.log_dir, str):
            self.log_dir = Path(self.log_dir)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceConfig":
        """
        Build from a parsed settings document.

        Accepts ``FileWatcherOptions`` / ``KernelMemoryOptions`` sections
        (also ``file_watcher`` / ``memory_service``) with camelCase,
        PascalCase or snake_case keys.
        """
        watcher_data = _get(data, "file_watcher_options", None) or _get(data, "file_watcher", None) or {}
        service_data = (
            _get(data, "kernel_memory_options", None)
            or _get(data, "memory_service", None)
            or {}
        )
        log_dir = _get(data, "log_dir", None)
        return cls(
            file_watcher=FileWatcherOptions.from_dict(watcher_data),
            memory_service=MemoryServiceOptions.from_dict(service_data),
            log_dir=Path(log_dir) if log_dir else None,
            shutdown_timeout=parse_duration(_get(data, "shutdown_timeout", HOST_SHUTDOWN_TIMEOUT)),
        )

    def validate(self) -> None:
        """
        Validate every section.

        Raises:
            ConfigurationError: With one entry per problem found
        """
        errors = self.file_watcher.validate() + self.memory_service.validate()
        if errors:
            raise ConfigurationError(
                "Configuration is invalid: " + "; ".join(errors),
                errors=errors,
            )


def default_config_path() -> Path:
    """Return ``/config/appsettings.json`` if present, else ``./appsettings.json``."""
    candidate = CONFIG_FOLDER / CONFIG_FILE_NAME
    if candidate.exists():
        return candidate
    return Path(CONFIG_FILE_NAME)


def default_log_dir() -> Path:
    candidate = CONFIG_FOLDER / LOG_FOLDER
    if candidate.is_dir():
        return candidate
    return Path(LOG_FOLDER)


def load_config(path: Optional[Path] = None, validate: bool = True) -> ServiceConfig:
    """
    Load configuration from a JSON file and the environment.

    Environment overrides:
    - MEMWATCH_ENDPOINT: memory service endpoint
    - MEMWATCH_API_KEY: memory service API key
    - MEMWATCH_SCHEDULE_SECONDS: dispatch interval

    Args:
        path: Settings file (defaults to default_config_path())
        validate: Whether to validate before returning

    Returns:
        The loaded configuration

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    path = Path(path) if path else default_config_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {path}")
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a JSON object")

    try:
        config = ServiceConfig.from_dict(data)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Configuration file {path} has invalid values: {e}")

    _apply_env_overrides(config)

    if validate:
        config.validate()

    logger.debug(f"Loaded configuration from {path}")
    return config


def _apply_env_overrides(config: ServiceConfig) -> None:
    endpoint = os.environ.get("MEMWATCH_ENDPOINT")
    if endpoint:
        config.memory_service.endpoint = endpoint

    api_key = os.environ.get("MEMWATCH_API_KEY")
    if api_key:
        config.memory_service.api_key = api_key

    schedule = os.environ.get("MEMWATCH_SCHEDULE_SECONDS")
    if schedule:
        try:
            config.memory_service.schedule_seconds = float(schedule)
        except ValueError:
            raise ConfigurationError(f"MEMWATCH_SCHEDULE_SECONDS is not a number: {schedule}")


def parse_duration(value: Any) -> float:
    """
    Parse a duration in seconds.

    Accepts numbers and ``[d.]HH:MM:SS[.fff]`` strings.

    Raises:
        ValueError: If the value cannot be parsed
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        match = _TIMESPAN_RE.match(text)
        if match:
            days, hours, minutes, seconds = match.groups()
            return (
                int(days or 0) * 86400
                + int(hours) * 3600
                + int(minutes) * 60
                + float(seconds)
            )
        return float(text)
    raise ValueError(f"Invalid duration: {value!r}")


def _key_variants(name: str) -> List[str]:
    parts = name.split("_")
    camel = parts[0] + "".join(p.title() for p in parts[1:])
    pascal = "".join(p.title() for p in parts)
    return [name, camel, pascal]


def _get(data: Dict[str, Any], name: str, default: Any) -> Any:
    for key in _key_variants(name):
        if key in data:
            return data[key]
    return default


def _get_bool(data: Dict[str, Any], name: str, default: bool) -> bool:
    value = _get(data, name, default)
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)
