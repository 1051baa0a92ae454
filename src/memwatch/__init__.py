"""
memwatch

Watches directories for file changes and keeps a remote document-memory
service in sync with them.

Features:
- One watchdog observer per watched directory, with optional initial scan
- Rename split into delete of the old path and upsert of the new one
- Coalescing store: last change per document wins
- Timer-driven dispatch with bounded concurrency
- Retry with jittered backoff and circuit breaking on the HTTP transport
"""

from .models import (
    FileEventType,
    FileEvent,
    DispatchMessage,
    DispatchResult,
    RawFSEvent,
)

from .config import (
    DirectoryOptions,
    FileWatcherOptions,
    MemoryServiceOptions,
    ServiceConfig,
    load_config,
)

from .exceptions import (
    WatcherError,
    WatchSetupError,
    InvalidEventError,
    InvalidMessageError,
    SourceMissingError,
    DeliveryError,
    CircuitOpenError,
    ConfigurationError,
    WatcherAlreadyRunningError,
)

from .identity import build_document_id
from .store import MessageStore
from .fs_watcher import (
    FileSystemWatcher,
    WatchdogFileSystemWatcher,
    InMemoryFileSystemWatcher,
    FileWatcherFactory,
)
from .watch_service import FileWatcherService
from .transport import RetryPolicy, CircuitBreaker, CircuitState, ResilientTransport
from .client import MemoryServiceClient, get_content_type
from .dispatcher import DispatchScheduler, SchedulerState
from .config_monitor import ConfigurationMonitor
from .process import WatcherPipeline


__all__ = [
    # Models
    "FileEventType",
    "FileEvent",
    "DispatchMessage",
    "DispatchResult",
    "RawFSEvent",
    # Config
    "DirectoryOptions",
    "FileWatcherOptions",
    "MemoryServiceOptions",
    "ServiceConfig",
    "load_config",
    # Exceptions
    "WatcherError",
    "WatchSetupError",
    "InvalidEventError",
    "InvalidMessageError",
    "SourceMissingError",
    "DeliveryError",
    "CircuitOpenError",
    "ConfigurationError",
    "WatcherAlreadyRunningError",
    # Components
    "build_document_id",
    "MessageStore",
    "FileSystemWatcher",
    "WatchdogFileSystemWatcher",
    "InMemoryFileSystemWatcher",
    "FileWatcherFactory",
    "FileWatcherService",
    "RetryPolicy",
    "CircuitBreaker",
    "CircuitState",
    "ResilientTransport",
    "MemoryServiceClient",
    "get_content_type",
    "DispatchScheduler",
    "SchedulerState",
    "ConfigurationMonitor",
    # Main Process
    "WatcherPipeline",
]

__version__ = "0.1.0"
