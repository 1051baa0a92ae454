"""Data models for the memwatch package."""

import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from .exceptions import InvalidEventError, InvalidMessageError


class FileEventType(Enum):
    """Kinds of change forwarded to the memory service."""
    UPSERT = "upsert"
    DELETE = "delete"
    IGNORE = "ignore"


def _is_blank(value) -> bool:
    return not isinstance(value, str) or not value.strip()


@dataclass(frozen=True)
class FileEvent:
    """
    A single normalized file system change.

    Attributes:
        event_type: UPSERT, DELETE or IGNORE
        file_name: Name of the affected file
        directory: Absolute directory containing the file
        relative_path: Path of the file relative to its watched root
        timestamp: Unix timestamp when the change was observed
    """
    event_type: FileEventType
    file_name: str
    directory: str
    relative_path: str
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        if not isinstance(self.event_type, FileEventType):
            raise InvalidEventError(f"event_type must be a FileEventType: {self.event_type!r}")
        if _is_blank(self.file_name):
            raise InvalidEventError("file_name cannot be empty or whitespace")
        if _is_blank(self.directory):
            raise InvalidEventError("directory cannot be empty or whitespace")
        if _is_blank(self.relative_path):
            raise InvalidEventError("relative_path cannot be empty or whitespace")

    @property
    def full_path(self) -> Path:
        return Path(self.directory) / self.file_name

    @classmethod
    def from_path(
        cls,
        event_type: FileEventType,
        full_path: Path,
        root: Path,
        timestamp: Optional[float] = None,
    ) -> "FileEvent":
        """
        Build an event for a file under a watched root.

        Args:
            event_type: Kind of change
            full_path: Absolute path of the affected file
            root: Watched root the file belongs to

        Raises:
            InvalidEventError: If the path has no name or lies outside the root
        """
        full_path = Path(full_path)
        try:
            relative = os.path.relpath(str(full_path), str(root))
        except ValueError as e:
            raise InvalidEventError(f"{full_path} is not under {root}: {e}")
        return cls(
            event_type=event_type,
            file_name=full_path.name,
            directory=str(full_path.parent),
            relative_path=relative,
            timestamp=timestamp if timestamp is not None else time.time(),
        )


@dataclass(frozen=True)
class DispatchMessage:
    """
    A pending unit of work for the memory service.

    Attributes:
        event: The file event this message was built from
        index: Target index name
        document_id: Stable identity of the document in the index
    """
    event: FileEvent
    index: str
    document_id: str

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise InvalidMessageError unless every required field is present."""
        if not isinstance(self.event, FileEvent):
            raise InvalidMessageError("event cannot be empty")
        if _is_blank(self.index):
            raise InvalidMessageError("index cannot be empty or whitespace")
        if _is_blank(self.document_id):
            raise InvalidMessageError("document_id cannot be empty or whitespace")

    @property
    def event_type(self) -> FileEventType:
        return self.event.event_type

    @property
    def full_path(self) -> Path:
        return self.event.full_path


@dataclass
class RawFSEvent:
    """
    Raw notification from a file system watcher before normalization.

    Attributes:
        event_type: Raw event type string (created, deleted, modified, moved, ...)
        src_path: Source path of the event
        dest_path: Destination path (for move events)
        is_directory: Whether this is a directory event
        timestamp: Unix timestamp when the event occurred
    """
    event_type: str
    src_path: Path
    dest_path: Optional[Path] = None
    is_directory: bool = False
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one dispatch attempt."""
    document_id: str
    event_type: FileEventType
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    skipped: bool = False
