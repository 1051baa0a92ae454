"""Thread-safe coalescing buffer of pending dispatch messages."""

import logging
import os
import threading
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .config import DirectoryOptions
from .exceptions import InvalidEventError
from .identity import build_document_id
from .models import DispatchMessage, FileEvent, FileEventType


def _normalize_dir(path: str) -> str:
    return os.path.normcase(os.path.abspath(str(path))).casefold()


class MessageStore:
    """
    Buffer holding at most one pending message per document identity.

    Watcher threads add events concurrently; the dispatch scheduler drains
    the whole buffer on each tick. A later event for a document replaces the
    pending one regardless of change kind, so an upsert followed by a delete
    leaves only the delete.
    """

    def __init__(
        self,
        directories: Sequence[DirectoryOptions],
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the store.

        Args:
            directories: Configured roots, in priority order
            logger: Logger to use (defaults to the module logger)
        """
        self._directories = list(directories)
        self._prefixes = [_normalize_dir(d.path) for d in self._directories]
        self._depths = [len(Path(os.path.abspath(d.path)).parts) for d in self._directories]
        self._logger = logger or logging.getLogger(__name__)
        self._store: Dict[str, DispatchMessage] = {}
        self._lock = threading.Lock()

    def find_directory(self, directory: str) -> Optional[DirectoryOptions]:
        """
        Find the first configured root containing a directory.

        Matching is case-insensitive and respects path boundaries, so
        ``/data2`` does not belong to ``/data``.

        Args:
            directory: Absolute directory of an event

        Returns:
            The owning directory options, or None
        """
        position = self._find_position(directory)
        return None if position is None else self._directories[position]

    def _find_position(self, directory: str) -> Optional[int]:
        target = _normalize_dir(directory)
        for position, prefix in enumerate(self._prefixes):
            if target == prefix:
                return position
            boundary = prefix if prefix.endswith(os.sep) else prefix + os.sep
            if target.startswith(boundary):
                return position
        return None

    def _relative_to_owner(self, event: FileEvent, position: int) -> str:
        # Matching is case-insensitive, so strip the owner by component count
        parts = Path(os.path.abspath(str(event.full_path))).parts
        return "/".join(parts[self._depths[position]:])

    def add(self, event: FileEvent) -> Optional[DispatchMessage]:
        """
        Add an event, replacing any pending message for the same document.

        Args:
            event: The normalized file event

        Returns:
            The stored message, or None if the event was dropped

        Raises:
            InvalidEventError: If event is None or not a FileEvent
        """
        if event is None:
            raise InvalidEventError("event cannot be None")
        if not isinstance(event, FileEvent):
            raise InvalidEventError(f"expected FileEvent, got {type(event).__name__}")

        if event.event_type == FileEventType.IGNORE:
            return None

        with self._lock:
            position = self._find_position(event.directory)
            if position is None:
                self._logger.warning(
                    "No matching directory found for file %s in %s",
                    event.file_name, event.directory,
                )
                return None
            options = self._directories[position]

            # Nested roots report the same file relative to different
            # watchers; identity always uses the owning root.
            relative_path = self._relative_to_owner(event, position)
            if relative_path and relative_path != event.relative_path:
                event = replace(event, relative_path=relative_path)

            try:
                document_id = build_document_id(options.index, event.relative_path)
            except ValueError as e:
                raise InvalidEventError(str(e))

            message = DispatchMessage(event=event, index=options.index, document_id=document_id)
            self._store[document_id] = message

        self._logger.info(
            "Added event %s for file %s of type %s to the store",
            document_id, event.file_name, event.event_type.value,
        )
        return message

    def take_all(self) -> List[DispatchMessage]:
        """
        Remove and return every pending message.

        Adds that race with a drain land either in this drain or the next,
        never in both and never in neither.
        """
        with self._lock:
            drained = self._store
            self._store = {}
        return list(drained.values())

    def take_next(self) -> Optional[DispatchMessage]:
        """Remove and return one pending message, or None if empty."""
        with self._lock:
            if not self._store:
                return None
            key = next(iter(self._store))
            return self._store.pop(key)

    def has_pending(self) -> bool:
        """Check for pending messages."""
        with self._lock:
            return bool(self._store)

    def pending_ids(self) -> List[str]:
        """Snapshot of the identities currently waiting for dispatch."""
        with self._lock:
            return list(self._store.keys())

    def clear(self) -> int:
        """
        Drop every pending message.

        Returns:
            Number of messages dropped
        """
        with self._lock:
            count = len(self._store)
            self._store = {}
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)
