"""HTTP client for the document-memory service."""

import logging
from pathlib import Path
from typing import Optional

import httpx

from .config import AUTH_HEADER_NAME, MemoryServiceOptions
from .exceptions import InvalidMessageError, SourceMissingError
from .models import DispatchMessage, FileEventType
from .transport import CircuitBreaker, ResilientTransport, RetryPolicy

logger = logging.getLogger(__name__)

UPLOAD_PATH = "/upload"
DELETE_PATH = "/documents"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

CONTENT_TYPES = {
    ".txt": "text/plain",
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
}


def get_content_type(file_name: str) -> str:
    """Return the upload content type for a file name, by extension."""
    return CONTENT_TYPES.get(Path(file_name).suffix.lower(), DEFAULT_CONTENT_TYPE)


def build_transport(
    options: MemoryServiceOptions,
    inner: Optional[httpx.BaseTransport] = None,
) -> ResilientTransport:
    """Build the retrying, circuit-breaking transport described by options."""
    return ResilientTransport(
        inner=inner,
        retry_policy=RetryPolicy(
            retries=options.retries,
            first_retry_delay=options.first_retry_delay,
        ),
        circuit_breaker=CircuitBreaker(
            failure_threshold=options.circuit_events_before_break,
            break_duration=options.circuit_break_duration,
        ),
    )


class MemoryServiceClient:
    """
    Uploads and deletes documents in the memory service.

    Environment variables are not read here; pass the resolved
    MemoryServiceOptions in.
    """

    def __init__(
        self,
        options: MemoryServiceOptions,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            options: Endpoint, credentials and delivery policy
            transport: Transport to send requests with (defaults to a
                ResilientTransport over a real HTTP transport)
        """
        self.options = options
        headers = {}
        if options.api_key:
            headers[AUTH_HEADER_NAME] = options.api_key

        self._client = httpx.Client(
            base_url=options.endpoint,
            headers=headers,
            timeout=options.timeout_seconds,
            transport=transport if transport is not None else build_transport(options),
        )

    def upload(self, message: DispatchMessage) -> httpx.Response:
        """
        Upload the file behind an upsert message.

        Args:
            message: An UPSERT message

        Returns:
            The service response (any status)

        Raises:
            InvalidMessageError: If the message is not an upsert
            SourceMissingError: If the file no longer exists
            CircuitOpenError: If the circuit breaker is open
            httpx.HTTPError: On transport failure after retries
        """
        if message.event_type != FileEventType.UPSERT:
            raise InvalidMessageError(
                f"Cannot upload message {message.document_id} of type {message.event_type.value}"
            )

        full_path = message.full_path
        if not full_path.is_file():
            raise SourceMissingError(f"File not found: {full_path}", path=str(full_path))

        try:
            with open(full_path, "rb") as f:
                files = {
                    "file": (message.event.file_name, f, get_content_type(message.event.file_name)),
                }
                data = {"index": message.index, "documentId": message.document_id}
                return self._client.post(UPLOAD_PATH, files=files, data=data)
        except FileNotFoundError:
            raise SourceMissingError(f"File not found: {full_path}", path=str(full_path))

    def delete(self, message: DispatchMessage) -> httpx.Response:
        """
        Delete the document behind a message.

        Returns:
            The service response (any status)

        Raises:
            CircuitOpenError: If the circuit breaker is open
            httpx.HTTPError: On transport failure after retries
        """
        params = {"index": message.index, "documentId": message.document_id}
        return self._client.delete(DELETE_PATH, params=params)

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
