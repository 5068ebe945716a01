"""Domain/service exceptions."""
from __future__ import annotations

from typing import Any


class IngestError(Exception):
    """Base ingestion error.

    ``step`` names the pipeline stage the error originated from; the
    coordinator fills it in when the raising component did not.
    """

    status_code: int = 500
    message: str = "Metrics ingestion failed"

    def __init__(self, message: str | None = None, *, step: str | None = None) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message
        self.step = step

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message}
        if self.step is not None:
            payload["step"] = self.step
        return payload


class InvalidSampleError(IngestError):
    """Request body cannot be turned into metric samples."""

    status_code = 400
    message = "Invalid metric sample"


class BackendError(IngestError):
    """Backend answered with an error."""

    status_code = 502
    message = "Backend request failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        step: str | None = None,
        backend_status: int | None = None,
    ) -> None:
        super().__init__(message, step=step)
        self.backend_status = backend_status


class BackendUnavailableError(BackendError):
    """Backend could not be reached (connection failure or timeout)."""

    status_code = 503
    message = "Backend unavailable"


class PartitionCreateFailedError(BackendError):
    """Creating a partition failed; absorbed by the provisioner."""

    message = "Partition creation failed"


class WriteFailedError(IngestError):
    """Persisting one or more samples failed."""

    status_code = 500
    message = "Writing metrics failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        step: str | None = "write",
        items: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message, step=step)
        self.items = items

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.items is not None:
            payload["items"] = self.items
        return payload
