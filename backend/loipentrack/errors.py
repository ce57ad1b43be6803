from __future__ import annotations

from fastapi import status


class LoipenError(Exception):
    """Base class for failures surfaced to the initiating action."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ValidationError(LoipenError):
    """User input fails a precondition; nothing was written."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(LoipenError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(LoipenError):
    """Operation not allowed in the current timer or record state."""

    status_code = status.HTTP_409_CONFLICT


class StoreError(LoipenError):
    """The persistence call failed. Callers may retry the same action."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
