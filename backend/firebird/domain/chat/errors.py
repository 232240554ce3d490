"""Exceptions raised by the team chat domain."""

from __future__ import annotations

from fastapi import status

if hasattr(status, "HTTP_422_UNPROCESSABLE_CONTENT"):
	_HTTP_422 = status.HTTP_422_UNPROCESSABLE_CONTENT
else:  # pragma: no cover - older Starlette builds
	_HTTP_422 = status.HTTP_422_UNPROCESSABLE_ENTITY


class ChatError(Exception):
	"""Base class for chat errors.

	``retryable`` tells the client whether offering a retry makes sense.
	"""

	status_code: int = status.HTTP_400_BAD_REQUEST
	detail: str = "chat_error"
	retryable: bool = False

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail or self.detail)
		if detail:
			self.detail = detail


class ValidationError(ChatError):
	"""Raised for input rejected before any I/O (e.g. an empty message body)."""

	status_code = _HTTP_422
	detail = "validation_error"


class ForbiddenError(ChatError):
	"""Raised when the caller lacks permission (announcement lock, non-admin)."""

	status_code = status.HTTP_403_FORBIDDEN
	detail = "forbidden"


class NotFoundError(ChatError):
	status_code = status.HTTP_404_NOT_FOUND
	detail = "not_found"


class RepositoryError(ChatError):
	"""Raised when the backing store cannot be reached or rejects a write."""

	status_code = status.HTTP_503_SERVICE_UNAVAILABLE
	detail = "repository_unavailable"
	retryable = True


class RealtimeError(ChatError):
	"""Raised when a realtime subscription cannot be established.

	Sessions swallow this after logging; it is never shown to users.
	"""

	status_code = status.HTTP_503_SERVICE_UNAVAILABLE
	detail = "realtime_unavailable"
