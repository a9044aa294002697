"""Error taxonomy for the ingestion pipeline.

Only ``BadRequestError`` ever reaches an HTTP caller. Processing and
downstream errors are visible through receipt status, queue inspection,
and logs.
"""

from __future__ import annotations


class DealhookError(Exception):
    """Base class for all dealhook errors."""

    status_code: int = 500
    default_message: str = "Sorry, something went wrong!"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class BadRequestError(DealhookError):
    """Required identity fields are missing from an inbound request."""

    status_code = 400
    default_message = "Bad Request!"


class UnknownProviderError(BadRequestError):
    """The path names a source with no registered provider."""

    default_message = "Invalid provider."


class ProcessingError(DealhookError):
    """A job payload cannot be mapped to downstream actions."""

    default_message = "Job payload could not be processed."


class DownstreamError(DealhookError):
    """A downstream integration call failed."""

    status_code = 502
    default_message = "Downstream call failed."

    def __init__(self, dispatcher_id: str, message: str | None = None) -> None:
        self.dispatcher_id = dispatcher_id
        super().__init__(message)
