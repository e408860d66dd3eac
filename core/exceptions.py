"""Custom exceptions for the consignment pipeline. No generic Exception usage."""

from __future__ import annotations


class ConsignmentError(Exception):
    """Base exception for pipeline failures."""

    def __init__(self, message: str, trace_id: str | None = None) -> None:
        self.trace_id = trace_id or ""
        super().__init__(message)


class InvalidImage(ConsignmentError):
    """Image bytes are empty, undecodable or rejected by the model backend. Not retried."""

    pass


class TransientModelError(ConsignmentError):
    """Provider call failed for a reason that may go away on retry."""

    pass


class RateLimited(TransientModelError):
    """Provider returned 429 / quota exceeded. retry_after_sec comes from the provider hint, if any."""

    def __init__(
        self,
        message: str,
        trace_id: str | None = None,
        retry_after_sec: float | None = None,
    ) -> None:
        self.retry_after_sec = retry_after_sec
        super().__init__(message, trace_id=trace_id)


class ModelUnavailable(TransientModelError):
    """Provider unreachable, timed out or returned a server error."""

    pass


class ModelProtocolError(ConsignmentError):
    """Provider answered but the payload is not valid JSON for the receipt schema."""

    pass


class ExtractionUnavailable(ConsignmentError):
    """Every call of a consensus round failed; nothing was cached."""

    pass


class CacheCorrupt(ConsignmentError):
    """A cache store document could not be read. Callers treat it as a miss."""

    pass


class ConfigError(ConsignmentError):
    """Invalid or missing configuration."""

    pass


class HistoryStoreError(ConsignmentError):
    """Remote history store request failed or returned an unusable payload."""

    pass
