# -*- coding: utf-8 -*-
"""
Error taxonomy shared by the batching engine, the storage layer and the
HTTP API.

Every domain error carries an ``http_status`` so the API layer can render
it as ``{"error": <message>}`` without inspecting the exception type.
"""

MAX_ERROR_MESSAGE_CHARS = 500


def summarize_error(error, limit=MAX_ERROR_MESSAGE_CHARS):
    """
    Reduce an exception (or any object) to a single user-renderable line.

    Args:
        error: Exception or value to summarize.
        limit (int): Maximum number of characters kept.

    Returns:
        str: One-line message, truncated with '...' if longer than limit.
    """
    if isinstance(error, BaseException):
        text = str(error) or error.__class__.__name__
    else:
        text = str(error)
    text = " ".join(text.split())
    if len(text) > limit:
        text = text[:limit - 3] + "..."
    return text


class BatchError(Exception):
    """Base class for every error raised by the batching engine."""
    http_status = 500

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {"error": self.message}
        payload.update(self.details)
        return payload


class ValidationError(BatchError):
    """Bad input. Raised before anything is persisted."""
    http_status = 400


class QuotaExceeded(BatchError):
    http_status = 429


class NotFound(BatchError):
    http_status = 404


class Forbidden(BatchError):
    http_status = 403


class Conflict(BatchError):
    """An active job already claims one of the requested keys."""
    http_status = 409


class InvalidTransition(BatchError):
    """The requested action is illegal for the job's current status."""
    http_status = 409


class NothingToRetry(BatchError):
    http_status = 400


class ProviderError(BatchError):
    """Wraps a failure of the external batch provider."""
    http_status = 502


class ProviderTimeout(ProviderError):
    http_status = 504


class PartialIngestError(BatchError):
    """
    A per-unit failure during ingestion.

    Instances are collected on the ingestion summary and logged; they are
    never raised out of ``ingest_results``.
    """

    def __init__(self, unit_id, message):
        super().__init__(message, unit_id=unit_id)
        self.unit_id = unit_id


class StoreError(BatchError):
    """Failure of the persistent store."""


class DuplicateRowError(StoreError):
    """An insert collided with an existing primary key."""
    http_status = 409
