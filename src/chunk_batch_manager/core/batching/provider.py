# -*- coding: utf-8 -*-
"""
Adapter over an OpenAI-compatible Batch API (OpenAI, Azure OpenAI, Groq).

The engine only talks to a ``BatchProvider``: upload a payload, create a
batch from it, read the batch back, download its files and cancel it.
Transient API errors are retried with exponential backoff; anything that
still fails is raised as ``ProviderError`` (or ``ProviderTimeout``) with a
one-line message, never as the raw client exception.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional

import openai
from tenacity import (retry, retry_if_exception_type, stop_after_attempt,
                      wait_exponential)

from ..errors import ProviderError, ProviderTimeout, summarize_error
from ..utils.clients import create_client


retry_on_transient_openai_errors = retry(
    retry=retry_if_exception_type((
        openai.RateLimitError,
        openai.InternalServerError,
        openai.APIConnectionError,
        openai.APITimeoutError,
        openai.UnprocessableEntityError
    )),
    wait=wait_exponential(min=1, max=30),
    stop=stop_after_attempt(4),
    reraise=True
)


@dataclass
class ProviderBatch:
    """Snapshot of a provider batch."""
    id: str
    status: str
    output_file_ref: Optional[str] = None
    error_file_ref: Optional[str] = None
    request_counts: dict = field(default_factory=dict)
    errors: list = field(default_factory=list)

    @property
    def error_summary(self) -> Optional[str]:
        if not self.errors:
            return None
        return summarize_error("; ".join(self.errors))


class BatchProvider:
    """Contract of the external batch-inference provider."""

    name = "provider"

    def upload_payload(self, payload: bytes, filename: str = "batch_input.jsonl") -> str:
        """Upload a JSONL payload and return its file reference."""
        raise NotImplementedError

    def create_batch(self, file_ref: str, endpoint: str, window_hours: int = 24,
                     metadata: Optional[dict] = None) -> str:
        """Create a batch from an uploaded file and return its handle."""
        raise NotImplementedError

    def get_batch(self, handle: str) -> ProviderBatch:
        raise NotImplementedError

    def download_file(self, file_ref: str) -> str:
        raise NotImplementedError

    def cancel_batch(self, handle: str) -> None:
        raise NotImplementedError


@contextmanager
def provider_errors(action: str):
    """Translate client exceptions raised inside the block into ProviderError."""
    try:
        yield
    except openai.APITimeoutError as e:
        raise ProviderTimeout(f"{action} timed out: {summarize_error(e)}") from e
    except openai.OpenAIError as e:
        raise ProviderError(f"{action} failed: {summarize_error(e)}") from e


def _batch_errors(batch) -> list:
    errors = getattr(batch, 'errors', None)
    data = getattr(errors, 'data', None) or []
    messages = []
    for error in data:
        message = getattr(error, 'message', None) or getattr(error, 'code', None)
        if message:
            line = getattr(error, 'line', None)
            messages.append(f"line {line}: {message}" if line is not None else str(message))
    return messages


def _request_counts(batch) -> dict:
    counts = getattr(batch, 'request_counts', None)
    if counts is None:
        return {}
    return {
        'total': counts.total,
        'completed': counts.completed,
        'failed': counts.failed,
    }


class OpenAIBatchProvider(BatchProvider):
    """
    BatchProvider backed by an ``openai.OpenAI`` or ``openai.AzureOpenAI`` client.

    Args:
        client: OpenAI API client (Groq works through ``base_url``).
        request_timeout (float): Timeout in seconds for uploads, creation,
            downloads and cancellation.
        status_timeout (float): Timeout in seconds for status reads.
    """

    name = "openai"

    def __init__(self, client, request_timeout: float = 120, status_timeout: float = 30):
        self.client = client
        self.request_timeout = request_timeout
        self.status_timeout = status_timeout

    @classmethod
    def from_settings(cls, settings):
        client = create_client(settings.api, timeout=settings.request_timeout)
        return cls(
            client,
            request_timeout=settings.request_timeout,
            status_timeout=settings.status_timeout,
        )

    @retry_on_transient_openai_errors
    def _upload(self, payload, filename):
        return self.client.files.create(
            file=(filename, payload),
            purpose='batch',
            timeout=self.request_timeout,
        )

    def upload_payload(self, payload, filename="batch_input.jsonl"):
        if isinstance(payload, str):
            payload = payload.encode('utf-8')
        if not payload:
            raise ValueError("Cannot upload an empty batch payload.")
        logging.info(f"Uploading batch payload {filename} ({len(payload)} bytes)")
        with provider_errors("Payload upload"):
            batch_file = self._upload(payload, filename)
        logging.info(f"Uploaded batch payload as file {batch_file.id}")
        return batch_file.id

    @retry_on_transient_openai_errors
    def _create(self, file_ref, endpoint, window, metadata):
        return self.client.batches.create(
            input_file_id=file_ref,
            endpoint=endpoint,
            completion_window=window,
            metadata=metadata,
            timeout=self.request_timeout,
        )

    def create_batch(self, file_ref, endpoint, window_hours=24, metadata=None):
        metadata = {str(k): str(v) for k, v in (metadata or {}).items()} or None
        with provider_errors("Batch creation"):
            batch = self._create(file_ref, endpoint, f"{int(window_hours)}h", metadata)
        logging.info(f"Batch job created with ID: {batch.id}")
        return batch.id

    @retry_on_transient_openai_errors
    def _retrieve(self, handle):
        return self.client.batches.retrieve(handle, timeout=self.status_timeout)

    def get_batch(self, handle):
        with provider_errors(f"Status check for batch {handle}"):
            batch = self._retrieve(handle)
        snapshot = ProviderBatch(
            id=batch.id,
            status=batch.status,
            output_file_ref=batch.output_file_id,
            error_file_ref=batch.error_file_id,
            request_counts=_request_counts(batch),
            errors=_batch_errors(batch),
        )
        if snapshot.status == "failed":
            logging.error(f"Batch {handle} failed with error: {snapshot.error_summary}")
        elif snapshot.status == "in_progress" and snapshot.request_counts.get('total'):
            completed = snapshot.request_counts['completed']
            percentage = completed / snapshot.request_counts['total'] * 100
            logging.info(f"Batch {handle} is in progress, {completed} requests completed ({percentage:.2f}%)")
        else:
            logging.info(f"Batch {handle} is in status: {snapshot.status}")
        return snapshot

    @retry_on_transient_openai_errors
    def _content(self, file_ref):
        return self.client.files.content(file_ref, timeout=self.request_timeout)

    def download_file(self, file_ref):
        with provider_errors(f"Download of file {file_ref}"):
            response = self._content(file_ref)
        text = response.text
        logging.info(f"Downloaded file {file_ref} ({len(text)} characters)")
        return text

    @retry_on_transient_openai_errors
    def _cancel(self, handle):
        return self.client.batches.cancel(handle, timeout=self.request_timeout)

    def cancel_batch(self, handle):
        logging.info(f"Cancelling batch job {handle}...")
        with provider_errors(f"Cancellation of batch {handle}"):
            self._cancel(handle)
        logging.info(f"Batch job {handle} cancellation requested.")
