# -*- coding: utf-8 -*-
"""
Status reconciliation: bring a stored job in line with its provider batch.

``refresh_status`` is safe to call redundantly from any call site. Reads are
merged monotonically: a provider answer ranked below the stored status is
ignored, terminal jobs are never touched, and the job row is only written if
its status did not change since it was read.
"""

import logging

from ..errors import BatchError, ProviderTimeout, summarize_error
from .models import (
    IN_FLIGHT_UNIT_STATUSES,
    JOB_STATUS_RANK,
    JOBS_TABLE,
    OPEN_RESULT_STATUSES,
    RESULTS_TABLE,
    UNITS_TABLE,
    BatchJob,
    is_terminal,
    now_timestamp,
    parse_timestamp,
    utc_now,
)
from .utils import append_history, get_job, release_claims


PROVIDER_STATUS_MAP = {
    'validating': 'validating',
    'in_progress': 'in_progress',
    'finalizing': 'finalizing',
    # Completed at the provider is still finalizing here until ingestion.
    'completed': 'finalizing',
    'failed': 'failed',
    'expired': 'expired',
    'cancelling': 'cancelling',
    'cancelled': 'cancelled',
}

RELEASE_MESSAGES = {
    'failed': "Batch failed at the provider",
    'expired': "Batch expired before completion",
    'cancelled': "cancelled",
}

# Provider outcomes whose output and error files are ingested.
INGESTIBLE_PROVIDER_STATUSES = ('completed', 'failed', 'expired')


def map_provider_status(provider_status: str) -> str:
    try:
        return PROVIDER_STATUS_MAP[provider_status]
    except KeyError:
        raise ValueError(f"Unknown provider status: {provider_status}") from None


def merge_status(stored: str, observed: str) -> str:
    """Monotonic merge: terminal statuses stick and lower ranks never win."""
    if is_terminal(stored):
        return stored
    if JOB_STATUS_RANK[observed] < JOB_STATUS_RANK[stored]:
        return stored
    return observed


def is_ingestible(batch) -> bool:
    """Completed batches, and failed or expired ones that still returned files."""
    if batch.status == 'completed':
        return True
    return batch.status in INGESTIBLE_PROVIDER_STATUSES and bool(batch.output_file_ref or batch.error_file_ref)


def awaits_ingestion(job: BatchJob) -> bool:
    return job.status == 'finalizing' and job.provider_status in INGESTIBLE_PROVIDER_STATUSES


def is_past_ttl(job: BatchJob, now=None) -> bool:
    expires_at = parse_timestamp(job.expires_at)
    return expires_at is not None and (now or utc_now()) > expires_at


def release_job(store, job: BatchJob, final_status: str, message: str, stage: str = 'provider'):
    """
    Close a job the provider will not complete.

    Open results become ``error`` with ``message``, in-flight units go back
    to ``ready`` (``draft`` for cancellations) and claims are released.
    """
    unit_status = 'draft' if final_status == 'cancelled' else 'ready'
    store.update_where(
        RESULTS_TABLE,
        {'job_id': job.id, 'status': list(OPEN_RESULT_STATUSES)},
        {'status': 'error', 'error_message': message}
    )
    store.update_where(
        UNITS_TABLE,
        {'id': job.unit_ids, 'status': list(IN_FLIGHT_UNIT_STATUSES)},
        {'status': unit_status}
    )
    closed_at = now_timestamp()
    store.update_where(JOBS_TABLE, {'id': job.id}, {
        'status': final_status,
        'completed_at': closed_at,
        'error_detail': append_history(
            job.error_detail,
            {'stage': stage, 'status': final_status, 'message': message, 'at': closed_at}
        ),
    })
    release_claims(store, job.id)
    logging.warning(f"Batch job {job.id} closed as {final_status}: {message}")


def mark_in_progress(store, job: BatchJob):
    """Queued units and waiting results of a running job become processing."""
    store.update_where(UNITS_TABLE, {'id': job.unit_ids, 'status': 'queued'}, {'status': 'processing'})
    store.update_where(RESULTS_TABLE, {'job_id': job.id, 'status': 'waiting'}, {'status': 'processing'})


def _expire(store, provider, job: BatchJob) -> str:
    if job.provider_handle:
        try:
            provider.cancel_batch(job.provider_handle)
        except BatchError as e:
            logging.warning(f"Could not cancel expired batch {job.provider_handle}: {summarize_error(e)}")
    release_job(store, job, 'expired', RELEASE_MESSAGES['expired'])
    return 'expired'


def refresh_status(store, provider, job_id: str, owner_id=None) -> str:
    """
    Reconcile one job with the provider and return its status.

    Args:
        store (RowStore): Persistent store.
        provider (BatchProvider): External batch provider.
        job_id (str): Job to refresh.
        owner_id (str, optional): If given, the job must belong to this owner.

    Returns:
        str: The job status after reconciliation.

    Raises:
        NotFound, Forbidden: If the job cannot be read by the caller.
        ProviderError: If the provider call fails for a reason other than a timeout.
    """
    job = get_job(store, job_id, owner_id)
    if job.is_terminal:
        return job.status

    if not job.provider_handle:
        # Never acknowledged by the provider (or reopened by a retry).
        if is_past_ttl(job):
            return _expire(store, provider, job)
        return job.status

    try:
        batch = provider.get_batch(job.provider_handle)
    except ProviderTimeout as e:
        logging.warning(f"Status check for batch job {job_id} timed out, keeping '{job.status}': {e}")
        return job.status

    observed = map_provider_status(batch.status)
    checked_at = now_timestamp()
    counts = batch.request_counts or {}
    values = {
        'provider_status': batch.status,
        'request_counts': counts,
        'last_checked_at': checked_at,
    }
    if batch.output_file_ref:
        values['output_file_ref'] = batch.output_file_ref
    if batch.error_file_ref:
        values['error_file_ref'] = batch.error_file_ref
    if counts and not job.results_processed:
        values['processed_units'] = int(counts.get('completed') or 0) + int(counts.get('failed') or 0)

    if observed in RELEASE_MESSAGES:
        message = batch.error_summary or RELEASE_MESSAGES[observed]
        if is_ingestible(batch) and job.status != 'cancelling':
            # Partial output goes to ingestion.
            values['status'] = 'finalizing'
            if job.status != 'finalizing':
                values['error_detail'] = append_history(
                    job.error_detail,
                    {'stage': 'provider', 'status': batch.status, 'message': message, 'at': checked_at}
                )
                logging.warning(f"Batch job {job_id}: provider batch {batch.status} with partial output, "
                                "awaiting ingestion")
            written = store.update_where(JOBS_TABLE, {'id': job_id, 'status': job.status}, values)
            return 'finalizing' if written else get_job(store, job_id).status
        if not store.update_where(JOBS_TABLE, {'id': job_id, 'status': job.status}, values):
            return get_job(store, job_id).status
        release_job(store, get_job(store, job_id), observed, message)
        return observed

    if batch.status != 'completed' and is_past_ttl(job):
        if not store.update_where(JOBS_TABLE, {'id': job_id, 'status': job.status}, values):
            return get_job(store, job_id).status
        return _expire(store, provider, get_job(store, job_id))

    status = merge_status(job.status, observed)
    values['status'] = status
    written = store.update_where(JOBS_TABLE, {'id': job_id, 'status': job.status}, values)
    if not written:
        # Changed concurrently (e.g. cancelled); the stored status wins.
        return get_job(store, job_id).status

    if JOB_STATUS_RANK[status] >= JOB_STATUS_RANK['in_progress'] and status != 'cancelling':
        mark_in_progress(store, job)

    if status != job.status:
        logging.info(f"Batch job {job_id}: {job.status} -> {status} (provider: {batch.status})")
    return status
