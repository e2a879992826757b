# -*- coding: utf-8 -*-
"""
Retry and cancel controller.

Every action checks the job status first and raises InvalidTransition (or
NothingToRetry) before writing anything.
"""

import logging
from typing import Optional, Sequence

from ..errors import BatchError, InvalidTransition, NothingToRetry, ValidationError, summarize_error
from .models import (
    CANCELLABLE_JOB_STATUSES,
    JOBS_TABLE,
    RESULTS_TABLE,
    RETRYABLE_JOB_STATUSES,
    UNITS_TABLE,
    BatchJob,
    now_timestamp,
    timestamp_after,
)
from .status import release_job
from .utils import (acquire_claims, append_history, claim_keys, count_results,
                    get_job, get_results)


def cancel_job(store, provider, job_id: str, owner_id: Optional[str] = None) -> BatchJob:
    """
    Cancel a pending or in-progress job.

    The job goes through ``cancelling`` to ``cancelled``. The provider batch
    is cancelled on a best-effort basis; a provider failure is logged and
    does not stop the local cancellation.

    Raises:
        InvalidTransition: If the job is in any other status.
    """
    job = get_job(store, job_id, owner_id)
    if job.status not in CANCELLABLE_JOB_STATUSES:
        raise InvalidTransition(
            f"Batch job {job_id} cannot be cancelled from status '{job.status}'",
            job_id=job_id, status=job.status
        )
    written = store.update_where(JOBS_TABLE, {'id': job_id, 'status': job.status}, {'status': 'cancelling'})
    if not written:
        current = get_job(store, job_id)
        raise InvalidTransition(
            f"Batch job {job_id} changed to '{current.status}' while cancelling",
            job_id=job_id, status=current.status
        )
    logging.info(f"Cancelling batch job {job_id}...")

    if job.provider_handle:
        try:
            provider.cancel_batch(job.provider_handle)
        except BatchError as e:
            logging.warning(f"Provider cancellation of batch {job.provider_handle} failed: {summarize_error(e)}")

    release_job(store, get_job(store, job_id), 'cancelled', 'cancelled', stage='cancel')
    logging.info(f"Batch job {job_id} cancelled.")
    return get_job(store, job_id)


def _check_retryable(job: BatchJob):
    if job.status not in RETRYABLE_JOB_STATUSES:
        raise InvalidTransition(
            f"Batch job {job.id} cannot be retried from status '{job.status}'",
            job_id=job.id, status=job.status
        )


def reopen_job(store, settings, job: BatchJob, results: list, reason: str) -> BatchJob:
    """
    Put ``results`` back in the queue and reopen the job as ``pending``.

    Claims for the retried units (and the task's uniqueness key) are taken
    first, so a Conflict leaves everything untouched.
    """
    unit_ids = [r.unit_id for r in results]
    acquire_claims(store, job.id, claim_keys(unit_ids, job.uniqueness_key))

    for result in results:
        store.update_where(RESULTS_TABLE, {'id': result.id}, {
            'status': 'waiting',
            'retry_count': result.retry_count + 1,
            'error_message': None,
            'completed_at': None,
        })
    store.update_where(UNITS_TABLE, {'id': unit_ids}, {'status': 'ready'})

    counts = count_results(store, job.id)
    reopened_at = now_timestamp()
    store.update_where(JOBS_TABLE, {'id': job.id}, {
        'status': 'pending',
        'results_processed': False,
        'provider_handle': None,
        'provider_status': None,
        'input_file_ref': None,
        'output_file_ref': None,
        'error_file_ref': None,
        'request_counts': {},
        'started_at': None,
        'completed_at': None,
        'success_count': counts.get('done', 0),
        'error_count': counts.get('error', 0),
        'processed_units': counts.get('done', 0) + counts.get('error', 0),
        'expires_at': timestamp_after(settings.job_ttl_hours),
        'error_detail': append_history(job.error_detail, {
            'stage': reason,
            'previous_status': job.status,
            'previous_handle': job.provider_handle,
            'unit_ids': unit_ids,
            'at': reopened_at,
        }),
    })
    logging.info(f"Batch job {job.id} reopened for {len(unit_ids)} units ({reason})")
    return get_job(store, job.id)


def retry_failed(store, settings, job_id: str, owner_id: Optional[str] = None) -> BatchJob:
    """
    Requeue every ``error`` result of a finished job.

    Raises:
        InvalidTransition: If the job is not completed, completed_with_errors or failed.
        NothingToRetry: If the job has no error results.
        Conflict: If a retried unit is now held by another active job.
    """
    job = get_job(store, job_id, owner_id)
    _check_retryable(job)
    failed = get_results(store, job_id, status='error')
    if not failed:
        raise NothingToRetry(f"Batch job {job_id} has no failed results to retry", job_id=job_id)
    return reopen_job(store, settings, job, failed, 'retry_failed')


def retry_units(store, settings, job_id: str, unit_ids: Sequence[str],
                owner_id: Optional[str] = None) -> BatchJob:
    """
    Requeue the results of specific units, whatever their status.

    Raises:
        InvalidTransition: If the job is not completed, completed_with_errors or failed.
        ValidationError: If ``unit_ids`` is empty or names units outside the job.
        Conflict: If a retried unit is now held by another active job.
    """
    job = get_job(store, job_id, owner_id)
    _check_retryable(job)
    unit_ids = list(dict.fromkeys(unit_ids or []))
    if not unit_ids:
        raise ValidationError("At least one unit id is required")
    outside = [uid for uid in unit_ids if uid not in job.unit_ids]
    if outside:
        raise ValidationError(
            f"{len(outside)} units do not belong to batch job {job_id}",
            unit_ids=outside
        )
    wanted = set(unit_ids)
    results = [r for r in get_results(store, job_id) if r.unit_id in wanted]
    return reopen_job(store, settings, job, results, 'retry_units')
