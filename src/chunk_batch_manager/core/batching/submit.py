# -*- coding: utf-8 -*-
"""
Submission pipeline: validate, estimate, persist and launch a batch job.

There is no transaction spanning the store and the provider. Instead, every
step after the claims are taken is compensated on failure: the job ends
``failed``, its results ``error``, its units go back to the status they had
before submission and its claims are released.
"""

import logging
from datetime import timedelta
from typing import Optional, Sequence

from ..errors import (BatchError, Conflict, Forbidden, InvalidTransition, NotFound,
                      NothingToRetry, QuotaExceeded, ValidationError, summarize_error)
from .files import build_batch_payload
from .models import (
    IN_FLIGHT_UNIT_STATUSES,
    JOBS_TABLE,
    RESULTS_TABLE,
    SUBMITTABLE_UNIT_STATUSES,
    UNITS_TABLE,
    BatchJob,
    BatchResult,
    JobHandle,
    Unit,
    now_timestamp,
    timestamp_after,
    to_timestamp,
    utc_now,
)
from .pricing import CostEstimate, estimate_batch_cost, merge_pricing
from .tasks import TaskDescriptor, get_task
from .utils import (acquire_claims, append_history, claim_keys, get_job,
                    new_job_id, release_claims, save_job)


#=======================================================================
# Validation
#=======================================================================

def load_units(store, unit_ids: Sequence[str], owner_id: str) -> list:
    """
    Load units in the requested order.

    Raises:
        ValidationError: If the list is empty or has duplicates.
        NotFound: If some unit does not exist.
        Forbidden: If some unit belongs to another owner.
    """
    unit_ids = list(unit_ids or [])
    if not unit_ids:
        raise ValidationError("At least one unit is required")
    duplicates = sorted({uid for uid in unit_ids if unit_ids.count(uid) > 1})
    if duplicates:
        raise ValidationError(f"Duplicate unit ids: {', '.join(duplicates)}", unit_ids=duplicates)

    rows = store.select_where(UNITS_TABLE, {'id': unit_ids})
    by_id = {row['id']: Unit.from_row(row) for row in rows}
    missing = [uid for uid in unit_ids if uid not in by_id]
    if missing:
        raise NotFound(f"{len(missing)} units not found", unit_ids=missing)
    foreign = [uid for uid in unit_ids if by_id[uid].owner_id != owner_id]
    if foreign:
        raise Forbidden(f"{len(foreign)} units belong to another owner", unit_ids=foreign)
    return [by_id[uid] for uid in unit_ids]


def check_unit_limits(units: list, settings):
    """Count, status and size checks. Raises without touching the store."""
    if len(units) > settings.max_units:
        raise ValidationError(
            f"Too many units: {len(units)} (maximum {settings.max_units})",
            max_units=settings.max_units
        )

    collections = {unit.collection_id for unit in units}
    if len(collections) > 1:
        raise ValidationError("All units of a batch must belong to the same collection")

    in_flight = [u.id for u in units if u.status in IN_FLIGHT_UNIT_STATUSES]
    if in_flight:
        raise Conflict(f"{len(in_flight)} units are already in an active batch", unit_ids=in_flight)
    not_ready = [u.id for u in units if u.status not in SUBMITTABLE_UNIT_STATUSES]
    if not_ready:
        raise ValidationError(
            f"{len(not_ready)} units are not in a submittable status "
            f"({', '.join(SUBMITTABLE_UNIT_STATUSES)})",
            unit_ids=not_ready
        )

    blank = [u.id for u in units if not (u.content or '').strip()]
    if blank:
        raise ValidationError(f"{len(blank)} units have no content", unit_ids=blank)

    too_long = [u.id for u in units if len(u.content) > settings.max_unit_chars]
    if too_long:
        raise ValidationError(
            f"{len(too_long)} units exceed {settings.max_unit_chars} characters",
            unit_ids=too_long
        )
    total_chars = sum(len(u.content) for u in units)
    if total_chars > settings.max_total_chars:
        raise ValidationError(
            f"Batch has {total_chars} characters (maximum {settings.max_total_chars})"
        )


def check_quota(store, settings, owner_id):
    """Rolling 24 hour job quota per owner."""
    since = to_timestamp(utc_now() - timedelta(hours=24))
    used = store.count_where(JOBS_TABLE, {'owner_id': owner_id, 'created_at__gte': since})
    if used >= settings.daily_quota:
        raise QuotaExceeded(
            f"Daily batch quota reached ({used}/{settings.daily_quota})",
            used=used, quota=settings.daily_quota
        )
    return used


def check_uniqueness(store, task: TaskDescriptor, uniqueness_key):
    if uniqueness_key and task.single_completion:
        done = store.count_where(JOBS_TABLE, {
            'uniqueness_key': uniqueness_key,
            'status': ['completed', 'completed_with_errors'],
        })
        if done:
            raise Conflict(
                f"Task '{task.name}' was already completed for '{uniqueness_key}'",
                key=uniqueness_key
            )


#=======================================================================
# Estimation
#=======================================================================

def task_model(task: TaskDescriptor, settings):
    return task.model or settings.model


def estimate_units(units, task: TaskDescriptor, settings, options=None,
                   shared_context=None) -> CostEstimate:
    """
    Cost estimate for sending ``units`` with ``task``.

    Raises:
        ValidationError: If the model has no pricing.
    """
    try:
        return estimate_batch_cost(
            contents=[unit.content for unit in units],
            shared_context=task.shared_context_strings(options, shared_context),
            model=task_model(task, settings),
            pricing=merge_pricing(settings.pricing),
            batch_discount=settings.batch_discount,
            provider_discount=settings.provider_discount,
            output_ratio=task.output_ratio if task.output_ratio is not None else settings.output_ratio,
            max_output_tokens=task.max_tokens or settings.max_output_tokens,
            estimation=settings.estimation,
            chars_per_token=settings.chars_per_token,
        )
    except ValueError as e:
        raise ValidationError(summarize_error(e)) from e


def estimate_job(store, settings, owner_id, unit_ids, task='summary',
                 options=None, shared_context=None) -> dict:
    """Validate a prospective submission and return its cost estimate. Writes nothing."""
    descriptor = get_task(task)
    options = descriptor.validate_options(options)
    units = load_units(store, unit_ids, owner_id)
    check_unit_limits(units, settings)
    estimate = estimate_units(units, descriptor, settings, options, shared_context)
    data = estimate.to_dict()
    data['total_chars'] = sum(len(u.content) for u in units)
    return data


#=======================================================================
# Compensation
#=======================================================================

def _restore_units(store, original_statuses: dict):
    for status in set(original_statuses.values()):
        unit_ids = [uid for uid, s in original_statuses.items() if s == status]
        store.update_where(UNITS_TABLE, {'id': unit_ids}, {'status': status})


def _mark_job_failed(store, job_id, message, stage):
    failed_at = now_timestamp()
    detail = append_history(
        get_job(store, job_id).error_detail,
        {'stage': stage, 'message': message, 'at': failed_at}
    )
    detail.update(stage=stage, message=message)
    save_job(store, job_id, status='failed', completed_at=failed_at, error_detail=detail)


def _fail_submission(store, job_id, original_statuses, message, stage):
    """Compensate a failed submission. Each step runs even if an earlier one fails."""
    logging.error(f"Submission of batch job {job_id} failed at {stage}: {message}")
    steps = (
        lambda: store.update_where(
            RESULTS_TABLE,
            {'job_id': job_id, 'status': ['waiting', 'processing']},
            {'status': 'error', 'error_message': message}
        ),
        lambda: _restore_units(store, original_statuses),
        lambda: _mark_job_failed(store, job_id, message, stage),
        lambda: release_claims(store, job_id),
    )
    for step in steps:
        try:
            step()
        except BatchError as e:
            logging.error(f"Compensation step for job {job_id} failed: {summarize_error(e)}")


#=======================================================================
# Launch (steps 6-9)
#=======================================================================

def _cancel_orphan(provider, handle):
    try:
        provider.cancel_batch(handle)
    except BatchError as e:
        logging.warning(f"Could not cancel orphan batch {handle}: {summarize_error(e)}")


def _abandon_launch(store, provider, job: BatchJob, handle=None) -> JobHandle:
    """The job left ``pending`` while it was being launched (e.g. cancelled)."""
    current = get_job(store, job.id)
    message = f"Batch job {job.id} became '{current.status}' during submission"
    logging.warning(message + (f", cancelling provider batch {handle}" if handle else ""))
    if handle is not None:
        _cancel_orphan(provider, handle)
    return JobHandle(
        job_id=job.id,
        status=current.status,
        total_units=job.total_units,
        cost_estimate=job.cost_estimate,
        error=message,
    )


def _launch(store, provider, settings, job: BatchJob, units: list, original_statuses: dict) -> JobHandle:
    """
    Build the payload, upload it, create the provider batch and record the handle.

    Every write is conditional on the job still being ``pending``; a job
    cancelled meanwhile keeps its status and a batch created for it is
    cancelled at the provider.
    """
    task = get_task(job.task)
    stage = 'payload'
    handle = None
    pending = {'id': job.id, 'status': 'pending'}
    try:
        payload = build_batch_payload(
            prompts=[
                (unit.id, task.render_prompt(unit.content, job.task_options, job.shared_context))
                for unit in units
            ],
            system_message=task.system_message,
            model=job.model,
            endpoint=settings.endpoint,
            max_tokens=task.max_tokens or settings.max_output_tokens,
            temperature=task.temperature if task.temperature is not None else settings.temperature,
        )

        stage = 'upload'
        file_ref = provider.upload_payload(
            payload.encode('utf-8'), filename=f"batch_{job.id}_{job.attempt}.jsonl"
        )
        if not store.update_where(JOBS_TABLE, pending, {'input_file_ref': file_ref}):
            return _abandon_launch(store, provider, job)

        stage = 'create'
        handle = provider.create_batch(
            file_ref,
            endpoint=settings.endpoint,
            window_hours=settings.completion_window_hours,
            metadata={'job_id': job.id, 'task': job.task, 'attempt': job.attempt},
        )

        stage = 'record'
        started_at = now_timestamp()
        recorded = store.update_where(JOBS_TABLE, pending, {
            'provider_handle': handle,
            'provider_status': 'validating',
            'status': 'validating',
            'started_at': started_at,
            'last_checked_at': started_at,
        })
    except (BatchError, ValueError) as e:
        message = summarize_error(e)
        if handle is not None:
            _cancel_orphan(provider, handle)
        _fail_submission(store, job.id, original_statuses, message, stage)
        return JobHandle(
            job_id=job.id,
            status='failed',
            total_units=job.total_units,
            cost_estimate=job.cost_estimate,
            error=message,
        )

    if not recorded:
        return _abandon_launch(store, provider, job, handle)

    logging.info(f"Batch job {job.id} submitted as provider batch {handle} ({len(units)} units)")
    return JobHandle(
        job_id=job.id,
        status='validating',
        provider_handle=handle,
        total_units=job.total_units,
        cost_estimate=job.cost_estimate,
    )


def _queue_units(store, units):
    """Mark units queued, returning their previous statuses for compensation."""
    original_statuses = {unit.id: unit.status for unit in units}
    store.update_where(
        UNITS_TABLE,
        {'id': list(original_statuses), 'status': list(SUBMITTABLE_UNIT_STATUSES)},
        {'status': 'queued'}
    )
    return original_statuses


#=======================================================================
# Public operations
#=======================================================================

def submit_job(
        store,
        provider,
        settings,
        owner_id: str,
        unit_ids: Sequence[str],
        task: str = 'summary',
        options: Optional[dict] = None,
        shared_context: Optional[dict] = None,
    ) -> JobHandle:
    """
    Validate, estimate, persist and launch a batch job over ``unit_ids``.

    Args:
        store (RowStore): Persistent store.
        provider (BatchProvider): External batch provider.
        settings (BatchSettings): Limits and provider options.
        owner_id (str): Caller identity; must own every unit.
        unit_ids (list[str]): Units to process, in order.
        task (str): Registered task name.
        options (dict): Task options, checked against the task descriptor.
        shared_context (dict): Extra prompt fields shared by every unit.

    Returns:
        JobHandle: Status 'validating' on success, or 'failed' with the
            summarized error when the provider step failed (the failed job
            stays stored for inspection).

    Raises:
        ValidationError, NotFound, Forbidden, QuotaExceeded, Conflict: When
            the submission is rejected. Nothing is persisted in that case.
    """
    descriptor = get_task(task)
    options = descriptor.validate_options(options)
    shared_context = dict(shared_context or {})

    # 1. Validate (read only)
    units = load_units(store, unit_ids, owner_id)
    check_unit_limits(units, settings)
    collection_id = units[0].collection_id
    uniqueness_key = descriptor.uniqueness_key(collection_id, options)
    check_uniqueness(store, descriptor, uniqueness_key)
    check_quota(store, settings, owner_id)

    # 2. Estimate
    estimate = estimate_units(units, descriptor, settings, options, shared_context)

    # 3. Claims, then the job row
    job_id = new_job_id()
    acquire_claims(store, job_id, claim_keys([u.id for u in units], uniqueness_key))

    created_at = utc_now()
    job = BatchJob(
        id=job_id,
        owner_id=owner_id,
        collection_id=collection_id,
        task=descriptor.name,
        unit_ids=[u.id for u in units],
        total_units=len(units),
        status='pending',
        task_options=options,
        shared_context=shared_context,
        model=task_model(descriptor, settings),
        uniqueness_key=uniqueness_key,
        estimated_input_tokens=estimate.input_tokens,
        estimated_output_tokens=estimate.output_tokens,
        estimated_cost=estimate.discounted_cost,
        cost_estimate=estimate.to_dict(),
        created_at=to_timestamp(created_at),
        expires_at=timestamp_after(settings.job_ttl_hours, created_at),
    )
    try:
        store.insert(JOBS_TABLE, job.to_row())
    except BatchError:
        release_claims(store, job_id)
        raise
    logging.info(f"Created batch job {job_id} for owner {owner_id}: {len(units)} units, "
                 f"estimated cost ${estimate.discounted_cost:.4f}")

    # 4-5. Results and units
    original_statuses = {unit.id: unit.status for unit in units}
    try:
        store.insert_many(RESULTS_TABLE, [
            BatchResult(id=BatchResult.make_id(job_id, u.id), job_id=job_id, unit_id=u.id).to_row()
            for u in units
        ])
        _queue_units(store, units)
    except BatchError as e:
        _fail_submission(store, job_id, original_statuses, summarize_error(e), 'persist')
        raise

    # 6-9. Provider
    return _launch(store, provider, settings, job, units, original_statuses)


def relaunch_job(store, provider, settings, job_id: str, owner_id: Optional[str] = None) -> JobHandle:
    """
    Send the ``waiting`` results of a reopened job as a new provider batch.

    The job must be ``pending`` without a provider handle, which is the
    state retry_failed/retry_units leave it in.

    Raises:
        InvalidTransition: If the job is not awaiting a relaunch.
        NothingToRetry: If no result is waiting.
    """
    job = get_job(store, job_id, owner_id)
    if job.status != 'pending' or job.provider_handle:
        raise InvalidTransition(
            f"Batch job {job_id} cannot be resubmitted from status '{job.status}'",
            job_id=job_id, status=job.status
        )

    waiting = {r['unit_id'] for r in store.select_where(RESULTS_TABLE, {'job_id': job_id, 'status': 'waiting'})}
    if not waiting:
        raise NothingToRetry(f"Batch job {job_id} has no waiting results", job_id=job_id)

    rows = store.select_where(UNITS_TABLE, {'id': sorted(waiting)})
    by_id = {row['id']: Unit.from_row(row) for row in rows}
    units = [by_id[uid] for uid in job.unit_ids if uid in by_id]

    job.attempt += 1
    save_job(store, job_id, attempt=job.attempt)

    original_statuses = {unit.id: unit.status for unit in units}
    try:
        _queue_units(store, units)
    except BatchError as e:
        _fail_submission(store, job_id, original_statuses, summarize_error(e), 'persist')
        raise

    logging.info(f"Relaunching batch job {job_id} (attempt {job.attempt}) with {len(units)} units")
    return _launch(store, provider, settings, job, units, original_statuses)
