# -*- coding: utf-8 -*-
"""
Completion ingestion: turn a finished provider batch into stored results.

Completed batches are ingested, and so are failed or expired ones that still
returned output or error files; units without an outcome line end ``error``.

Ingestion is an idempotent replay. Per-unit writes are deterministic
(artifact ids derive from job, unit and retry count) and only open (waiting
or processing) results are written, so settled ones keep their outcome. The
job aggregates are counted from the store and written once at the end. A
run interrupted halfway is finished by calling ``ingest_results`` again.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from typing import Optional

from tqdm.auto import tqdm

from ..errors import (BatchError, DuplicateRowError, InvalidTransition,
                      PartialIngestError, summarize_error)
from .models import (
    ARTIFACTS_TABLE,
    JOBS_TABLE,
    OPEN_RESULT_STATUSES,
    RESULTS_TABLE,
    UNITS_TABLE,
    Artifact,
    BatchJob,
    BatchResult,
    Unit,
    now_timestamp,
    parse_timestamp,
    utc_now,
)
from .parse import OutcomeRecord, ParsedOutput, parse_batch_output, summarize_outcomes
from .pricing import compute_actual_cost, merge_pricing
from .status import is_ingestible
from .utils import count_results, get_job, get_results, release_claims


NO_RESULT_MESSAGE = "no result returned by provider"
REFUSED_STATUSES = ('cancelling', 'cancelled', 'failed', 'expired')
INGESTIBLE_JOB_STATUSES = ('pending', 'validating', 'in_progress', 'finalizing')


@dataclass
class IngestSummary:
    """Outcome of one ingestion run (or the stored outcome of an earlier one)."""
    job_id: str
    status: str
    success_count: int = 0
    error_count: int = 0
    unresolved_count: int = 0
    processed_units: int = 0
    actual_cost: float = 0.0
    already_processed: bool = False
    results_processed: bool = False
    failures: list = field(default_factory=list)

    @classmethod
    def from_job(cls, job: BatchJob, already_processed=True):
        return cls(
            job_id=job.id,
            status=job.status,
            success_count=job.success_count,
            error_count=job.error_count,
            unresolved_count=job.unresolved_count,
            processed_units=job.processed_units,
            actual_cost=job.actual_cost,
            already_processed=already_processed,
            results_processed=job.results_processed,
        )

    def to_dict(self):
        return asdict(self)


#=======================================================================
# Outcome resolution
#=======================================================================

def resolve_outcomes(parsed: ParsedOutput, unit_ids) -> tuple:
    """
    Map outcome records to the job's units by custom_id.

    When a custom_id appears more than once, a success wins over a failure.

    Returns:
        tuple[dict, list]: unit_id -> OutcomeRecord, and the unresolved custom_ids.
    """
    known = set(unit_ids)
    outcomes = {}
    unresolved = []
    for record in parsed.records:
        if record.custom_id not in known:
            unresolved.append(record.custom_id)
            continue
        current = outcomes.get(record.custom_id)
        if current is None or (record.succeeded and not current.succeeded):
            outcomes[record.custom_id] = record
    for custom_id in unresolved:
        logging.warning(f"Outcome for unknown custom_id '{custom_id}' skipped")
    return outcomes, unresolved


def _elapsed_ms(job: BatchJob) -> Optional[int]:
    started = parse_timestamp(job.started_at)
    if started is None:
        return None
    return int((utc_now() - started).total_seconds() * 1000)


#=======================================================================
# Per-unit writes
#=======================================================================

def write_outcome(store, job: BatchJob, result: BatchResult, unit: Optional[Unit],
                  record: Optional[OutcomeRecord], pricing=None, discounts=()):
    """
    Persist the outcome of one unit. Safe to repeat.

    Returns:
        str: The result status written ('done' or 'error').
    """
    completed_at = now_timestamp()

    if record is None or not record.succeeded:
        message = record.error_message if record is not None else NO_RESULT_MESSAGE
        message = summarize_error(message or "Request failed")
        store.update_where(RESULTS_TABLE, {'id': result.id}, {
            'status': 'error',
            'error_message': message,
            'input_tokens': record.input_tokens if record else 0,
            'output_tokens': record.output_tokens if record else 0,
            'completed_at': completed_at,
        })
        store.update_where(UNITS_TABLE, {'id': result.unit_id}, {'status': 'error'})
        return 'error'

    artifact = Artifact(
        id=Artifact.make_id(job.id, result.unit_id, result.retry_count),
        job_id=job.id,
        unit_id=result.unit_id,
        collection_id=job.collection_id,
        task=job.task,
        task_options=job.task_options,
        input_text=unit.content if unit is not None else "",
        output_text=record.output_text,
        usage=record.usage,
        model=record.model or job.model,
        finish_reason=record.finish_reason,
        created_at=completed_at,
    )
    try:
        store.insert(ARTIFACTS_TABLE, artifact.to_row())
    except DuplicateRowError:
        logging.debug(f"Artifact {artifact.id} already stored")

    cost = compute_actual_cost(record.usage, artifact.model, pricing, discounts)
    store.update_where(RESULTS_TABLE, {'id': result.id}, {
        'status': 'done',
        'input_tokens': record.input_tokens,
        'output_tokens': record.output_tokens,
        'cost': cost,
        'processing_time_ms': _elapsed_ms(job),
        'error_message': None,
        'completed_at': completed_at,
        'artifact_id': artifact.id,
    })
    store.update_where(UNITS_TABLE, {'id': result.unit_id}, {
        'status': 'done',
        'processed_at': completed_at,
    })
    return 'done'


#=======================================================================
# Ingestion
#=======================================================================

def _download_outputs(provider, batch) -> ParsedOutput:
    parsed = ParsedOutput()
    if batch.output_file_ref:
        parsed.extend(parse_batch_output(provider.download_file(batch.output_file_ref), 'output'))
    else:
        logging.warning(f"Batch {batch.id} has no output file.")
    if batch.error_file_ref:
        parsed.extend(parse_batch_output(provider.download_file(batch.error_file_ref), 'error'))
    return parsed


def finalize_job(store, job: BatchJob, unresolved_count: int, batch=None) -> Optional[BatchJob]:
    """
    Count the job's results and, when every result is settled, write the
    aggregates and release the claims.

    Returns:
        BatchJob | None: The finalized job, or None if some result is still open.
    """
    counts = count_results(store, job.id)
    success, errors = counts.get('done', 0), counts.get('error', 0)
    if success + errors != job.total_units:
        logging.warning(f"Batch job {job.id}: {success + errors}/{job.total_units} results settled, "
                        "leaving it in finalizing")
        return None

    done_rows = store.select_where(RESULTS_TABLE, {'job_id': job.id, 'status': 'done'})
    values = {
        'status': 'completed' if errors == 0 else 'completed_with_errors',
        'success_count': success,
        'error_count': errors,
        'unresolved_count': unresolved_count,
        'processed_units': success + errors,
        'actual_cost': sum(row.get('cost') or 0.0 for row in done_rows),
        'results_processed': True,
        'completed_at': now_timestamp(),
    }
    if batch is not None:
        values.update(
            provider_status=batch.status,
            request_counts=batch.request_counts,
            output_file_ref=batch.output_file_ref,
            error_file_ref=batch.error_file_ref,
        )
    written = store.update_where(
        JOBS_TABLE, {'id': job.id, 'status': 'finalizing', 'results_processed': False}, values
    )
    if written:
        release_claims(store, job.id)
        logging.info(f"Batch job {job.id} {values['status']}: {success} succeeded, {errors} failed, "
                     f"{unresolved_count} unresolved")
    return get_job(store, job.id)


def ingest_results(store, provider, settings, job_id: str, owner_id=None,
                   show_progress: bool = False) -> IngestSummary:
    """
    Download, parse and persist the results of a finished batch.

    Args:
        store (RowStore): Persistent store.
        provider (BatchProvider): External batch provider.
        settings (BatchSettings): Uses ingest_max_workers, pricing and discounts.
        job_id (str): Job to ingest.
        owner_id (str, optional): If given, the job must belong to this owner.
        show_progress (bool): Show a tqdm progress bar for per-unit writes.

    Returns:
        IngestSummary: Counts of this run, or the stored counts when the job
            was already processed.

    Raises:
        InvalidTransition: If the job was cancelled, failed or expired (also
            while this call ran), or the provider batch has no results yet.
    """
    job = get_job(store, job_id, owner_id)
    if job.results_processed:
        return IngestSummary.from_job(job, already_processed=True)
    if job.status in REFUSED_STATUSES:
        raise InvalidTransition(
            f"Cannot ingest results of batch job {job_id} in status '{job.status}'",
            job_id=job_id, status=job.status
        )
    if not job.provider_handle:
        raise InvalidTransition(f"Batch job {job_id} was never accepted by the provider", job_id=job_id)

    batch = provider.get_batch(job.provider_handle)
    if not is_ingestible(batch):
        raise InvalidTransition(
            f"Batch job {job_id} has no results to ingest at the provider (status '{batch.status}')",
            job_id=job_id, provider_status=batch.status
        )
    written = store.update_where(
        JOBS_TABLE,
        {'id': job_id, 'status': list(INGESTIBLE_JOB_STATUSES), 'provider_handle': job.provider_handle},
        {'status': 'finalizing', 'provider_status': batch.status,
         'output_file_ref': batch.output_file_ref, 'error_file_ref': batch.error_file_ref}
    )
    if not written:
        current = get_job(store, job_id)
        if current.results_processed:
            return IngestSummary.from_job(current, already_processed=True)
        raise InvalidTransition(
            f"Batch job {job_id} changed to '{current.status}' before its results were ingested",
            job_id=job_id, status=current.status
        )

    parsed = _download_outputs(provider, batch)
    outcomes, unresolved = resolve_outcomes(parsed, job.unit_ids)
    unresolved_count = len(unresolved) + len(parsed.malformed)
    logging.info(f"Batch job {job_id} outcomes: {summarize_outcomes(parsed.records)}")

    results = get_results(store, job_id, status=list(OPEN_RESULT_STATUSES))
    unit_rows = store.select_where(UNITS_TABLE, {'id': [r.unit_id for r in results]})
    units = {row['id']: Unit.from_row(row) for row in unit_rows}
    pricing = merge_pricing(settings.pricing)

    summary = IngestSummary(job_id=job_id, status='finalizing', unresolved_count=unresolved_count)
    with ThreadPoolExecutor(max_workers=settings.ingest_max_workers) as executor:
        future_to_unit = {
            executor.submit(
                write_outcome, store, job, result, units.get(result.unit_id),
                outcomes.get(result.unit_id), pricing, settings.discounts
            ): result.unit_id
            for result in results
        }
        futures = as_completed(future_to_unit)
        if show_progress:
            futures = tqdm(futures, total=len(future_to_unit), desc="Ingesting results")
        for future in futures:
            unit_id = future_to_unit[future]
            try:
                future.result()
            except (BatchError, ValueError, KeyError, TypeError) as e:
                failure = PartialIngestError(unit_id, summarize_error(e))
                summary.failures.append(failure.to_dict())
                logging.error(f"Failed to ingest unit {unit_id} of job {job_id}: {failure.message}")

    finalized = finalize_job(store, get_job(store, job_id), unresolved_count, batch)
    if finalized is None:
        counts = count_results(store, job_id)
        summary.success_count = counts.get('done', 0)
        summary.error_count = counts.get('error', 0)
        summary.processed_units = summary.success_count + summary.error_count
        return summary

    summary.status = finalized.status
    summary.success_count = finalized.success_count
    summary.error_count = finalized.error_count
    summary.processed_units = finalized.processed_units
    summary.actual_cost = finalized.actual_cost
    summary.results_processed = finalized.results_processed
    return summary
