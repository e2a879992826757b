# -*- coding: utf-8 -*-

import time
import logging
import polars as pl
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Literal, Optional, Sequence

from ..errors import BatchError, Forbidden, NotFound, summarize_error
from ..storage import RowStore, open_store
from ..utils.config import BatchSettings, load_settings
from ..utils.datasource import load_units
from ..utils.misc import mask_path, write_jsonl
from .actions import cancel_job, retry_failed, retry_units
from .ingest import IngestSummary, ingest_results
from .models import ARTIFACTS_TABLE, JOBS_TABLE, BatchJob, JobHandle
from .provider import BatchProvider, OpenAIBatchProvider
from .status import awaits_ingestion, refresh_status
from .submit import estimate_job, relaunch_job, submit_job
from .summary import get_general_summary_dict, get_job_summary_dict
from .utils import get_job, get_results


RESULT_EXPORT_SCHEMA = {
    'job_id': pl.String,
    'unit_id': pl.String,
    'status': pl.String,
    'task': pl.String,
    'model': pl.String,
    'output_text': pl.String,
    'finish_reason': pl.String,
    'input_tokens': pl.Int64,
    'output_tokens': pl.Int64,
    'cost': pl.Float64,
    'retry_count': pl.Int64,
    'error_message': pl.String,
    'completed_at': pl.String,
}


class BatchJobManager:
    """A class to manage chunk batch jobs against a poll-only batch provider."""

    def __init__(
        self,
        store: RowStore,
        provider: Optional[BatchProvider],
        settings: Optional[BatchSettings] = None,
    ):
        """
        Args:
            store (RowStore): Persistent store.
            provider (BatchProvider): Batch provider. May be None for offline
                work (loading units, estimates, listing, export).
            settings (BatchSettings, optional): Engine settings.
        """
        self.store = store
        self.provider = provider
        self.settings = settings or BatchSettings()

    @classmethod
    def from_settings(
            cls,
            settings: Optional[BatchSettings] = None,
            store: Optional[RowStore] = None,
            provider: Optional[BatchProvider] = None
        ):
        """
        Build a manager from settings, opening the SQLite store and the
        provider client they describe unless given explicitly.
        """
        settings = settings or load_settings()
        if store is None:
            store = open_store(settings.resolved_database_path())
        if provider is None:
            provider = OpenAIBatchProvider.from_settings(settings)
        return cls(store, provider, settings)

    def close(self):
        self.store.close()

    #===================================================================
    # Units
    #===================================================================

    def load_units(self, path: str | Path, owner_id: str, collection_id: Optional[str] = None):
        """Import units from a JSONL, CSV or PARQUET file."""
        return load_units(self.store, path, owner_id, collection_id)

    #===================================================================
    # Submission
    #===================================================================

    def estimate(
            self,
            owner_id: str,
            unit_ids: Sequence[str],
            task: str = 'summary',
            options: Optional[dict] = None,
            shared_context: Optional[dict] = None
        ) -> dict:
        """Cost preview for a prospective submission. Nothing is persisted."""
        return estimate_job(self.store, self.settings, owner_id, unit_ids, task, options, shared_context)

    def submit(
            self,
            owner_id: str,
            unit_ids: Sequence[str],
            task: str = 'summary',
            options: Optional[dict] = None,
            shared_context: Optional[dict] = None
        ) -> JobHandle:
        return submit_job(
            self.store, self.provider, self.settings, owner_id, unit_ids,
            task=task, options=options, shared_context=shared_context
        )

    def resubmit(self, job_id: str, owner_id: Optional[str] = None) -> JobHandle:
        """Relaunch a reopened job whose earlier relaunch did not reach the provider."""
        return relaunch_job(self.store, self.provider, self.settings, job_id, owner_id)

    #===================================================================
    # Status and ingestion
    #===================================================================

    def refresh_status(
            self,
            job_id: str,
            owner_id: Optional[str] = None,
            auto_ingest: Optional[bool] = None
        ) -> str:
        """
        Reconcile a job with the provider and return its status.

        When the job reaches ``finalizing`` because the provider batch ended
        with results (completed, or failed or expired with partial output),
        results are ingested right away if ``auto_ingest`` (default from the
        settings) is on. An ingestion failure is logged and the job stays in
        ``finalizing`` for the next call.
        """
        status = refresh_status(self.store, self.provider, job_id, owner_id)
        if auto_ingest is None:
            auto_ingest = self.settings.auto_ingest
        if not auto_ingest or status != 'finalizing':
            return status

        job = get_job(self.store, job_id)
        if not awaits_ingestion(job) or job.results_processed:
            return status
        try:
            return self.ingest(job_id).status
        except BatchError as e:
            logging.warning(f"Automatic ingestion of batch job {job_id} failed: {summarize_error(e)}")
            return get_job(self.store, job_id).status

    def ingest(self, job_id: str, owner_id: Optional[str] = None,
               show_progress: bool = False) -> IngestSummary:
        return ingest_results(
            self.store, self.provider, self.settings, job_id, owner_id,
            show_progress=show_progress
        )

    def get_status(self, job_id: str, owner_id: Optional[str] = None,
                   auto_ingest: Optional[bool] = None) -> dict:
        """Refresh a job and return its progress and metrics summary."""
        self.refresh_status(job_id, owner_id, auto_ingest=auto_ingest)
        return get_job_summary_dict(self.store, job_id, owner_id)

    def _is_settled(self, job_id, auto_ingest):
        job = get_job(self.store, job_id)
        if job.is_terminal:
            return True
        # Without ingestion a job whose provider batch ended has nothing left to wait for.
        return not auto_ingest and awaits_ingestion(job)

    def poll(
            self,
            job_ids: Sequence[str],
            interval: float = 60,
            auto_ingest: Optional[bool] = None,
            max_workers: int = 5,
            max_rounds: Optional[int] = None
        ) -> dict:
        """
        Refresh jobs in parallel until every one is terminal.

        Args:
            job_ids (list): Jobs to track.
            interval (float): Seconds to wait between rounds.
            auto_ingest (bool, optional): Ingest completed jobs as they finish.
            max_workers (int): Number of parallel status checks.
            max_rounds (int, optional): Stop after this many rounds even if
                some jobs are still open.

        Returns:
            dict: job_id -> last observed status.
        """
        if auto_ingest is None:
            auto_ingest = self.settings.auto_ingest
        statuses = {}
        pending = list(dict.fromkeys(job_ids))
        rounds = 0

        while pending:
            rounds += 1
            logging.info(f"Checking {len(pending)} pending jobs...")
            still_pending = []

            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                future_to_job = {
                    executor.submit(self.refresh_status, job_id, None, auto_ingest): job_id
                    for job_id in pending
                }
                for future in as_completed(future_to_job):
                    job_id = future_to_job[future]
                    try:
                        status = future.result()
                    except (NotFound, Forbidden) as e:
                        logging.error(f"Dropping batch job {job_id}: {e}")
                        continue
                    except BatchError as e:
                        logging.error(f"Status check for batch job {job_id} failed: {summarize_error(e)}")
                        still_pending.append(job_id)
                        continue
                    statuses[job_id] = status
                    if not self._is_settled(job_id, auto_ingest):
                        still_pending.append(job_id)

            pending = still_pending
            if not pending:
                break
            if max_rounds is not None and rounds >= max_rounds:
                logging.info(f"Stopping after {rounds} rounds with {len(pending)} jobs still open.")
                break

            logging.info(f"{len([j for j in statuses if j not in pending])} settled, {len(pending)} still pending. Waiting {interval} seconds before retrying...")
            time.sleep(interval)

        logging.info(f"Polling done: {statuses}")
        return statuses

    #===================================================================
    # Retry and cancel
    #===================================================================

    def cancel(self, job_id: str, owner_id: Optional[str] = None) -> BatchJob:
        return cancel_job(self.store, self.provider, job_id, owner_id)

    def _after_reopen(self, job: BatchJob, relaunch: bool) -> JobHandle:
        if relaunch:
            return relaunch_job(self.store, self.provider, self.settings, job.id)
        return JobHandle(job_id=job.id, status=job.status, total_units=job.total_units,
                         cost_estimate=job.cost_estimate)

    def retry_failed(self, job_id: str, owner_id: Optional[str] = None,
                     relaunch: bool = True) -> JobHandle:
        """Requeue failed results and, unless ``relaunch`` is False, send them to the provider."""
        job = retry_failed(self.store, self.settings, job_id, owner_id)
        return self._after_reopen(job, relaunch)

    def retry_units(self, job_id: str, unit_ids: Sequence[str],
                    owner_id: Optional[str] = None, relaunch: bool = True) -> JobHandle:
        """Requeue specific units and, unless ``relaunch`` is False, send them to the provider."""
        job = retry_units(self.store, self.settings, job_id, unit_ids, owner_id)
        return self._after_reopen(job, relaunch)

    #===================================================================
    # Listing, summaries and export
    #===================================================================

    def list_jobs(self, owner_id: Optional[str] = None, status: Optional[str | list] = None,
                  limit: Optional[int] = None) -> list:
        """List jobs, newest first, optionally filtered by owner and status."""
        where = {}
        if owner_id is not None:
            where['owner_id'] = owner_id
        if status is not None:
            where['status'] = status
        rows = self.store.select_where(JOBS_TABLE, where, order_by='-created_at', limit=limit)
        jobs = [BatchJob.from_row(row) for row in rows]
        if status is None:
            logging.debug(f"Found {len(jobs)} batch jobs.")
        else:
            logging.debug(f"Found {len(jobs)} batch jobs matching status '{status}'.")
        return jobs

    def get_job_summary(self, job_id: str, owner_id: Optional[str] = None) -> dict:
        return get_job_summary_dict(self.store, job_id, owner_id)

    def summarize_jobs(self, owner_id: Optional[str] = None) -> dict:
        summaries = [get_job_summary_dict(self.store, job.id) for job in self.list_jobs(owner_id)]
        return get_general_summary_dict(summaries)

    def get_result_records(self, job_id: str, owner_id: Optional[str] = None,
                           only_succeed: bool = False) -> list:
        """
        One record per unit of the job, joining result rows with their artifacts.
        """
        job = get_job(self.store, job_id, owner_id)
        artifacts = {
            row['id']: row for row in self.store.select_where(ARTIFACTS_TABLE, {'job_id': job_id})
        }
        results = {r.unit_id: r for r in get_results(self.store, job_id)}
        records = []
        for unit_id in job.unit_ids:
            result = results.get(unit_id)
            if result is None:
                continue
            if only_succeed and result.status != 'done':
                continue
            artifact = artifacts.get(result.artifact_id) or {}
            records.append({
                'job_id': job_id,
                'unit_id': unit_id,
                'status': result.status,
                'task': job.task,
                'model': artifact.get('model') or job.model,
                'output_text': artifact.get('output_text'),
                'finish_reason': artifact.get('finish_reason'),
                'input_tokens': result.input_tokens,
                'output_tokens': result.output_tokens,
                'cost': result.cost,
                'retry_count': result.retry_count,
                'error_message': result.error_message,
                'completed_at': result.completed_at,
            })
        return records

    def export_results(
            self,
            job_id: str,
            path: str | Path,
            file_type: Literal['jsonl', 'csv', 'parquet'] = 'jsonl',
            owner_id: Optional[str] = None,
            only_succeed: bool = False
        ) -> Path:
        """
        Write a job's per-unit results to a JSONL, CSV or PARQUET file.

        Args:
            job_id (str): Job to export.
            path (str | Path): Output file, or a directory to write
                '<job_id>_results.<file_type>' into.
            file_type (str): 'jsonl', 'csv' or 'parquet'.
            owner_id (str, optional): If given, the job must belong to this owner.
            only_succeed (bool): Export only results that succeeded.

        Returns:
            Path: The written file.
        """
        if file_type not in ('jsonl', 'csv', 'parquet'):
            raise ValueError("file_type must be one of 'jsonl', 'csv' or 'parquet'.")
        records = self.get_result_records(job_id, owner_id, only_succeed=only_succeed)

        path = Path(path)
        if path.is_dir():
            path = path / f"{job_id}_results.{file_type}"
        path.parent.mkdir(parents=True, exist_ok=True)

        match file_type:
            case 'jsonl':
                write_jsonl(records, path)
            case 'csv':
                pl.DataFrame(records, schema=RESULT_EXPORT_SCHEMA).write_csv(path)
            case 'parquet':
                pl.DataFrame(records, schema=RESULT_EXPORT_SCHEMA).write_parquet(path)

        logging.info(f"Exported {len(records)} results of batch job {job_id} to {mask_path(path)}")
        return path
