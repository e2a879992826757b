# -*- coding: utf-8 -*-

import logging
import uuid
from collections import Counter

from ..errors import Conflict, DuplicateRowError, Forbidden, NotFound
from .models import (
    CLAIMS_TABLE,
    JOBS_TABLE,
    RESULTS_TABLE,
    BatchJob,
    BatchResult,
    Claim,
    is_terminal,
    now_timestamp,
)


def new_job_id():
    return uuid.uuid4().hex


#=======================================================================
# Job rows
#=======================================================================

def get_job(store, job_id, owner_id=None) -> BatchJob:
    """
    Load a job, optionally checking that it belongs to ``owner_id``.

    Raises:
        NotFound: If the job does not exist.
        Forbidden: If the job belongs to another owner.
    """
    row = store.get(JOBS_TABLE, job_id)
    if row is None:
        raise NotFound(f"Batch job {job_id} not found", job_id=job_id)
    job = BatchJob.from_row(row)
    if owner_id is not None and job.owner_id != owner_id:
        raise Forbidden(f"Batch job {job_id} belongs to another owner", job_id=job_id)
    return job


def save_job(store, job_id, **values):
    """Write fields of one job row. Returns the number of rows written."""
    return store.update_where(JOBS_TABLE, {'id': job_id}, values)


def append_history(error_detail, entry: dict) -> dict:
    """Return a copy of ``error_detail`` with ``entry`` appended to its history."""
    detail = dict(error_detail or {})
    history = list(detail.get('history', []))
    history.append(entry)
    detail['history'] = history
    return detail


#=======================================================================
# Result rows
#=======================================================================

def get_results(store, job_id, status=None) -> list:
    where = {'job_id': job_id}
    if status is not None:
        where['status'] = status
    return [BatchResult.from_row(row) for row in store.select_where(RESULTS_TABLE, where)]


def count_results(store, job_id) -> Counter:
    """Count a job's results by status."""
    return Counter(row['status'] for row in store.select_where(RESULTS_TABLE, {'job_id': job_id}))


#=======================================================================
# Claims
#=======================================================================

def claim_keys(unit_ids, uniqueness_key=None) -> list:
    keys = [Claim.unit_key(unit_id) for unit_id in unit_ids]
    if uniqueness_key:
        keys.append(Claim.rule_key(uniqueness_key))
    return keys


def _holder_is_active(store, holder_job_id):
    row = store.get(JOBS_TABLE, holder_job_id)
    return row is not None and not is_terminal(row['status'])


def _insert_claim(store, key, job_id):
    """
    Insert one claim. A claim left behind by a job that is already terminal
    (or gone) is reclaimed once.
    """
    row = Claim(key=key, job_id=job_id, created_at=now_timestamp()).to_row()
    try:
        store.insert(CLAIMS_TABLE, row)
        return
    except DuplicateRowError:
        existing = store.get(CLAIMS_TABLE, key)
        holder = existing['job_id'] if existing else None
        if holder == job_id:
            return
        if holder is not None and _holder_is_active(store, holder):
            raise Conflict(
                f"'{key}' is held by active batch job {holder}",
                key=key, job_id=holder
            ) from None
        logging.warning(f"Reclaiming stale claim '{key}' from job {holder}")
        store.delete_where(CLAIMS_TABLE, {'key': key, 'job_id': holder})
    try:
        store.insert(CLAIMS_TABLE, row)
    except DuplicateRowError:
        raise Conflict(f"'{key}' was claimed concurrently", key=key) from None


def acquire_claims(store, job_id, keys) -> list:
    """
    Insert claims for ``keys`` with insert-or-reject semantics.

    On the first collision every claim inserted by this call is removed and
    Conflict is raised, so the call either holds all keys or none.

    Returns:
        list: The claimed keys.
    """
    inserted = []
    try:
        for key in keys:
            _insert_claim(store, key, job_id)
            inserted.append(key)
    except Conflict:
        if inserted:
            store.delete_where(CLAIMS_TABLE, {'key': inserted, 'job_id': job_id})
        raise
    logging.debug(f"Job {job_id} acquired {len(inserted)} claims")
    return inserted


def release_claims(store, job_id) -> int:
    released = store.delete_where(CLAIMS_TABLE, {'job_id': job_id})
    if released:
        logging.debug(f"Job {job_id} released {released} claims")
    return released
