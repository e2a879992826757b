# -*- coding: utf-8 -*-
"""
Row models for units, batch jobs, per-unit results, produced artifacts and
claims, together with the job state machine.

Rows travel to and from the store as plain dictionaries. Timestamps are
stored as ISO-8601 UTC strings so that they compare correctly as text in
every store implementation.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional

from ..storage.tables import (  # noqa: F401
    UNITS_TABLE,
    JOBS_TABLE,
    RESULTS_TABLE,
    ARTIFACTS_TABLE,
    CLAIMS_TABLE,
    TABLE_KEYS,
)


#=======================================================================
# Status vocabularies
#=======================================================================

UnitStatus = Literal['draft', 'ready', 'queued', 'processing', 'done', 'error']
ResultStatus = Literal['waiting', 'processing', 'done', 'error']
JobStatus = Literal[
    'pending', 'validating', 'in_progress', 'finalizing',
    'completed', 'completed_with_errors', 'failed', 'expired',
    'cancelling', 'cancelled'
]

SUBMITTABLE_UNIT_STATUSES = ('draft', 'ready')
IN_FLIGHT_UNIT_STATUSES = ('queued', 'processing')
OPEN_RESULT_STATUSES = ('waiting', 'processing')

TERMINAL_JOB_STATUSES = frozenset({
    'completed', 'completed_with_errors', 'failed', 'cancelled', 'expired'
})
CANCELLABLE_JOB_STATUSES = frozenset({'pending', 'in_progress'})
RETRYABLE_JOB_STATUSES = frozenset({'completed', 'completed_with_errors', 'failed'})

# Merge rank used by the reconciler: a read never lowers the rank.
JOB_STATUS_RANK = {
    'pending': 0,
    'validating': 1,
    'in_progress': 2,
    'finalizing': 3,
    'cancelling': 3,
    'completed': 4,
    'completed_with_errors': 4,
    'failed': 4,
    'expired': 4,
    'cancelled': 4,
}


def is_terminal(status):
    return status in TERMINAL_JOB_STATUSES


#=======================================================================
# Time helpers
#=======================================================================

def utc_now():
    return datetime.now(timezone.utc)


def to_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec='microseconds')


def now_timestamp() -> str:
    return to_timestamp(utc_now())


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def timestamp_after(hours: float, start: Optional[datetime] = None) -> str:
    start = start or utc_now()
    return to_timestamp(start + timedelta(hours=hours))


#=======================================================================
# Rows
#=======================================================================

class _Row:
    """Mixin converting dataclass rows to and from store dictionaries."""

    def to_row(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: dict):
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in row.items() if k in names})


@dataclass
class Unit(_Row):
    """Smallest independently processable piece of input text."""
    id: str
    collection_id: str
    owner_id: str
    content: str
    char_count: int = 0
    word_count: int = 0
    status: UnitStatus = 'draft'
    title: Optional[str] = None
    order_index: int = 0
    processed_at: Optional[str] = None

    @classmethod
    def create(cls, id, collection_id, owner_id, content, **kwargs):
        """Build a unit computing character and word counts from content."""
        kwargs.setdefault('char_count', len(content))
        kwargs.setdefault('word_count', len(content.split()))
        return cls(id=id, collection_id=collection_id, owner_id=owner_id,
                   content=content, **kwargs)


@dataclass
class BatchJob(_Row):
    """A submitted collection of units processed together by the provider."""
    id: str
    owner_id: str
    collection_id: str
    task: str
    unit_ids: list
    total_units: int
    status: JobStatus = 'pending'
    task_options: dict = field(default_factory=dict)
    shared_context: dict = field(default_factory=dict)
    model: Optional[str] = None
    uniqueness_key: Optional[str] = None
    processed_units: int = 0
    success_count: int = 0
    error_count: int = 0
    unresolved_count: int = 0
    provider_handle: Optional[str] = None
    provider_status: Optional[str] = None
    request_counts: dict = field(default_factory=dict)
    input_file_ref: Optional[str] = None
    output_file_ref: Optional[str] = None
    error_file_ref: Optional[str] = None
    estimated_input_tokens: int = 0
    estimated_output_tokens: int = 0
    estimated_cost: float = 0.0
    cost_estimate: dict = field(default_factory=dict)
    actual_cost: float = 0.0
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    expires_at: Optional[str] = None
    last_checked_at: Optional[str] = None
    error_detail: Optional[dict] = None
    results_processed: bool = False
    attempt: int = 1

    @property
    def is_terminal(self):
        return is_terminal(self.status)


@dataclass
class BatchResult(_Row):
    """Per-unit outcome record scoped to one job."""
    id: str
    job_id: str
    unit_id: str
    status: ResultStatus = 'waiting'
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    processing_time_ms: Optional[int] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    completed_at: Optional[str] = None
    artifact_id: Optional[str] = None

    @staticmethod
    def make_id(job_id, unit_id):
        return f"{job_id}:{unit_id}"


@dataclass
class Artifact(_Row):
    """Text produced by the provider for one unit of one job attempt."""
    id: str
    job_id: str
    unit_id: str
    collection_id: str
    task: str
    output_text: str
    input_text: str = ""
    task_options: dict = field(default_factory=dict)
    usage: dict = field(default_factory=dict)
    model: Optional[str] = None
    finish_reason: Optional[str] = None
    created_at: Optional[str] = None

    @staticmethod
    def make_id(job_id, unit_id, retry_count=0):
        return f"{job_id}:{unit_id}:{retry_count}"


@dataclass
class Claim(_Row):
    """Uniquely keyed marker of a unit or rule key held by an active job."""
    key: str
    job_id: str
    created_at: Optional[str] = None

    @staticmethod
    def unit_key(unit_id):
        return f"unit:{unit_id}"

    @staticmethod
    def rule_key(key):
        return f"rule:{key}"


@dataclass
class JobHandle:
    """What the submission pipeline hands back to its caller."""
    job_id: str
    status: JobStatus
    provider_handle: Optional[str] = None
    total_units: int = 0
    cost_estimate: dict = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self):
        return asdict(self)
