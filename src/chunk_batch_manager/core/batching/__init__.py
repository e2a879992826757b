"""
Batch processing operations for Chunk Batch Manager.

This module contains the batch job engine organized into submodules:

Submodules:
    models:   Units, jobs, results, artifacts and claims
    tasks:    Task descriptors (summary, analysis) and the task registry
    pricing:  Token and cost estimation
    files:    Provider payload (JSONL) construction
    provider: Batch provider adapter (OpenAI, Azure OpenAI, Groq)
    submit:   Submission pipeline with compensation
    status:   Status reconciliation
    parse:    Provider output parsing
    ingest:   Idempotent result ingestion
    actions:  Retry and cancel
    summary:  Job progress and metrics summaries
    manager:  High-level BatchJobManager

Example Usage:
    import chunk_batch_manager as cbm

    manager = cbm.BatchJobManager.from_settings()
    handle = manager.submit('owner-1', ['u1', 'u2'], task='summary')
    manager.poll([handle.job_id], interval=120)
    manager.export_results(handle.job_id, './results/', file_type='parquet')
"""

# Import submodules (not individual functions)
from . import models
from . import tasks
from . import pricing
from . import files
from . import provider
from . import submit
from . import status
from . import parse
from . import ingest
from . import actions
from . import summary
from . import manager

__all__ = [
    'models',     # cbm.batching.models.*
    'tasks',      # cbm.batching.tasks.*
    'pricing',    # cbm.batching.pricing.*
    'files',      # cbm.batching.files.*
    'provider',   # cbm.batching.provider.*
    'submit',     # cbm.batching.submit.*
    'status',     # cbm.batching.status.*
    'parse',      # cbm.batching.parse.*
    'ingest',     # cbm.batching.ingest.*
    'actions',    # cbm.batching.actions.*
    'summary',    # cbm.batching.summary.*
    'manager',    # cbm.batching.manager.*
]
