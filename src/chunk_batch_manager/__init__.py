"""
Chunk Batch Manager - Batch processing of text chunks through poll-only batch APIs

Takes collections of text units (chunks of a document), submits them as one
batch job to an OpenAI Batch API compatible provider (OpenAI, Azure OpenAI,
Groq), tracks the job by polling, and ingests its results as artifacts.

Key Features:
    - Cost estimation with batch and provider discounts
    - Compensated submission, monotonic status reconciliation
    - Idempotent result ingestion
    - Retry of failed units and cancellation
    - SQLite or in-memory storage
    - HTTP API (FastAPI) and command-line interface

Package Structure:
    batching: Batch job engine (submit, status, ingest, actions, manager)
    storage:  Row stores
    utils:    Shared utilities (clients, settings, data import)
    errors:   Domain errors

Example Usage:

    High-Level Interface:
        import chunk_batch_manager as cbm

        manager = cbm.BatchJobManager.from_settings()
        units = manager.load_units('./chunks.jsonl', owner_id='me', collection_id='doc-1')
        print(manager.estimate('me', [u.id for u in units]))
        handle = manager.submit('me', [u.id for u in units], task='summary')
        manager.poll([handle.job_id], interval=300)
        manager.export_results(handle.job_id, './results.csv', file_type='csv')

    CLI Usage:
        $ chunkbm load-units ./chunks.jsonl --owner me --collection doc-1
        $ chunkbm submit u1 u2 u3 --owner me --task analysis --option analysis_type=structural
        $ chunkbm poll JOB_ID --interval 300
        $ chunkbm export JOB_ID ./results.parquet --file-type parquet

Environment Setup:
    Required environment variables:
    - OPENAI_API_KEY (for OpenAI API)
    - AZURE_OPENAI_API_KEY + AZURE_OPENAI_ENDPOINT (for Azure OpenAI)
    - GROQ_API_KEY (for Groq)

    These can be set via .env files in:
    - Current working directory (.env, .env.local)
    - Project root directory
"""

__version__ = "0.1.0"

# Load environment on package import
from .core.utils.environment import setup_environment
setup_environment()

# Export core API modules
from . import core
batching = core.batching
storage = core.storage
utils = core.utils
errors = core.errors
BatchJobManager = core.BatchJobManager

__all__ = [
    '__version__',
    'batching',        # cbm.batching.*
    'storage',         # cbm.storage.*
    'utils',           # cbm.utils.*
    'errors',          # cbm.errors.*
    'BatchJobManager', # cbm.BatchJobManager()
]

# Clean up namespace
del setup_environment, core
