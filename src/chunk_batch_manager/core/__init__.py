"""
Core functionality for Chunk Batch Manager.

Architecture:
    batching/   - Batch job engine
      ├── submit/    - Submission pipeline
      ├── status/    - Status reconciliation
      ├── ingest/    - Result ingestion
      ├── actions/   - Retry and cancel
      └── manager/   - High-level orchestration

    storage/    - Row stores (memory, SQLite)

    utils/      - Shared utilities and infrastructure
      ├── clients/   - API client creation (OpenAI, Azure, Groq)
      ├── config/    - Settings
      ├── datasource/- Unit import
      ├── misc/      - General utilities (internal)
      └── environment/ - Environment setup (internal)

    errors      - Domain error hierarchy
"""

# Core module exports
from . import errors
from . import storage
from . import batching
from . import utils

# High-level manager interface
from .batching.manager import BatchJobManager

__all__ = [
    'errors',      # Domain errors
    'storage',     # Row stores
    'batching',    # Batch job engine
    'utils',       # Essential utilities and infrastructure
    'BatchJobManager',  # High-level orchestration interface
]
