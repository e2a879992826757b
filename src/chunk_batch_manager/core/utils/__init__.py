"""
Shared utilities for Chunk Batch Manager.

Submodules:
    clients:     API client creation (OpenAI, Azure OpenAI, Groq)
    config:      BatchSettings loading (YAML file, CHUNKBM_ environment)
    datasource:  Unit import from JSONL, CSV and PARQUET files
    misc:        Internal utilities (internal)
    environment: Environment configuration (internal)

Example Usage:
    import chunk_batch_manager as cbm

    client = cbm.utils.clients.create_client('Groq')
    settings = cbm.utils.config.load_settings('./config.yaml')
    records = cbm.utils.datasource.read_unit_records('./units.jsonl')
"""

# Import modules to export
from . import clients     # Client creation utilities
from . import config      # Settings loading
from . import datasource  # Unit import

__all__ = [
    'clients',      # cbm.utils.clients.*
    'config',       # cbm.utils.config.*
    'datasource',   # cbm.utils.datasource.*
]

# Internal modules not exported:
# - misc (internal utilities)
# - environment (internal environment setup)
