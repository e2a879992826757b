"""
Command-line interface for Chunk Batch Manager.

Command Categories:
    Units:
        - load-units: Import units from JSONL, CSV or PARQUET
        - estimate: Cost preview for a set of units

    Job Management:
        - submit: Submit units as one batch job
        - status: Check progress and status of a job
        - poll: Track jobs until they finish
        - cancel: Cancel a pending or running job
        - retry-failed / retry-units: Requeue units of a finished job
        - resubmit: Send a reopened job to the provider

    Results:
        - ingest: Store the results of a completed job
        - list-jobs: Show jobs, newest first
        - export: Write per-unit results as JSONL, CSV or PARQUET

    Server:
        - serve: Run the HTTP API

Environment Requirements:
    - OPENAI_API_KEY (for OpenAI API)
    - AZURE_OPENAI_API_KEY + AZURE_OPENAI_ENDPOINT (for Azure OpenAI)
    - GROQ_API_KEY (for Groq)

Example Workflow:
    # 1. Import the chunks of a document
    $ chunkbm load-units ./chunks.jsonl --owner me --collection thesis-1

    # 2. Check what it would cost
    $ chunkbm estimate u1 u2 u3 --owner me

    # 3. Submit
    $ chunkbm submit u1 u2 u3 --owner me --task analysis --option analysis_type=structural

    # 4. Track until done (results are ingested automatically)
    $ chunkbm poll JOB_ID --interval 300

    # 5. Export
    $ chunkbm export JOB_ID ./results.csv --file-type csv
"""

from .cli import cli

__all__ = [
    'cli',  # Main CLI interface (Click command group)
]
