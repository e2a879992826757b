"""
HTTP API for Chunk Batch Manager.

Example Usage:
    from chunk_batch_manager.server import create_app

    app = create_app()   # serve with: uvicorn --factory chunk_batch_manager.server:create_app
"""

from .app import create_app

__all__ = ['create_app']
