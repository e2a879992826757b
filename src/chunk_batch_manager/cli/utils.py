# -*- coding: utf-8 -*-

import json
import logging
import functools
import click

from ..core.batching.manager import BatchJobManager
from ..core.batching.provider import OpenAIBatchProvider
from ..core.errors import BatchError
from ..core.storage import open_store
from ..core.utils.environment import validate_required_env_vars
from ..core.utils.misc import mask_path


def setup_logging(verbose=False, quiet=False):
    """Configure logging for CLI execution."""
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    # Configure root logger
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True  # Override any existing configuration
    )

    # Reduce noise from external libraries in non-verbose mode
    if not verbose:
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("openai").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)

    if verbose:
        logger = logging.getLogger(__name__)
        logger.debug("CLI logging setup completed")


def _validate_positive_integer_callback(ctx, param, value):
    """Validate that the provided value is a positive integer."""
    if value is not None and value <= 0:
        raise click.BadParameter("Value must be a positive integer.")
    return value


def _parse_key_value_callback(ctx, param, values):
    """Turn repeated KEY=VALUE options into a dict."""
    parsed = {}
    for item in values or ():
        key, sep, value = item.partition('=')
        if not sep or not key.strip():
            raise click.BadParameter(f"Expected KEY=VALUE, got '{item}'.")
        parsed[key.strip()] = value
    return parsed


def handle_batch_errors(func):
    """Report domain errors as a single log line and exit with status 1."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except BatchError as e:
            logging.error(f"{type(e).__name__}: {e}")
            raise SystemExit(1)
        except (ValueError, FileNotFoundError, KeyError) as e:
            logging.error(str(e))
            raise SystemExit(1)
    return wrapper


def echo_json(data):
    click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


#=======================================================================
# Manager Utilities
#=======================================================================

def _safe_get_manager(ctx, online=True) -> BatchJobManager:
    """
    Get the manager for this invocation, building it on first use.

    Offline commands get a manager without provider, so they work without
    API keys. Missing API keys for an online command end the program.
    """
    manager = ctx.obj.get('manager')
    if manager is not None and (manager.provider is not None or not online):
        return manager

    settings = ctx.obj['settings']
    provider = None
    if online:
        missing_vars = validate_required_env_vars(settings.api)
        if missing_vars:
            logging.error(f"Missing required environment variables for {settings.api}: {missing_vars}")
            logging.info("Please set these environment variables or create a "
                         ".env file at the repo root directory with:")
            for var in missing_vars:
                logging.info(f"  {var}=your_key_here")
            raise SystemExit(1)
        provider = OpenAIBatchProvider.from_settings(settings)

    if manager is not None:
        manager.provider = provider
        return manager

    database_path = settings.resolved_database_path()
    logging.debug(f"Using database {mask_path(database_path)}")
    manager = BatchJobManager(open_store(database_path), provider, settings)
    ctx.obj['manager'] = manager
    ctx.call_on_close(manager.close)
    return manager


def _format_job_line(job) -> str:
    return (f"- Job ID: {job.id}, Task: {job.task}, Status: {job.status}, "
            f"Units: {job.total_units} ({job.success_count} ok, {job.error_count} failed), "
            f"Created at: {(job.created_at or '')[:19].replace('T', ' ')}")
