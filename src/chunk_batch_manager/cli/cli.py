# -*- coding: utf-8 -*-

import sys
import click
import logging

from ..core.batching.summary import format_job_summary, save_job_summary
from ..core.batching.tasks import TASKS
from ..core.utils.config import load_settings
from ..core.utils.misc import mask_path
from .utils import (
    setup_logging,
    handle_batch_errors,
    echo_json,
    _validate_positive_integer_callback,
    _parse_key_value_callback,
    _safe_get_manager,
    _format_job_line,
)


owner_option = click.option(
    '--owner', 'owner_id', type=str, default=None,
    help='Owner id. Required to submit; when given elsewhere, the job must belong to it.'
)
task_option = click.option(
    '--task', type=click.Choice(sorted(TASKS)), default='summary', show_default=True,
    help='Task to run on every unit.'
)
option_option = click.option(
    '--option', 'options', multiple=True, callback=_parse_key_value_callback,
    help='Task option as KEY=VALUE (e.g. analysis_type=structural). Repeatable.'
)
context_option = click.option(
    '--context', 'shared_context', multiple=True, callback=_parse_key_value_callback,
    help='Shared prompt context as KEY=VALUE (e.g. title="My thesis"). Repeatable.'
)


@click.group()
@click.option(
    '-v', '--verbose', is_flag=True,
    help='Enable verbose (DEBUG) logging'
)
@click.option(
    '-q', '--quiet', is_flag=True,
    help='Only show warnings and errors'
)
@click.option(
    '--config', 'config_path', type=click.Path(dir_okay=False), default=None,
    help='YAML configuration file. Defaults to the user config file when it exists.'
)
@click.option(
    '--db', 'database_path', type=click.Path(dir_okay=False), default=None,
    help='SQLite database file. Defaults to the user data directory.'
)
@click.pass_context
def cli(ctx, verbose, quiet, config_path, database_path):
    """
    Chunk Batch Manager CLI - Process collections of text chunks through
    poll-only batch APIs (OpenAI, Azure OpenAI, Groq).

    Load units, estimate and submit batch jobs, track them until they
    finish, ingest their results, retry failures, and export what came back.

    \b
    Ensure you have the appropriate API keys set in your environment variables:
    - OPENAI_API_KEY (for OpenAI)
    - AZURE_OPENAI_API_KEY, AZURE_OPENAI_ENDPOINT (for Azure OpenAI)
    - GROQ_API_KEY (for Groq)
    """
    # Set up logging first
    setup_logging(verbose=verbose, quiet=quiet)

    ctx.ensure_object(dict)

    # Skip checks if --help/-h is requested
    if any(arg in sys.argv for arg in ['--help', '-h']):
        return

    if ctx.obj.get('manager') is not None:
        ctx.obj.setdefault('settings', ctx.obj['manager'].settings)
        return

    try:
        ctx.obj['settings'] = load_settings(config_path, database_path=database_path)
    except (FileNotFoundError, ValueError) as e:
        logging.error(f"Invalid configuration: {e}")
        raise SystemExit(1)


#=======================================================================
# Units and Estimation
#=======================================================================

@cli.command()
@click.argument('source_data_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--owner', 'owner_id', type=str, required=True, help='Owner of the imported units.')
@click.option(
    '--collection', 'collection_id', type=str, default=None,
    help='Collection for records that do not name one.'
)
@click.pass_context
@handle_batch_errors
def load_units(ctx, source_data_file, owner_id, collection_id):
    """
    Import units from a JSONL, CSV or PARQUET file.

    Each record needs a 'content' field and may carry 'id',
    'collection_id', 'title', 'order_index' and 'status' (draft or ready).
    """
    manager = _safe_get_manager(ctx, online=False)
    units = manager.load_units(source_data_file, owner_id, collection_id)
    for unit in units:
        click.echo(unit.id)
    logging.info(f"{len(units)} units loaded from {mask_path(source_data_file)}")


@cli.command()
@click.argument('unit_ids', nargs=-1, required=True)
@click.option('--owner', 'owner_id', type=str, required=True, help='Owner of the units.')
@task_option
@option_option
@context_option
@click.pass_context
@handle_batch_errors
def estimate(ctx, unit_ids, owner_id, task, options, shared_context):
    """Estimate the cost of submitting UNIT_IDS, without submitting anything."""
    manager = _safe_get_manager(ctx, online=False)
    result = manager.estimate(owner_id, list(unit_ids), task=task,
                              options=options, shared_context=shared_context)
    logging.info(f"Estimated cost for {result['n_units']} units with {result['model']}: "
                 f"${result['discounted_cost']:,.4f} (saving {result['savings_percentage']:.1f}%)")
    echo_json(result)


#=======================================================================
# Job Lifecycle
#=======================================================================

@cli.command()
@click.argument('unit_ids', nargs=-1, required=True)
@click.option('--owner', 'owner_id', type=str, required=True, help='Owner of the units.')
@task_option
@option_option
@context_option
@click.pass_context
@handle_batch_errors
def submit(ctx, unit_ids, owner_id, task, options, shared_context):
    """Submit UNIT_IDS as one batch job."""
    manager = _safe_get_manager(ctx)
    handle = manager.submit(owner_id, list(unit_ids), task=task,
                            options=options, shared_context=shared_context)
    echo_json(handle.to_dict())
    if handle.status == 'failed':
        logging.error(f"Batch job {handle.job_id} failed at the provider: {handle.error}")
        raise SystemExit(1)
    logging.info(f"Batch job {handle.job_id} submitted ({handle.provider_handle}).")


@cli.command()
@click.argument('job_id')
@owner_option
@click.option('--refresh/--no-refresh', default=True, show_default=True,
              help='Reconcile with the provider before reporting.')
@click.option('--json', 'as_json', is_flag=True, help='Print the summary as JSON.')
@click.option(
    '--save', 'save_path', type=click.Path(dir_okay=False), default=None,
    help='Also write the text summary to this file, with a JSON copy next to it.'
)
@click.pass_context
@handle_batch_errors
def status(ctx, job_id, owner_id, refresh, as_json, save_path):
    """Check the progress and status of a batch job."""
    manager = _safe_get_manager(ctx, online=refresh)
    if refresh:
        summary = manager.get_status(job_id, owner_id)
    else:
        summary = manager.get_job_summary(job_id, owner_id)
    if as_json:
        echo_json(summary)
    else:
        click.echo(format_job_summary(summary))
    if save_path:
        save_job_summary(manager.store, job_id, save_path, save_dict=True)


@cli.command()
@click.argument('job_ids', nargs=-1, required=True)
@click.option(
    '--interval', type=int, default=300, show_default=True,
    callback=_validate_positive_integer_callback,
    help='Seconds to wait between status checks.'
)
@click.option(
    '--auto-ingest/--no-auto-ingest', default=None,
    help='Ingest results as soon as a job completes. Defaults to the auto_ingest setting.'
)
@click.option(
    '--max-rounds', type=int, default=None,
    callback=_validate_positive_integer_callback,
    help='Stop after this many rounds even if some jobs are still open.'
)
@click.option(
    '--n-jobs', type=int, default=5, show_default=True,
    callback=_validate_positive_integer_callback,
    help='Number of parallel status checks.'
)
@click.pass_context
@handle_batch_errors
def poll(ctx, job_ids, interval, auto_ingest, max_rounds, n_jobs):
    """Track batch jobs until every one is finished."""
    manager = _safe_get_manager(ctx)
    statuses = manager.poll(list(job_ids), interval=interval, auto_ingest=auto_ingest,
                            max_workers=n_jobs, max_rounds=max_rounds)
    echo_json(statuses)


@cli.command()
@click.argument('job_id')
@owner_option
@click.option('--progress/--no-progress', default=True, show_default=True,
              help='Show a progress bar while writing results.')
@click.pass_context
@handle_batch_errors
def ingest(ctx, job_id, owner_id, progress):
    """Download and store the results of a completed batch job."""
    manager = _safe_get_manager(ctx)
    summary = manager.ingest(job_id, owner_id, show_progress=progress)
    if summary.already_processed:
        logging.info(f"Batch job {job_id} was already processed.")
    echo_json(summary.to_dict())


@cli.command()
@click.argument('job_id')
@owner_option
@click.pass_context
@handle_batch_errors
def cancel(ctx, job_id, owner_id):
    """Cancel a pending or running batch job."""
    manager = _safe_get_manager(ctx)
    job = manager.cancel(job_id, owner_id)
    click.echo(f"{job.id} {job.status}")


@cli.command()
@click.argument('job_id')
@owner_option
@click.option('--relaunch/--no-relaunch', default=True, show_default=True,
              help='Send the requeued units to the provider right away.')
@click.pass_context
@handle_batch_errors
def retry_failed(ctx, job_id, owner_id, relaunch):
    """Requeue every failed unit of a finished batch job."""
    manager = _safe_get_manager(ctx, online=relaunch)
    handle = manager.retry_failed(job_id, owner_id, relaunch=relaunch)
    echo_json(handle.to_dict())
    if handle.status == 'failed':
        raise SystemExit(1)


@cli.command()
@click.argument('job_id')
@click.argument('unit_ids', nargs=-1, required=True)
@owner_option
@click.option('--relaunch/--no-relaunch', default=True, show_default=True,
              help='Send the requeued units to the provider right away.')
@click.pass_context
@handle_batch_errors
def retry_units(ctx, job_id, unit_ids, owner_id, relaunch):
    """Requeue specific units of a finished batch job."""
    manager = _safe_get_manager(ctx, online=relaunch)
    handle = manager.retry_units(job_id, list(unit_ids), owner_id, relaunch=relaunch)
    echo_json(handle.to_dict())
    if handle.status == 'failed':
        raise SystemExit(1)


@cli.command()
@click.argument('job_id')
@owner_option
@click.pass_context
@handle_batch_errors
def resubmit(ctx, job_id, owner_id):
    """Send a reopened batch job to the provider."""
    manager = _safe_get_manager(ctx)
    handle = manager.resubmit(job_id, owner_id)
    echo_json(handle.to_dict())
    if handle.status == 'failed':
        raise SystemExit(1)


#=======================================================================
# Listing and Export
#=======================================================================

@cli.command()
@owner_option
@click.option('--status', type=str, default=None, help='Only list jobs with this status.')
@click.option('--limit', type=int, default=None, callback=_validate_positive_integer_callback,
              help='Maximum number of jobs to list.')
@click.pass_context
@handle_batch_errors
def list_jobs(ctx, owner_id, status, limit):
    """List batch jobs, newest first."""
    manager = _safe_get_manager(ctx, online=False)
    jobs = manager.list_jobs(owner_id, status=status, limit=limit)
    if not jobs:
        if status is None:
            logging.info("No batch jobs found.")
        else:
            logging.info(f"No jobs found matching status '{status}'.")
        return
    for job in jobs:
        click.echo(_format_job_line(job))


@cli.command()
@click.argument('job_id')
@click.argument('path', type=click.Path())
@owner_option
@click.option(
    '--file-type', default='jsonl',
    type=click.Choice(['jsonl', 'csv', 'parquet'], case_sensitive=False),
    show_default=True, help='Output file format.'
)
@click.option('--only-succeed', is_flag=True, help='Export only units that succeeded.')
@click.pass_context
@handle_batch_errors
def export(ctx, job_id, path, owner_id, file_type, only_succeed):
    """Export the per-unit results of a batch job to PATH."""
    manager = _safe_get_manager(ctx, online=False)
    written = manager.export_results(job_id, path, file_type=file_type.lower(),
                                     owner_id=owner_id, only_succeed=only_succeed)
    click.echo(str(written))


@cli.command()
@click.option('--host', default='127.0.0.1', show_default=True, help='Interface to bind.')
@click.option('--port', default=8000, show_default=True, type=int,
              callback=_validate_positive_integer_callback, help='Port to bind.')
@click.pass_context
def serve(ctx, host, port):
    """Serve the HTTP API with uvicorn."""
    import uvicorn
    from ..server import create_app

    app = create_app(settings=ctx.obj['settings'])
    logging.info(f"Serving on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port)
