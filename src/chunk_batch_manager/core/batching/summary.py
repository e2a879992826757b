# -*- coding: utf-8 -*-

import json
import math
import logging
from collections import Counter
from statistics import mean, stdev
from pathlib import Path
from typing import List, Literal, Optional

from .models import ARTIFACTS_TABLE, BatchJob, parse_timestamp, utc_now
from .utils import get_job, get_results
from ..utils.misc import mask_path


def _percentage(part, total):
    return round(part / total * 100, 2) if total else 0.0


def _duration_seconds(job: BatchJob):
    started = parse_timestamp(job.started_at) or parse_timestamp(job.created_at)
    if started is None:
        return 0
    ended = parse_timestamp(job.completed_at) or utc_now()
    return max(0, int((ended - started).total_seconds()))


def get_job_summary_dict(store, job_id: str, owner_id: Optional[str] = None) -> dict:
    """
    Generate a progress and metrics summary for one stored batch job.

    Counts come from the job's result rows, finish reasons and completion
    token statistics from its artifacts. The time remaining is a projection
    from the average processing time of the settled results.

    Args:
        store (RowStore): Persistent store.
        job_id (str): Job to summarize.
        owner_id (str, optional): If given, the job must belong to this owner.

    Returns:
        dict: The formatted summary dictionary.
    """
    job = get_job(store, job_id, owner_id)
    results = get_results(store, job_id)
    artifacts = store.select_where(ARTIFACTS_TABLE, {'job_id': job_id})

    # Results by status
    status_counts = Counter(r.status for r in results)
    total = job.total_units
    done = status_counts['done']
    failed = status_counts['error']
    processing = status_counts['processing']
    waiting = status_counts['waiting']

    # Finish reasons
    reasons = Counter(a.get('finish_reason') for a in artifacts)
    reason_stop = reasons['stop']
    reason_length = reasons['length']
    reason_other = sum(reasons.values()) - reason_stop - reason_length

    # Tokens
    prompt_tokens = sum(r.input_tokens for r in results)
    completion_tokens = sum(r.output_tokens for r in results)
    completions = [r.output_tokens for r in results if r.status == 'done']

    # Processing time
    times = [r.processing_time_ms for r in results if r.processing_time_ms is not None]
    avg_time = mean(times) if times else 0
    remaining = waiting + processing
    estimated_remaining = round(remaining * avg_time / 1000) if remaining and avg_time else None

    summary_dict = {
        "job_id": job.id,
        "owner_id": job.owner_id,
        "collection_id": job.collection_id,
        "task": job.task,
        "model": job.model,
        "status": job.status,
        "provider_status": job.provider_status,
        "provider_handle": job.provider_handle,
        "attempt": job.attempt,
        "created_at": job.created_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "expires_at": job.expires_at,
        "duration": _duration_seconds(job),
        "progress": {
            "total": total,
            "completed": done,
            "failed": failed,
            "processing": processing,
            "pending": waiting,
            "percentage": _percentage(done, total),
            "estimated_time_remaining": estimated_remaining,
        },
        "requests": {
            "total": total,
            "completed": done,
            "failed": failed,
            "unresolved": job.unresolved_count,
        },
        "finish_reasons": {
            "stop": reason_stop,
            "length": reason_length,
            "other": reason_other,
            "total": reason_stop + reason_length + reason_other,
        },
        "tokens": {
            "prompt": prompt_tokens,
            "completion": completion_tokens,
            "avg_completion": mean(completions) if completions else 0,
            "std_completion": stdev(completions) if len(completions) > 1 else 0,
            "max_completion": max(completions) if completions else 0,
            "min_completion": min(completions) if completions else 0,
            "total": prompt_tokens + completion_tokens,
            "estimated_input": job.estimated_input_tokens,
            "estimated_output": job.estimated_output_tokens,
        },
        "costs": {
            "estimated": job.estimated_cost,
            "actual": job.actual_cost if job.results_processed else sum(r.cost for r in results),
            "avg_processing_time_ms": round(avg_time),
        },
        "results_processed": job.results_processed,
    }

    history = (job.error_detail or {}).get('history', [])
    if history:
        summary_dict["errors"] = history

    return summary_dict


def format_job_summary(summary_dict: dict) -> str:
    """Render a job summary dictionary as a plain-text report."""
    progress = summary_dict['progress']
    total = progress['total']
    reasons = summary_dict['finish_reasons']
    reasons_total = reasons['total']
    remaining = progress['estimated_time_remaining']

    summary_lines = [
        f"Job ID       : {summary_dict['job_id']}",
        f"Task         : {summary_dict['task']}",
        f"Model        : {summary_dict['model']}",
        f"Status       : {summary_dict['status']} (provider: {summary_dict['provider_status'] or '-'})",
        f"Attempt      : {summary_dict['attempt']}",
        f"Created at   : {summary_dict['created_at']}",
        f"Completed at : {summary_dict['completed_at'] or '-'}",
        f"Duration     : {summary_dict['duration']} seconds",
        "",
        "=== Progress ===",
        f"Total      : {total}",
        f"Completed  : {progress['completed']} ({_percentage(progress['completed'], total):.2f}%)",
        f"Failed     : {progress['failed']} ({_percentage(progress['failed'], total):.2f}%)",
        f"Processing : {progress['processing']}",
        f"Pending    : {progress['pending']}",
        f"Remaining  : {f'~{remaining} seconds' if remaining is not None else '-'}",
        "",
        "=== Finish Reasons ===",
        f"Stop   : {reasons['stop']} ({_percentage(reasons['stop'], reasons_total):.2f}%)",
        f"Length : {reasons['length']} ({_percentage(reasons['length'], reasons_total):.2f}%)",
        f"Other  : {reasons['other']} ({_percentage(reasons['other'], reasons_total):.2f}%)",
        "",
        "=== Token Usage ===",
        f"Total prompt tokens        : {summary_dict['tokens']['prompt']:,}",
        f"Total completion tokens    : {summary_dict['tokens']['completion']:,}",
        f"  - Avg. completion tokens : {summary_dict['tokens']['avg_completion']:.2f}",
        f"  - Std. completion tokens : {summary_dict['tokens']['std_completion']:.2f}",
        f"  - Max. completion tokens : {summary_dict['tokens']['max_completion']:.2f}",
        f"  - Min. completion tokens : {summary_dict['tokens']['min_completion']:.2f}",
        f"Total tokens               : {summary_dict['tokens']['total']:,}",
        "",
        "=== Costs (USD) ===",
        f"Estimated : ${summary_dict['costs']['estimated']:.4f}",
        f"Actual    : ${summary_dict['costs']['actual']:.4f}",
    ]

    if summary_dict.get('errors'):
        summary_lines.append("")
        summary_lines.append("=== History ===")
        for entry in summary_dict['errors']:
            message = entry.get('message') or entry.get('previous_status', '')
            summary_lines.append(f"- [{entry.get('stage')}] {message}")

    return "\n".join(summary_lines)


def save_job_summary(
    store,
    job_id: str,
    summary_path,
    return_as: Optional[Literal['dict', 'print']] = None,
    save_dict: bool = False
):
    """
    Save a text summary of one job.

    Args:
        store (RowStore): Persistent store.
        job_id (str): Job to summarize.
        summary_path (str): Path of the text summary.
        return_as (str, optional): If 'dict', returns the summary as a dictionary; if 'print', prints it.
        save_dict (bool): If True, also saves the dictionary as JSON next to the text file.
    """
    summary_dict = get_job_summary_dict(store, job_id)
    summary = format_job_summary(summary_dict)

    with open(summary_path, "w", encoding="utf-8") as f:
        f.write(summary)
    logging.info(f"Job summary saved to {mask_path(summary_path)}")

    if save_dict:
        json_path = Path(summary_path).with_suffix('.json')
        with open(json_path, "w", encoding="utf-8") as jf:
            json.dump(summary_dict, jf, indent=2, ensure_ascii=False)
        logging.info(f"Job summary dict saved to {mask_path(json_path)}")

    if return_as == 'print':
        print(summary)

    if return_as == 'dict':
        return summary_dict


def aggregate_completion_tokens_stats(summary_list):
    """
    Aggregate completion token statistics from a list of job summaries.

    Returns:
        tuple: (total completion tokens, weighted mean, pooled std, max, min).
    """
    counts = [s['tokens']['completion'] for s in summary_list]
    means = [s['tokens']['avg_completion'] for s in summary_list]
    stds = [s['tokens']['std_completion'] for s in summary_list]
    total_n = sum(counts)
    if total_n == 0:
        return 0, 0, 0, 0, 0

    n_requests = [s['requests']['completed'] for s in summary_list]
    n_total = sum(n_requests)
    if n_total == 0:
        return total_n, 0, 0, 0, 0

    overall_mean = sum(n * m for n, m in zip(n_requests, means)) / n_total

    # Pooled std (within + between)
    sum_sq_diff = sum(max(n - 1, 0) * (std ** 2) for n, std in zip(n_requests, stds))
    sum_sq_mean_diff = sum(n * (m - overall_mean) ** 2 for n, m in zip(n_requests, means))
    pooled_var = (sum_sq_diff + sum_sq_mean_diff) / (n_total - 1) if n_total > 1 else 0
    pooled_std = math.sqrt(pooled_var)

    overall_max = max(s['tokens']['max_completion'] for s in summary_list)
    overall_min = min(s['tokens']['min_completion'] for s in summary_list if s['requests']['completed'])

    return total_n, overall_mean, pooled_std, overall_max, overall_min


def get_general_summary_dict(summary_list: List[dict]) -> dict:
    """
    Aggregate several job summaries (e.g. every job of an owner).

    Args:
        summary_list (List[dict]): Dictionaries from get_job_summary_dict.

    Returns:
        dict: The aggregated summary dictionary.
    """
    status_counts = Counter(s['status'] for s in summary_list)
    durations = [s['duration'] for s in summary_list]

    completion_tokens, avg_completion, std_completion, max_completion, min_completion = \
        aggregate_completion_tokens_stats(summary_list)

    return {
        "jobs": len(summary_list),
        "tasks": sorted({s['task'] for s in summary_list}),
        "models": sorted({s['model'] for s in summary_list if s['model']}),
        "duration": {
            "mean": mean(durations) if durations else 0,
            "std": stdev(durations) if len(durations) > 1 else 0,
        },
        "status_counts": dict(status_counts),
        "requests": {
            "total": sum(s['requests']['total'] for s in summary_list),
            "completed": sum(s['requests']['completed'] for s in summary_list),
            "failed": sum(s['requests']['failed'] for s in summary_list),
            "unresolved": sum(s['requests']['unresolved'] for s in summary_list),
        },
        "tokens": {
            "prompt": sum(s['tokens']['prompt'] for s in summary_list),
            "completion": completion_tokens,
            "avg_completion": avg_completion,
            "std_completion": std_completion,
            "max_completion": max_completion,
            "min_completion": min_completion,
            "total": sum(s['tokens']['total'] for s in summary_list),
        },
        "costs": {
            "estimated": sum(s['costs']['estimated'] for s in summary_list),
            "actual": sum(s['costs']['actual'] for s in summary_list),
        },
    }
