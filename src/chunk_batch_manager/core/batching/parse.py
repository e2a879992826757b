# -*- coding: utf-8 -*-
"""
Parsing of provider output and error files into per-request outcome records.

Each line of an OpenAI-compatible batch output file looks like:

    {"id": "...", "custom_id": "<unit id>",
     "response": {"status_code": 200, "body": {"choices": [...], "usage": {...}}},
     "error": null}

Lines of the error file share the same envelope, with a non-200 status code
or a top-level ``error`` object.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Literal, Optional


@dataclass
class OutcomeRecord:
    """The provider's answer for one request, keyed by custom_id."""
    custom_id: str
    succeeded: bool
    output_text: Optional[str] = None
    finish_reason: Optional[str] = None
    usage: dict = field(default_factory=dict)
    model: Optional[str] = None
    error_message: Optional[str] = None
    status_code: Optional[int] = None
    source: str = 'output'
    line_number: int = 0

    @property
    def input_tokens(self):
        return int(self.usage.get('prompt_tokens') or 0)

    @property
    def output_tokens(self):
        return int(self.usage.get('completion_tokens') or 0)


@dataclass
class MalformedLine:
    """A line that could not be turned into an OutcomeRecord."""
    line_number: int
    reason: str
    source: str = 'output'
    custom_id: Optional[str] = None


@dataclass
class ParsedOutput:
    records: list = field(default_factory=list)
    malformed: list = field(default_factory=list)

    def extend(self, other: "ParsedOutput"):
        self.records.extend(other.records)
        self.malformed.extend(other.malformed)
        return self


def _error_text(error) -> Optional[str]:
    if not error:
        return None
    if isinstance(error, dict):
        message = error.get('message') or error.get('code')
        return str(message) if message else json.dumps(error)
    return str(error)


def parse_outcome_line(item: dict, source: str = 'output', line_number: int = 0) -> OutcomeRecord:
    """
    Turn one decoded output line into an OutcomeRecord.

    A request succeeded when the envelope carries no error, the status code
    is 200 (or absent) and the first choice has text content. Anything else
    is a failure, with the provider's error message when one is present.

    Args:
        item (dict): Decoded JSON line.
        source (str): 'output' or 'error', the file the line came from.
        line_number (int): 1-based line number, for logging.

    Raises:
        ValueError: If the line has no custom_id.
    """
    custom_id = item.get('custom_id')
    if not custom_id:
        raise ValueError("missing custom_id")
    custom_id = str(custom_id)

    response = item.get('response') or {}
    body = response.get('body') or {}
    status_code = response.get('status_code')
    envelope_error = _error_text(item.get('error')) or _error_text(body.get('error'))

    record = OutcomeRecord(
        custom_id=custom_id,
        succeeded=False,
        usage=body.get('usage') or {},
        model=body.get('model'),
        status_code=status_code,
        source=source,
        line_number=line_number,
    )

    if envelope_error:
        record.error_message = envelope_error
        return record
    if status_code is not None and status_code != 200:
        record.error_message = f"Provider returned status code {status_code}"
        return record

    choices = body.get('choices') or []
    if not choices:
        record.error_message = "Response has no choices"
        return record

    choice = choices[0]
    content = (choice.get('message') or {}).get('content')
    record.finish_reason = choice.get('finish_reason')
    if not isinstance(content, str) or not content.strip():
        record.error_message = f"Empty response content (finish_reason={record.finish_reason})"
        return record

    record.succeeded = True
    record.output_text = content
    return record


def parse_batch_output(text: str, source: Literal['output', 'error'] = 'output') -> ParsedOutput:
    """
    Parse the content of a provider output or error file.

    Blank lines are ignored. Lines that are not JSON objects or that lack a
    custom_id are reported as malformed instead of raising.

    Args:
        text (str): Raw JSONL content downloaded from the provider.
        source (str): 'output' or 'error'.

    Returns:
        ParsedOutput: Outcome records and malformed lines, in file order.
    """
    parsed = ParsedOutput()
    for line_number, line in enumerate((text or "").splitlines(), start=1):
        if not line.strip():
            continue
        try:
            item = json.loads(line)
        except json.JSONDecodeError as e:
            parsed.malformed.append(MalformedLine(line_number, f"invalid JSON: {e.msg}", source))
            continue
        if not isinstance(item, dict):
            parsed.malformed.append(MalformedLine(line_number, "line is not a JSON object", source))
            continue
        try:
            parsed.records.append(parse_outcome_line(item, source, line_number))
        except (ValueError, TypeError, AttributeError) as e:
            parsed.malformed.append(
                MalformedLine(line_number, str(e), source, custom_id=item.get('custom_id'))
            )

    for bad in parsed.malformed:
        logging.warning(f"Skipping malformed {bad.source} line {bad.line_number}: {bad.reason}")
    logging.debug(f"Parsed {len(parsed.records)} outcome records from {source} file")
    return parsed


def summarize_outcomes(records: list, return_as: Literal['print', 'dict'] = 'dict'):
    """
    Summarize parsed outcome records:
    - Total count
    - Successful vs failed requests
    - Breakdown of successful requests by finish_reason

    Args:
        records (list[OutcomeRecord]): Parsed records.
        return_as: 'print' to display the summary, 'dict' to return it.

    Returns:
        dict: Summary stats if return_as == 'dict'.
    """
    total = len(records)
    success = sum(1 for r in records if r.succeeded)
    failed = total - success

    finish_reasons = {}
    for r in records:
        if r.succeeded:
            reason = r.finish_reason or 'N/A'
            finish_reasons[reason] = finish_reasons.get(reason, 0) + 1

    def percent(n):
        return round(100 * n / total, 1) if total > 0 else 0.0

    summary = {
        'total': total,
        'successful': {'count': success, 'percent': percent(success)},
        'failed': {'count': failed, 'percent': percent(failed)},
        'finish_reasons': finish_reasons,
    }

    if return_as == 'dict':
        return summary

    print(f"\nParsed {total} outcomes:")
    print(f"  Successful: {success} ({summary['successful']['percent']}%)")
    for reason, count in finish_reasons.items():
        print(f"    - {reason}: {count}")
    print(f"  Failed:     {failed} ({summary['failed']['percent']}%)")
    print()
