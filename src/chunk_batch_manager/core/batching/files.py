# -*- coding: utf-8 -*-

import json
import logging
import re
from typing import Iterable, List, Optional, Tuple


_CHAR_REPLACEMENTS = {
    '‘': "'",
    '’': "'",
    '“': '"',
    '”': '"',
    '–': '-',
    '—': '-',
    '…': '...',
    ' ': ' ',
}
_TRANSLATION = str.maketrans(_CHAR_REPLACEMENTS)
# C0 and C1 control characters except newline.
_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0b-\x1f\x7f-\x9f]')
_REPEATED_BLANKS = re.compile(r'[ ]{2,}')


def sanitize_prompt(text: str) -> str:
    """
    Normalize prompt text before it is written to a batch input file.

    Smart quotes, dashes, ellipsis and non-breaking spaces are replaced by
    their ASCII counterparts, line endings are normalized to '\\n', tabs
    become four spaces, remaining control characters become spaces and
    repeated spaces are collapsed.

    Args:
        text (str): Raw prompt text.

    Returns:
        str: Sanitized text, stripped of leading and trailing whitespace.
    """
    text = text.translate(_TRANSLATION)
    text = text.replace('\r\n', '\n').replace('\r', '\n')
    text = text.replace('\t', '    ')
    text = _CONTROL_CHARS.sub(' ', text)
    text = _REPEATED_BLANKS.sub(' ', text)
    return text.strip()


def build_request(
        custom_id: str,
        user_content: str,
        system_message: str,
        model: str,
        endpoint: str = "/v1/chat/completions",
        max_tokens: int = 4000,
        temperature: float = 0.1,
    ) -> dict:
    """
    Build one batch request record.

    Args:
        custom_id (str): Correlation id echoed back by the provider (the unit id).
        user_content (str): User prompt, sanitized here.
        system_message (str): System prompt, sanitized here.
        model (str): Model name or Azure deployment name.
        endpoint (str): Relative URL of the request. Defaults to "/v1/chat/completions".
        max_tokens (int): Completion token cap.
        temperature (float): Sampling temperature.

    Returns:
        dict: The request record.
    """
    return {
        "custom_id": custom_id,
        "method": "POST",
        "url": endpoint,
        "body": {
            "model": model,
            "messages": [
                {"role": "system", "content": sanitize_prompt(system_message)},
                {"role": "user", "content": sanitize_prompt(user_content)},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
    }


def build_batch_payload(
        prompts: Iterable[Tuple[str, str]],
        system_message: str,
        model: str,
        endpoint: str = "/v1/chat/completions",
        max_tokens: int = 4000,
        temperature: float = 0.1,
    ) -> str:
    """
    Build the JSONL batch input: one request per (custom_id, prompt) pair.

    Records are newline-joined and ASCII-escaped so that any unit text
    survives the upload unchanged. Results are correlated by ``custom_id``
    only, so duplicate ids are rejected.

    Args:
        prompts: Iterable of (custom_id, user prompt) pairs, in submission order.
        system_message (str): System prompt shared by every request.
        model (str): Model name.
        endpoint (str): Relative URL of each request.
        max_tokens (int): Completion token cap per request.
        temperature (float): Sampling temperature.

    Returns:
        str: The JSONL payload.

    Raises:
        ValueError: If the payload would be empty or a custom_id repeats.
    """
    lines: List[str] = []
    seen = set()
    for custom_id, prompt in prompts:
        if custom_id in seen:
            raise ValueError(f"Duplicate custom_id in batch payload: {custom_id}")
        seen.add(custom_id)
        request = build_request(
            custom_id=custom_id,
            user_content=prompt,
            system_message=system_message,
            model=model,
            endpoint=endpoint,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        lines.append(json.dumps(request, ensure_ascii=True))

    if not lines:
        raise ValueError("Cannot build a batch payload without requests.")

    logging.debug(f"Built batch payload with {len(lines)} requests for model {model}")
    return "\n".join(lines)


def payload_custom_ids(payload: str) -> List[str]:
    """Return the custom_ids of a JSONL payload, in order."""
    return [json.loads(line)["custom_id"] for line in payload.splitlines() if line.strip()]


def write_batch_input_file(payload: str, path, encoding: Optional[str] = "utf-8"):
    """
    Write a JSONL payload to disk, e.g. to inspect what would be uploaded.

    Args:
        payload (str): JSONL payload built by build_batch_payload().
        path (str): Destination file path.
    """
    with open(path, 'w', encoding=encoding) as f:
        f.write(payload + '\n')
    logging.info(f"Wrote batch input file with {len(payload_custom_ids(payload))} requests to {path}")
    return path
