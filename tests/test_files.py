import json

import pytest

from chunk_batch_manager.core.batching.files import (
    build_batch_payload,
    build_request,
    payload_custom_ids,
    sanitize_prompt,
    write_batch_input_file,
)


def test_sanitize_prompt_normalizes_text():
    text = "“Hi”\tthere\r\nnext   line — end… "
    assert sanitize_prompt(text) == '"Hi" there\nnext line - end...'


def test_sanitize_prompt_replaces_control_characters():
    assert sanitize_prompt("a\x00b\x07c") == "a b c"


def test_build_request_shape():
    request = build_request("u1", "Summarize this", "Be precise", "gpt-4o-mini",
                            max_tokens=100, temperature=0.2)
    assert request == {
        "custom_id": "u1",
        "method": "POST",
        "url": "/v1/chat/completions",
        "body": {
            "model": "gpt-4o-mini",
            "messages": [
                {"role": "system", "content": "Be precise"},
                {"role": "user", "content": "Summarize this"},
            ],
            "max_tokens": 100,
            "temperature": 0.2,
        },
    }


def test_build_batch_payload_one_line_per_prompt():
    payload = build_batch_payload([("u1", "first"), ("u2", "café")], "system", "gpt-4o-mini")
    lines = payload.split("\n")
    assert len(lines) == 2
    # Non-ASCII text is escaped in the payload and survives decoding.
    assert "\\u00e9" in lines[1]
    assert json.loads(lines[1])["body"]["messages"][1]["content"] == "café"
    assert payload_custom_ids(payload) == ["u1", "u2"]


def test_build_batch_payload_rejects_duplicate_ids():
    with pytest.raises(ValueError, match="Duplicate custom_id"):
        build_batch_payload([("u1", "a"), ("u1", "b")], "system", "gpt-4o-mini")


def test_build_batch_payload_rejects_empty_input():
    with pytest.raises(ValueError):
        build_batch_payload([], "system", "gpt-4o-mini")


def test_write_batch_input_file(tmp_path):
    payload = build_batch_payload([("u1", "first")], "system", "gpt-4o-mini")
    path = write_batch_input_file(payload, tmp_path / "input.jsonl")
    assert path.read_text(encoding="utf-8") == payload + "\n"
