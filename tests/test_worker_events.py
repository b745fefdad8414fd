from __future__ import annotations

import json

from relayd.worker.events import (
    MessageEvent,
    NoopEvent,
    ResultEvent,
    StreamDecoder,
    ToolUseEvent,
    decode_line,
)


def _assistant(*blocks: dict) -> str:
    return json.dumps({"type": "assistant", "message": {"content": list(blocks)}}, ensure_ascii=False)


def test_decode_assistant_text_and_tool_use() -> None:
    line = _assistant(
        {"type": "text", "text": "Looking at the file"},
        {"type": "tool_use", "name": "Edit", "input": {"file_path": "/repo/app.py"}},
    )

    events = decode_line(line)

    assert events == [
        MessageEvent("Looking at the file"),
        ToolUseEvent("Edit", {"file_path": "/repo/app.py"}),
    ]
    assert events[1].file_path == "/repo/app.py"
    assert events[1].describe() == "Edit: app.py"


def test_decode_result_reads_usage_and_error_flag() -> None:
    line = json.dumps(
        {
            "type": "result",
            "subtype": "success",
            "result": "All done",
            "session_id": "abc",
            "usage": {"input_tokens": 120, "output_tokens": 30},
        }
    )

    (event,) = decode_line(line)

    assert isinstance(event, ResultEvent)
    assert event.text == "All done"
    assert event.is_error is False
    assert event.session_id == "abc"
    assert event.units == 150

    (failed,) = decode_line(json.dumps({"type": "result", "subtype": "error_max_turns"}))
    assert failed.is_error is True
    assert failed.units is None


def test_malformed_and_unknown_lines_are_noops() -> None:
    assert decode_line("") == []
    assert isinstance(decode_line("{not json")[0], NoopEvent)
    assert isinstance(decode_line(json.dumps({"type": "system", "subtype": "init"}))[0], NoopEvent)
    assert isinstance(decode_line("[1, 2]")[0], NoopEvent)


def test_bash_tool_describe_uses_first_command_line() -> None:
    event = ToolUseEvent("Bash", {"command": "pytest -q\necho done"})

    assert event.describe() == "Bash: pytest -q"
    assert event.file_path is None


def test_stream_decoder_buffers_partial_lines() -> None:
    decoder = StreamDecoder()
    line = _assistant({"type": "text", "text": "héllo"}).encode("utf-8") + b"\n"
    split_at = line.index("é".encode("utf-8")) + 1

    assert decoder.feed(line[:split_at]) == []
    assert decoder.feed(line[split_at:]) == [MessageEvent("héllo")]
    assert decoder.flush() == []


def test_stream_decoder_flush_emits_trailing_line() -> None:
    decoder = StreamDecoder()
    decoder.feed(json.dumps({"type": "result", "result": "tail"}))

    events = decoder.flush()

    assert len(events) == 1
    assert isinstance(events[0], ResultEvent)
    assert events[0].text == "tail"
