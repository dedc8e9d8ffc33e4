from __future__ import annotations

import asyncio
import json

from medic_agent_core.admission import REASON_BLOCKED, AdmissionDecision
from medic_agent_core.errors import ProfileNotFound
from medic_agent_core.interpreter import (
    STREAM_ERROR_NOTICE,
    ErrorInterpreter,
    rate_limit_response,
    timeout_response,
)
from medic_agent_core.writer import STREAM_HEADERS, ResponseWriter


def test_writer_commits_on_first_write_and_ignores_late_writes():
    async def _go():
        writer = ResponseWriter()
        writer.open()
        assert not writer.headers_sent
        assert writer.write("") is False
        assert not writer.headers_sent
        assert writer.write("hello") is True
        assert writer.headers_sent
        writer.end()
        writer.end()
        assert writer.write("late") is False
        body = b"".join([chunk async for chunk in writer.body()]).decode("utf-8")
        return writer, body

    writer, body = asyncio.run(_go())
    assert body == "hello"
    assert writer.ended
    assert writer.headers["Content-Type"] == STREAM_HEADERS["Content-Type"]
    assert writer.chars_written == 5


def test_destroyed_writer_is_not_writable():
    async def _go():
        writer = ResponseWriter()
        writer.destroy()
        return writer, writer.write("x")

    writer, accepted = asyncio.run(_go())
    assert accepted is False
    assert not writer.writable
    assert not writer.headers_sent


def test_interpreter_returns_json_before_headers():
    async def _go():
        writer = ResponseWriter()
        return ErrorInterpreter().handle(ProfileNotFound("patient"), writer)

    response = asyncio.run(_go())
    assert response.status_code == 500
    assert json.loads(response.body) == {
        "error": "Failed to generate response",
        "message": "Patient profile not found",
    }


def test_interpreter_hides_unexpected_error_details():
    async def _go():
        return ErrorInterpreter().handle(KeyError("secret internals"), ResponseWriter())

    response = asyncio.run(_go())
    assert json.loads(response.body)["message"] == "Unknown error"


def test_interpreter_appends_notice_after_headers():
    async def _go():
        writer = ResponseWriter()
        writer.write("Partial")
        result = ErrorInterpreter().handle(RuntimeError("boom"), writer)
        body = b"".join([chunk async for chunk in writer.body()]).decode("utf-8")
        return result, body, writer

    result, body, writer = asyncio.run(_go())
    assert result is None
    assert body == "Partial" + STREAM_ERROR_NOTICE
    assert writer.ended


def test_rate_limit_and_timeout_bodies():
    limited = rate_limit_response(AdmissionDecision("deny", REASON_BLOCKED))
    assert limited.status_code == 429
    assert limited.headers["X-RateLimit-Reason"] == "blocked"
    assert json.loads(limited.body) == {
        "error": "Rate limit exceeded",
        "message": "You have reached the message limit for today. Please try again later.",
    }

    timed_out = timeout_response()
    assert timed_out.status_code == 408
    assert json.loads(timed_out.body)["error"] == "Request timeout"
