from __future__ import annotations

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import structlog
from fastapi import Response
from fastapi.responses import StreamingResponse

from .admission import AdmissionController
from .context import ContextResolver
from .errors import ToolError, ToolExecutionError
from .executor import AgentExecutor
from .interpreter import ErrorInterpreter, rate_limit_response, timeout_response
from .llm import ToolBinding
from .models import ChatTurn, UserContext
from .prompts import build_system_prompt
from .writer import ResponseWriter

logger = structlog.get_logger(__name__)

STREAM_TIMEOUT_NOTICE = "\n\nResponse timeout. Please try again."
STREAM_INTERRUPTED_NOTICE = "\n\nSorry, there was an error in the response stream."
PROBE_OK_MESSAGE = (
    "I apologize, but I encountered a streaming issue. However, I can confirm the connection is "
    "working. Please try your request again."
)
PROBE_FAILED_MESSAGE = "I apologize, but I encountered an issue with the AI service. Please try again later."


class GenerationState(str, Enum):
    IDLE = "idle"
    ADMITTED = "admitted"
    CONTEXT_RESOLVED = "context_resolved"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FALLBACK_TEXT = "fallback_text"
    FAILED = "failed"
    CLOSED = "closed"


class GenerationModel(Protocol):
    def ensure_configured(self) -> None: ...

    def stream_text(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: ToolBinding | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
    ) -> Any: ...

    async def complete_text(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: ToolBinding | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str: ...

    async def probe(self) -> str: ...


@dataclass
class GenerationOutcome:
    state: GenerationState = GenerationState.IDLE
    chunk_count: int = 0
    content_length: int = 0
    fallback_used: bool = False
    probe_used: bool = False
    tool_calls: list[str] = field(default_factory=list)
    mutation_attempted: bool = False
    history: list[GenerationState] = field(default_factory=list)

    def move(self, state: GenerationState) -> None:
        self.state = state
        self.history.append(state)


class GenerationOrchestrator:
    def __init__(
        self,
        *,
        model: GenerationModel,
        executor: AgentExecutor,
        stream_timeout_seconds: float,
        iteration_timeout_seconds: float,
    ) -> None:
        self.model = model
        self.executor = executor
        self.stream_timeout_seconds = stream_timeout_seconds
        self.iteration_timeout_seconds = iteration_timeout_seconds

    def bind_tools(self, ctx: UserContext, outcome: GenerationOutcome | None = None) -> ToolBinding:
        registry = self.executor.registry

        async def run(name: str, arguments: str) -> dict[str, Any]:
            if outcome is not None:
                outcome.tool_calls.append(name)
                if name in registry.list_names() and registry.resolve(name).mutating:
                    outcome.mutation_attempted = True
            try:
                return await self.executor.execute(ctx, name, arguments)
            except ToolExecutionError as exc:
                return {"success": False, "actionFailed": True, "action": exc.tool_name, "error": exc.message}
            except ToolError as exc:
                return {"success": False, "error": exc.message}

        return ToolBinding(specs=registry.specs(), run=run)

    def build_messages(self, ctx: UserContext, turns: list[ChatTurn]) -> list[dict[str, Any]]:
        return [{"role": "system", "content": build_system_prompt(ctx)}, *[turn.as_message() for turn in turns]]

    async def generate(
        self,
        turns: list[ChatTurn],
        ctx: UserContext,
        writer: ResponseWriter,
        outcome: GenerationOutcome | None = None,
    ) -> GenerationOutcome:
        outcome = outcome or GenerationOutcome()
        messages = self.build_messages(ctx, turns)
        tools = self.bind_tools(ctx, outcome)
        log = logger.bind(user_id=ctx.user_id, role=ctx.role.value)
        self.model.ensure_configured()
        log.info("generation_started", message_count=len(messages), tool_count=len(tools.specs))
        writer.open()
        outcome.move(GenerationState.STREAMING)

        try:
            await asyncio.wait_for(
                self._produce(messages, tools, writer, outcome, log),
                timeout=self.stream_timeout_seconds,
            )
        except asyncio.TimeoutError:
            log.error("stream_timeout", chunks=outcome.chunk_count)
            writer.write(STREAM_TIMEOUT_NOTICE)
            writer.end()
            outcome.move(GenerationState.FAILED)
            outcome.move(GenerationState.CLOSED)
            return outcome

        if writer.writable:
            writer.end()
            log.info(
                "generation_completed",
                state=outcome.state.value,
                chunks=outcome.chunk_count,
                content_length=outcome.content_length,
            )
        outcome.move(GenerationState.CLOSED)
        return outcome

    async def _consume(
        self,
        messages: list[dict[str, Any]],
        tools: ToolBinding,
        writer: ResponseWriter,
        outcome: GenerationOutcome,
        log,
    ) -> None:
        async with aclosing(self.model.stream_text(messages, tools=tools)) as stream:
            async for delta in stream:
                if not writer.writable:
                    log.warning("response_stream_ended_prematurely", chunks=outcome.chunk_count)
                    return
                if outcome.chunk_count == 0:
                    log.info("first_chunk_received")
                outcome.chunk_count += 1
                outcome.content_length += len(delta)
                writer.write(delta)
                if outcome.chunk_count % 5 == 0:
                    log.debug("chunks_streamed", chunks=outcome.chunk_count)

    async def _produce(
        self,
        messages: list[dict[str, Any]],
        tools: ToolBinding,
        writer: ResponseWriter,
        outcome: GenerationOutcome,
        log,
    ) -> None:
        try:
            await asyncio.wait_for(
                self._consume(messages, tools, writer, outcome, log),
                timeout=self.iteration_timeout_seconds,
            )
        except Exception as exc:
            log.error("stream_iteration_failed", error_type=type(exc).__name__, chunks=outcome.chunk_count)
            if outcome.chunk_count:
                writer.write(STREAM_INTERRUPTED_NOTICE)
                outcome.move(GenerationState.FAILED)
                return
            await self._fallback(messages, tools, writer, outcome, log)
            return

        if outcome.chunk_count == 0:
            await self._probe(writer, outcome, log)
            return
        outcome.move(GenerationState.COMPLETED)

    async def _fallback(
        self,
        messages: list[dict[str, Any]],
        tools: ToolBinding,
        writer: ResponseWriter,
        outcome: GenerationOutcome,
        log,
    ) -> None:
        outcome.fallback_used = True
        # A booking or cancellation may already have run; never replay it.
        fallback_tools = None if outcome.mutation_attempted else tools
        log.info("fallback_text_requested", with_tools=fallback_tools is not None)
        try:
            full_text = await self.model.complete_text(messages, tools=fallback_tools)
        except Exception as exc:
            log.error("fallback_text_failed", error_type=type(exc).__name__)
            writer.write(STREAM_INTERRUPTED_NOTICE)
            outcome.move(GenerationState.FAILED)
            return
        log.info("fallback_text_received", content_length=len(full_text))
        if full_text:
            writer.write(full_text)
            outcome.chunk_count = 1
            outcome.content_length = len(full_text)
            outcome.move(GenerationState.FALLBACK_TEXT)
            return
        await self._probe(writer, outcome, log)

    async def _probe(self, writer: ResponseWriter, outcome: GenerationOutcome, log) -> None:
        outcome.probe_used = True
        log.warning("no_chunks_received_probing_model")
        try:
            await self.model.probe()
        except Exception as exc:
            log.error("probe_call_failed", error_type=type(exc).__name__)
            writer.write(PROBE_FAILED_MESSAGE)
            outcome.move(GenerationState.FAILED)
            return
        log.info("probe_call_succeeded")
        writer.write(PROBE_OK_MESSAGE)
        outcome.move(GenerationState.FALLBACK_TEXT)


class ChatRequestHandler:
    """Admission, context resolution and generation for one inbound chat turn."""

    def __init__(
        self,
        *,
        admission: AdmissionController,
        resolver: ContextResolver,
        orchestrator: GenerationOrchestrator,
        interpreter: ErrorInterpreter,
        response_timeout_seconds: float,
    ) -> None:
        self.admission = admission
        self.resolver = resolver
        self.orchestrator = orchestrator
        self.interpreter = interpreter
        self.response_timeout_seconds = response_timeout_seconds

    async def _run(
        self,
        turns: list[ChatTurn],
        user_id: str,
        role: str,
        writer: ResponseWriter,
        outcome: GenerationOutcome,
    ) -> GenerationOutcome:
        try:
            ctx = await self.resolver.resolve(user_id, role)
            outcome.move(GenerationState.CONTEXT_RESOLVED)
            return await self.orchestrator.generate(turns, ctx, writer, outcome)
        except Exception as exc:
            outcome.move(GenerationState.FAILED)
            if not writer.headers_sent:
                raise
            self.interpreter.handle(exc, writer)
            outcome.move(GenerationState.CLOSED)
            return outcome

    async def handle(self, *, origin: str, user_id: str, role: str, turns: list[ChatTurn]) -> Response:
        started = time.monotonic()
        log = logger.bind(user_id=user_id, role=role, origin=origin)
        log.info("chat_request_received", message_count=len(turns))

        decision = self.admission.admit(origin)
        if not decision.allowed:
            return rate_limit_response(decision)

        outcome = GenerationOutcome()
        outcome.move(GenerationState.ADMITTED)
        writer = ResponseWriter()
        task = asyncio.create_task(self._run(turns, user_id, role, writer, outcome))
        committed = asyncio.create_task(writer.wait_committed())
        try:
            await asyncio.wait(
                {task, committed},
                timeout=self.response_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            committed.cancel()

        if writer.headers_sent:
            log.info("chat_stream_committed", elapsed_ms=int((time.monotonic() - started) * 1000))
            return StreamingResponse(writer.body(), status_code=200, headers=writer.headers)

        if task.done():
            return self.interpreter.handle(task.exception() or RuntimeError("Generation ended without output"), writer)

        log.error("request_timeout", timeout_seconds=self.response_timeout_seconds)
        task.cancel()
        writer.destroy()
        return timeout_response()
