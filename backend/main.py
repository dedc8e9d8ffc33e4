from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import time
from contextlib import aclosing
from typing import Any, Literal

import structlog
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import Settings, bootstrap_local_env, load_settings
from medic_agent_core import (
    AdmissionController,
    AgentExecutor,
    ChatModelClient,
    ChatRequestHandler,
    ChatTurn,
    ContextResolver,
    ErrorInterpreter,
    GenerationOrchestrator,
    InMemoryExpiringCache,
    PolicyEngine,
    ToolRegistry,
)
from medic_agent_core.admission import ExpiringCache
from medic_agent_core.errors import ModelServiceError
from medic_agent_core.orchestrator import GenerationModel
from medic_tools import DomainGateway, HttpDomainGateway, MedicToolset, register_tools

bootstrap_local_env()
settings = load_settings()

logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO), format="%(message)s")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

SELF_TEST_MESSAGES = [
    {"role": "user", "content": "Respond with exactly 'TEST_SUCCESS' and nothing else."},
]
SELF_TEST_TOKEN = "TEST_SUCCESS"


class MedicAssistantApp:
    def __init__(
        self,
        settings: Settings,
        *,
        gateway: DomainGateway | None = None,
        model: GenerationModel | None = None,
        cache: ExpiringCache | None = None,
    ) -> None:
        self.settings = settings
        self.gateway = gateway or HttpDomainGateway(
            settings.gateway_base_url,
            service_token=settings.gateway_token,
            timeout_seconds=settings.gateway_timeout_seconds,
        )
        self.model = model or ChatModelClient(
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            temperature=settings.llm_temperature,
            max_output_tokens=settings.llm_max_output_tokens,
            max_tool_steps=settings.llm_max_tool_steps,
            timeout_seconds=settings.stream_timeout_seconds,
        )
        self.registry = ToolRegistry()
        self.toolset = MedicToolset(self.gateway)
        register_tools(self.registry, self.toolset)

        self.policy = PolicyEngine(allowlist=set(self.registry.list_names()))
        self.executor = AgentExecutor(registry=self.registry, policy=self.policy)
        self.resolver = ContextResolver(self.gateway)
        self.orchestrator = GenerationOrchestrator(
            model=self.model,
            executor=self.executor,
            stream_timeout_seconds=settings.stream_timeout_seconds,
            iteration_timeout_seconds=settings.stream_iteration_timeout_seconds,
        )
        self.interpreter = ErrorInterpreter()
        self.admission = AdmissionController(
            cache or InMemoryExpiringCache(),
            limit=settings.rate_limit_count,
            ttl_seconds=settings.rate_limit_ttl_seconds,
        )
        self.handler = ChatRequestHandler(
            admission=self.admission,
            resolver=self.resolver,
            orchestrator=self.orchestrator,
            interpreter=self.interpreter,
            response_timeout_seconds=settings.response_timeout_seconds,
        )

    async def run_model_self_test(self) -> dict[str, Any]:
        started = time.monotonic()
        chunks: list[str] = []

        async def collect() -> None:
            async with aclosing(self.model.stream_text(SELF_TEST_MESSAGES, max_output_tokens=50)) as stream:
                async for delta in stream:
                    chunks.append(delta)

        await asyncio.wait_for(collect(), timeout=self.settings.probe_timeout_seconds)
        response = "".join(chunks).strip()
        if SELF_TEST_TOKEN not in response:
            raise ModelServiceError("The model did not return the expected test response.")
        return {
            "response": response,
            "chunkCount": len(chunks),
            "durationMs": int((time.monotonic() - started) * 1000),
            "success": True,
        }


container = MedicAssistantApp(settings)
app = FastAPI(title="Medic Assistant Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.allowed_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatMessage] = Field(min_length=1)


_TRUSTED_USER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{1,63}$")


def _validated_trusted_user_id(x_user_id: str) -> str:
    candidate = x_user_id.strip()
    if not candidate or not _TRUSTED_USER_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid X-User-Id")
    return candidate


def get_user_id(auth_header: str | None) -> str:
    if not auth_header:
        raise HTTPException(status_code=401, detail="Missing Authorization")
    raw = auth_header.replace("Bearer", "", 1).strip()
    if not raw:
        raise HTTPException(status_code=401, detail="Missing Authorization")
    if len(raw) > 96:
        return f"token_{hashlib.sha256(raw.encode('utf-8')).hexdigest()[:24]}"
    return raw


def resolve_user_id(authorization: str | None, x_user_id: str | None) -> str:
    if x_user_id is not None:
        return _validated_trusted_user_id(x_user_id)
    return get_user_id(authorization)


def resolve_user_role(x_user_role: str | None) -> str:
    role = (x_user_role or "").strip().lower()
    if not role:
        raise HTTPException(status_code=401, detail="Missing X-User-Role")
    return role


def _client_ip(request: Request, *, trust_forwarded_for: bool = True) -> str:
    forwarded = request.headers.get("x-forwarded-for") if trust_forwarded_for else None
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/chat")
async def chat(
    payload: ChatRequest,
    request: Request,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    role = resolve_user_role(x_user_role)
    turns = [ChatTurn(role=message.role, content=message.content) for message in payload.messages]
    return await container.handler.handle(
        origin=_client_ip(request, trust_forwarded_for=container.settings.trust_forwarded_for),
        user_id=user_id,
        role=role,
        turns=turns,
    )


@app.get("/chat/test")
async def chat_test():
    try:
        return await container.run_model_self_test()
    except asyncio.TimeoutError:
        logger.error("model_self_test_timeout", timeout_seconds=container.settings.probe_timeout_seconds)
        message = "The model did not respond in time."
    except Exception as exc:
        logger.error("model_self_test_failed", error_type=type(exc).__name__)
        message = container.interpreter.client_message(exc)
    return JSONResponse(status_code=502, content={"error": "Model test failed", "message": message})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
