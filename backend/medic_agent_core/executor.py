from __future__ import annotations

import json
from typing import Any

import structlog
from pydantic import ValidationError

from .errors import AssistantError, ToolAuthorizationError, ToolExecutionError, ToolValidationError
from .models import UserContext
from .policy import PolicyEngine
from .registry import ToolDefinition, ToolRegistry

logger = structlog.get_logger(__name__)


def _validation_message(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "input"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "Invalid tool input. " + "; ".join(problems)


class AgentExecutor:
    """Runs one tool call on behalf of a resolved user.

    Read tools never raise: any failure comes back as ``{"success": False, ...}``
    so the conversation can continue. Mutation tools raise ``ToolExecutionError``
    so the failed action is reported explicitly.
    """

    def __init__(self, *, registry: ToolRegistry, policy: PolicyEngine) -> None:
        self.registry = registry
        self.policy = policy

    async def execute(self, ctx: UserContext, tool_name: str, arguments: dict[str, Any] | str | None) -> dict[str, Any]:
        tool = self.registry.resolve(tool_name)
        log = logger.bind(tool=tool.name, user_id=ctx.user_id, role=ctx.role.value)
        log.info("tool_execution_started")
        try:
            payload = self._validate(tool, arguments)
            decision = self.policy.evaluate(ctx, tool)
            if not decision.allowed:
                raise ToolAuthorizationError(decision.message)
            result = await tool.handler(ctx, payload)
        except Exception as exc:
            return self._handle_failure(tool, exc, log)
        log.info("tool_executed", success=result.get("success"), total=result.get("total"))
        return result

    @staticmethod
    def _validate(tool: ToolDefinition, arguments: dict[str, Any] | str | None) -> Any:
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as exc:
                raise ToolValidationError(f"Tool arguments are not valid JSON: {exc.msg}") from exc
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ToolValidationError("Tool arguments must be an object.")
        try:
            return tool.input_model.model_validate(arguments)
        except ValidationError as exc:
            raise ToolValidationError(_validation_message(exc)) from exc

    @staticmethod
    def _handle_failure(tool: ToolDefinition, exc: Exception, log) -> dict[str, Any]:
        known = isinstance(exc, AssistantError)
        message = exc.message if known else f"Failed to complete {tool.name.replace('_', ' ')}"
        if known:
            log.warning("tool_execution_failed", error=message, error_type=type(exc).__name__)
        else:
            log.error("tool_execution_crashed", error_type=type(exc).__name__, exc_info=True)
        if tool.mutating:
            raise ToolExecutionError(tool.name, message) from exc
        return {"success": False, "error": type(exc).__name__ if known else "ToolFailure", "message": message}
