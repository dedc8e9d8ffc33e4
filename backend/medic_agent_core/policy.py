from __future__ import annotations

from dataclasses import dataclass

from .models import UserContext
from .registry import ToolDefinition


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    code: str
    message: str


class PolicyEngine:
    """Role gate applied before any tool handler runs; ownership checks live in the handlers."""

    def __init__(self, allowlist: set[str] | None = None) -> None:
        self.allowlist = allowlist

    def evaluate(self, ctx: UserContext, tool: ToolDefinition) -> PolicyDecision:
        if self.allowlist is not None and tool.name not in self.allowlist:
            return PolicyDecision(False, "allowlist_denied", f"Tool '{tool.name}' is not available.")
        if ctx.role not in tool.allowed_roles:
            allowed = ", ".join(sorted(role.value for role in tool.allowed_roles))
            return PolicyDecision(
                False,
                "role_denied",
                f"The '{tool.name}' action is only available to: {allowed}. "
                f"Your current role is '{ctx.role.value}'.",
            )
        return PolicyDecision(True, "ok", "allowed")
