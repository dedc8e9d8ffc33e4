from .admission import AdmissionController, AdmissionDecision, InMemoryExpiringCache
from .context import ContextResolver
from .errors import (
    AssistantError,
    ProfileNotFound,
    ToolAuthorizationError,
    ToolExecutionError,
    ToolNotFound,
    ToolValidationError,
    UnrecognizedRole,
)
from .executor import AgentExecutor
from .interpreter import ErrorInterpreter
from .llm import ChatModelClient, ToolBinding
from .models import ChatTurn, UserContext, UserRole
from .orchestrator import ChatRequestHandler, GenerationOrchestrator, GenerationOutcome, GenerationState
from .policy import PolicyDecision, PolicyEngine
from .registry import ToolDefinition, ToolRegistry
from .writer import ResponseWriter

__all__ = [
    "AdmissionController",
    "AdmissionDecision",
    "AgentExecutor",
    "AssistantError",
    "ChatModelClient",
    "ChatRequestHandler",
    "ChatTurn",
    "ContextResolver",
    "ErrorInterpreter",
    "GenerationOrchestrator",
    "GenerationOutcome",
    "GenerationState",
    "InMemoryExpiringCache",
    "PolicyDecision",
    "PolicyEngine",
    "ProfileNotFound",
    "ResponseWriter",
    "ToolAuthorizationError",
    "ToolBinding",
    "ToolDefinition",
    "ToolExecutionError",
    "ToolNotFound",
    "ToolRegistry",
    "ToolValidationError",
    "UnrecognizedRole",
    "UserContext",
    "UserRole",
]
