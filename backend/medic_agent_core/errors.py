from __future__ import annotations


class AssistantError(Exception):
    """Base for failures whose message is safe to show to the user."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ContextError(AssistantError):
    pass


class ProfileNotFound(ContextError):
    def __init__(self, role: str) -> None:
        super().__init__(f"{role.capitalize()} profile not found")
        self.role = role


class UnrecognizedRole(ContextError):
    def __init__(self, value: str) -> None:
        super().__init__(f"Unrecognized user role: '{value}'")
        self.value = value


class ToolError(AssistantError):
    pass


class ToolValidationError(ToolError):
    pass


class ToolAuthorizationError(ToolError):
    pass


class ToolNotFound(ToolError):
    pass


class ToolExecutionError(AssistantError):
    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class ModelError(AssistantError):
    pass


class ModelConfigurationError(ModelError):
    pass


class ModelServiceError(ModelError):
    pass


class GatewayError(AssistantError):
    pass
