"""Custom exception hierarchy for the browser test agent core."""
from __future__ import annotations

from typing import Any, Optional


class AgentCoreError(Exception):
    """Base exception for all agent core errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# Configuration exceptions
class ConfigurationError(AgentCoreError):
    """Raised when configuration is invalid or a required collaborator is unusable."""

    pass


class ConfigFileNotFoundError(ConfigurationError):
    """Raised when a required config file is not found."""

    def __init__(self, file_path: str):
        super().__init__(f"Configuration file not found: {file_path}", {"file_path": file_path})
        self.file_path = file_path


class ProviderUnavailableError(ConfigurationError):
    """Raised when the selected LLM provider is not configured."""

    def __init__(self, provider: str, reason: Optional[str] = None):
        message = f"LLM provider '{provider}' is not available"
        details = {"provider": provider}
        if reason:
            details["reason"] = reason
        super().__init__(message, details)
        self.provider = provider


# LLM-related exceptions
class LLMError(AgentCoreError):
    """Base exception for LLM/provider errors."""

    pass


class LLMConnectionError(LLMError):
    """Raised when the LLM service cannot be reached or throttles the call."""

    def __init__(self, message: str, base_url: Optional[str] = None):
        details = {"base_url": base_url} if base_url else {}
        super().__init__(message, details)
        self.base_url = base_url


class LLMResponseError(LLMError):
    """Raised when the LLM returns an invalid or unparseable response."""

    def __init__(self, message: str, response: Optional[str] = None):
        details = {"response_preview": response[:200] if response else None}
        super().__init__(message, details)
        self.response = response


# Tool execution exceptions
class ToolError(AgentCoreError):
    """Raised when a single tool call fails. Reported back to the model."""

    def __init__(self, message: str, tool_name: Optional[str] = None):
        details = {"tool": tool_name} if tool_name else {}
        super().__init__(message, details)
        self.tool_name = tool_name


class ToolTimeoutError(ToolError):
    """Raised when a tool call does not answer in time."""

    def __init__(self, timeout: float, tool_name: Optional[str] = None):
        super().__init__(f"Tool call timed out after {timeout}s", tool_name)
        self.details["timeout"] = timeout
        self.timeout = timeout


class TransportError(AgentCoreError):
    """Raised when the tool subprocess dies and the single retry also fails."""

    def __init__(self, message: str, command: Optional[list[str]] = None):
        details = {"command": " ".join(command)} if command else {}
        super().__init__(message, details)
        self.command = command


# Test definition exceptions
class TestDefinitionError(AgentCoreError):
    """Base exception for test plan loading errors."""

    pass


class PlanLoadError(TestDefinitionError):
    """Raised when a plan file cannot be loaded or parsed."""

    def __init__(self, message: str, file_path: Optional[str] = None):
        details = {"file_path": file_path} if file_path else {}
        super().__init__(message, details)
        self.file_path = file_path


class PlanValidationError(TestDefinitionError):
    """Raised when a plan definition is invalid."""

    def __init__(self, message: str, plan_id: Optional[str] = None, field: Optional[str] = None):
        details = {}
        if plan_id:
            details["plan_id"] = plan_id
        if field:
            details["field"] = field
        super().__init__(message, details)
        self.plan_id = plan_id
        self.field = field
