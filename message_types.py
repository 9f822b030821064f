"""Provider-neutral conversation messages and tool call records."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Message:
    """One entry of a conversation.

    ``tool_call_id`` is only set on tool messages and ``tool_calls`` only on
    assistant messages. ``metadata`` carries local bookkeeping (for example
    ``function_name`` on tool results) and is never sent to a provider.
    """

    role: Role
    content: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: Optional[str] = None, tool_calls: Optional[List[ToolCall]] = None) -> "Message":
        return cls(role=Role.ASSISTANT, content=content, tool_calls=list(tool_calls or []))

    @classmethod
    def tool(cls, tool_call_id: str, content: str, function_name: Optional[str] = None) -> "Message":
        metadata = {"function_name": function_name} if function_name else {}
        return cls(role=Role.TOOL, content=content, tool_call_id=tool_call_id, metadata=metadata)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def without_tool_calls(self, call_ids: set[str]) -> "Message":
        """Copy of this message with the given tool call ids dropped."""
        return replace(
            self,
            tool_calls=[tc for tc in self.tool_calls if tc.id not in call_ids],
            metadata=dict(self.metadata),
        )


@dataclass(frozen=True)
class ToolSpec:
    """Tool definition offered to the model."""

    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass
class ProviderResponse:
    """Uniform reply from any provider.

    ``complete`` is False whenever the model asked for tool calls.
    """

    content: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    complete: bool = True
    finish_reason: Optional[str] = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)
