"""Uniform contract over chat-completion-with-tools backends."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from message_types import Message, ProviderResponse, ToolSpec


class LLMProvider(ABC):
    """A model backend that can answer with text or tool calls.

    Implementations translate the neutral ``Message`` list into their own
    wire format. Message order and the pairing between a tool call and its
    result must survive the translation.
    """

    name: str = "base"

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(f"agent_core.providers.{self.name}")

    @abstractmethod
    async def execute_with_tools(
        self,
        messages: List[Message],
        tools: List[ToolSpec],
        max_iterations: int,
    ) -> ProviderResponse:
        """Run one model turn.

        Returns an incomplete response carrying tool calls, or a complete one
        carrying the final text. ``max_iterations`` is informational only.
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the backend has the configuration it needs."""

    async def close(self) -> None:
        """Release network resources."""
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r} available={self.is_available()}>"
