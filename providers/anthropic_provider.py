"""Content-block style backend (tool_use / tool_result blocks)."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import anthropic
from anthropic import AsyncAnthropic
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config import AnthropicProviderConfig
from exceptions import LLMConnectionError, LLMError, LLMResponseError
from message_types import Message, ProviderResponse, Role, ToolCall, ToolSpec
from providers.base import LLMProvider

_COMPLETE_STOP_REASONS = {"end_turn", "stop"}


def _append_turn(turns: List[Dict[str, Any]], role: str, blocks: List[Dict[str, Any]]) -> None:
    # The Messages API rejects two consecutive turns with the same role.
    if turns and turns[-1]["role"] == role:
        turns[-1]["content"].extend(blocks)
    else:
        turns.append({"role": role, "content": blocks})


def convert_messages(messages: List[Message]) -> Tuple[str, List[Dict[str, Any]]]:
    """Split neutral messages into a system prompt and Messages API turns.

    Consecutive tool results are batched into one user turn of
    ``tool_result`` blocks, placed right after the assistant turn that made
    the calls.
    """
    system_parts: List[str] = []
    turns: List[Dict[str, Any]] = []
    pending_results: List[Dict[str, Any]] = []

    def flush_results() -> None:
        if pending_results:
            _append_turn(turns, "user", list(pending_results))
            pending_results.clear()

    for msg in messages:
        if msg.role == Role.SYSTEM:
            if msg.content:
                system_parts.append(msg.content)
            continue

        if msg.role == Role.TOOL:
            pending_results.append(
                {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.content or "",
                }
            )
            continue

        flush_results()
        if msg.role == Role.ASSISTANT:
            blocks: List[Dict[str, Any]] = []
            if msg.content and msg.content.strip():
                blocks.append({"type": "text", "text": msg.content})
            for tc in msg.tool_calls:
                blocks.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments})
            if not blocks:
                continue
            _append_turn(turns, "assistant", blocks)
        else:
            _append_turn(turns, "user", [{"type": "text", "text": msg.content or ""}])

    flush_results()
    return "\n\n".join(system_parts), turns


def tool_to_anthropic_format(tool: ToolSpec) -> Dict[str, Any]:
    return {"name": tool.name, "description": tool.description, "input_schema": tool.parameters}


class AnthropicProvider(LLMProvider):
    """Anthropic Messages API with tool use."""

    name = "anthropic"

    def __init__(
        self,
        config: AnthropicProviderConfig,
        client: Optional[AsyncAnthropic] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(logger)
        self.config = config
        self._client = client

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
            )
        return self._client

    def is_available(self) -> bool:
        return bool(self.config.api_key.strip())

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()

    @retry(
        retry=retry_if_exception_type(LLMConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=2.0, min=2.0, max=10),
        reraise=True,
    )
    async def execute_with_tools(
        self,
        messages: List[Message],
        tools: List[ToolSpec],
        max_iterations: int,
    ) -> ProviderResponse:
        """Call the model once and normalise its reply."""
        system_prompt, turns = convert_messages(messages)
        self.logger.info(
            f"Anthropic: executing with {len(tools)} tools, {len(turns)} turns, "
            f"~{sum(len(str(t['content'])) for t in turns) // 4} tokens"
        )
        create_kwargs: Dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": turns,
        }
        if system_prompt:
            create_kwargs["system"] = system_prompt
        if tools:
            create_kwargs["tools"] = [tool_to_anthropic_format(t) for t in tools]

        try:
            response = await self.client.messages.create(**create_kwargs)
        except (anthropic.APIConnectionError, anthropic.RateLimitError, anthropic.InternalServerError) as e:
            raise LLMConnectionError(f"Anthropic request failed: {e}", base_url=self.config.base_url) from e
        except Exception as e:
            raise LLMError(f"Model call failed: {e}") from e

        return self._parse_response(response)

    def _parse_response(self, response: Any) -> ProviderResponse:
        blocks = getattr(response, "content", None)
        if blocks is None:
            raise LLMResponseError("Anthropic response has no content", response=str(response))

        text_parts: List[str] = []
        calls: List[ToolCall] = []
        for block in blocks:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                if not isinstance(block.input, dict):
                    raise LLMResponseError(f"Tool input for {block.name} is not an object", response=str(block.input))
                calls.append(ToolCall(id=block.id, name=block.name, arguments=dict(block.input)))

        text = "".join(text_parts)
        stop_reason = response.stop_reason
        if calls:
            self.logger.debug(f"Anthropic: {len(calls)} tool call(s) requested")
            return ProviderResponse(content=text, tool_calls=calls, complete=False, finish_reason="tool_use")
        if stop_reason in _COMPLETE_STOP_REASONS:
            return ProviderResponse(content=text, complete=True, finish_reason="stop")
        self.logger.warning(f"Anthropic: unexpected stop reason: {stop_reason}")
        return ProviderResponse(content=text, complete=True, finish_reason=stop_reason or "unknown")
