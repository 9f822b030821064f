"""Function-call style backend (separate ``tool_calls`` array keyed by call id)."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config import OpenAIProviderConfig
from exceptions import LLMConnectionError, LLMError, LLMResponseError
from message_types import Message, ProviderResponse, Role, ToolCall, ToolSpec
from providers.base import LLMProvider

_PLACEHOLDER_KEYS = {"", "your-api-key-here"}


def message_to_openai_format(msg: Message) -> Dict[str, Any]:
    """Convert a neutral message into a chat.completions message dict."""
    out: Dict[str, Any] = {"role": msg.role.value}
    if msg.content is not None:
        out["content"] = msg.content
    if msg.role == Role.TOOL:
        out["tool_call_id"] = msg.tool_call_id
        out.setdefault("content", "")
    elif msg.role == Role.ASSISTANT and msg.tool_calls:
        out["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
            }
            for tc in msg.tool_calls
        ]
    return out


def tool_to_openai_format(tool: ToolSpec) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters,
        },
    }


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions with function calling."""

    name = "openai"

    def __init__(
        self,
        config: OpenAIProviderConfig,
        client: Optional[AsyncOpenAI] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(logger)
        self.config = config
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
            )
        return self._client

    def is_available(self) -> bool:
        return self.config.api_key.strip() not in _PLACEHOLDER_KEYS

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
        self.logger.info(f"OpenAI: executing with {len(tools)} tools, {len(messages)} messages")
        create_kwargs: Dict[str, Any] = {
            "model": self.config.model,
            "messages": [message_to_openai_format(m) for m in messages],
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }
        if tools:
            create_kwargs["tools"] = [tool_to_openai_format(t) for t in tools]

        try:
            response = await self.client.chat.completions.create(**create_kwargs)
        except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as e:
            raise LLMConnectionError(f"OpenAI request failed: {e}", base_url=self.config.base_url) from e
        except Exception as e:
            raise LLMError(f"Model call failed: {e}") from e

        return self._parse_response(response)

    def _parse_response(self, response: Any) -> ProviderResponse:
        if not getattr(response, "choices", None):
            raise LLMResponseError("OpenAI response has no choices", response=str(response))

        choice = response.choices[0]
        message = choice.message
        content = message.content
        raw_calls = message.tool_calls or []

        if raw_calls:
            calls: List[ToolCall] = []
            for raw in raw_calls:
                arguments_json = raw.function.arguments or ""
                try:
                    arguments = json.loads(arguments_json) if arguments_json.strip() else {}
                except json.JSONDecodeError as e:
                    raise LLMResponseError(
                        f"Malformed arguments for tool {raw.function.name}: {e}",
                        response=arguments_json,
                    ) from e
                if not isinstance(arguments, dict):
                    raise LLMResponseError(
                        f"Arguments for tool {raw.function.name} are not an object",
                        response=arguments_json,
                    )
                calls.append(ToolCall(id=raw.id, name=raw.function.name, arguments=arguments))
            self.logger.debug(f"OpenAI: {len(calls)} tool call(s) requested")
            return ProviderResponse(content=content, tool_calls=calls, complete=False, finish_reason="tool_calls")

        self.logger.debug(f"OpenAI: turn complete, finish_reason={choice.finish_reason}")
        return ProviderResponse(content=content or "", complete=True, finish_reason=choice.finish_reason)
