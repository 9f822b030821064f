"""ReAct-style agent loop driving the browser tools through an LLM provider."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from compaction import compact_in_place
from config import AgentCoreConfig
from exceptions import AgentCoreError
from message_types import Message, ProviderResponse, ToolCall, ToolSpec
from prompts import build_system_prompt
from providers.base import LLMProvider
from response_grammar import (
    NEED_SNAPSHOT_MARKER,
    STEP_TAG_ARG,
    contains_need_snapshot,
    effective_max_iterations,
    extract_variables,
    substitute_variables,
    truncate_for_log,
)
from snapshots import count_snapshot_results, is_snapshot_tool, remove_snapshot_exchanges, truncate_content
from tools import BROWSER_TOOLS, SCREENSHOT_TOOL, ToolExecutor, should_capture_screenshot
from transport import ToolResult

if TYPE_CHECKING:
    from session import AgentSession


class ExecutionOutcome(str, Enum):
    COMPLETE = "complete"
    NEED_SNAPSHOT = "need_snapshot"
    MAX_ITERATIONS = "max_iterations"
    ERROR = "error"


@dataclass
class ToolExecutionLog:
    """One tool invocation made on behalf of the model."""

    tool_name: str
    arguments: Dict[str, Any]
    result_summary: Optional[str]
    success: bool = True
    screenshot_path: Optional[str] = None
    step_number: Optional[int] = None


@dataclass
class AgentExecutionResult:
    success: bool
    outcome: ExecutionOutcome
    message: str
    execution_log: List[ToolExecutionLog] = field(default_factory=list)
    extracted_variables: Dict[str, str] = field(default_factory=dict)
    step_screenshots: Dict[int, str] = field(default_factory=dict)

    @classmethod
    def completed(
        cls,
        message: Optional[str],
        execution_log: List[ToolExecutionLog],
        step_screenshots: Optional[Dict[int, str]] = None,
    ) -> "AgentExecutionResult":
        return cls(
            success=True,
            outcome=ExecutionOutcome.COMPLETE,
            message=message or "",
            execution_log=execution_log,
            extracted_variables=extract_variables(message),
            step_screenshots=dict(step_screenshots or {}),
        )

    @classmethod
    def error(
        cls,
        message: str,
        execution_log: Optional[List[ToolExecutionLog]] = None,
        outcome: ExecutionOutcome = ExecutionOutcome.ERROR,
    ) -> "AgentExecutionResult":
        return cls(success=False, outcome=outcome, message=message, execution_log=list(execution_log or []))

    @property
    def needs_snapshot(self) -> bool:
        return self.outcome == ExecutionOutcome.NEED_SNAPSHOT

    @property
    def screenshots(self) -> List[str]:
        return [entry.screenshot_path for entry in self.execution_log if entry.screenshot_path]


def build_initial_messages(
    system_prompt: str,
    instruction: str,
    page_context: Optional[str] = None,
    variables: Optional[Mapping[str, Any]] = None,
) -> List[Message]:
    """System prompt, optional context and variables, then the instruction as first user message."""
    messages = [Message.system(system_prompt)]
    if page_context:
        messages.append(Message.system(f"Current page context: {page_context}"))
    if variables:
        lines = "".join(f"- {name} = {value}\n" for name, value in variables.items())
        messages.append(Message.system(f"Available variables for substitution:\n{lines}"))
    messages.append(Message.user(instruction))
    return messages


def parse_step_tag(arguments: Optional[Mapping[str, Any]]) -> Optional[int]:
    if not arguments or STEP_TAG_ARG not in arguments:
        return None
    try:
        return int(str(arguments[STEP_TAG_ARG]).strip())
    except ValueError:
        return None


class AgentExecutor:
    """Runs instructions against the browser through a provider's tool calls.

    The executor mutates the message list it is given: assistant turns and
    tool results are appended, old snapshots are removed and the history is
    compacted after every tool round.
    """

    def __init__(
        self,
        config: AgentCoreConfig,
        provider: LLMProvider,
        tool_executor: ToolExecutor,
        tools: Optional[List[ToolSpec]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.provider = provider
        self.tool_executor = tool_executor
        self.tools = list(tools) if tools is not None else list(BROWSER_TOOLS)
        self.logger = logger or logging.getLogger("agent_core.agent")

    @property
    def agent_config(self):
        return self.config.agent

    # ------------------------------------------------------------------
    # Trace logging
    # ------------------------------------------------------------------

    def _trace(self, message: str) -> None:
        if self.agent_config.trace_logging_enabled:
            self.logger.info(f"[AGENT_TRACE] {message}")

    def _for_log(self, value: Any) -> str:
        return truncate_for_log(value, self.agent_config.trace_logging_max_chars)

    def _trace_response(self, label: str, response: ProviderResponse) -> None:
        if not self.agent_config.trace_logging_enabled:
            return
        self._trace(f"{label} - LLM says:\n{self._for_log(response.content or '')}")
        if response.has_tool_calls:
            summary = ", ".join(
                f"{tc.name}({self._for_log(json.dumps(tc.arguments, default=str))})" for tc in response.tool_calls
            )
            self._trace(f"{label} - LLM requested tool calls: {summary}")

    def _trace_tool_result(self, name: str, result: ToolResult) -> None:
        if not self.agent_config.trace_logging_enabled:
            return
        content_len = len(result.content) if result.content else 0
        self._trace(
            f"Tool result: tool={name}, success={result.success}, "
            f"message={self._for_log(result.message)}, contentChars={content_len}"
        )
        if result.content and result.content.strip():
            self.logger.debug(f"[AGENT_TRACE] Tool content snippet (tool={name}):\n{self._for_log(result.content)}")

    # ------------------------------------------------------------------
    # Tool results in the conversation
    # ------------------------------------------------------------------

    def tool_content(self, name: str, result: ToolResult, snapshot_limit: Optional[int] = None) -> str:
        """Text sent back to the model for one tool result."""
        content = result.content if result.content and result.content.strip() else (result.message or "")
        if not result.success:
            content = f"Error: {result.message or content}"
        if is_snapshot_tool(name):
            limit = snapshot_limit if snapshot_limit and snapshot_limit > 0 else self.agent_config.snapshot_max_chars
        else:
            limit = self.agent_config.tool_response_max_chars
        truncated = truncate_content(content, limit)
        if truncated != content:
            self.logger.info(f"Truncated tool response (tool={name}) from {len(content)} chars to {len(truncated)} chars")
        return truncated

    def append_tool_result(
        self,
        messages: List[Message],
        call: ToolCall,
        result: ToolResult,
        snapshot_limit: Optional[int] = None,
    ) -> None:
        """Append a tool result, keeping at most one snapshot in ``messages``."""
        content = self.tool_content(call.name, result, snapshot_limit)
        if is_snapshot_tool(call.name):
            removed = remove_snapshot_exchanges(messages)
            self._trace(f"Snapshot dedup removed {removed} message(s)")
        messages.append(Message.tool(call.id, content, function_name=call.name))

    def compact(self, messages: List[Message]) -> int:
        removed = compact_in_place(messages, self.agent_config.history_keep)
        if removed:
            self._trace(
                f"Compaction removed {removed} message(s); {len(messages)} remain, "
                f"{count_snapshot_results(messages)} snapshot(s) resident"
            )
        return removed

    async def _auto_screenshot(self, after_tool: str) -> Optional[str]:
        try:
            self.logger.info(f"Capturing screenshot after: {after_tool}")
            return await self.tool_executor.take_screenshot()
        except AgentCoreError as exc:
            self.logger.error(f"Exception capturing screenshot after {after_tool}: {exc}")
            return None

    async def _fallback_screenshot(self, execution_log: List[ToolExecutionLog]) -> None:
        if any(entry.screenshot_path for entry in execution_log):
            return
        self.logger.info("No screenshot captured during execution, capturing fallback screenshot")
        path = await self._auto_screenshot("fallback")
        if path:
            execution_log.append(ToolExecutionLog("fallback_screenshot", {}, "Fallback screenshot captured", True, path))

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def run_agent_loop(
        self,
        messages: List[Message],
        tools: Optional[List[ToolSpec]] = None,
        max_iterations: Optional[int] = None,
        detect_need_snapshot: bool = False,
    ) -> AgentExecutionResult:
        """Call the model until it answers without tool calls or the budget runs out.

        With ``detect_need_snapshot`` a final answer carrying NEED_SNAPSHOT ends
        with the NEED_SNAPSHOT outcome instead of success.
        """
        tools = self.tools if tools is None else tools
        max_iterations = max_iterations or self.agent_config.max_iterations
        execution_log: List[ToolExecutionLog] = []

        for iteration in range(1, max_iterations + 1):
            self.logger.debug(f"Agent iteration {iteration}/{max_iterations}")
            self._trace(
                f"Iteration {iteration}/{max_iterations} - request: {len(messages)} message(s), "
                f"tools={[t.name for t in tools]}"
            )
            response = await self.provider.execute_with_tools(messages, tools, max_iterations)
            self._trace_response(f"Iteration {iteration}/{max_iterations}", response)

            if response.complete or not response.has_tool_calls:
                if not response.complete:
                    self.logger.warning("Agent returned no tool calls and not complete")
                if detect_need_snapshot and contains_need_snapshot(response.content):
                    self.logger.info("Model requested a fresh snapshot")
                    return AgentExecutionResult.error(
                        NEED_SNAPSHOT_MARKER, execution_log, outcome=ExecutionOutcome.NEED_SNAPSHOT
                    )
                self.logger.info(f"Agent task complete after {iteration} iteration(s)")
                self.logger.info(f"Agent final message: {response.content}")
                await self._fallback_screenshot(execution_log)
                return AgentExecutionResult.completed(response.content, execution_log)

            messages.append(Message.assistant(response.content or "", response.tool_calls))
            for call in response.tool_calls:
                entry = await self._run_tool_call(messages, call)
                execution_log.append(entry)
            self.compact(messages)

        self.logger.warning(f"Agent reached max iterations ({max_iterations})")
        await self._fallback_screenshot(execution_log)
        return AgentExecutionResult.error(
            "Maximum iterations reached", execution_log, outcome=ExecutionOutcome.MAX_ITERATIONS
        )

    async def _run_tool_call(self, messages: List[Message], call: ToolCall) -> ToolExecutionLog:
        self.logger.info(f"Agent calling tool: {call.name}")
        result = await self.tool_executor.execute(call.name, call.arguments)
        self._trace_tool_result(call.name, result)

        screenshot_path = None
        if result.success and self.agent_config.auto_screenshots and should_capture_screenshot(call.name):
            screenshot_path = await self._auto_screenshot(call.name)
        if not result.success:
            self.logger.warning(f"Tool returned error: {call.name} - {result.message}")

        self.append_tool_result(messages, call, result)
        return ToolExecutionLog(call.name, dict(call.arguments), result.message, result.success, screenshot_path)

    async def run_single_turn(
        self,
        messages: List[Message],
        tools: Optional[List[ToolSpec]] = None,
    ) -> AgentExecutionResult:
        """One model call whose tool calls are executed without a follow-up call.

        Tool calls may carry a ``_step`` tag. Tagged screenshots are attached to
        their step; a step that ends without one gets a screenshot at its boundary.
        """
        tools = self.tools if tools is None else tools
        execution_log: List[ToolExecutionLog] = []
        step_screenshots: Dict[int, str] = {}

        response = await self.provider.execute_with_tools(messages, tools, self.agent_config.max_iterations)
        self._trace_response("SingleTurn", response)
        messages.append(Message.assistant(response.content or "", response.tool_calls))

        if not response.has_tool_calls:
            if response.complete:
                return AgentExecutionResult.completed(response.content, execution_log)
            return AgentExecutionResult.error(response.content or "No tool calls", execution_log)

        calls = response.tool_calls
        has_step_tags = any(STEP_TAG_ARG in tc.arguments for tc in calls)

        for index, call in enumerate(calls):
            step = parse_step_tag(call.arguments)
            suffix = f" (step={step})" if step is not None else ""
            self.logger.info(f"Agent calling tool: {call.name}{suffix}")

            arguments = {k: v for k, v in call.arguments.items() if k != STEP_TAG_ARG}
            if call.name == SCREENSHOT_TOOL:
                arguments.setdefault("fullPage", True)
            result = await self.tool_executor.execute(call.name, arguments)
            self._trace_tool_result(call.name, result)

            screenshot_path = None
            if (
                not has_step_tags
                and result.success
                and self.agent_config.auto_screenshots
                and should_capture_screenshot(call.name)
            ):
                screenshot_path = await self._auto_screenshot(call.name)
            if has_step_tags and step is not None and call.name == SCREENSHOT_TOOL and result.success:
                path = self.tool_executor.screenshot_path(result)
                if path:
                    step_screenshots[step] = path

            execution_log.append(
                ToolExecutionLog(call.name, arguments, result.message, result.success, screenshot_path, step)
            )
            self.append_tool_result(messages, call, result)

            if not has_step_tags or step is None or call.name == SCREENSHOT_TOOL:
                continue
            next_step = parse_step_tag(calls[index + 1].arguments) if index + 1 < len(calls) else None
            if next_step == step or step_screenshots.get(step):
                continue
            path = await self._auto_screenshot(f"step {step}")
            if path:
                step_screenshots[step] = path
                execution_log.append(
                    ToolExecutionLog("step_screenshot", {STEP_TAG_ARG: step}, "Per-step screenshot", True, path, step)
                )

        self.compact(messages)
        return AgentExecutionResult.completed(response.content, execution_log, step_screenshots)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def execute(
        self,
        instruction: str,
        page_context: Optional[str] = None,
        variables: Optional[Mapping[str, Any]] = None,
        app_url: Optional[str] = None,
        app_type: Optional[str] = None,
    ) -> AgentExecutionResult:
        """Run one instruction in a fresh conversation."""
        if not self.provider.is_available():
            return AgentExecutionResult.error(f"LLM provider {self.provider.name} is not available")

        substituted = substitute_variables(instruction, variables) or ""
        system_prompt = build_system_prompt(substituted, app_url, app_type, self.config.prompts)
        messages = build_initial_messages(system_prompt, substituted, page_context, variables)
        max_iterations = effective_max_iterations(substituted, self.agent_config.max_iterations)
        self.logger.info(f"Executing instruction with {self.provider.name} (max {max_iterations} iterations)")
        try:
            return await self.run_agent_loop(messages, self.tools, max_iterations)
        except AgentCoreError as exc:
            self.logger.error(f"Agent execution failed: {exc}", exc_info=True)
            return AgentExecutionResult.error(f"Agent execution failed: {exc.message}")

    def start_session(
        self,
        plan_text: str,
        page_context: Optional[str] = None,
        variables: Optional[Mapping[str, Any]] = None,
        app_url: Optional[str] = None,
        app_type: Optional[str] = None,
    ) -> "AgentSession":
        from session import AgentSession

        return AgentSession.start(self, plan_text, page_context, variables, app_url, app_type)
