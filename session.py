"""A bounded conversation reused across the steps of one test run."""
from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any, List, Mapping, Optional, Sequence

from batch import BatchResult, BatchStep, build_batch_prompt, interpret_batch_reply
from exceptions import AgentCoreError, ProviderUnavailableError
from message_types import Message, Role, ToolCall
from prompts import build_system_prompt
from response_grammar import (
    BATCH_PROMPT_PREFIX,
    NEED_SNAPSHOT_MARKER,
    STEP_PROMPT_PREFIX,
    effective_max_iterations,
    substitute_variables,
)
from tools import SNAPSHOT_TOOL, tools_without_snapshot
from transport import ToolResult

if TYPE_CHECKING:
    from agent import AgentExecutionResult, AgentExecutor

REVEAL_WAIT_SECONDS = 0.2
PAGE_DOWN_PRESSES = 5


def build_step_prompt(instruction: str, allow_snapshot: bool) -> str:
    lines = [
        STEP_PROMPT_PREFIX,
        instruction,
        "",
        "Rules:",
        "- Do NOT redo earlier steps.",
        "- Do NOT execute any later steps.",
        "- Stop immediately after completing this step.",
        "- Use the most recent snapshot in conversation history if available.",
        "- Reuse refs from that snapshot; do not call snapshot at the start of every step.",
    ]
    if allow_snapshot:
        lines.append("- You MAY call snapshot ONLY if you cannot find what you need in the most recent snapshot.")
    else:
        lines.append(
            "- You cannot call snapshot in this attempt. If you need a new snapshot to proceed, "
            f"reply with EXACTLY: {NEED_SNAPSHOT_MARKER}"
        )
    return "\n".join(lines) + "\n"


class AgentSession:
    """Conversation state for one test run.

    The first user message holds the whole plan so compaction always keeps
    it. Owned by a single run; not safe to share between tasks.
    """

    def __init__(
        self,
        executor: "AgentExecutor",
        messages: List[Message],
        app_url: Optional[str] = None,
        app_type: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.executor = executor
        self.messages = messages
        self.app_url = app_url
        self.app_type = app_type
        self.tools = list(executor.tools)
        self.logger = logger or logging.getLogger("agent_core.session")

    @classmethod
    def start(
        cls,
        executor: "AgentExecutor",
        plan_text: str,
        page_context: Optional[str] = None,
        variables: Optional[Mapping[str, Any]] = None,
        app_url: Optional[str] = None,
        app_type: Optional[str] = None,
    ) -> "AgentSession":
        from agent import build_initial_messages

        provider = executor.provider
        if not provider.is_available():
            raise ProviderUnavailableError(provider.name, "not available")
        plan_text = plan_text or ""
        system_prompt = build_system_prompt(plan_text, app_url, app_type, executor.config.prompts)
        messages = build_initial_messages(system_prompt, plan_text, page_context, variables)
        return cls(executor, messages, app_url, app_type)

    @property
    def agent_config(self):
        return self.executor.config.agent

    def _drop_user_prompts(self, prefix: str) -> None:
        self.messages[:] = [
            m
            for m in self.messages
            if not (m.role == Role.USER and m.content is not None and m.content.startswith(prefix))
        ]

    async def execute_step(
        self,
        instruction: str,
        page_context: Optional[str] = None,
        variables: Optional[Mapping[str, Any]] = None,
        allow_snapshot: bool = True,
    ) -> "AgentExecutionResult":
        """Run a single plan step in this conversation.

        Without ``allow_snapshot`` the snapshot tool is withheld and a
        NEED_SNAPSHOT reply comes back as the NEED_SNAPSHOT outcome.
        """
        substituted = substitute_variables(instruction, variables) or ""
        self._drop_user_prompts(STEP_PROMPT_PREFIX)
        if page_context:
            self.logger.debug(f"Step page context: {page_context}")
        self.messages.append(Message.user(build_step_prompt(substituted, allow_snapshot)))

        tools = self.tools if allow_snapshot else tools_without_snapshot(self.tools)
        max_iterations = effective_max_iterations(substituted, self.agent_config.max_iterations)
        return await self.executor.run_agent_loop(
            self.messages,
            tools,
            max_iterations,
            detect_need_snapshot=not allow_snapshot,
        )

    async def execute_batch(
        self,
        steps: Sequence[BatchStep],
        variables: Optional[Mapping[str, Any]] = None,
    ) -> BatchResult:
        """Offer ``steps`` in one model turn, without the snapshot tool."""
        self._drop_user_prompts(BATCH_PROMPT_PREFIX)
        self.logger.info(f"Sending batch prompt: {BATCH_PROMPT_PREFIX} steps={[s.number for s in steps]}")
        self.messages.append(Message.user(build_batch_prompt(steps, variables)))

        turn = await self.executor.run_single_turn(self.messages, tools_without_snapshot(self.tools))
        offered = [s.number for s in steps]
        result = interpret_batch_reply(turn.message, offered, tool_calls_made=len(turn.execution_log))

        result.turn_succeeded = turn.success
        result.extracted_variables = dict(turn.extracted_variables)
        shots = turn.screenshots
        result.last_screenshot = shots[-1] if shots else None
        result.step_screenshots = dict(turn.step_screenshots)
        for number in result.executed_step_numbers:
            if result.step_screenshots.get(number):
                continue
            path = await self.executor.tool_executor.take_screenshot()
            if path:
                result.step_screenshots[number] = path
            else:
                self.logger.warning(f"Failed to capture per-step screenshot for step {number}")
        result.restrict_to_executed()
        return result

    async def inject_fresh_snapshot(self, limit: Optional[int] = None) -> ToolResult:
        """Take a snapshot and place it in the conversation without calling the model."""
        call = ToolCall(id=f"local_snapshot_{uuid.uuid4()}", name=SNAPSHOT_TOOL, arguments={})
        self.messages.append(Message.assistant("Taking a fresh snapshot.", [call]))
        result = await self.executor.tool_executor.execute(SNAPSHOT_TOOL, {})
        effective = limit if limit and limit > 0 else self.agent_config.snapshot_max_chars
        self.executor.append_tool_result(self.messages, call, result, snapshot_limit=effective)
        self.executor.compact(self.messages)
        return result

    async def reveal_more_and_inject_snapshot(self, attempt: int, limit: Optional[int] = None) -> ToolResult:
        """Scroll further down the page before snapshotting.

        Attempt 2 presses PageDown five times, attempt 3 and later press End.
        Attempts from 2 on use the escalated snapshot budget unless ``limit`` is given.
        """
        if limit is None:
            limit = (
                self.agent_config.snapshot_max_chars_escalated
                if attempt >= 2
                else self.agent_config.snapshot_max_chars
            )
        tool_executor = self.executor.tool_executor
        try:
            if attempt == 2:
                for _ in range(PAGE_DOWN_PRESSES):
                    await tool_executor.execute("browser_press_key", {"key": "PageDown"})
                await tool_executor.execute("browser_wait_for", {"time": REVEAL_WAIT_SECONDS})
                self.logger.info(f"Pressed PageDown x{PAGE_DOWN_PRESSES} before snapshot")
            elif attempt >= 3:
                await tool_executor.execute("browser_press_key", {"key": "End"})
                await tool_executor.execute("browser_wait_for", {"time": REVEAL_WAIT_SECONDS})
                self.logger.info("Pressed End before snapshot")
        except AgentCoreError as exc:
            self.logger.warning(f"Scroll attempt {attempt} failed: {exc}")
        return await self.inject_fresh_snapshot(limit)
