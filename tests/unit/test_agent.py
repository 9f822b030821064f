"""Unit tests for the agent loop and single-turn execution."""
from __future__ import annotations

import logging

from conftest import ScriptedProvider, final_turn, tool_call, tool_turn

from agent import (
    AgentExecutor,
    ExecutionOutcome,
    build_initial_messages,
    parse_step_tag,
)
from exceptions import LLMError
from message_types import Message, Role
from snapshots import count_snapshot_results


class FailingProvider(ScriptedProvider):
    async def execute_with_tools(self, messages, tools, max_iterations):
        raise LLMError("rate limited")


def _executor(config, provider, tool_executor) -> AgentExecutor:
    return AgentExecutor(config, provider, tool_executor)


def _start():
    return [Message.system("sys"), Message.user("do it")]


class TestHelpers:
    """Tests for message building and step tags."""

    def test_initial_messages_order(self):
        messages = build_initial_messages("SYS", "Log in", "login page", {"user": "bob", "pw": "x"})
        assert [m.role for m in messages] == [Role.SYSTEM, Role.SYSTEM, Role.SYSTEM, Role.USER]
        assert messages[1].content == "Current page context: login page"
        assert messages[2].content == "Available variables for substitution:\n- user = bob\n- pw = x\n"
        assert messages[3].content == "Log in"

    def test_initial_messages_minimal(self):
        messages = build_initial_messages("SYS", "Log in")
        assert [m.content for m in messages] == ["SYS", "Log in"]

    def test_parse_step_tag(self):
        assert parse_step_tag({"_step": "2"}) == 2
        assert parse_step_tag({"_step": 3}) == 3
        assert parse_step_tag({"_step": "x"}) is None
        assert parse_step_tag({}) is None
        assert parse_step_tag(None) is None


class TestRunAgentLoop:
    """Tests for the multi-iteration loop."""

    async def test_tool_round_then_complete(self, config, backend, tool_executor):
        provider = ScriptedProvider([tool_turn(tool_call("browser_click", ref="e1")), final_turn("Clicked it")])
        executor = _executor(config, provider, tool_executor)
        messages = _start()

        result = await executor.run_agent_loop(messages)

        assert result.success
        assert result.outcome == ExecutionOutcome.COMPLETE
        assert result.message == "Clicked it"
        assert backend.names() == ["browser_click", "browser_take_screenshot"]
        assert result.screenshots == ["/tmp/shot-1.png"]
        assert [m.role for m in messages] == [Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.TOOL]
        assert messages[3].metadata["function_name"] == "browser_click"

    async def test_fallback_screenshot_when_none_taken(self, config, backend, tool_executor):
        provider = ScriptedProvider([final_turn("Nothing to do")])
        result = await _executor(config, provider, tool_executor).run_agent_loop(_start())
        assert result.success
        assert result.execution_log[-1].tool_name == "fallback_screenshot"
        assert backend.names() == ["browser_take_screenshot"]

    async def test_max_iterations(self, config, backend, tool_executor):
        provider = ScriptedProvider([tool_turn(tool_call("browser_wait_for", time=1)) for _ in range(3)])
        result = await _executor(config, provider, tool_executor).run_agent_loop(_start(), max_iterations=3)
        assert not result.success
        assert result.outcome == ExecutionOutcome.MAX_ITERATIONS
        assert result.message == "Maximum iterations reached"
        assert backend.names().count("browser_wait_for") == 3
        assert result.execution_log[-1].tool_name == "fallback_screenshot"

    async def test_need_snapshot_detected(self, config, backend, tool_executor):
        provider = ScriptedProvider([final_turn("NEED_SNAPSHOT")])
        result = await _executor(config, provider, tool_executor).run_agent_loop(
            _start(), detect_need_snapshot=True
        )
        assert not result.success
        assert result.needs_snapshot
        assert backend.calls == []

    async def test_need_snapshot_ignored_without_flag(self, config, tool_executor):
        provider = ScriptedProvider([final_turn("NEED_SNAPSHOT")])
        result = await _executor(config, provider, tool_executor).run_agent_loop(_start())
        assert result.success

    async def test_extracted_variables(self, config, tool_executor):
        provider = ScriptedProvider([final_turn("Read it.\nEXTRACTED_VARIABLE:order_id=A-42")])
        result = await _executor(config, provider, tool_executor).run_agent_loop(_start())
        assert result.extracted_variables == {"order_id": "A-42"}

    async def test_tool_failure_fed_back(self, config, backend, tool_executor):
        backend.failures["browser_click"] = "element e9 not found"
        provider = ScriptedProvider([tool_turn(tool_call("browser_click", ref="e9")), final_turn("Could not click")])
        messages = _start()
        result = await _executor(config, provider, tool_executor).run_agent_loop(messages)
        assert result.success
        assert not result.execution_log[0].success
        assert messages[3].content == "Error: element e9 not found"
        assert "browser_take_screenshot" in backend.names()

    async def test_only_latest_snapshot_kept(self, config, tool_executor):
        provider = ScriptedProvider(
            [
                tool_turn(tool_call("snapshot", "s1")),
                tool_turn(tool_call("browser_click", "c1", ref="e12")),
                tool_turn(tool_call("snapshot", "s2")),
                final_turn("done"),
            ]
        )
        messages = _start()
        await _executor(config, provider, tool_executor).run_agent_loop(messages)
        assert count_snapshot_results(messages) == 1
        assert {m.tool_call_id for m in messages if m.role == Role.TOOL} == {"c1", "s2"}

    async def test_snapshot_truncated(self, config, backend, tool_executor):
        config.agent.snapshot_max_chars = 500
        backend.snapshot_text = "x" * 1200
        provider = ScriptedProvider([tool_turn(tool_call("snapshot", "s1")), final_turn("done")])
        messages = _start()
        await _executor(config, provider, tool_executor).run_agent_loop(messages)
        assert messages[-1].content.endswith("[Content truncated - original length: 1200 chars]")
        assert messages[-1].content.startswith("x" * 500 + "\n\n")

    async def test_history_compacted_after_each_round(self, config, tool_executor):
        config.agent.history_keep = 1
        provider = ScriptedProvider(
            [tool_turn(tool_call("browser_wait_for", f"w{i}", time=1)) for i in range(3)] + [final_turn("done")]
        )
        messages = _start()
        await _executor(config, provider, tool_executor).run_agent_loop(messages)
        assert [m.tool_call_id for m in messages if m.role == Role.TOOL] == ["w2"]
        last_request = provider.requests[-1][0]
        assert len(last_request) == 4

    async def test_trace_logging(self, config, tool_executor, caplog):
        config.agent.trace_logging_enabled = True
        provider = ScriptedProvider([tool_turn(tool_call("browser_click", ref="e1")), final_turn("ok")])
        with caplog.at_level(logging.INFO, logger="agent_core.agent"):
            await _executor(config, provider, tool_executor).run_agent_loop(_start())
        traces = [r.getMessage() for r in caplog.records if "[AGENT_TRACE]" in r.getMessage()]
        assert any("LLM requested tool calls: browser_click" in t for t in traces)
        assert any("Tool result: tool=browser_click, success=True" in t for t in traces)


class TestRunSingleTurn:
    """Tests for one model call with step-tagged tool calls."""

    async def test_step_tags_and_screenshots(self, config, backend, tool_executor):
        provider = ScriptedProvider(
            [
                tool_turn(
                    tool_call("browser_click", "c1", ref="e1", _step=1),
                    tool_call("browser_take_screenshot", "p1", _step=1),
                    tool_call("browser_click", "c2", ref="e2", _step="2"),
                    content="Step 1: PASS\nStep 2: PASS\nEXECUTED_STEP_NUMBERS: 1,2",
                )
            ]
        )
        messages = _start()
        result = await _executor(config, provider, tool_executor).run_single_turn(messages)

        assert result.success
        assert backend.calls == [
            ("browser_click", {"ref": "e1"}),
            ("browser_take_screenshot", {"fullPage": True}),
            ("browser_click", {"ref": "e2"}),
            ("browser_take_screenshot", {"fullPage": True}),
        ]
        assert result.step_screenshots == {1: "/tmp/shot-1.png", 2: "/tmp/shot-2.png"}
        assert result.execution_log[-1].tool_name == "step_screenshot"
        assert len(provider.requests) == 1
        assert messages[2].role == Role.ASSISTANT
        assert len(messages) == 6

    async def test_untagged_calls_get_auto_screenshots(self, config, backend, tool_executor):
        provider = ScriptedProvider([tool_turn(tool_call("browser_type", ref="e3", text="bob"))])
        result = await _executor(config, provider, tool_executor).run_single_turn(_start())
        assert backend.names() == ["browser_type", "browser_take_screenshot"]
        assert result.screenshots == ["/tmp/shot-1.png"]
        assert result.step_screenshots == {}

    async def test_text_only_reply_appended(self, config, backend, tool_executor):
        provider = ScriptedProvider([final_turn("NEED_SNAPSHOT")])
        messages = _start()
        result = await _executor(config, provider, tool_executor).run_single_turn(messages)
        assert result.success
        assert result.message == "NEED_SNAPSHOT"
        assert messages[-1].role == Role.ASSISTANT
        assert backend.calls == []


class TestExecute:
    """Tests for the one-off instruction entry point."""

    async def test_builds_conversation(self, config, tool_executor):
        provider = ScriptedProvider([final_turn("Logged in")])
        result = await _executor(config, provider, tool_executor).execute(
            "Log in as {{user}}", page_context="login", variables={"user": "bob"}
        )
        assert result.success
        sent = provider.requests[0][0]
        assert sent[-1].content == "Log in as bob"
        assert sent[1].content == "Current page context: login"

    async def test_unavailable_provider(self, config, tool_executor):
        provider = ScriptedProvider(available=False)
        result = await _executor(config, provider, tool_executor).execute("click")
        assert not result.success
        assert result.message == "LLM provider scripted is not available"
        assert provider.requests == []

    async def test_provider_error_becomes_result(self, config, tool_executor):
        result = await _executor(config, FailingProvider(), tool_executor).execute("click")
        assert not result.success
        assert result.outcome == ExecutionOutcome.ERROR
        assert result.message == "Agent execution failed: rate limited"
