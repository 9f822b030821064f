"""Unit tests for the plan runner."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
from conftest import RecordingBackend, ScriptedProvider, final_turn, tool_call, tool_turn

from exceptions import ProviderUnavailableError
from test_runner import NO_PROGRESS_MESSAGE, STUCK_MESSAGE, PlanRunner
from test_types import STEP_FAILED, STEP_PASSED, TestPlan
from transport import ClientRegistry


@pytest.fixture
def runner_backend() -> RecordingBackend:
    return RecordingBackend()


def _runner(config, backend, *responses, provider=None):
    provider = provider or ScriptedProvider(responses)
    registry = ClientRegistry(config.transport, transport_factory=lambda: backend)
    return PlanRunner(config, registry=registry, provider_factory=lambda: provider), provider


class TestBatchMode:
    """Tests for batch execution of a plan."""

    async def test_all_steps_pass(self, config, runner_backend, sample_plan: TestPlan):
        runner, provider = _runner(
            config,
            runner_backend,
            tool_turn(
                tool_call("browser_click", "c1", ref="e12", _step=1),
                tool_call("browser_take_screenshot", "p1", _step=1),
                content="Step 1: PASS - added\nNEED_SNAPSHOT\nEXECUTED_STEP_NUMBERS: 1",
            ),
            tool_turn(
                tool_call("browser_click", "c2", ref="e20", _step=2),
                content="Step 2: PASS\nStep 3: PASS\nEXTRACTED_VARIABLE:count=1\nEXECUTED_STEP_NUMBERS: 2, 3",
            ),
        )
        result = await runner.run_plan(sample_plan)

        assert result.success, result.reason
        assert [s.number for s in result.steps] == [1, 2, 3]
        assert all(s.status == STEP_PASSED for s in result.steps)
        assert result.steps[0].message == "added"
        assert all(s.screenshot_path for s in result.steps)
        assert result.variables["count"] == "1"
        assert result.execution_mode == "batch"
        assert runner_backend.calls[0] == ("browser_navigate", {"url": "https://shop.example"})
        assert runner_backend.calls[1] == ("browser_snapshot", {})
        assert provider.closed
        assert runner_backend.closed

    async def test_reported_failure_stops_plan(self, config, runner_backend, sample_plan: TestPlan):
        runner, _ = _runner(
            config,
            runner_backend,
            final_turn("Step 1: PASS\nStep 2: FAIL - cart page did not open\nEXECUTED_STEP_NUMBERS: 1, 2, 3"),
        )
        result = await runner.run_plan(sample_plan)
        assert not result.success
        assert "cart page did not open" in result.reason
        assert [s.status for s in result.steps] == [STEP_PASSED, STEP_FAILED]

    async def test_stuck_on_snapshot_requests(self, config, runner_backend, sample_plan: TestPlan):
        runner, provider = _runner(config, runner_backend, *[final_turn("NEED_SNAPSHOT")] * 4)
        result = await runner.run_plan(sample_plan)
        assert not result.success
        assert result.reason == STUCK_MESSAGE
        assert result.steps[-1].number == 1
        assert result.steps[-1].message == STUCK_MESSAGE
        assert len(provider.requests) == 4
        names = runner_backend.names()
        assert names.count("browser_snapshot") == 4
        assert ("browser_press_key", {"key": "End"}) in runner_backend.calls

    async def test_no_progress(self, config, runner_backend, sample_plan: TestPlan):
        runner, _ = _runner(config, runner_backend, final_turn("I am not sure what to do."))
        result = await runner.run_plan(sample_plan)
        assert not result.success
        assert result.reason == NO_PROGRESS_MESSAGE

    async def test_failed_turn(self, config, runner_backend, sample_plan: TestPlan):
        runner, _ = _runner(
            config,
            runner_backend,
            tool_turn(content="partial"),
        )
        result = await runner.run_plan(sample_plan)
        assert not result.success
        assert result.steps[-1].status == STEP_FAILED
        assert result.steps[-1].number == 1

    async def test_window_limited(self, config, runner_backend, sample_plan: TestPlan):
        config.agent.max_batch_steps = 2
        runner, provider = _runner(
            config,
            runner_backend,
            final_turn("Step 1: PASS\nStep 2: PASS\nEXECUTED_STEP_NUMBERS: 1,2"),
            final_turn("Step 3: PASS\nEXECUTED_STEP_NUMBERS: 3"),
        )
        result = await runner.run_plan(sample_plan)
        assert result.success, result.reason
        first_batch = provider.requests[0][0][-1].content
        assert "1. Click Add to cart" in first_batch
        assert "3. Verify" not in first_batch


class TestStepMode:
    """Tests for one-step-at-a-time execution."""

    async def test_retries_with_snapshot(self, config, runner_backend, sample_plan: TestPlan):
        sample_plan.execution_mode = "step"
        runner, provider = _runner(
            config,
            runner_backend,
            final_turn("NEED_SNAPSHOT"),
            final_turn("Added"),
            final_turn("Opened"),
            final_turn("Verified"),
        )
        result = await runner.run_plan(sample_plan)
        assert result.success, result.reason
        assert result.execution_mode == "step"
        assert "snapshot" not in provider.requests[0][1]
        assert "snapshot" in provider.requests[1][1]
        assert [s.message for s in result.steps] == ["Added", "Opened", "Verified"]

    async def test_step_failure(self, config, runner_backend, sample_plan: TestPlan):
        config.agent.execution_mode = "step"
        config.agent.max_iterations = 1
        runner, _ = _runner(config, runner_backend, tool_turn(tool_call("browser_wait_for", time=1)))
        result = await runner.run_plan(sample_plan)
        assert not result.success
        assert result.reason == "Maximum iterations reached"
        assert len(result.steps) == 1
        assert result.steps[0].status == STEP_FAILED


class TestRunPlan:
    """Tests for plan-level handling."""

    def test_injected_registry_kept(self, config, runner_backend):
        registry = ClientRegistry(config.transport, transport_factory=lambda: runner_backend)
        assert len(registry) == 0
        assert PlanRunner(config, registry=registry).registry is registry

    async def test_skipped(self, config, runner_backend, sample_plan: TestPlan):
        sample_plan.skip = True
        sample_plan.skip_reason = "flaky"
        runner, provider = _runner(config, runner_backend)
        result = await runner.run_plan(sample_plan)
        assert result.status == "skipped"
        assert result.reason == "Skipped: flaky"
        assert provider.requests == []

    async def test_navigation_failure(self, config, runner_backend, sample_plan: TestPlan):
        runner_backend.failures["browser_navigate"] = "net::ERR_NAME_NOT_RESOLVED"
        runner, _ = _runner(config, runner_backend)
        result = await runner.run_plan(sample_plan)
        assert not result.success
        assert result.reason == "Failed to navigate to app URL: net::ERR_NAME_NOT_RESOLVED"

    async def test_missing_app_url_skips_navigation(self, config, runner_backend, sample_plan: TestPlan):
        sample_plan.app_url = None
        runner, _ = _runner(config, runner_backend, final_turn("Step 1: PASS\nStep 2: PASS\nStep 3: PASS"))
        result = await runner.run_plan(sample_plan)
        assert result.success, result.reason
        assert "browser_navigate" not in runner_backend.names()

    async def test_unavailable_provider(self, config, runner_backend, sample_plan: TestPlan):
        runner, _ = _runner(config, runner_backend, provider=ScriptedProvider(available=False))
        result = await runner.run_plan(sample_plan)
        assert not result.success
        assert result.reason == "LLM provider 'scripted' is not available"

    async def test_provider_factory_error(self, config, runner_backend, sample_plan: TestPlan):
        def factory():
            raise ProviderUnavailableError("openai", "missing API key")

        registry = ClientRegistry(config.transport, transport_factory=lambda: runner_backend)
        runner = PlanRunner(config, registry=registry, provider_factory=factory)
        result = await runner.run_plan(sample_plan)
        assert not result.success
        assert result.provider is None
        assert "openai" in result.reason

    async def test_run_all_writes_reports(self, config, runner_backend, sample_plan: TestPlan):
        config.reporting.output_format = "all"
        runner, _ = _runner(config, runner_backend, final_turn("Step 1: PASS\nStep 2: PASS\nStep 3: PASS"))
        suite = await runner.run_all([sample_plan])
        assert suite.total == 1
        assert suite.passed == 1
        reports = Path(config.reporting.reports_folder)
        suite_json = next(reports.glob("suite-*.json"))
        assert json.loads(suite_json.read_text())["summary"]["passed"] == 1
        assert list(reports.glob("junit-*.xml"))
        assert list(reports.glob("checkout-*.json"))
