"""Pytest fixtures for the browser agent core."""
from __future__ import annotations

import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytest

from config import AgentCoreConfig
from message_types import Message, ProviderResponse, ToolCall, ToolSpec
from prompts import clear_prompt_cache
from providers.base import LLMProvider
from test_types import STEP_FAILED, STEP_PASSED, StepResult, TestPlan, TestRunResult, TestStep
from tools import ScreenshotStore, ToolExecutor
from transport import ToolResult

SNAPSHOT_TEXT = "- button \"Add to cart\" [ref=e12]\n- link \"Checkout\" [ref=e20]"


def tool_call(name: str, call_id: str = "call_1", **arguments: Any) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=arguments)


def tool_turn(*calls: ToolCall, content: str = "") -> ProviderResponse:
    return ProviderResponse(content=content, tool_calls=list(calls), complete=False, finish_reason="tool_calls")


def final_turn(content: str) -> ProviderResponse:
    return ProviderResponse(content=content, complete=True, finish_reason="stop")


class ScriptedProvider(LLMProvider):
    """Returns queued responses in order and records what it was sent."""

    name = "scripted"

    def __init__(self, responses: Iterable[ProviderResponse] = (), available: bool = True):
        super().__init__()
        self.responses: List[ProviderResponse] = list(responses)
        self.available = available
        self.requests: List[Tuple[List[Message], List[str]]] = []
        self.closed = False

    def queue(self, *responses: ProviderResponse) -> None:
        self.responses.extend(responses)

    async def execute_with_tools(
        self,
        messages: List[Message],
        tools: List[ToolSpec],
        max_iterations: int,
    ) -> ProviderResponse:
        self.requests.append((list(messages), [t.name for t in tools]))
        if not self.responses:
            return final_turn("done")
        return self.responses.pop(0)

    def is_available(self) -> bool:
        return self.available

    async def close(self) -> None:
        self.closed = True


class RecordingBackend:
    """In-memory tool server: snapshots return page text, screenshots return a path."""

    def __init__(self, screenshot_dir: Optional[Path] = None):
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.failures: Dict[str, str] = {}
        self.snapshot_text = SNAPSHOT_TEXT
        self.screenshot_dir = screenshot_dir
        self.closed = False
        self._shots = 0

    def names(self) -> List[str]:
        return [name for name, _ in self.calls]

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> ToolResult:
        self.calls.append((name, dict(arguments)))
        if name in self.failures:
            return ToolResult(success=False, message=self.failures[name], content=self.failures[name])
        if name == "browser_snapshot":
            return ToolResult(success=True, message="Accessibility tree captured", content=self.snapshot_text)
        if name == "browser_take_screenshot":
            self._shots += 1
            path = f"/tmp/shot-{self._shots}.png"
            if self.screenshot_dir is not None:
                target = self.screenshot_dir / f"shot-{self._shots}.png"
                target.write_bytes(b"png")
                path = str(target)
            return ToolResult(success=True, message=f"[Screenshot]({path})", content=f"[Screenshot]({path})", path=path)
        return ToolResult(success=True, message=f"{name} ok", content=f"{name} ok")

    async def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def _reset_prompt_cache():
    clear_prompt_cache()
    yield
    clear_prompt_cache()


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config(temp_dir: Path) -> AgentCoreConfig:
    """Config with compaction off and folders under the temp dir."""
    return AgentCoreConfig.model_validate(
        {
            "agent": {"history_keep": -1, "max_iterations": 5},
            "prompts": {"dynamic": False},
            "reporting": {
                "screenshots_folder": str(temp_dir / "screenshots"),
                "reports_folder": str(temp_dir / "reports"),
            },
        }
    )


@pytest.fixture
def backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def tool_executor(backend: RecordingBackend) -> ToolExecutor:
    return ToolExecutor(backend, ScreenshotStore())


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def sample_plan() -> TestPlan:
    return TestPlan(
        id="checkout",
        name="Checkout flow",
        steps=[
            TestStep(1, "Click Add to cart for the backpack"),
            TestStep(2, "Open the cart"),
            TestStep(3, "Verify the cart shows 1 item"),
        ],
        app_url="https://shop.example",
        variables={"username": "standard_user", "password": "secret_sauce"},
        tags={"smoke", "cart"},
    )


@pytest.fixture
def sample_result(sample_plan: TestPlan) -> TestRunResult:
    return TestRunResult(
        plan=sample_plan,
        success=False,
        started_at=datetime(2024, 1, 1, 10, 0, 0),
        finished_at=datetime(2024, 1, 1, 10, 0, 30),
        reason="Cart badge missing",
        steps=[
            StepResult(1, "Click Add to cart for the backpack", STEP_PASSED, "added", "/tmp/s1.png"),
            StepResult(2, "Open the cart", STEP_PASSED, None, "/tmp/s2.png"),
            StepResult(3, "Verify the cart shows 1 item", STEP_FAILED, "Cart badge missing", "/tmp/s3.png"),
        ],
        variables={"username": "standard_user", "password": "secret_sauce"},
        execution_mode="batch",
        provider="scripted",
    )
