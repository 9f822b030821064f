"""Unit tests for the tool catalog, executor and screenshot store."""
from __future__ import annotations

from pathlib import Path

import pytest

from exceptions import ToolError, TransportError
from tools import (
    BROWSER_TOOLS,
    SNAPSHOT_TOOL,
    ScreenshotStore,
    ToolExecutor,
    should_capture_screenshot,
    tools_without_snapshot,
)
from transport import ToolResult


class RaisingBackend:
    def __init__(self, exc: Exception):
        self.exc = exc

    async def call_tool(self, name, arguments):
        raise self.exc


class TestCatalog:
    """Tests for the browser tool list."""

    def test_names_unique(self):
        names = [t.name for t in BROWSER_TOOLS]
        assert len(names) == len(set(names))
        assert SNAPSHOT_TOOL in names

    def test_without_snapshot(self):
        names = [t.name for t in tools_without_snapshot(BROWSER_TOOLS)]
        assert SNAPSHOT_TOOL not in names
        assert "browser_click" in names

    def test_page_changing_tools(self):
        assert should_capture_screenshot("browser_click")
        assert should_capture_screenshot("browser_navigate")
        assert not should_capture_screenshot("snapshot")
        assert not should_capture_screenshot("browser_take_screenshot")


class TestToolExecutor:
    """Tests for ToolExecutor."""

    async def test_snapshot_alias(self, backend, tool_executor: ToolExecutor):
        result = await tool_executor.execute("snapshot")
        assert result.success
        assert backend.names() == ["browser_snapshot"]

    async def test_tool_error_becomes_failure(self):
        executor = ToolExecutor(RaisingBackend(ToolError("no such element", "browser_click")))
        result = await executor.execute("browser_click", {"ref": "e1"})
        assert not result.success
        assert result.message == "Tool execution failed: no such element"

    async def test_transport_error_propagates(self):
        executor = ToolExecutor(RaisingBackend(TransportError("dead")))
        with pytest.raises(TransportError):
            await executor.execute("browser_click", {})

    async def test_take_screenshot_full_page(self, backend, tool_executor: ToolExecutor):
        path = await tool_executor.take_screenshot()
        assert path == "/tmp/shot-1.png"
        assert backend.calls[-1] == ("browser_take_screenshot", {"fullPage": True})

    async def test_take_screenshot_failure(self, backend, tool_executor: ToolExecutor):
        backend.failures["browser_take_screenshot"] = "no page"
        assert await tool_executor.take_screenshot() is None

    def test_screenshot_path_without_path(self, tool_executor: ToolExecutor):
        assert tool_executor.screenshot_path(ToolResult(success=True, message="ok")) is None


class TestScreenshotStore:
    """Tests for copying screenshots into the run folder."""

    def test_copies_into_folder(self, temp_dir: Path):
        source = temp_dir / "raw.png"
        source.write_bytes(b"png")
        store = ScreenshotStore(temp_dir / "run")
        stored = Path(store.store(str(source)))
        assert stored.parent == temp_dir / "run"
        assert stored.read_bytes() == b"png"
        assert stored.name.endswith("_raw.png")

    def test_missing_source_keeps_path(self, temp_dir: Path):
        store = ScreenshotStore(temp_dir / "run")
        assert store.store("/does/not/exist.png") == "/does/not/exist.png"

    def test_without_folder(self):
        assert ScreenshotStore().store("/tmp/x.png") == "/tmp/x.png"
        assert ScreenshotStore().store(None) is None
