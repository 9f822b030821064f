"""Browser tool catalog and the executor that dispatches model tool calls."""
from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from exceptions import ToolError
from message_types import ToolSpec
from snapshots import is_snapshot_tool
from transport import ToolResult

SNAPSHOT_TOOL = "snapshot"
SCREENSHOT_TOOL = "browser_take_screenshot"
PAGE_CHANGING_TOOLS = frozenset(
    {
        "browser_navigate",
        "browser_click",
        "browser_type",
        "browser_select_option",
        "browser_press_key",
    }
)
# Names the model sees that differ from the tool server's own.
TOOL_ALIASES = {SNAPSHOT_TOOL: "browser_snapshot"}

_REF_DESCRIPTION = (
    "Exact target element reference from the page snapshot (e.g., 'e11'). "
    "Use the exact value shown in [ref=...] without any prefix."
)


def _schema(properties: Dict[str, Any], required: Optional[List[str]] = None) -> Dict[str, Any]:
    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


BROWSER_TOOLS: List[ToolSpec] = [
    ToolSpec(
        name="browser_navigate",
        description="Navigate to a URL",
        parameters=_schema({"url": {"type": "string", "description": "The URL to navigate to"}}, ["url"]),
    ),
    ToolSpec(
        name=SNAPSHOT_TOOL,
        description=(
            "Capture an accessibility snapshot of the page. Use the optional 'selector' parameter "
            "to scope the snapshot to a specific container such as 'dialog', 'form', 'main', or 'table'."
        ),
        parameters=_schema(
            {"selector": {"type": "string", "description": "Optional CSS selector to scope the snapshot"}}
        ),
    ),
    ToolSpec(
        name="browser_click",
        description="Click an element on the page. Requires element description and ref token from snapshot.",
        parameters=_schema(
            {
                "element": {
                    "type": "string",
                    "description": "Human-readable element description (e.g., 'Login button')",
                },
                "ref": {"type": "string", "description": _REF_DESCRIPTION},
            },
            ["element", "ref"],
        ),
    ),
    ToolSpec(
        name="browser_type",
        description=(
            "Type text into an input field. Requires element description, ref token (from snapshot), "
            "and text to type."
        ),
        parameters=_schema(
            {
                "element": {
                    "type": "string",
                    "description": "Human-readable element description (e.g., 'Username input')",
                },
                "ref": {"type": "string", "description": _REF_DESCRIPTION},
                "text": {"type": "string", "description": "Text to type into the element"},
            },
            ["element", "ref", "text"],
        ),
    ),
    ToolSpec(
        name="browser_select_option",
        description="Select an option in a dropdown. Requires element description, ref token, and values array.",
        parameters=_schema(
            {
                "element": {"type": "string", "description": "Human-readable dropdown description"},
                "ref": {"type": "string", "description": _REF_DESCRIPTION},
                "values": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Array of values to select",
                },
            },
            ["element", "ref", "values"],
        ),
    ),
    ToolSpec(
        name="browser_press_key",
        description="Press a key on the keyboard (e.g., 'Enter', 'Escape', 'ArrowDown')",
        parameters=_schema(
            {"key": {"type": "string", "description": "Name of the key to press (e.g., 'Enter', 'a')"}},
            ["key"],
        ),
    ),
    ToolSpec(
        name="browser_wait_for",
        description="Wait for text to appear/disappear or for a specified time to pass",
        parameters=_schema(
            {
                "time": {"type": "number", "description": "The time to wait in seconds (optional)"},
                "text": {"type": "string", "description": "The text to wait for to appear (optional)"},
                "textGone": {"type": "string", "description": "The text to wait for to disappear (optional)"},
            }
        ),
    ),
    ToolSpec(
        name=SCREENSHOT_TOOL,
        description="Take a screenshot of the current page or a specific element",
        parameters=_schema(
            {
                "element": {"type": "string", "description": "Human-readable element description (optional)"},
                "ref": {"type": "string", "description": f"{_REF_DESCRIPTION} (optional)"},
                "fullPage": {"type": "boolean", "description": "Take full scrollable page screenshot (optional)"},
            }
        ),
    ),
    ToolSpec(
        name="browser_navigate_back",
        description="Go back to the previous page",
        parameters=_schema({}),
    ),
]


def tools_without_snapshot(tools: List[ToolSpec]) -> List[ToolSpec]:
    return [t for t in tools if not is_snapshot_tool(t.name)]


def should_capture_screenshot(tool_name: str) -> bool:
    return tool_name in PAGE_CHANGING_TOOLS


class ToolBackend(Protocol):
    """Anything that can run a named tool; ToolTransport in production."""

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> ToolResult:
        ...


class ScreenshotStore:
    """Copies screenshots written by the tool server into the run's folder."""

    def __init__(self, folder: Optional[Path] = None, logger: Optional[logging.Logger] = None):
        self.folder = Path(folder) if folder else None
        self.logger = logger or logging.getLogger("agent_core.screenshots")

    def store(self, source_path: Optional[str]) -> Optional[str]:
        """Return the stable path for ``source_path``; the original path if it can't be copied."""
        if not source_path:
            return None
        if self.folder is None:
            return source_path
        source = Path(source_path)
        if not source.exists():
            self.logger.warning(f"Screenshot file not found at: {source_path}")
            return source_path
        self.folder.mkdir(parents=True, exist_ok=True)
        dest = self.folder / f"screenshot_{int(time.time() * 1000)}_{source.name}"
        try:
            shutil.copy2(source, dest)
        except OSError as exc:
            self.logger.warning(f"Failed to copy screenshot {source_path}: {exc}")
            return source_path
        return str(dest)


class ToolExecutor:
    """Runs tool calls for the agent.

    Tool errors become failed ToolResults so the model can see them and
    recover. TransportError is not caught here: a dead tool server ends the run.
    """

    def __init__(
        self,
        backend: ToolBackend,
        screenshots: Optional[ScreenshotStore] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.backend = backend
        self.screenshots = screenshots or ScreenshotStore()
        self.logger = logger or logging.getLogger("agent_core.tools")

    async def execute(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResult:
        arguments = dict(arguments or {})
        server_name = TOOL_ALIASES.get(name, name)
        self.logger.info(f"Executing tool: {name} with args: {arguments}")
        try:
            return await self.backend.call_tool(server_name, arguments)
        except ToolError as exc:
            self.logger.error(f"Tool execution failed: {exc}")
            return ToolResult.failure(f"Tool execution failed: {exc.message}")

    async def take_screenshot(self, arguments: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """Capture a full-page screenshot and return its stored path, or None."""
        args = {"fullPage": True}
        args.update(arguments or {})
        result = await self.execute(SCREENSHOT_TOOL, args)
        if not result.success:
            self.logger.warning(f"Screenshot failed: {result.message}")
            return None
        return self.screenshot_path(result)

    def screenshot_path(self, result: Optional[ToolResult]) -> Optional[str]:
        if result is None or not result.path:
            self.logger.warning("Screenshot result carried no file path")
            return None
        return self.screenshots.store(result.path)
