"""Stdio JSON-RPC transport to the browser automation tool server.

Every concurrently running execution owns its own ``ToolTransport`` (and so
its own subprocess). Executions are told apart by an execution id held in
a ``ContextVar``, so the registry works the same for tasks on one event
loop as it does across threads.
"""
from __future__ import annotations

import asyncio
import contextvars
import itertools
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from mcp.types import (
    ClientCapabilities,
    Implementation,
    InitializeRequestParams,
    InitializeResult,
    JSONRPCNotification,
    JSONRPCRequest,
)
from pydantic import ValidationError

from config import TransportConfig
from exceptions import ToolError, ToolTimeoutError, TransportError

PROTOCOL_VERSION = "2024-11-05"
NO_OUTPUT_MESSAGE = "Operation completed successfully"
SNAPSHOT_SUMMARY_THRESHOLD = 500
STREAM_LIMIT = 32 * 1024 * 1024

logger = logging.getLogger("agent_core.transport")


@dataclass
class ToolResult:
    """Outcome of one tool call as seen by the agent."""

    success: bool
    message: str = ""
    content: Optional[str] = None
    path: Optional[str] = None
    resource_uri: Optional[str] = None

    @classmethod
    def failure(cls, message: str) -> "ToolResult":
        return cls(success=False, message=message, content="")


def _extract_screenshot_path(text: str) -> Optional[str]:
    # Tool server reports files as markdown links: [Screenshot](/tmp/x.png)
    if "Screenshot" not in text or "](/" not in text:
        return None
    start = text.index("](/") + 2
    end = text.find(")", start)
    if end <= start:
        return None
    path = text[start:end]
    return path if path.startswith("/") else "/" + path


def parse_tool_result(tool_name: str, response: Dict[str, Any]) -> ToolResult:
    """Turn a ``tools/call`` JSON-RPC response into a ToolResult."""
    result = response.get("result")
    if not isinstance(result, dict):
        logger.warning(f"Tool {tool_name} response has no result field")
        return ToolResult(success=True, message=NO_OUTPUT_MESSAGE)

    blocks = result.get("content")
    if not isinstance(blocks, list):
        return ToolResult(success=True, message=NO_OUTPUT_MESSAGE)

    texts: List[str] = []
    path: Optional[str] = None
    resource_uri: Optional[str] = None
    for block in blocks:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text" and "text" in block:
            text = str(block["text"])
            texts.append(text)
            path = _extract_screenshot_path(text) or path
        elif block_type == "image":
            logger.debug(f"Skipping image block from {tool_name}")
        elif block_type == "resource" and isinstance(block.get("resource"), dict):
            resource_uri = block["resource"].get("uri") or resource_uri

    combined = "\n".join(texts).strip()
    message = combined
    if tool_name in ("snapshot", "browser_snapshot") and len(combined) > SNAPSHOT_SUMMARY_THRESHOLD:
        message = f"Accessibility tree captured ({len(combined)} chars)"

    return ToolResult(
        success=not result.get("isError", False),
        message=message,
        content=combined,
        path=path,
        resource_uri=resource_uri,
    )


class StdioToolClient:
    """One tool server subprocess speaking newline-delimited JSON-RPC.

    A reader task resolves futures in ``_pending`` by request id; a second
    reader drains stderr into the debug log. Requests are serialized with a
    lock so at most one is in flight.
    """

    def __init__(
        self,
        command: List[str],
        env: Optional[Dict[str, str]] = None,
        request_timeout: float = 120.0,
        client_name: str = "browser-agent-core",
        client_version: str = "1.0.0",
        logger: Optional[logging.Logger] = None,
    ):
        self.command = list(command)
        self.env = env
        self.request_timeout = request_timeout
        self.client_name = client_name
        self.client_version = client_version
        self.logger = logger or logging.getLogger("agent_core.transport.client")
        self.server_info: Optional[Implementation] = None

        self._process: Optional[asyncio.subprocess.Process] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()
        self._readers: List[asyncio.Task] = []
        self._running = False

    @property
    def is_connected(self) -> bool:
        return self._running and self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    async def connect(self) -> None:
        """Spawn the tool server and start the stream readers."""
        if self._running:
            self.logger.warning("Tool server process already running")
            return
        self.logger.info(f"Starting tool server: {' '.join(self.command)}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            raise TransportError(f"Failed to start tool server: {exc}", self.command) from exc

        self._running = True
        self._readers = [
            asyncio.create_task(self._read_stdout(), name="tool-server-stdout"),
            asyncio.create_task(self._read_stderr(), name="tool-server-stderr"),
        ]
        self.logger.info(f"Tool server process started (PID: {self._process.pid})")

    async def initialize(self) -> Dict[str, Any]:
        """Protocol handshake; must succeed before any tool call."""
        params = InitializeRequestParams(
            protocolVersion=PROTOCOL_VERSION,
            capabilities=ClientCapabilities(),
            clientInfo=Implementation(name=self.client_name, version=self.client_version),
        )
        response = await self._send_request("initialize", params.model_dump(by_alias=True, exclude_none=True))
        try:
            init = InitializeResult.model_validate(response.get("result") or {})
            self.server_info = init.serverInfo
            self.logger.info(
                f"Tool server session initialized: name={init.serverInfo.name}, version={init.serverInfo.version}"
            )
        except ValidationError as exc:
            self.logger.warning(f"Unexpected initialize result from tool server: {exc}")
        await self._send_notification("notifications/initialized")
        return response

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return await self._send_request("tools/call", {"name": name, "arguments": arguments}, tool_name=name)

    async def _send_notification(self, method: str) -> None:
        notification = JSONRPCNotification(jsonrpc="2.0", method=method)
        await self._write(notification.model_dump_json(by_alias=True, exclude_none=True))

    async def _write(self, line: str) -> None:
        if not self.is_connected or self._process.stdin is None:
            raise TransportError("Tool server process not running", self.command)
        self.logger.debug(f"Sending to tool server: {line[:500]}")
        try:
            self._process.stdin.write(line.encode("utf-8") + b"\n")
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            self._running = False
            raise TransportError(f"Tool server stdin closed: {exc}", self.command) from exc

    async def _send_request(
        self,
        method: str,
        params: Dict[str, Any],
        tool_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        async with self._lock:
            request_id = next(self._ids)
            request = JSONRPCRequest(jsonrpc="2.0", id=request_id, method=method, params=params)
            future: asyncio.Future = asyncio.get_running_loop().create_future()
            self._pending[request_id] = future
            try:
                await self._write(request.model_dump_json(by_alias=True, exclude_none=True))
                return await asyncio.wait_for(future, timeout=self.request_timeout)
            except asyncio.TimeoutError as exc:
                raise ToolTimeoutError(self.request_timeout, tool_name or method) from exc
            finally:
                self._pending.pop(request_id, None)

    def _dispatch(self, line: str) -> None:
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            self.logger.error(f"Error parsing JSON from tool server stdout: {line[:200]}")
            return
        if not isinstance(payload, dict):
            self.logger.warning(f"Ignoring non-object message: {line[:200]}")
            return
        if "method" in payload:
            self.logger.debug(f"Ignoring server-initiated message: {payload.get('method')}")
            return

        msg_id = payload.get("id")
        if not isinstance(msg_id, int) or isinstance(msg_id, bool):
            self.logger.warning(f"Received message without valid ID: {line[:200]}")
            return
        future = self._pending.get(msg_id)
        if future is None or future.done():
            self.logger.warning(f"Received response for unknown request ID: {msg_id}")
            return
        if "error" in payload:
            error = payload["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            future.set_exception(ToolError(f"Tool server error: {message}"))
        else:
            future.set_result(payload)

    def _fail_pending(self, exc: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)

    async def _read_stdout(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stream = self._process.stdout
        try:
            while True:
                line = await stream.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").strip()
                if text:
                    self._dispatch(text)
        except (ValueError, OSError) as exc:
            self.logger.error(f"Error reading from tool server stdout: {exc}")
        finally:
            self._running = False
            self._fail_pending(TransportError("Tool server closed its output", self.command))
            self.logger.info("Tool server stdout reader exiting")

    async def _read_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        stream = self._process.stderr
        try:
            while True:
                line = await stream.readline()
                if not line:
                    break
                self.logger.debug(f"Tool server stderr: {line.decode('utf-8', errors='replace').rstrip()}")
        except (ValueError, OSError) as exc:
            self.logger.debug(f"Error reading from tool server stderr: {exc}")

    async def disconnect(self) -> None:
        """Stop the readers and the subprocess."""
        self._running = False
        process = self._process
        if process is not None and process.stdin is not None:
            process.stdin.close()
        if process is not None and process.returncode is None:
            self.logger.info(f"Terminating tool server (PID: {process.pid})")
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=5)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                self.logger.warning("Tool server did not exit gracefully, killing it")
                process.kill()
                await process.wait()
        for task in self._readers:
            task.cancel()
        await asyncio.gather(*self._readers, return_exceptions=True)
        self._readers = []
        self._fail_pending(TransportError("Tool server disconnected", self.command))
        self._pending.clear()
        self._process = None
        self.logger.info("Tool server client disconnected")


ClientFactory = Callable[[], StdioToolClient]


class ToolTransport:
    """Lazily started client with a single transparent respawn.

    If the subprocess has exited, the next call tears the old client down and
    starts a new one. A call that fails because the process died is retried
    once on a fresh process; if that also fails a TransportError is raised.
    Errors reported by a live server surface as ToolError.
    """

    def __init__(
        self,
        config: Optional[TransportConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or TransportConfig()
        self.logger = logger or logging.getLogger("agent_core.transport")
        self._client_factory = client_factory or self._default_client
        self._client: Optional[StdioToolClient] = None
        self._initialized = False
        self.spawn_count = 0

    def _default_client(self) -> StdioToolClient:
        return StdioToolClient(
            command=self.config.command,
            env=self.config.process_env(),
            request_timeout=self.config.request_timeout_seconds,
            client_name=self.config.client_name,
            client_version=self.config.client_version,
            logger=self.logger,
        )

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    async def ensure_started(self) -> StdioToolClient:
        if self._initialized and self._client is not None:
            if self._client.is_connected:
                return self._client
            self.logger.warning("Tool server process died unexpectedly, reinitializing")
            await self.reset()

        client = self._client_factory()
        self._client = client
        self.spawn_count += 1
        try:
            await client.connect()
            await client.initialize()
        except (ToolError, TransportError) as exc:
            self.logger.error(f"Failed to initialize tool server session: {exc}")
            await self.reset()
            if isinstance(exc, TransportError):
                raise
            raise TransportError(f"Tool server handshake failed: {exc.message}", self.config.command) from exc
        self._initialized = True
        return client

    async def reset(self) -> None:
        client, self._client = self._client, None
        self._initialized = False
        if client is not None:
            await client.disconnect()

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> ToolResult:
        return await self._call(name, arguments, is_retry=False)

    async def _call(self, name: str, arguments: Dict[str, Any], is_retry: bool) -> ToolResult:
        if self._initialized and not self.is_connected:
            # a restart of a dead process is the one retry this call gets
            is_retry = True
        client = await self.ensure_started()
        self.logger.info(f"Calling tool: {name}")
        try:
            response = await client.call_tool(name, arguments)
        except (ToolError, TransportError) as exc:
            if client.is_connected:
                raise
            if not is_retry:
                self.logger.warning(f"Tool server died during {name}, restarting and retrying: {exc}")
                await self.reset()
                return await self._call(name, arguments, is_retry=True)
            await self.reset()
            raise TransportError(f"Tool server failed twice during {name}: {exc.message}", self.config.command) from exc
        return parse_tool_result(name, response)

    async def close(self) -> None:
        await self.reset()


_current_execution: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "agent_core_execution_id", default=None
)


def current_execution_id() -> Optional[str]:
    return _current_execution.get()


class ClientRegistry:
    """Maps execution ids to their private ToolTransport."""

    def __init__(
        self,
        config: Optional[TransportConfig] = None,
        transport_factory: Optional[Callable[[], ToolTransport]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or TransportConfig()
        self.logger = logger or logging.getLogger("agent_core.transport.registry")
        self._factory = transport_factory or (lambda: ToolTransport(self.config, logger=self.logger))
        self._transports: Dict[str, ToolTransport] = {}

    def __len__(self) -> int:
        return len(self._transports)

    def get(self, execution_id: Optional[str] = None) -> ToolTransport:
        """Transport for ``execution_id`` or for the current execution context."""
        key = execution_id or current_execution_id()
        if key is None:
            raise TransportError("No execution context is active; use ClientRegistry.execution_context()")
        transport = self._transports.get(key)
        if transport is None:
            transport = self._factory()
            self._transports[key] = transport
        return transport

    async def release(self, execution_id: str) -> None:
        transport = self._transports.pop(execution_id, None)
        if transport is not None:
            await transport.close()

    async def close_all(self) -> None:
        for key in list(self._transports):
            await self.release(key)

    @asynccontextmanager
    async def execution_context(self, execution_id: Optional[str] = None) -> AsyncIterator[ToolTransport]:
        """Bind an execution id for the duration of a run and tear its transport down after."""
        key = execution_id or uuid.uuid4().hex
        token = _current_execution.set(key)
        try:
            yield self.get(key)
        finally:
            _current_execution.reset(token)
            await self.release(key)
