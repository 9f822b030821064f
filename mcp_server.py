"""MCP server bridge for the plan runner.

Exposes a small tool surface for a coding agent to:
- list the available test plans
- start a plan run in the background
- list runs, fetch one run with its step results, cancel a run

Transport: stdio by default, or HTTP/SSE with ``--http host:port``.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

import anyio
import mcp.types as types
import uvicorn
from mcp.server import InitializationOptions, Server
from mcp.server.sse import SseServerTransport
from mcp.server.stdio import stdio_server
from starlette.applications import Starlette
from starlette.responses import Response
from starlette.routing import Route

from config import AgentCoreConfig, load_config
from exceptions import PlanLoadError
from plan_loader import discover_plans, load_plan_file
from reporters import JSONReporter, JUnitReporter, mask_variables
from test_runner import PlanRunner
from test_types import TestPlan, TestRunResult

SERVER_NAME = "browser-agent-mcp"
SERVER_VERSION = "0.1.0"

logger = logging.getLogger("agent_core.mcp")
logger.propagate = False
LOG_FILE = Path(__file__).with_name("mcp_server.log")

ROOT = Path(__file__).parent
PLANS_DIR = ROOT / "plans"
REPORTS_DIR = ROOT / "reports"
SCREENSHOTS_DIR = ROOT / "screenshots"
RUN_INDEX_PATH = REPORTS_DIR / "run_index.json"


def _now_iso() -> str:
    return datetime.utcnow().isoformat()


def _file_uri(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    return Path(path).resolve().as_uri()


def _new_run_id(plan_id: str) -> str:
    return f"{plan_id}-{datetime.utcnow().strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


def _step_summaries(result: TestRunResult) -> List[Dict[str, Any]]:
    return [
        {
            "number": s.number,
            "instruction": s.instruction,
            "status": s.status,
            "message": s.message,
            "screenshot": _file_uri(s.screenshot_path),
        }
        for s in result.steps
    ]


@dataclass
class RunRecord:
    run_id: str
    plan_id: str
    status: str  # queued|running|passed|failed|error|cancelled
    success: Optional[bool]
    reason: Optional[str]
    started_at: str
    finished_at: Optional[str]
    steps: List[Dict[str, Any]] = field(default_factory=list)
    variables: Dict[str, Any] = field(default_factory=dict)
    report_paths: Optional[Dict[str, Optional[str]]] = None

    def apply_result(self, result: TestRunResult) -> None:
        """Copy a finished run into the record; secret variables are masked."""
        self.status = "passed" if result.success else "failed"
        self.success = result.success
        self.reason = result.reason
        self.steps = _step_summaries(result)
        self.variables = mask_variables(result.variables)


class RunIndex:
    """Run records persisted as JSON so runs can be inspected after restart."""

    def __init__(self, path: Path):
        self.path = path
        self._runs: Dict[str, RunRecord] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            for run_id, data in raw.items():
                self._runs[run_id] = RunRecord(**data)
        except (OSError, ValueError, TypeError) as exc:
            logger.warning(f"Failed to load run index: {exc}")

    def _save(self) -> None:
        payload = {rid: asdict(run) for rid, run in self._runs.items()}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")

    def list_runs(self) -> List[RunRecord]:
        return list(self._runs.values())

    def get(self, run_id: str) -> Optional[RunRecord]:
        return self._runs.get(run_id)

    def put(self, record: RunRecord) -> None:
        self._runs[record.run_id] = record
        self._save()


class PlanStore:
    """Plans read from a directory of YAML/JSON files."""

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def list_plans(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": p.id,
                "name": p.name,
                "app_url": p.app_url,
                "steps": len(p.steps),
                "tags": sorted(p.tags),
                "skip": p.skip,
            }
            for p in discover_plans(self.root, include_skipped=True)
        ]

    def load(self, plan_id: str) -> TestPlan:
        for suffix in (".yaml", ".yml", ".json"):
            path = self.root / f"{plan_id}{suffix}"
            if path.exists():
                return load_plan_file(path)
        for plan in discover_plans(self.root, include_skipped=True):
            if plan.id == plan_id:
                return plan
        raise PlanLoadError(f"Plan not found: {plan_id}")


class AgentMCPServer:
    """Glue layer between MCP and the plan runner."""

    def __init__(self, config: Optional[AgentCoreConfig] = None) -> None:
        self.server = Server(SERVER_NAME, instructions="Run and inspect natural-language browser test plans")
        self.config = config
        self.plan_store = PlanStore(PLANS_DIR)
        self.run_index = RunIndex(RUN_INDEX_PATH)
        self._active_tasks: Dict[str, asyncio.Task] = {}
        self._semaphore = asyncio.Semaphore(1)  # one browser at a time
        self._register_handlers()

    def init_options(self) -> InitializationOptions:
        return InitializationOptions(
            server_name=SERVER_NAME,
            server_version=SERVER_VERSION,
            capabilities=self.server.get_capabilities(
                notification_options=self.server.notification_options,
                experimental_capabilities={},
            ),
            instructions=self.server.instructions,
        )

    def _register_handlers(self) -> None:
        run_id_schema = {"type": "object", "properties": {"run_id": {"type": "string"}}, "required": ["run_id"]}

        @self.server.list_tools()
        async def list_tools() -> List[types.Tool]:
            return [
                types.Tool(
                    name="list_plans",
                    description="List available test plans",
                    inputSchema={"type": "object", "properties": {}},
                ),
                types.Tool(
                    name="run_plan",
                    description="Start a plan run in the background; poll get_run for the result",
                    inputSchema={
                        "type": "object",
                        "properties": {
                            "plan_id": {"type": "string"},
                            "mode": {"type": "string", "enum": ["batch", "step"]},
                            "provider": {"type": "string"},
                            "variables": {"type": "object"},
                        },
                        "required": ["plan_id"],
                    },
                ),
                types.Tool(
                    name="list_runs",
                    description="List recent runs",
                    inputSchema={"type": "object", "properties": {}},
                ),
                types.Tool(
                    name="get_run",
                    description="Status, step results and report links for a run_id",
                    inputSchema=run_id_schema,
                ),
                types.Tool(
                    name="cancel_run",
                    description="Attempt to cancel an in-progress run",
                    inputSchema=run_id_schema,
                ),
            ]

        @self.server.call_tool()
        async def call_tool(name: str, arguments: Dict[str, Any]) -> List[types.TextContent]:
            logger.info(f"call_tool start: {name} args={arguments}")
            try:
                if name == "list_plans":
                    payload: Any = self.plan_store.list_plans()
                elif name == "run_plan":
                    payload = await self.run_plan(arguments)
                elif name == "list_runs":
                    payload = [
                        {k: v for k, v in asdict(r).items() if k not in ("steps", "variables")}
                        for r in self.run_index.list_runs()
                    ]
                elif name == "get_run":
                    payload = self.get_run(arguments.get("run_id"))
                elif name == "cancel_run":
                    payload = await self.cancel_run(arguments.get("run_id"))
                else:
                    payload = {"error": f"Unknown tool: {name}"}
            except Exception as exc:
                logger.exception(f"Tool call failed: {name}")
                payload = {"error": str(exc), "tool": name}
            logger.info(f"call_tool done: {name}")
            return [types.TextContent(type="text", text=json.dumps(payload, indent=2, default=str))]

    def _require_record(self, run_id: Optional[str]) -> RunRecord:
        if not run_id:
            raise ValueError("run_id is required")
        record = self.run_index.get(run_id)
        if not record:
            raise KeyError(f"Run not found: {run_id}")
        return record

    def get_run(self, run_id: Optional[str]) -> Dict[str, Any]:
        return asdict(self._require_record(run_id))

    def _run_config(self, args: Dict[str, Any]) -> AgentCoreConfig:
        config = (self.config or load_config()).model_copy(deep=True)
        if args.get("mode"):
            config.agent.execution_mode = args["mode"]
        if args.get("provider"):
            config.provider.name = args["provider"]
        config.reporting.reports_folder = REPORTS_DIR
        config.reporting.screenshots_folder = SCREENSHOTS_DIR
        return config

    async def run_plan(self, args: Dict[str, Any]) -> Dict[str, Any]:
        plan_id = args["plan_id"]
        plan = self.plan_store.load(plan_id)
        if args.get("variables"):
            plan.variables.update(args["variables"])
        config = self._run_config(args)

        run_id = _new_run_id(plan_id)
        record = RunRecord(
            run_id=run_id,
            plan_id=plan_id,
            status="queued",
            success=None,
            reason=None,
            started_at=_now_iso(),
            finished_at=None,
        )
        self.run_index.put(record)
        logger.info(f"run_plan enqueue: {plan_id} as {run_id}")

        async def worker() -> None:
            record.status = "running"
            record.started_at = _now_iso()
            self.run_index.put(record)
            try:
                runner = PlanRunner(config=config, logger=logger)
                try:
                    result = await runner.run_plan(plan)
                finally:
                    await runner.registry.close_all()
                json_path = JSONReporter().generate(result, REPORTS_DIR)
                junit_path = JUnitReporter().generate(result, REPORTS_DIR)

                record.apply_result(result)
                record.report_paths = {"json": _file_uri(str(json_path)), "junit": _file_uri(str(junit_path))}
            except asyncio.CancelledError:
                record.status = "cancelled"
                record.success = False
                record.reason = "Cancelled"
                raise
            except Exception as exc:
                logger.exception("run_plan worker failed")
                record.status = "error"
                record.success = False
                record.reason = str(exc)
            finally:
                record.finished_at = _now_iso()
                self.run_index.put(record)
                logger.info(f"run_plan worker finished: {run_id} ({record.status})")

        async def wrapped_worker() -> None:
            async with self._semaphore:
                await worker()

        task = asyncio.create_task(wrapped_worker(), name=f"run-{run_id}")
        self._active_tasks[run_id] = task
        task.add_done_callback(lambda t: self._active_tasks.pop(run_id, None))

        return {"run_id": run_id, "plan_id": plan_id, "status": "queued", "queued_at": record.started_at}

    async def cancel_run(self, run_id: Optional[str]) -> Dict[str, Any]:
        record = self._require_record(run_id)
        task = self._active_tasks.get(run_id)
        if not task:
            return {"run_id": run_id, "status": record.status, "message": "Not running"}
        task.cancel()
        if record.status == "queued":
            record.status = "cancelled"
            record.success = False
            record.reason = "Cancelled"
            record.finished_at = _now_iso()
            self.run_index.put(record)
        return {"run_id": run_id, "status": "cancelled"}

    async def serve_stdio(self) -> None:
        async with stdio_server() as (read_stream, write_stream):
            await self.server.run(read_stream, write_stream, initialization_options=self.init_options())

    def http_app(self) -> Starlette:
        transport = SseServerTransport("/messages")

        async def handle_sse(request):
            async with transport.connect_sse(request.scope, request.receive, request._send) as streams:
                await self.server.run(
                    streams[0],
                    streams[1],
                    initialization_options=self.init_options(),
                    stateless=True,
                )
            return Response()

        async def handle_root(request):
            return Response(f"{SERVER_NAME} MCP server", media_type="text/plain")

        async def post_message(request):
            if not request.query_params.get("session_id"):
                return Response("Accepted", status_code=202)
            await transport.handle_post_message(request.scope, request.receive, request._send)
            return Response("Accepted", status_code=202)

        async def handle_oauth(request):
            return Response(status_code=404)

        return Starlette(
            routes=[
                Route("/", endpoint=handle_root, methods=["GET"]),
                Route("/sse", endpoint=handle_sse, methods=["GET"]),
                Route("/.well-known/oauth-authorization-server", endpoint=handle_oauth, methods=["GET"]),
                Route("/", endpoint=post_message, methods=["POST"]),
                Route("/messages", endpoint=post_message, methods=["POST"]),
            ]
        )

    async def serve_http(self, bind: str) -> None:
        host, port = bind.split(":")
        logger.info(f"HTTP SSE server listening on http://{host}:{port}")
        server = uvicorn.Server(uvicorn.Config(self.http_app(), host=host, port=int(port), log_level="info"))
        await server.serve()


def _configure_logging() -> None:
    """Log to a rotating file only; stdout belongs to the MCP stdio stream."""
    LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
    handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"))
    logging.basicConfig(level=logging.INFO, handlers=[handler], force=True)
    logger.handlers = [handler]
    logging.getLogger("mcp").setLevel(logging.DEBUG)
    logging.getLogger("anyio").setLevel(logging.WARNING)
    logger.info(f"MCP server logging to {LOG_FILE}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Browser agent MCP server (stdio or HTTP SSE)")
    parser.add_argument("--http", help="Run HTTP SSE server on host:port (e.g., 127.0.0.1:8765)")
    parser.add_argument("--config", help="Path to config file")
    args = parser.parse_args()

    _configure_logging()
    config = load_config(Path(args.config)) if args.config else None
    srv = AgentMCPServer(config)

    try:
        if args.http:
            anyio.run(srv.serve_http, args.http)
        else:
            anyio.run(srv.serve_stdio)
    except Exception:
        logger.exception("MCP server crashed")
        raise


if __name__ == "__main__":
    main()
