"""Run the agent once with a single natural-language instruction."""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

from agent import AgentExecutor
from config import load_config
from exceptions import AgentCoreError
from providers import create_provider
from tools import ScreenshotStore, ToolExecutor
from transport import ClientRegistry


logging.basicConfig(
    level=logging.INFO,
    format='[%(levelname)s] %(message)s'
)
logger = logging.getLogger("agent_core.run_agent")


async def run(args: argparse.Namespace) -> int:
    overrides = {"provider": args.provider, "trace": True if args.trace else None}
    config = load_config(
        Path(args.config) if args.config else None,
        {k: v for k, v in overrides.items() if v is not None},
    )

    provider = create_provider(config.provider, logger=logger)
    registry = ClientRegistry(config.transport, logger=logger)
    try:
        async with registry.execution_context() as transport:
            tools = ToolExecutor(transport, ScreenshotStore(config.reporting.screenshots_folder, logger), logger)
            if args.app_url:
                nav = await tools.execute("browser_navigate", {"url": args.app_url})
                if not nav.success:
                    logger.error(f"Failed to navigate to app URL: {nav.message}")
                    return 1
            executor = AgentExecutor(config, provider, tools, logger=logger)
            result = await executor.execute(
                args.instruction,
                variables=dict(args.var or []),
                app_url=args.app_url,
                app_type=args.app_type,
            )
    finally:
        await provider.close()
        await registry.close_all()

    print(f"{result.outcome.value}: {result.message}")
    for name, value in result.extracted_variables.items():
        print(f"  {name} = {value}")
    for path in result.screenshots:
        print(f"  screenshot: {path}")
    return 0 if result.success else 1


def _variable(raw: str):
    name, sep, value = raw.partition("=")
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got {raw!r}")
    return name, value


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the browser agent with one instruction")
    parser.add_argument(
        "--instruction",
        type=str,
        required=True,
        help="The instruction for the agent to perform"
    )
    parser.add_argument("--app-url", help="Navigate here before running the instruction")
    parser.add_argument("--app-type", help="Application type used for prompt selection")
    parser.add_argument(
        "--var",
        action="append",
        type=_variable,
        metavar="NAME=VALUE",
        help="Variable available for {{NAME}} substitution (repeatable)"
    )
    parser.add_argument("--provider", help="LLM provider name")
    parser.add_argument("--trace", action="store_true", help="Log every model and tool exchange")
    parser.add_argument("--config", type=str, help="Path to config file")

    args = parser.parse_args()

    try:
        exit_code = asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        exit_code = 130
    except AgentCoreError as e:
        logger.error(f"Error: {e}", exc_info=True)
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
