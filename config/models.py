"""Pydantic configuration models for the browser test agent core."""
from __future__ import annotations

import json
import os
import shlex
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from exceptions import ConfigFileNotFoundError, ConfigurationError


# Load .env file if present
load_dotenv()

DEFAULT_TOOL_COMMAND = ["npx", "-y", "@playwright/mcp@latest", "--snapshot-mode", "incremental"]


def _apply_env(data: Any, env_mapping: dict[str, str]) -> Any:
    if not isinstance(data, dict):
        return data
    for field_name, env_var in env_mapping.items():
        if field_name not in data or data[field_name] is None:
            env_value = os.getenv(env_var)
            if env_value:
                data[field_name] = env_value
    return data


class OpenAIProviderConfig(BaseModel):
    """Settings for the function-call style (OpenAI) backend."""

    api_key: str = Field(default="", description="OpenAI API key")
    model: str = Field(default="gpt-4", description="Chat model name")
    base_url: Optional[str] = Field(default=None, description="Override for the API endpoint")
    max_tokens: int = Field(default=4096, ge=100, le=32768, description="Maximum tokens per reply")
    temperature: float = Field(default=0.0, ge=0.0, le=2.0, description="Sampling temperature")
    timeout_seconds: float = Field(default=60.0, gt=0, description="Per-request timeout")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: Optional[str]) -> Optional[str]:
        """Ensure base_url doesn't have trailing slash."""
        return v.rstrip("/") if v else v

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        """Load values from environment variables if not explicitly set."""
        return _apply_env(
            data,
            {
                "api_key": "OPENAI_API_KEY",
                "model": "OPENAI_MODEL",
                "base_url": "OPENAI_BASE_URL",
            },
        )


class AnthropicProviderConfig(BaseModel):
    """Settings for the content-block style (Anthropic) backend."""

    api_key: str = Field(default="", description="Anthropic API key")
    model: str = Field(default="claude-3-5-sonnet-20241022", description="Messages API model name")
    base_url: Optional[str] = Field(default=None, description="Override for the API endpoint")
    max_tokens: int = Field(default=4096, ge=100, le=32768, description="Maximum tokens per reply")
    temperature: float = Field(default=0.0, ge=0.0, le=1.0, description="Sampling temperature")
    timeout_seconds: float = Field(default=60.0, gt=0, description="Per-request timeout")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: Optional[str]) -> Optional[str]:
        """Ensure base_url doesn't have trailing slash."""
        return v.rstrip("/") if v else v

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        """Load values from environment variables if not explicitly set."""
        return _apply_env(
            data,
            {
                "api_key": "ANTHROPIC_API_KEY",
                "model": "ANTHROPIC_MODEL",
                "base_url": "ANTHROPIC_BASE_URL",
            },
        )


class ProviderConfig(BaseModel):
    """Which LLM backend to use and how to reach each of them."""

    name: str = Field(default="openai", description="Registered provider name (openai, anthropic)")
    openai: OpenAIProviderConfig = Field(default_factory=OpenAIProviderConfig)
    anthropic: AnthropicProviderConfig = Field(default_factory=AnthropicProviderConfig)

    @field_validator("name")
    @classmethod
    def normalize_name(cls, v: str) -> str:
        return v.strip().lower()

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        """Load values from environment variables if not explicitly set."""
        return _apply_env(data, {"name": "AGENT_LLM_PROVIDER"})


class AgentConfig(BaseModel):
    """Agent loop and session behaviour."""

    max_iterations: int = Field(
        default=15,
        ge=1,
        le=100,
        description="Maximum provider round trips per instruction",
    )
    history_keep: int = Field(
        default=2,
        ge=-1,
        description="Iterations of tool exchanges kept in history (-1 disables compaction)",
    )
    snapshot_max_chars: int = Field(
        default=8000,
        ge=500,
        description="Character budget for page snapshots in the conversation",
    )
    snapshot_max_chars_escalated: int = Field(
        default=30000,
        ge=500,
        description="Snapshot budget used while the batch loop is stuck",
    )
    tool_response_max_chars: int = Field(
        default=4000,
        ge=200,
        description="Character budget for non-snapshot tool results",
    )
    max_batch_steps: int = Field(
        default=8,
        ge=1,
        le=50,
        description="Maximum plan steps offered to the model per batch turn",
    )
    stuck_batch_limit: int = Field(
        default=4,
        ge=1,
        le=20,
        description="Consecutive no-progress snapshot requests before failing the step",
    )
    execution_mode: Literal["batch", "step"] = Field(
        default="batch",
        description="Run plans several steps per model turn or one step at a time",
    )
    auto_screenshots: bool = Field(
        default=True,
        description="Capture a screenshot after each state-changing tool call",
    )
    trace_logging_enabled: bool = Field(
        default=False,
        description="Log provider requests, responses and tool traffic",
    )
    trace_logging_max_chars: int = Field(
        default=2000,
        ge=0,
        description="Truncation limit for trace log payloads",
    )

    @model_validator(mode="after")
    def check_budgets(self) -> "AgentConfig":
        """Escalated snapshot budget must not shrink the normal one."""
        if self.snapshot_max_chars_escalated < self.snapshot_max_chars:
            object.__setattr__(self, "snapshot_max_chars_escalated", self.snapshot_max_chars)
        return self

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        """Load values from environment variables if not explicitly set."""
        return _apply_env(
            data,
            {
                "history_keep": "AGENT_HISTORY_KEEP",
                "trace_logging_enabled": "AGENT_TRACE_LOGGING",
            },
        )


class TransportConfig(BaseModel):
    """Tool subprocess settings."""

    command: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TOOL_COMMAND),
        description="Command line that starts the tool server",
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Extra environment variables for the tool server",
    )
    browsers_path: str = Field(
        default="~/.cache/ms-playwright",
        description="PLAYWRIGHT_BROWSERS_PATH passed to the subprocess",
    )
    user_data_dir: str = Field(
        default="/tmp/playwright-mcp-userdata",
        description="USER_DATA_DIR passed to the subprocess",
    )
    request_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        le=600,
        description="Timeout for a single request to the tool server",
    )
    client_name: str = Field(default="browser-agent-core", description="Name sent in the handshake")
    client_version: str = Field(default="1.0.0", description="Version sent in the handshake")

    @field_validator("command", mode="before")
    @classmethod
    def split_command(cls, v: Any) -> Any:
        """Accept a shell-style string as well as a list."""
        if isinstance(v, str):
            return shlex.split(v)
        return v

    @field_validator("command")
    @classmethod
    def require_command(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("command must not be empty")
        return v

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        """Load values from environment variables if not explicitly set."""
        return _apply_env(
            data,
            {
                "command": "AGENT_TOOL_COMMAND",
                "browsers_path": "PLAYWRIGHT_BROWSERS_PATH",
            },
        )

    def process_env(self) -> dict[str, str]:
        """Environment for the spawned tool server."""
        env = dict(os.environ)
        env["PLAYWRIGHT_BROWSERS_PATH"] = os.path.expanduser(self.browsers_path)
        env["USER_DATA_DIR"] = self.user_data_dir
        env.update(self.env)
        return env


class PromptConfig(BaseModel):
    """System prompt sources."""

    system_prompt_file: Optional[Path] = Field(
        default=None,
        description="Plain-text system prompt used when dynamic prompts are off",
    )
    categories_file: Optional[Path] = Field(
        default=None,
        description="JSON file with core/app/app-type prompt categories",
    )
    dynamic: bool = Field(
        default=True,
        description="Assemble the prompt from categories matched against the instruction",
    )

    @field_validator("system_prompt_file", "categories_file", mode="before")
    @classmethod
    def convert_to_path(cls, v: Any) -> Any:
        """Convert string to Path."""
        if isinstance(v, str):
            return Path(v)
        return v


class ReportingConfig(BaseModel):
    """Reporting and output configuration."""

    screenshots_folder: Path = Field(
        default=Path("./screenshots"),
        description="Directory for saving screenshots",
    )
    reports_folder: Path = Field(
        default=Path("./reports"),
        description="Directory for saving reports",
    )
    output_format: Literal["json", "junit", "all"] = Field(
        default="json",
        description="Report output format",
    )

    @field_validator("screenshots_folder", "reports_folder", mode="before")
    @classmethod
    def convert_to_path(cls, v: Any) -> Path:
        """Convert string to Path."""
        if isinstance(v, str):
            return Path(v)
        return v


class AgentCoreConfig(BaseModel):
    """Root configuration model combining all config sections."""

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    prompts: PromptConfig = Field(default_factory=PromptConfig)
    reporting: ReportingConfig = Field(default_factory=ReportingConfig)

    # Execution settings
    parallel_workers: int = Field(
        default=1,
        ge=1,
        le=16,
        description="Number of plans executed concurrently",
    )
    verbose: bool = Field(
        default=False,
        description="Enable verbose logging",
    )

    @classmethod
    def from_flat_dict(cls, data: dict[str, Any]) -> "AgentCoreConfig":
        """Create config from a flat dictionary of well-known keys."""
        agent_keys = set(AgentConfig.model_fields)
        transport_keys = {"command", "request_timeout_seconds", "browsers_path", "user_data_dir"}
        prompt_keys = {"system_prompt_file", "categories_file", "dynamic"}
        reporting_keys = set(ReportingConfig.model_fields)

        nested: dict[str, Any] = {
            "provider": {},
            "agent": {},
            "transport": {},
            "prompts": {},
            "reporting": {},
        }

        for key, value in data.items():
            if key in agent_keys:
                nested["agent"][key] = value
            elif key in transport_keys:
                nested["transport"][key] = value
            elif key in prompt_keys:
                nested["prompts"][key] = value
            elif key in reporting_keys:
                nested["reporting"][key] = value
            elif key == "llm_provider":
                nested["provider"]["name"] = value
            elif key in ("parallel_workers", "verbose"):
                nested[key] = value

        return cls.model_validate(nested)


def load_config(
    config_path: Optional[Path] = None,
    cli_overrides: Optional[dict[str, Any]] = None,
) -> AgentCoreConfig:
    """
    Load configuration from file with CLI overrides.

    Priority (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Config file
    4. Defaults

    An explicitly passed path must exist; the implicit ``config.json`` is optional.
    """
    config_data: dict[str, Any] = {}

    if config_path is None:
        config_path = Path("config.json")
    elif not config_path.exists():
        raise ConfigFileNotFoundError(str(config_path))

    if config_path.exists():
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                if config_path.suffix in {".yaml", ".yml"}:
                    config_data = yaml.safe_load(f) or {}
                else:
                    config_data = json.load(f)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"Failed to read config file: {exc}", {"file_path": str(config_path)}) from exc

    # Flat files use top-level agent keys
    is_flat = any(key in config_data for key in ["max_iterations", "llm_provider", "command"])

    if is_flat:
        config = AgentCoreConfig.from_flat_dict(config_data)
    else:
        config = AgentCoreConfig.model_validate(config_data)

    if cli_overrides:
        config_dict = config.model_dump()
        _apply_overrides(config_dict, cli_overrides)
        config = AgentCoreConfig.model_validate(config_dict)

    return config


def _apply_overrides(config_dict: dict[str, Any], overrides: dict[str, Any]) -> None:
    """Apply CLI overrides to config dictionary."""
    override_mapping = {
        "provider": ("provider", "name"),
        "mode": ("agent", "execution_mode"),
        "max_iterations": ("agent", "max_iterations"),
        "history_keep": ("agent", "history_keep"),
        "trace": ("agent", "trace_logging_enabled"),
        "tool_command": ("transport", "command"),
        "parallel": ("parallel_workers", None),
        "verbose": ("verbose", None),
        "output_format": ("reporting", "output_format"),
        "reports_dir": ("reporting", "reports_folder"),
        "screenshots_dir": ("reporting", "screenshots_folder"),
    }

    for key, value in overrides.items():
        if value is None:
            continue

        mapping = override_mapping.get(key)
        if mapping:
            section, field = mapping
            if field is None:
                config_dict[section] = value
            else:
                config_dict[section][field] = value
