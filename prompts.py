"""System prompts for the browser test agent.

The prompt is assembled per instruction from an optional categories file::

    {
      "core": {"content": "..."},
      "apps": {"https://shop.example": {"checkout": {"keywords": ["cart"], "content": "..."}}},
      "app_types": {"ecommerce": {"content": "..."}}
    }

Files are read once and cached; ``clear_prompt_cache`` resets the cache for tests.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from config import PromptConfig
from response_grammar import (
    is_date_selection_instruction,
    is_verification_instruction,
    keyword_matches,
    tokenize,
)

logger = logging.getLogger("agent_core.prompts")

DEFAULT_SYSTEM_PROMPT = """You are an autonomous web testing agent driving a real browser through tools.

- Call `snapshot` to read the page's accessibility tree. Elements carry refs like [ref=e12].
- Act with browser_click / browser_type / browser_select_option / browser_press_key using the exact
  ref from the most recent snapshot. Never invent refs.
- Use browser_wait_for when the page needs time to update.
- Complete only what the instruction asks, then answer with a short summary of what you did.
- When asked to store a value, end your reply with a line: EXTRACTED_VARIABLE:name=value
- If you need fresh page state and the snapshot tool is not offered, reply with exactly: NEED_SNAPSHOT"""

DATE_INPUT_CATEGORY = "date_input"


@dataclass(frozen=True)
class PromptCategory:
    name: str
    description: str
    keywords: Tuple[str, ...]
    content: str


@dataclass(frozen=True)
class PromptLibrary:
    """Parsed categories file. Immutable once loaded."""

    core: Optional[str]
    apps: Mapping[str, Tuple[PromptCategory, ...]]
    app_types: Mapping[str, str]


def _parse_category(name: str, node: dict) -> PromptCategory:
    keywords = tuple(str(k).lower() for k in node.get("keywords") or [])
    return PromptCategory(
        name=name,
        description=str(node.get("description", "")),
        keywords=keywords,
        content=str(node.get("content", "")),
    )


@lru_cache(maxsize=None)
def load_prompt_library(path: str) -> Optional[PromptLibrary]:
    """Read and cache a categories file; None when missing or unreadable."""
    file_path = Path(path)
    if not file_path.exists():
        logger.warning(f"Prompt categories file not found: {file_path}")
        return None
    try:
        root = json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.error(f"Failed to load prompt categories: {exc}")
        return None

    core_node = root.get("core") or {}
    apps = {}
    for app_url, categories in (root.get("apps") or {}).items():
        parsed = []
        for name, node in (categories or {}).items():
            if isinstance(node, dict):
                parsed.append(_parse_category(name, node))
            else:
                logger.warning(f"Skipping malformed category {name} for {app_url}")
        apps[app_url] = tuple(parsed)
    app_types = {
        name: str(node.get("content", ""))
        for name, node in (root.get("app_types") or {}).items()
        if isinstance(node, dict) and node.get("content")
    }
    library = PromptLibrary(
        core=core_node.get("content") if isinstance(core_node, dict) else None,
        apps=MappingProxyType(apps),
        app_types=MappingProxyType(app_types),
    )
    logger.info(f"Loaded prompt categories from {file_path} ({len(apps)} app(s), {len(app_types)} app type(s))")
    return library


@lru_cache(maxsize=None)
def load_system_prompt(path: Optional[str]) -> str:
    """System prompt from ``path``, falling back to the built-in prompt."""
    if path:
        file_path = Path(path)
        try:
            text = file_path.read_text(encoding="utf-8")
            logger.info(f"System prompt loaded from {file_path} ({len(text)} characters)")
            return text
        except OSError as exc:
            logger.warning(f"System prompt file not usable ({exc}). Using default prompt.")
    return DEFAULT_SYSTEM_PROMPT


def clear_prompt_cache() -> None:
    """Forget cached prompt files. Intended for tests."""
    load_prompt_library.cache_clear()
    load_system_prompt.cache_clear()


def build_system_prompt(
    instruction: str,
    app_url: Optional[str] = None,
    app_type: Optional[str] = None,
    config: Optional[PromptConfig] = None,
) -> str:
    """Assemble the system prompt for one instruction."""
    config = config or PromptConfig()
    fallback = load_system_prompt(str(config.system_prompt_file) if config.system_prompt_file else None)
    if not config.dynamic or config.categories_file is None:
        return fallback

    library = load_prompt_library(str(config.categories_file))
    if library is None:
        return fallback

    lowered = (instruction or "").lower()
    tokens = tokenize(lowered)
    verification = is_verification_instruction(lowered)
    date_selection = is_date_selection_instruction(lowered, tokens)

    sections = []
    included = []
    if library.core:
        sections.append(library.core)
        included.append("core")

    if app_url:
        categories = library.apps.get(app_url)
        if categories is None:
            logger.warning(f"No app-specific categories found for URL: {app_url}")
        for category in categories or ():
            if verification and category.name == DATE_INPUT_CATEGORY and not date_selection:
                continue
            if any(keyword_matches(lowered, tokens, kw) for kw in category.keywords):
                sections.append(category.content)
                included.append(category.name)

    if app_type and app_type in library.app_types:
        sections.append(library.app_types[app_type])
        included.append(f"app_type:{app_type}")

    logger.info(f"Built dynamic prompt with categories: {included}")
    if not sections:
        return fallback
    return "\n\n".join(sections)
