"""Snapshot deduplication and tool output truncation."""
from __future__ import annotations

import logging
from typing import List, Optional, Set

from message_types import Message, Role

logger = logging.getLogger("agent_core.snapshots")

SNAPSHOT_TOOL_NAMES = frozenset({"snapshot", "browser_snapshot"})


def is_snapshot_tool(name: Optional[str]) -> bool:
    return bool(name) and name.lower() in SNAPSHOT_TOOL_NAMES


def truncate_content(content: Optional[str], limit: int) -> Optional[str]:
    """Cut ``content`` to ``limit`` characters and note the original length."""
    if content is None or len(content) <= limit:
        return content
    return f"{content[:limit]}\n\n[Content truncated - original length: {len(content)} chars]"


def remove_snapshot_exchanges(messages: List[Message]) -> int:
    """Drop every earlier snapshot result and the calls that produced it.

    Snapshot results are recognised by the ``function_name`` metadata that
    the agent stores on tool messages. An assistant message whose calls all
    produced removed results is deleted; one that also made other calls is
    kept with only the snapshot calls stripped, so the remaining results
    still have their call. Mutates ``messages`` and returns how many
    messages were removed.
    """
    if not messages:
        return 0

    removed_ids: Set[str] = set()
    has_snapshot = False
    for msg in messages:
        if msg.role == Role.TOOL and is_snapshot_tool(msg.metadata.get("function_name")):
            has_snapshot = True
            if msg.tool_call_id:
                removed_ids.add(msg.tool_call_id)

    if not has_snapshot:
        return 0

    before = len(messages)
    kept: List[Message] = []
    for msg in messages:
        if msg.role == Role.TOOL and is_snapshot_tool(msg.metadata.get("function_name")):
            continue
        if msg.role == Role.ASSISTANT and msg.tool_calls:
            referenced = {tc.id for tc in msg.tool_calls}
            overlap = referenced & removed_ids
            if overlap and overlap == referenced:
                continue
            if overlap:
                msg = msg.without_tool_calls(overlap)
        kept.append(msg)

    messages[:] = kept
    removed = before - len(messages)
    logger.info(f"Removed {removed} old snapshot exchange message(s) from conversation history")
    return removed


def count_snapshot_results(messages: List[Message]) -> int:
    return sum(
        1
        for msg in messages
        if msg.role == Role.TOOL and is_snapshot_tool(msg.metadata.get("function_name"))
    )
