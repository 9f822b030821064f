"""Bounded conversation history that keeps tool call/result pairs intact."""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from message_types import Message, Role

logger = logging.getLogger("agent_core.compaction")


def split_segments(tail: Sequence[Message]) -> List[List[Message]]:
    """Group the conversation tail into iterations.

    An assistant message opens a new segment and the tool results that
    follow attach to it. A tool result with no open segment joins the last
    one, or is dropped when there is none. Other messages (user prompts
    injected between iterations) open a segment only when none is open.
    """
    segments: List[List[Message]] = []
    current: Optional[List[Message]] = None

    for msg in tail:
        if msg.role == Role.ASSISTANT:
            current = [msg]
            segments.append(current)
        elif msg.role == Role.TOOL:
            if current is not None:
                current.append(msg)
            elif segments:
                segments[-1].append(msg)
            else:
                logger.debug(f"Dropping orphan tool result {msg.tool_call_id}")
        else:
            if current is None:
                current = [msg]
                segments.append(current)
            else:
                current.append(msg)

    return segments


def compact_history(messages: Optional[List[Message]], keep: int) -> Optional[List[Message]]:
    """Return the conversation trimmed to its last ``keep`` iterations.

    System messages and the first user message always survive. ``keep < 0``
    disables compaction. The input list is not modified.
    """
    if keep < 0 or messages is None or len(messages) <= 2:
        return messages

    system_messages: List[Message] = []
    instruction: Optional[Message] = None
    tail: List[Message] = []

    for msg in messages:
        if msg.role == Role.SYSTEM:
            system_messages.append(msg)
        elif msg.role == Role.USER and instruction is None:
            instruction = msg
        else:
            tail.append(msg)

    if instruction is None:
        return messages

    compacted = system_messages + [instruction]
    if keep == 0 or not tail:
        return compacted

    segments = split_segments(tail)
    for segment in segments[-keep:]:
        compacted.extend(segment)

    dropped = len(messages) - len(compacted)
    if dropped:
        logger.debug(f"Compacted history: kept {min(keep, len(segments))}/{len(segments)} iterations, dropped {dropped} messages")
    return compacted


def compact_in_place(messages: List[Message], keep: int) -> int:
    """Compact ``messages`` in place and return the number of messages removed."""
    compacted = compact_history(messages, keep)
    if compacted is None or compacted is messages:
        return 0
    removed = len(messages) - len(compacted)
    messages[:] = compacted
    return removed
