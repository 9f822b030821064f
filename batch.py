"""Multi-step batches: the batch prompt and interpretation of the model's reply."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from response_grammar import (
    BATCH_PROMPT_PREFIX,
    EXECUTED_STEPS_MARKER,
    NEED_SNAPSHOT_MARKER,
    STEP_TAG_ARG,
    HardFailureRule,
    StepOutcome,
    clamp_to_offered_prefix,
    contains_need_snapshot,
    detect_hard_failure,
    parse_executed_step_numbers,
    parse_step_outcomes,
    substitute_variables,
)

logger = logging.getLogger("agent_core.batch")


@dataclass(frozen=True)
class BatchStep:
    """A plan step offered to the model, keyed by its number in the plan."""

    number: int
    instruction: str


@dataclass
class BatchResult:
    executed_step_numbers: List[int] = field(default_factory=list)
    outcomes: Dict[int, StepOutcome] = field(default_factory=dict)
    step_screenshots: Dict[int, str] = field(default_factory=dict)
    needs_snapshot: bool = False
    assistant_text: str = ""
    tool_calls_made: int = 0
    turn_succeeded: bool = True
    extracted_variables: Dict[str, str] = field(default_factory=dict)
    last_screenshot: Optional[str] = None

    @property
    def made_progress(self) -> bool:
        return bool(self.executed_step_numbers)

    @property
    def status(self) -> str:
        if self.needs_snapshot:
            return "need_snapshot"
        return "success" if self.turn_succeeded else "error"

    def outcome_for(self, step_number: int) -> Optional[StepOutcome]:
        return self.outcomes.get(step_number)

    def restrict_to_executed(self) -> None:
        """Drop screenshots and outcomes of steps outside ``executed_step_numbers``."""
        executed = self.executed_step_numbers
        self.step_screenshots = {n: self.step_screenshots[n] for n in executed if n in self.step_screenshots}
        self.outcomes = {n: self.outcomes[n] for n in executed if n in self.outcomes}


def build_batch_prompt(steps: Sequence[BatchStep], variables: Optional[Mapping[str, Any]] = None) -> str:
    lines = [
        BATCH_PROMPT_PREFIX,
        "Using the MOST RECENT snapshot already in this conversation, execute as many of the following "
        "steps as you can, IN ORDER, WITHOUT calling snapshot.",
        "Stop BEFORE the first step you cannot do from the current snapshot.",
        "Rules:",
        "- Do NOT call snapshot in this batch.",
        "- If a step can be done, emit the necessary tool calls.",
        f"- IMPORTANT: For EVERY tool call you emit, include an extra argument {STEP_TAG_ARG} with the CURRENT "
        f"step number. Example: {{ref: e74, text: 'abc', {STEP_TAG_ARG}: 2}}. This argument is for "
        "bookkeeping and is not sent to the browser.",
        "- IMPORTANT: At the END of EACH step you execute (including pure verification/no-op steps), you MUST "
        f"call browser_take_screenshot with args {{fullPage: true, {STEP_TAG_ARG}: <stepNumber>}}.",
        "- IMPORTANT: For EACH step you execute, include an explicit result line in your text output:",
        '  - "Step <n>: PASS - <short reason>" OR "Step <n>: FAIL - <short reason>".',
        "  - If a step FAILs, STOP the batch immediately after taking that step's screenshot.",
        "- IMPORTANT: For ACTION steps (click/type/select/etc):",
        "  - If the required control is NOT present in the current snapshot and you cannot perform the "
        "action, mark the step as FAIL (do not claim it is done).",
        '  - Example for "Add to cart": if you cannot find an "Add to cart" button for the item (even if a '
        '"Remove" button is visible), mark the step as FAIL.',
        f"- If you cannot proceed because you need new page info, include the line {NEED_SNAPSHOT_MARKER}.",
        f"- Always include a line at the end: {EXECUTED_STEPS_MARKER} <comma-separated step numbers you "
        "executed in this batch>",
        "",
        "Steps (numbered):",
    ]
    for step in steps:
        lines.append(f"{step.number}. {substitute_variables(step.instruction, variables)}")
    return "\n".join(lines) + "\n"


def interpret_batch_reply(
    text: Optional[str],
    offered: Sequence[int],
    tool_calls_made: int = 0,
    rules: Optional[Iterable[HardFailureRule]] = None,
) -> BatchResult:
    """Work out which offered steps ran and how they ended.

    Screenshots are not handled here; the caller fills ``step_screenshots``
    and then calls ``restrict_to_executed``.
    """
    text = text or ""
    needs_snapshot = contains_need_snapshot(text)
    executed = parse_executed_step_numbers(text)
    outcomes = parse_step_outcomes(text)
    first = offered[0] if offered else None

    hard_failure = detect_hard_failure(text, first, rules)
    if hard_failure is not None:
        logger.info(f"Hard failure detected on step {first}: {hard_failure.message}")
        outcomes[first] = hard_failure
        needs_snapshot = False
        if not executed:
            executed = [first]

    if not executed and outcomes:
        executed = sorted(outcomes)

    if executed:
        clamped = clamp_to_offered_prefix(executed, offered, outcomes)
        if clamped != executed:
            logger.info(f"Clamped executed steps {executed} to offered prefix {clamped}")
        executed = clamped

    if not executed and tool_calls_made and first is not None:
        logger.info(f"No executed-steps line but {tool_calls_made} tool call(s) ran; assuming step {first}")
        executed = [first]

    return BatchResult(
        executed_step_numbers=executed,
        outcomes=outcomes,
        needs_snapshot=needs_snapshot,
        assistant_text=text,
        tool_calls_made=tool_calls_made,
    )
