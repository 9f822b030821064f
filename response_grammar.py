"""Text protocol shared with the model.

The model coordinates with the runner through a handful of line-oriented
markers in its free-text replies (``NEED_SNAPSHOT``,
``EXECUTED_STEP_NUMBERS: ...``, ``Step N: PASS|FAIL - ...`` and
``EXTRACTED_VARIABLE:name=value``). Models rarely follow a format exactly,
so parsing is deliberately tolerant: each reader applies a list of rules
from strict to permissive and later rules only fill gaps, except that a
failure signal always beats a pass signal for the same step.

This module also holds the lexical classifiers that decide how many
iterations an instruction gets and which prompt categories apply.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Set

NEED_SNAPSHOT_MARKER = "NEED_SNAPSHOT"
EXECUTED_STEPS_MARKER = "EXECUTED_STEP_NUMBERS:"
STEP_PROMPT_PREFIX = "Execute ONLY this step now:"
BATCH_PROMPT_PREFIX = "BATCH_EXECUTE_STEPS:"
STEP_TAG_ARG = "_step"

STATUS_PASSED = "passed"
STATUS_FAILED = "failed"

_STRICT_OUTCOME_RE = re.compile(
    r"(?im)^\s*step\s+(\d+)\s*:\s*(?:[✓✔✗×]\s*)?(pass|fail)\b(?:\s*[-–—:]\s*(.*))?$"
)
_LOOSE_PASS_RE = re.compile(
    r"(?i)step\s+(\d+)\s*:\s*(?:[✓✔]\s*)?\bpass\b(?:\s*[-–—:]\s*([^\n\r]+))?"
)
_LOOSE_FAIL_RE = re.compile(
    r"(?i)step\s+(\d+)\s*:\s*(?:[✗×]\s*)?\bfail\b(?:\s*[-–—:]\s*([^\n\r]+))?"
)
_STEP_HEADER_RE = re.compile(r"(?i)\bstep\s+(\d+)\b")
_EXTRACTED_VARIABLE_RE = re.compile(r"(?i)EXTRACTED_VARIABLE[ \t]*:[ \t]*(\w+)[ \t]*=([^\n]+)")
_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")
_MONTH_RE = re.compile(
    r"\b(jan|january|feb|february|mar|march|apr|april|may|jun|june|jul|july|aug|august"
    r"|sep|sept|september|oct|october|nov|november|dec|december)\b"
)
_NUMERIC_DATE_RES = (
    re.compile(r"\b\d{4}-\d{1,2}-\d{1,2}\b"),
    re.compile(r"\b\d{1,2}/\d{1,2}/\d{2,4}\b"),
    re.compile(r"\b\d{1,2}-\d{1,2}-\d{2,4}\b"),
)

_VERIFICATION_PREFIXES = ("verify", "check", "assert", "confirm", "ensure", "validate", "make sure")
_ACTION_VERBS = ("select ", "pick ", "choose ", "set ", "enter ")
_FAIL_SIGNALS = (" fails", " fail", "failed", "✗", "×")
_PASS_SIGNALS = (" passes", " pass", "passed", "✓", "✔")

DATE_SELECTION_MIN_ITERATIONS = 6
VERIFICATION_MIN_ITERATIONS = 2


@dataclass(frozen=True)
class StepOutcome:
    """Reported result of one plan step inside a batch reply."""

    status: str
    message: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == STATUS_FAILED


# ---------------------------------------------------------------------------
# Markers
# ---------------------------------------------------------------------------

def contains_need_snapshot(text: Optional[str]) -> bool:
    """True when NEED_SNAPSHOT is the whole reply or sits alone on a line."""
    if text is None:
        return False
    trimmed = text.strip()
    if trimmed.upper() == NEED_SNAPSHOT_MARKER:
        return True
    return any(line.strip().upper() == NEED_SNAPSHOT_MARKER for line in trimmed.splitlines())


def parse_executed_step_numbers(text: Optional[str]) -> List[int]:
    """Numbers from the first ``EXECUTED_STEP_NUMBERS:`` line; junk entries are skipped."""
    if not text:
        return []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped.upper().startswith(EXECUTED_STEPS_MARKER):
            continue
        rest = stripped[len(EXECUTED_STEPS_MARKER):].strip()
        numbers: List[int] = []
        for part in re.split(r"[,\s]+", rest):
            try:
                numbers.append(int(part))
            except ValueError:
                continue
        return numbers
    return []


def _clean_reason(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


# ---------------------------------------------------------------------------
# Step outcomes
# ---------------------------------------------------------------------------

def _apply_strict_lines(text: str, outcomes: Dict[int, StepOutcome]) -> None:
    for match in _STRICT_OUTCOME_RE.finditer(text):
        status = STATUS_PASSED if match.group(2).lower() == "pass" else STATUS_FAILED
        outcomes[int(match.group(1))] = StepOutcome(status, _clean_reason(match.group(3)))


def _apply_loose_matches(text: str, outcomes: Dict[int, StepOutcome]) -> None:
    for match in _LOOSE_PASS_RE.finditer(text):
        outcomes.setdefault(int(match.group(1)), StepOutcome(STATUS_PASSED, _clean_reason(match.group(2))))
    for match in _LOOSE_FAIL_RE.finditer(text):
        outcomes[int(match.group(1))] = StepOutcome(STATUS_FAILED, _clean_reason(match.group(2)))


def _failure_line(block: str) -> Optional[str]:
    fallback = None
    for line in block.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        lowered = stripped.lower()
        if "fail" in lowered or "✗" in stripped or "×" in stripped:
            return stripped
        if "not " in lowered:
            fallback = stripped
    return fallback


def _judge_block(step: Optional[int], block: str, outcomes: Dict[int, StepOutcome]) -> None:
    if step is None:
        return
    lowered = block.lower()
    if any(signal in lowered for signal in _FAIL_SIGNALS):
        outcomes[step] = StepOutcome(STATUS_FAILED, _failure_line(block))
    elif any(signal in lowered for signal in _PASS_SIGNALS):
        outcomes.setdefault(step, StepOutcome(STATUS_PASSED))


def _apply_block_scan(text: str, outcomes: Dict[int, StepOutcome]) -> None:
    # A line mentioning "Step N" together with a colon opens a new block.
    current: Optional[int] = None
    block: List[str] = []
    for line in text.splitlines():
        header = _STEP_HEADER_RE.search(line)
        if header and ":" in line:
            _judge_block(current, "\n".join(block), outcomes)
            current = int(header.group(1))
            block = []
        if current is not None:
            block.append(line)
    _judge_block(current, "\n".join(block), outcomes)


OUTCOME_RULES = (_apply_strict_lines, _apply_loose_matches, _apply_block_scan)


def parse_step_outcomes(text: Optional[str]) -> Dict[int, StepOutcome]:
    """Best-effort per-step PASS/FAIL from a batch reply."""
    if not text or not text.strip():
        return {}
    outcomes: Dict[int, StepOutcome] = {}
    for rule in OUTCOME_RULES:
        rule(text, outcomes)
    return outcomes


# ---------------------------------------------------------------------------
# Hard failure rules
# ---------------------------------------------------------------------------

class HardFailureRule(Protocol):
    """Recognises replies where a step clearly cannot be done in the current page state."""

    name: str

    def check(self, text: str, step_number: int) -> Optional[StepOutcome]:
        ...


class RequiredControlMissingRule:
    """The model says it must stop because the add-to-cart control is gone or replaced.

    Replies that blame missing information (truncation, no snapshot) are left
    alone so they still go through the snapshot path.
    """

    name = "required_control_missing"
    message = "Required control not available: Add to cart is missing/replaced by Remove"

    _stop_phrases = ("must stop", "stop here")
    _cannot_phrases = ("cannot execute", "can't execute", "cannot click", "can't click")
    _context_phrases = ("add to cart", "add-to-cart")
    _missing_phrases = ("button doesn't exist", "button does not exist", 'no "add', "no add to cart")
    _info_gap_phrases = ("truncated", "need a snapshot", "need snapshot", "cannot see", "can't see")

    def check(self, text: str, step_number: int) -> Optional[StepOutcome]:
        lowered = text.lower()
        if f"step {step_number}" not in lowered:
            return None
        stops = any(p in lowered for p in self._stop_phrases) or any(p in lowered for p in self._cannot_phrases)
        in_context = any(p in lowered for p in self._context_phrases)
        replaced = in_context and "remove" in lowered
        missing = any(p in lowered for p in self._missing_phrases)
        info_gap = any(p in lowered for p in self._info_gap_phrases)
        if stops and in_context and (replaced or missing) and not info_gap:
            return StepOutcome(STATUS_FAILED, self.message)
        return None


DEFAULT_HARD_FAILURE_RULES: Sequence[HardFailureRule] = (RequiredControlMissingRule(),)


def detect_hard_failure(
    text: Optional[str],
    step_number: Optional[int],
    rules: Optional[Iterable[HardFailureRule]] = None,
) -> Optional[StepOutcome]:
    """First matching rule's outcome for ``step_number``, or None."""
    if not text or not text.strip() or step_number is None:
        return None
    for rule in DEFAULT_HARD_FAILURE_RULES if rules is None else rules:
        outcome = rule.check(text, step_number)
        if outcome is not None:
            return outcome
    return None


# ---------------------------------------------------------------------------
# No-skip clamp
# ---------------------------------------------------------------------------

def clamp_to_offered_prefix(
    executed: Iterable[int],
    offered: Sequence[int],
    outcomes: Optional[Mapping[int, StepOutcome]] = None,
) -> List[int]:
    """Longest run of ``offered`` (in offered order) that was reported executed.

    The run ends right after a step reported as failed.
    """
    executed_set = set(executed)
    outcomes = outcomes or {}
    prefix: List[int] = []
    for number in offered:
        if number not in executed_set:
            break
        prefix.append(number)
        outcome = outcomes.get(number)
        if outcome is not None and outcome.failed:
            break
    return prefix


# ---------------------------------------------------------------------------
# Variables
# ---------------------------------------------------------------------------

def substitute_variables(text: Optional[str], variables: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Replace ``{{name}}`` placeholders; None values become empty strings."""
    if text is None or not variables:
        return text
    for name, value in variables.items():
        text = text.replace("{{" + str(name) + "}}", "" if value is None else str(value))
    return text


def extract_variables(text: Optional[str]) -> Dict[str, str]:
    """Collect ``EXTRACTED_VARIABLE:name=value`` lines; later lines win."""
    if not text:
        return {}
    return {m.group(1): m.group(2).strip() for m in _EXTRACTED_VARIABLE_RE.finditer(text)}


# ---------------------------------------------------------------------------
# Instruction classifiers
# ---------------------------------------------------------------------------

def tokenize(text: Optional[str]) -> Set[str]:
    if not text:
        return set()
    return {tok for tok in _TOKEN_SPLIT_RE.split(text.lower()) if tok}


def keyword_matches(instruction_lower: str, tokens: Set[str], keyword: Optional[str]) -> bool:
    """Multi-word keywords match as substrings, single words as whole tokens."""
    if not keyword or not keyword.strip():
        return False
    kw = keyword.lower().strip()
    if " " in kw:
        return kw in instruction_lower
    return kw in tokens


def is_verification_instruction(instruction: Optional[str]) -> bool:
    if instruction is None:
        return False
    return instruction.lower().strip().startswith(_VERIFICATION_PREFIXES)


def is_date_selection_instruction(instruction: Optional[str], tokens: Optional[Set[str]] = None) -> bool:
    if instruction is None:
        return False
    lowered = instruction.lower()
    if tokens is None:
        tokens = tokenize(lowered)
    has_action = any(verb in lowered for verb in _ACTION_VERBS)
    if not has_action:
        return False
    has_date_word = "date" in tokens or "calendar" in lowered
    has_month = _MONTH_RE.search(lowered) is not None
    has_numeric = any(p.search(lowered) for p in _NUMERIC_DATE_RES)
    return has_date_word or has_month or has_numeric


def effective_max_iterations(instruction: Optional[str], configured: int) -> int:
    """Raise the iteration budget for date pickers and verifications."""
    effective = configured
    if is_date_selection_instruction(instruction):
        effective = max(effective, DATE_SELECTION_MIN_ITERATIONS)
    if is_verification_instruction(instruction):
        effective = max(effective, VERIFICATION_MIN_ITERATIONS)
    return effective


def truncate_for_log(value: Any, max_chars: int) -> str:
    """Shorten trace payloads; the limit never drops below 200 characters."""
    if value is None:
        return "null"
    text = value if isinstance(value, str) else str(value)
    limit = max(200, max_chars)
    if len(text) <= limit:
        return text
    return f"{text[:limit]}\n...[truncated, original chars={len(text)}]"
