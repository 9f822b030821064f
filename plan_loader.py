"""Filesystem-backed loader for natural-language test plans."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

import yaml

from exceptions import PlanLoadError, PlanValidationError
from test_types import TestPlan, TestStep

EXECUTION_MODES = ("batch", "step")


def _as_set(value: Any) -> Set[str]:
    """Convert value to set of strings."""
    if value is None:
        return set()
    if isinstance(value, (list, set, tuple)):
        return {str(item) for item in value}
    if isinstance(value, str):
        return {value}
    raise PlanLoadError(f"Expected string, list, or set, got {type(value).__name__}")


def _parse_steps(raw: Any, plan_id: str) -> List[TestStep]:
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list) or not raw:
        raise PlanValidationError("Plan must define at least one step", plan_id=plan_id, field="steps")

    steps: List[TestStep] = []
    for index, item in enumerate(raw, start=1):
        if isinstance(item, str):
            number, instruction = index, item
        elif isinstance(item, dict):
            instruction = item.get("instruction") or item.get("step") or ""
            number = item.get("number", item.get("order", index))
        else:
            raise PlanValidationError(f"Step {index} must be a string or mapping", plan_id=plan_id, field="steps")
        if not str(instruction).strip():
            raise PlanValidationError(f"Step {index} has no instruction", plan_id=plan_id, field="steps")
        try:
            number = int(number)
        except (TypeError, ValueError):
            raise PlanValidationError(f"Step {index} has a non-integer number", plan_id=plan_id, field="steps")
        steps.append(TestStep(number=number, instruction=str(instruction).strip()))

    numbers = [s.number for s in steps]
    if len(set(numbers)) != len(numbers):
        raise PlanValidationError("Step numbers must be unique", plan_id=plan_id, field="steps")
    return steps


def _parse_plan(data: Dict[str, Any], fallback_id: str) -> TestPlan:
    """Parse a dictionary into a TestPlan."""
    if not isinstance(data, dict):
        raise PlanLoadError("Plan payload must be a mapping")

    plan_id = str(data.get("id") or fallback_id)
    steps = _parse_steps(data.get("steps"), plan_id)

    variables = data.get("variables") or {}
    if not isinstance(variables, dict):
        raise PlanValidationError("Variables must be a mapping", plan_id=plan_id, field="variables")

    mode = data.get("execution_mode")
    if mode is not None:
        mode = str(mode).lower()
        if mode not in EXECUTION_MODES:
            raise PlanValidationError(
                f"execution_mode must be one of {', '.join(EXECUTION_MODES)}",
                plan_id=plan_id,
                field="execution_mode",
            )

    return TestPlan(
        id=plan_id,
        name=str(data.get("name") or plan_id),
        steps=steps,
        app_url=data.get("app_url"),
        app_type=data.get("app_type"),
        variables=dict(variables),
        tags=_as_set(data.get("tags")),
        skip=bool(data.get("skip", False)),
        skip_reason=data.get("skip_reason"),
        execution_mode=mode,
    )


def load_plan_file(path: Path) -> TestPlan:
    """Load a single plan file (YAML or JSON)."""
    try:
        raw = path.read_text(encoding="utf-8")
        if path.suffix.lower() in {".yml", ".yaml"}:
            data = yaml.safe_load(raw)
        else:
            data = json.loads(raw)
        plan = _parse_plan(data, fallback_id=path.stem)
    except (PlanLoadError, PlanValidationError):
        raise
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise PlanLoadError(f"Failed to load plan file: {exc}", file_path=str(path)) from exc
    plan.source_path = path
    return plan


def discover_plans(
    plans_dir: Path,
    only_ids: Optional[Iterable[str]] = None,
    include_tags: Optional[Set[str]] = None,
    exclude_tags: Optional[Set[str]] = None,
    include_skipped: bool = False,
) -> List[TestPlan]:
    """
    Discover and load plans from a directory.

    Args:
        plans_dir: Directory containing plan YAML/JSON files
        only_ids: If provided, only load plans with these IDs
        include_tags: If provided, only include plans with at least one of these tags
        exclude_tags: If provided, exclude plans with any of these tags
        include_skipped: If True, include plans marked as skip=true

    Returns:
        List of TestPlan objects
    """
    plans_dir = plans_dir.expanduser().resolve()

    if not plans_dir.exists():
        raise PlanLoadError(f"Plans directory does not exist: {plans_dir}")

    id_filter = set(only_ids or [])
    found: List[TestPlan] = []

    yaml_files = sorted(plans_dir.glob("*.yaml")) + sorted(plans_dir.glob("*.yml"))
    json_files = sorted(plans_dir.glob("*.json"))

    for path in yaml_files + json_files:
        plan = load_plan_file(path)
        if id_filter and plan.id not in id_filter:
            continue
        if plan.skip and not include_skipped:
            continue
        if not plan.matches_filter(include_tags, exclude_tags):
            continue
        found.append(plan)

    if id_filter:
        missing = id_filter - {p.id for p in found}
        if missing:
            raise PlanLoadError(f"Plans not found: {', '.join(sorted(missing))}")

    return found


def validate_plan(data: Dict[str, Any]) -> List[str]:
    """
    Validate plan data without loading.

    Returns list of validation errors (empty if valid).
    """
    if not isinstance(data, dict):
        return ["Plan must be a dictionary/mapping"]

    errors = []
    steps = data.get("steps")
    if not steps:
        errors.append("Missing required field: steps")
    elif not isinstance(steps, (str, list)):
        errors.append("steps must be a string or list")
    else:
        for index, item in enumerate([steps] if isinstance(steps, str) else steps, start=1):
            if isinstance(item, dict):
                if not item.get("instruction") and not item.get("step"):
                    errors.append(f"Step {index} is missing an instruction")
            elif not isinstance(item, str) or not item.strip():
                errors.append(f"Step {index} must be a non-empty string or mapping")

    variables = data.get("variables")
    if variables is not None and not isinstance(variables, dict):
        errors.append("variables must be a dictionary")

    mode = data.get("execution_mode")
    if mode is not None and str(mode).lower() not in EXECUTION_MODES:
        errors.append(f"execution_mode must be one of {', '.join(EXECUTION_MODES)}")

    tags = data.get("tags")
    if tags is not None and not isinstance(tags, (str, list, set)):
        errors.append("tags must be a string or list")

    app_url = data.get("app_url")
    if app_url is not None and not isinstance(app_url, str):
        errors.append("app_url must be a string")

    return errors
