"""JSON report generator for plan runs."""
from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

from reporters.base import BaseReporter, ReportFormat
from test_types import StepResult, TestRunResult

_SECRET_MARKERS = ("password", "secret", "token", "api_key")


def mask_variables(variables: Dict[str, Any]) -> Dict[str, Any]:
    return {
        k: "***" if any(marker in k.lower() for marker in _SECRET_MARKERS) else v
        for k, v in variables.items()
    }


class JSONReporter(BaseReporter):
    """Generate machine-readable JSON reports."""

    @property
    def format(self) -> ReportFormat:
        return ReportFormat.JSON

    def _step_to_dict(self, step: StepResult) -> Dict[str, Any]:
        return {
            "number": step.number,
            "instruction": step.instruction,
            "status": step.status,
            "message": step.message,
            "screenshot": step.screenshot_path,
            "extracted_variables": step.extracted_variables,
            "executed_at": step.executed_at.isoformat() if step.executed_at else None,
        }

    def _result_to_dict(self, result: TestRunResult) -> Dict[str, Any]:
        """Convert TestRunResult to JSON-serializable dict."""
        plan = result.plan
        return {
            "plan": {
                "id": plan.id,
                "name": plan.name,
                "app_url": plan.app_url,
                "app_type": plan.app_type,
                "tags": sorted(plan.tags),
                "steps": [{"number": s.number, "instruction": s.instruction} for s in plan.steps],
            },
            "result": {
                "status": result.status,
                "success": result.success,
                "reason": result.reason,
                "execution_mode": result.execution_mode,
                "provider": result.provider,
                "started_at": result.started_at.isoformat(),
                "finished_at": result.finished_at.isoformat(),
                "duration_seconds": result.duration_seconds,
                "variables": mask_variables(result.variables),
            },
            "steps": [self._step_to_dict(s) for s in result.steps],
        }

    def generate(self, result: TestRunResult, output_dir: Path) -> Path:
        """Generate JSON report for a single plan run."""
        output_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.utcnow().strftime("%Y%m%d-%H%M%S")
        target = output_dir / f"{result.plan.id}-{timestamp}.json"

        report_data = {
            "generated_at": datetime.utcnow().isoformat(),
            "report_version": "1.0",
            "tests": [self._result_to_dict(result)],
            "summary": {
                "total": 1,
                "passed": 1 if result.success else 0,
                "failed": 0 if result.success else 1,
                "pass_rate": 100.0 if result.success else 0.0,
            },
        }

        target.write_text(json.dumps(report_data, indent=2, default=str), encoding="utf-8")
        return target

    def generate_suite(self, results: List[TestRunResult], output_dir: Path) -> Path:
        """Generate combined JSON report for multiple plan runs."""
        output_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.utcnow().strftime("%Y%m%d-%H%M%S")
        target = output_dir / f"suite-{timestamp}.json"

        passed = sum(1 for r in results if r.success)
        pass_rate = (passed / len(results) * 100) if results else 0.0
        durations = [r.duration_seconds for r in results]
        total_duration = sum(durations)

        report_data = {
            "generated_at": datetime.utcnow().isoformat(),
            "report_version": "1.0",
            "tests": [self._result_to_dict(r) for r in results],
            "summary": {
                "total": len(results),
                "passed": passed,
                "failed": len(results) - passed,
                "pass_rate": round(pass_rate, 2),
                "total_steps": sum(len(r.steps) for r in results),
                "total_duration_seconds": round(total_duration, 2),
                "avg_duration_seconds": round(total_duration / len(durations), 2) if durations else 0,
                "max_duration_seconds": round(max(durations), 2) if durations else 0,
            },
            "failed_tests": [
                {"id": r.plan.id, "reason": r.reason}
                for r in results if not r.success
            ],
        }

        target.write_text(json.dumps(report_data, indent=2, default=str), encoding="utf-8")
        return target
