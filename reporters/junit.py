"""JUnit XML report generator for CI integration."""
from __future__ import annotations

import html
from datetime import datetime
from pathlib import Path
from typing import List

from reporters.base import BaseReporter, ReportFormat
from test_types import STEP_SKIPPED, TestRunResult


class JUnitReporter(BaseReporter):
    """One <testcase> per plan; step outcomes go to system-out."""

    classname = "browser_agent.plans"

    @property
    def format(self) -> ReportFormat:
        return ReportFormat.JUNIT

    def _escape_xml(self, text: str) -> str:
        return html.escape(str(text), quote=True)

    def _format_timestamp(self, dt: datetime) -> str:
        return dt.strftime("%Y-%m-%dT%H:%M:%S")

    def _step_lines(self, result: TestRunResult) -> List[str]:
        lines = []
        for step in result.steps:
            line = f"  [{step.status.upper()}] Step {step.number}: {step.instruction}"
            if step.message:
                line += f" - {step.message[:150]}"
            lines.append(line)
        return lines

    def _build_testcase_xml(self, result: TestRunResult) -> str:
        name = self._escape_xml(result.plan.id)
        time_sec = f"{result.duration_seconds:.3f}"
        lines = [f'    <testcase classname="{self.classname}" name="{name}" time="{time_sec}">']

        if result.status == STEP_SKIPPED:
            lines.append(f'      <skipped message="{self._escape_xml(result.reason)}"/>')
        elif not result.success:
            failed = result.failed_step
            failure_type = "StepFailure" if failed else "RunError"
            lines.append(
                f'      <failure message="{self._escape_xml(result.reason)}" type="{failure_type}"><![CDATA['
            )
            lines.append(f"Plan: {result.plan.name}")
            lines.append(f"App URL: {result.plan.app_url or 'N/A'}")
            lines.append(f"Failure Reason: {result.reason}")
            if failed is not None:
                lines.append(f"Failed Step: {failed.number}. {failed.instruction}")
                if failed.screenshot_path:
                    lines.append(f"Screenshot: {failed.screenshot_path}")
            lines.append("]]></failure>")

        if result.steps:
            lines.append("      <system-out><![CDATA[")
            lines.append(f"Mode: {result.execution_mode or 'N/A'}")
            lines.extend(self._step_lines(result))
            lines.append("]]></system-out>")

        lines.append("    </testcase>")
        return "\n".join(lines)

    def _write(self, results: List[TestRunResult], target: Path) -> Path:
        tests = len(results)
        skipped = sum(1 for r in results if r.status == STEP_SKIPPED)
        failures = sum(1 for r in results if not r.success) - skipped
        total_time = sum(r.duration_seconds for r in results)
        earliest = min((r.started_at for r in results), default=datetime.utcnow())

        lines = ['<?xml version="1.0" encoding="UTF-8"?>']
        lines.append(
            f'<testsuite name="Browser Agent Plans" '
            f'tests="{tests}" '
            f'failures="{failures}" '
            f'errors="0" '
            f'skipped="{skipped}" '
            f'time="{total_time:.3f}" '
            f'timestamp="{self._format_timestamp(earliest)}">'
        )
        lines.append("  <properties>")
        lines.append('    <property name="reporter" value="browser-agent-junit"/>')
        lines.append(f'    <property name="generated_at" value="{datetime.utcnow().isoformat()}"/>')
        lines.append("  </properties>")
        for result in results:
            lines.append(self._build_testcase_xml(result))
        lines.append("</testsuite>")

        target.write_text("\n".join(lines), encoding="utf-8")
        return target

    def generate(self, result: TestRunResult, output_dir: Path) -> Path:
        """Generate JUnit XML report for a single plan run."""
        output_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.utcnow().strftime("%Y%m%d-%H%M%S")
        return self._write([result], output_dir / f"junit-{result.plan.id}-{timestamp}.xml")

    def generate_suite(self, results: List[TestRunResult], output_dir: Path) -> Path:
        """Generate combined JUnit XML report for multiple plan runs."""
        output_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.utcnow().strftime("%Y%m%d-%H%M%S")
        return self._write(results, output_dir / f"junit-{timestamp}.xml")
