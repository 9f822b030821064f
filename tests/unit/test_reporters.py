"""Unit tests for reporters module."""
from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from xml.etree import ElementTree

from reporters import JSONReporter, JUnitReporter, ReportFormat
from test_types import TestPlan, TestRunResult, TestStep


def _skipped_result() -> TestRunResult:
    plan = TestPlan(id="later", name="Later", steps=[TestStep(1, "noop")], skip=True, skip_reason="wip")
    now = datetime(2024, 1, 1, 9, 0, 0)
    return TestRunResult(plan=plan, success=False, started_at=now, finished_at=now, reason="Skipped: wip")


class TestJSONReporter:
    """Tests for JSON reporter."""

    def test_generates_valid_json(self, temp_dir: Path, sample_result: TestRunResult):
        report_path = JSONReporter().generate(sample_result, temp_dir)

        assert report_path.exists()
        assert report_path.name.startswith("checkout-")
        data = json.loads(report_path.read_text())
        assert len(data["tests"]) == 1
        assert data["summary"]["failed"] == 1

    def test_json_structure(self, temp_dir: Path, sample_result: TestRunResult):
        data = json.loads(JSONReporter().generate(sample_result, temp_dir).read_text())
        test = data["tests"][0]

        assert test["plan"]["id"] == "checkout"
        assert test["plan"]["tags"] == ["cart", "smoke"]
        assert test["result"]["status"] == "failed"
        assert test["result"]["duration_seconds"] == 30.0
        assert [s["status"] for s in test["steps"]] == ["passed", "passed", "failed"]
        assert test["steps"][2]["screenshot"] == "/tmp/s3.png"

    def test_secret_variables_masked(self, temp_dir: Path, sample_result: TestRunResult):
        data = json.loads(JSONReporter().generate(sample_result, temp_dir).read_text())
        variables = data["tests"][0]["result"]["variables"]
        assert variables["password"] == "***"
        assert variables["username"] == "standard_user"

    def test_suite_report(self, temp_dir: Path, sample_result: TestRunResult):
        report_path = JSONReporter().generate_suite([sample_result, _skipped_result()], temp_dir)
        data = json.loads(report_path.read_text())

        assert report_path.name.startswith("suite-")
        assert data["summary"]["total"] == 2
        assert data["summary"]["passed"] == 0
        assert data["summary"]["total_steps"] == 3
        assert [f["id"] for f in data["failed_tests"]] == ["checkout", "later"]

    def test_format(self):
        assert JSONReporter().format == ReportFormat.JSON


class TestJUnitReporter:
    """Tests for JUnit XML reporter."""

    def test_generates_valid_xml(self, temp_dir: Path, sample_result: TestRunResult):
        report_path = JUnitReporter().generate(sample_result, temp_dir)
        assert report_path.name.startswith("junit-checkout-")

        root = ElementTree.parse(report_path).getroot()
        assert root.tag == "testsuite"
        assert root.get("tests") == "1"
        assert root.get("failures") == "1"

    def test_failure_details(self, temp_dir: Path, sample_result: TestRunResult):
        root = ElementTree.parse(JUnitReporter().generate(sample_result, temp_dir)).getroot()
        testcase = root.find("testcase")
        failure = testcase.find("failure")

        assert testcase.get("name") == "checkout"
        assert failure.get("type") == "StepFailure"
        assert "Failed Step: 3. Verify the cart shows 1 item" in failure.text
        assert "[FAILED] Step 3" in testcase.find("system-out").text

    def test_skipped_plan(self, temp_dir: Path):
        root = ElementTree.parse(JUnitReporter().generate(_skipped_result(), temp_dir)).getroot()
        assert root.get("skipped") == "1"
        assert root.get("failures") == "0"
        assert root.find("testcase/skipped").get("message") == "Skipped: wip"

    def test_suite_report(self, temp_dir: Path, sample_result: TestRunResult):
        report_path = JUnitReporter().generate_suite([sample_result, _skipped_result()], temp_dir)
        root = ElementTree.parse(report_path).getroot()
        assert root.get("tests") == "2"
        assert len(root.findall("testcase")) == 2

    def test_special_characters_escaped(self, temp_dir: Path, sample_result: TestRunResult):
        sample_result.reason = 'Expected <b>"1"</b> & got 0'
        report_path = JUnitReporter().generate(sample_result, temp_dir)
        root = ElementTree.parse(report_path).getroot()
        assert root.find("testcase/failure").get("message") == sample_result.reason
