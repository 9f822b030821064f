"""Unit tests for test_types module."""
from __future__ import annotations

from datetime import datetime

from test_types import (
    STEP_FAILED,
    STEP_PASSED,
    StepResult,
    TestPlan,
    TestRunResult,
    TestStep,
    TestSuiteResult,
)


def _run(success: bool, seconds: int = 10) -> TestRunResult:
    plan = TestPlan(id=f"p-{seconds}", name="Plan", steps=[TestStep(1, "Open")])
    return TestRunResult(
        plan=plan,
        success=success,
        started_at=datetime(2024, 1, 1, 12, 0, 0),
        finished_at=datetime(2024, 1, 1, 12, 0, seconds),
        reason="ok" if success else "boom",
    )


class TestTestPlan:
    """Tests for TestPlan dataclass."""

    def test_default_values(self):
        plan = TestPlan(id="p", name="P", steps=[TestStep(1, "Open")])
        assert plan.tags == set()
        assert plan.variables == {}
        assert plan.skip is False
        assert plan.execution_mode is None

    def test_tags_case_insensitive(self, sample_plan: TestPlan):
        assert sample_plan.has_tag("SMOKE")
        assert not sample_plan.has_tag("regression")
        assert sample_plan.has_any_tag({"Cart", "other"})

    def test_matches_filter(self, sample_plan: TestPlan):
        assert sample_plan.matches_filter()
        assert sample_plan.matches_filter(include_tags={"smoke"})
        assert not sample_plan.matches_filter(include_tags={"auth"})
        assert not sample_plan.matches_filter(exclude_tags={"cart"})

    def test_step_lookup(self, sample_plan: TestPlan):
        assert sample_plan.step(2).number == 2
        assert sample_plan.step(99) is None

    def test_plan_text(self, sample_plan: TestPlan):
        text = sample_plan.plan_text()
        assert text.startswith("You are executing a multi-step test.\n")
        assert f"Test name: {sample_plan.name}\n" in text
        assert "App URL: https://shop.example\n" in text
        assert text.endswith("Steps:\n1. Click Add to cart for the backpack\n2. Open the cart\n3. Verify the cart shows 1 item\n")


class TestStepResult:
    """Tests for StepResult dataclass."""

    def test_status_flags(self):
        assert StepResult(1, "Open", STEP_PASSED).passed
        failed = StepResult(2, "Check", STEP_FAILED, message="missing")
        assert failed.failed and not failed.passed


class TestTestRunResult:
    """Tests for TestRunResult dataclass."""

    def test_duration(self):
        assert _run(True, 30).duration_seconds == 30.0

    def test_status(self):
        assert _run(True).status == "passed"
        assert _run(False).status == "failed"
        skipped = _run(False)
        skipped.plan.skip = True
        assert skipped.status == "skipped"

    def test_failed_step_and_screenshots(self, sample_result: TestRunResult):
        assert sample_result.failed_step.number == 3
        assert "/tmp/s3.png" in sample_result.screenshots


class TestTestSuiteResult:
    """Tests for TestSuiteResult dataclass."""

    def test_counts(self):
        suite = TestSuiteResult(
            results=[_run(True, 1), _run(True, 2), _run(False, 3)],
            started_at=datetime(2024, 1, 1, 12, 0, 0),
            finished_at=datetime(2024, 1, 1, 12, 1, 0),
        )
        assert suite.total == 3
        assert suite.passed == 2
        assert suite.failed == 1
        assert round(suite.pass_rate, 1) == 66.7
        assert suite.duration_seconds == 60.0
        assert [r.plan.id for r in suite.failed_tests] == ["p-3"]
        assert len(suite.passed_tests) == 2

    def test_empty_suite(self):
        now = datetime(2024, 1, 1)
        suite = TestSuiteResult(results=[], started_at=now, finished_at=now)
        assert suite.pass_rate == 0.0
