"""Report generators for plan runs."""
from reporters.base import BaseReporter, ReportFormat
from reporters.json_reporter import JSONReporter, mask_variables
from reporters.junit import JUnitReporter

__all__ = [
    "BaseReporter",
    "ReportFormat",
    "JSONReporter",
    "JUnitReporter",
    "mask_variables",
]
