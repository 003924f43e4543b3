"""Core modules for the nori-tests orchestrator."""

from nori_tests.core.models import StatusFile, TestReport, TestResult, TestStatus
from nori_tests.core.runner import RunOptions, TestRunner, run_tests

__all__ = [
    "RunOptions",
    "StatusFile",
    "TestReport",
    "TestResult",
    "TestRunner",
    "TestStatus",
    "run_tests",
]
