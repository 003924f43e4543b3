"""Data models for test runs.

Uses Pydantic for schema-enforced status files and reports. Report fields are
serialized with camelCase aliases to keep the JSON report format stable.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class TestStatus(str, Enum):
    """Outcome of a single test."""

    __test__ = False  # Not a pytest test class

    SUCCESS = "success"
    FAILURE = "failure"


class StatusFile(BaseModel):
    """Contents of the status file written by the agent."""

    status: TestStatus
    error: str | None = None


class TestResult(BaseModel):
    """Result of one test file."""

    __test__ = False

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    test_file: str = Field(alias="testFile")
    status: TestStatus
    error: str | None = None
    duration_ms: int = Field(default=0, alias="durationMs")

    @property
    def passed(self) -> bool:
        return self.status == TestStatus.SUCCESS


class TestReport(BaseModel):
    """Aggregated results of a test run."""

    __test__ = False

    model_config = ConfigDict(populate_by_name=True)

    total_tests: int = Field(alias="totalTests")
    passed: int
    failed: int
    results: list[TestResult] = Field(default_factory=list)
    duration_ms: int = Field(default=0, alias="durationMs")

    @classmethod
    def from_results(cls, results: list[TestResult], duration_ms: int) -> "TestReport":
        passed = sum(1 for r in results if r.passed)
        return cls(
            total_tests=len(results),
            passed=passed,
            failed=len(results) - passed,
            results=results,
            duration_ms=duration_ms,
        )

    @property
    def success(self) -> bool:
        return self.failed == 0
