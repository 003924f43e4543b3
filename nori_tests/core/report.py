"""JSON report output."""

from pathlib import Path

from nori_tests.core.models import TestReport


def render_report(report: TestReport) -> str:
    return report.model_dump_json(by_alias=True, exclude_none=True, indent=2)


def write_report(report: TestReport, path: str | Path) -> Path:
    """Write the report as JSON, returning the resolved output path."""
    output = Path(path).resolve()
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(render_report(report) + "\n", encoding="utf-8")
    return output
