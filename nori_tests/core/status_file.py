"""Parsing of the status file the agent writes when it finishes.

Accepted shapes:
    {"status": "success"}
    {"status": "failure", "error": "<string>"}

Anything else is a StatusFileError. A missing file is not an error here; the
runner treats it as a failed test.
"""

import json

from nori_tests.core.models import StatusFile, TestStatus

VALID_STATUSES = tuple(status.value for status in TestStatus)


class StatusFileError(Exception):
    """Status file content does not follow the protocol."""

    pass


def parse_status_file(content: str) -> StatusFile:
    """Parse and validate status file content.

    Raises:
        StatusFileError: Invalid JSON, not an object, missing or invalid status
    """
    try:
        parsed = json.loads(content.strip())
    except json.JSONDecodeError as e:
        raise StatusFileError(f"Invalid JSON in status file: {e}")

    if not isinstance(parsed, dict):
        raise StatusFileError("Status file must contain a JSON object")

    if "status" not in parsed:
        raise StatusFileError('Status file missing required "status" field')

    status = parsed["status"]
    if not isinstance(status, str) or status not in VALID_STATUSES:
        raise StatusFileError(
            f'Invalid status value: "{status}". Must be "success" or "failure"'
        )

    # Non-string error values are dropped rather than rejected
    error = parsed.get("error")
    return StatusFile(
        status=TestStatus(status),
        error=error if isinstance(error, str) else None,
    )
