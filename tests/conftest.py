# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the nori-tests suite.

This module provides foundational fixtures used across all test modules:
- Temporary test folders and working directories
- Framed output streams as the Docker attach endpoint delivers them
- Mock objects for the Docker API client

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import struct
import time
from pathlib import Path
from unittest.mock import Mock

import pytest

from nori_tests.sandbox.container import ContainerManager, SandboxConfig

CONTAINER_ID = "0123456789abcdef0123456789abcdef"


# =============================================================================
# Stream Helpers
# =============================================================================


def frame(stream_type: int, payload: bytes | str) -> bytes:
    """Build one multiplexed frame (8-byte header + payload)."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return struct.pack(">BxxxL", stream_type, len(payload)) + payload


class FakeSocket:
    """Socket-like object returning predefined pieces, then EOF.

    Args:
        pieces: Byte strings returned by successive recv() calls
        delay: Seconds to sleep before each piece (simulates slow output)
    """

    def __init__(self, pieces: list[bytes], delay: float = 0.0):
        self._pieces = list(pieces)
        self.delay = delay
        self.closed = False

    def recv(self, size: int) -> bytes:
        if not self._pieces or self.closed:
            return b""
        if self.delay:
            time.sleep(self.delay)
        return self._pieces.pop(0)

    def settimeout(self, timeout):
        self.timeout = timeout

    def close(self) -> None:
        self.closed = True


# =============================================================================
# File System Fixtures
# =============================================================================


@pytest.fixture
def test_folder(tmp_path: Path) -> Path:
    """Create a folder with two markdown tests and some non-test files.

    Creates:
        - a-first.md, b-second.md (tests)
        - notes.txt (ignored, wrong extension)
        - nested/c-third.md (ignored, not top-level)
    """
    folder = tmp_path / "tests"
    folder.mkdir()
    (folder / "b-second.md").write_text("# Second\n\nRun `ls`.\n")
    (folder / "a-first.md").write_text("# First\n\nCreate hello.txt.\n")
    (folder / "notes.txt").write_text("not a test")
    (folder / "nested").mkdir()
    (folder / "nested" / "c-third.md").write_text("# Nested\n")
    return folder


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    """Working directory mounted into agent containers."""
    path = tmp_path / "work"
    path.mkdir()
    return path


# =============================================================================
# Mock Fixtures for External Dependencies
# =============================================================================


@pytest.fixture
def mock_docker_client() -> Mock:
    """Create a mock Docker client whose low-level API simulates one run.

    The attach socket yields "hello\\n" on stdout and "warn\\n" on stderr;
    the container exits with status 0.

    Example:
        def test_something(mock_docker_client):
            mock_docker_client.api.wait.return_value = {"StatusCode": 3}
            manager = ContainerManager(SandboxConfig(gid=1000), client=mock_docker_client)
    """
    mock_client = Mock()
    api = mock_client.api

    api.create_host_config.side_effect = lambda **kwargs: dict(kwargs)
    api.create_container.return_value = {"Id": CONTAINER_ID, "Warnings": []}
    api.attach_socket.return_value = FakeSocket([frame(1, "hello\n"), frame(2, "warn\n")])
    api.put_archive.return_value = True
    api.wait.return_value = {"StatusCode": 0, "Error": None}
    api.remove_container.return_value = None

    mock_client.ping.return_value = True
    return mock_client


@pytest.fixture
def manager(mock_docker_client, monkeypatch) -> ContainerManager:
    """ContainerManager wired to the mock client, running as 1000:1000."""
    monkeypatch.delenv("NORI_DOCKER_USER", raising=False)
    return ContainerManager(SandboxConfig(gid=1000, flush_timeout=2.0), client=mock_docker_client)


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "docker: marks tests requiring Docker")
