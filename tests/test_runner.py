"""Tests for the test orchestrator.

The container manager is mocked: each fake agent run writes (or does not
write) the status file into the mounted working directory.
"""

from __future__ import annotations

import io
import json
from unittest.mock import Mock

import pytest
from rich.console import Console

from nori_tests.core.auth import AuthConfig
from nori_tests.core.config import RunnerConfig
from nori_tests.core.models import TestStatus
from nori_tests.core.runner import NO_STATUS_FILE_ERROR, RunOptions, TestRunner, run_tests
from nori_tests.sandbox.bridge import OutputChunk
from nori_tests.sandbox.container import ExecutionResult, SandboxConfig
from nori_tests.sandbox.errors import ContainerSetupError

STATUS_NAME = ".nori-test-status.json"
PROMPT_NAME = ".nori-test-prompt.md"


def agent_writing(work_dir, *statuses):
    """Fake run_command that writes the given status payloads, one per call.

    A None payload leaves no status file behind.
    """
    payloads = list(statuses)
    prompts: list[str] = []

    def run_command(image, command, spec):
        prompts.append((work_dir / PROMPT_NAME).read_text())
        payload = payloads.pop(0)
        if payload is not None:
            (work_dir / STATUS_NAME).write_text(
                payload if isinstance(payload, str) else json.dumps(payload)
            )
        return ExecutionResult(returncode=0, stdout="done", stderr="")

    run_command.prompts = prompts
    return run_command


@pytest.fixture
def console():
    return Console(file=io.StringIO(), width=120)


@pytest.fixture
def mock_manager():
    manager = Mock()
    manager.config = SandboxConfig()
    return manager


@pytest.fixture
def runner(mock_manager, console):
    return TestRunner(config=RunnerConfig(), manager=mock_manager, console=console)


@pytest.fixture
def options(work_dir):
    return RunOptions(auth=AuthConfig(env={"ANTHROPIC_API_KEY": "sk-test"}), work_dir=work_dir)


# =============================================================================
# Run Tests
# =============================================================================


class TestRun:
    """Tests for running a whole folder."""

    def test_results_per_test_in_order(self, runner, mock_manager, test_folder, work_dir, options):
        mock_manager.run_command.side_effect = agent_writing(
            work_dir,
            {"status": "success"},
            {"status": "failure", "error": "ls printed nothing"},
        )

        report = runner.run(test_folder, options)

        assert report.total_tests == 2
        assert report.passed == 1
        assert report.failed == 1
        assert [r.test_file for r in report.results] == ["a-first.md", "b-second.md"]
        assert report.results[1].error == "ls printed nothing"
        mock_manager.ensure_image.assert_called_once_with("node:20")

    def test_missing_status_file_fails(self, runner, mock_manager, test_folder, work_dir, options):
        mock_manager.run_command.side_effect = agent_writing(work_dir, None, {"status": "success"})

        report = runner.run(test_folder, options)

        assert report.results[0].status == TestStatus.FAILURE
        assert report.results[0].error == NO_STATUS_FILE_ERROR
        assert report.results[1].passed

    def test_malformed_status_file_fails(self, runner, mock_manager, test_folder, work_dir, options):
        mock_manager.run_command.side_effect = agent_writing(
            work_dir, "not json", {"status": "maybe"}
        )

        report = runner.run(test_folder, options)

        assert report.failed == 2
        assert "Invalid JSON in status file" in report.results[0].error
        assert 'Invalid status value: "maybe"' in report.results[1].error

    def test_exception_does_not_stop_run(self, runner, mock_manager, test_folder, work_dir, options):
        fake_agent = agent_writing(work_dir, {"status": "success"})

        def fail_first(image, command, spec):
            if mock_manager.run_command.call_count == 1:
                raise ContainerSetupError("Failed to create container")
            return fake_agent(image, command, spec)

        mock_manager.run_command.side_effect = fail_first

        report = runner.run(test_folder, options)

        assert report.results[0].status == TestStatus.FAILURE
        assert "Failed to create container" in report.results[0].error
        assert report.results[1].passed

    def test_stale_status_file_ignored(self, runner, mock_manager, test_folder, work_dir, options):
        """A status file from an earlier run never counts for the next test."""
        (work_dir / STATUS_NAME).write_text('{"status": "success"}')
        mock_manager.run_command.side_effect = agent_writing(work_dir, None, None)

        report = runner.run(test_folder, options)

        assert report.failed == 2

    def test_files_cleaned_up(self, runner, mock_manager, test_folder, work_dir, options):
        mock_manager.run_command.side_effect = agent_writing(
            work_dir, {"status": "success"}, {"status": "success"}
        )

        runner.run(test_folder, options)

        assert not (work_dir / STATUS_NAME).exists()
        assert not (work_dir / PROMPT_NAME).exists()

    def test_dry_run_never_touches_docker(self, mock_manager, console, test_folder, options):
        runner = TestRunner(config=RunnerConfig(), manager=mock_manager, console=console)
        options.dry_run = True

        report = runner.run(test_folder, options)

        assert report.total_tests == 2
        assert report.success
        mock_manager.run_command.assert_not_called()
        mock_manager.ensure_image.assert_not_called()

    def test_no_pull_when_disabled(self, mock_manager, console, test_folder, work_dir, options):
        mock_manager.run_command.side_effect = agent_writing(work_dir, None, None)
        runner = TestRunner(config=RunnerConfig(pull_image=False), manager=mock_manager, console=console)

        runner.run(test_folder, options)

        mock_manager.ensure_image.assert_not_called()

    def test_progress_printed(self, runner, mock_manager, console, test_folder, work_dir, options):
        mock_manager.run_command.side_effect = agent_writing(
            work_dir, {"status": "success"}, {"status": "failure", "error": "nope"}
        )

        runner.run(test_folder, options)

        output = console.file.getvalue()
        assert "[1/2] Running: a-first.md" in output
        assert "✓ PASSED" in output
        assert "✗ FAILED: nope" in output


# =============================================================================
# Single Test Tests
# =============================================================================


class TestRunSingle:
    """Tests for the container configuration of one test."""

    def test_prompt_contains_instructions(self, runner, mock_manager, test_folder, work_dir, options):
        fake_agent = agent_writing(work_dir, {"status": "success"})
        mock_manager.run_command.side_effect = fake_agent

        runner.run_single(test_folder / "a-first.md", options)

        prompt = fake_agent.prompts[0]
        assert prompt.startswith("# First\n\nCreate hello.txt.\n")
        assert str(work_dir / STATUS_NAME) in prompt

    def test_container_spec(self, runner, mock_manager, test_folder, work_dir, options, tmp_path, monkeypatch):
        docker_socket = tmp_path / "docker.sock"
        docker_socket.touch()
        monkeypatch.setattr("nori_tests.core.runner.DOCKER_SOCKET", str(docker_socket))
        mock_manager.run_command.side_effect = agent_writing(work_dir, {"status": "success"})
        options.privileged = True

        runner.run_single(test_folder / "a-first.md", options)

        image, command, spec = mock_manager.run_command.call_args.args
        assert image == "node:20"
        assert command[:2] == ["sh", "-c"]
        assert "--dangerously-skip-permissions --output-format text" in command[2]
        assert spec.work_dir == str(work_dir)
        assert [(m.host_path, m.container_path, m.read_only) for m in spec.mounts] == [
            (str(work_dir), str(work_dir), False),
            (str(docker_socket), str(docker_socket), False),
        ]
        assert spec.env == {"HOME": "/home/node", "ANTHROPIC_API_KEY": "sk-test"}
        assert spec.privileged is True
        assert spec.keep_container is False
        assert spec.container_name is None
        assert spec.inject_file is None

    def test_docker_socket_not_mounted_when_absent(
        self, runner, mock_manager, test_folder, work_dir, options, tmp_path, monkeypatch
    ):
        monkeypatch.setattr("nori_tests.core.runner.DOCKER_SOCKET", str(tmp_path / "missing.sock"))
        mock_manager.run_command.side_effect = agent_writing(work_dir, {"status": "success"})

        runner.run_single(test_folder / "a-first.md", options)

        spec = mock_manager.run_command.call_args.args[2]
        assert [m.host_path for m in spec.mounts] == [str(work_dir)]

    def test_session_file_injected(self, runner, mock_manager, test_folder, work_dir, tmp_path):
        session = tmp_path / ".claude.json"
        session.write_text("{}")
        options = RunOptions(auth=AuthConfig(session_file_to_copy=session), work_dir=work_dir)
        mock_manager.run_command.side_effect = agent_writing(work_dir, {"status": "success"})

        runner.run_single(test_folder / "a-first.md", options)

        spec = mock_manager.run_command.call_args.args[2]
        assert spec.inject_file == str(session)
        assert spec.inject_dir == "/home/node"
        assert "ANTHROPIC_API_KEY" not in spec.env

    def test_keep_containers_names_container(self, runner, mock_manager, test_folder, work_dir, options):
        mock_manager.run_command.side_effect = agent_writing(work_dir, {"status": "success"})
        options.keep_containers = True

        runner.run_single(test_folder / "a-first.md", options)

        spec = mock_manager.run_command.call_args.args[2]
        assert spec.keep_container is True
        assert spec.container_name.startswith("nori-test-a-first-")

    def test_streaming_mode(self, runner, mock_manager, console, test_folder, work_dir, options):
        def run_streaming(image, command, spec):
            yield OutputChunk("stdout", '{"type": "assistant", "message": {"content": [')
            yield OutputChunk("stdout", '{"type": "text", "text": "Working on it"}]}}\n')
            yield OutputChunk("stderr", "npm notice\n")
            (work_dir / STATUS_NAME).write_text('{"status": "success"}')
            return 0

        mock_manager.run_command_streaming.side_effect = run_streaming
        options.stream = True

        result = runner.run_single(test_folder / "a-first.md", options)

        assert result.passed
        command = mock_manager.run_command_streaming.call_args.args[1]
        assert "--output-format stream-json --verbose" in command[2]
        output = console.file.getvalue()
        assert "Claude: Working on it" in output
        assert "npm notice" in output
        mock_manager.run_command.assert_not_called()


class TestBuildCommand:
    """Tests for the agent command line."""

    def test_prompt_read_from_file(self, tmp_path):
        runner = TestRunner(config=RunnerConfig(agent_package="@scope/agent"), manager=Mock())

        command = runner.build_command(tmp_path / PROMPT_NAME, stream=False)

        assert command[2].startswith("npx -y @scope/agent -p ")
        assert f'"$(cat {tmp_path / PROMPT_NAME})"' in command[2]


def test_run_tests_dry_run(test_folder, console):
    report = run_tests(test_folder, RunOptions(dry_run=True), console=console)

    assert report.total_tests == 2
    assert report.success
