"""Test orchestration: one agent container per test file, run sequentially.

For each discovered test:
1. Append status-file instructions to the markdown and write it as the prompt
2. Run the agent in a fresh container with the working directory mounted at
   the identical path and the host Docker socket shared (so nested containers
   can re-mount the same host paths)
3. Read the status file the agent wrote, then clean up prompt and status file

A failing or crashing test never stops the run; its exception becomes a
failed TestResult.
"""

from __future__ import annotations

import logging
import shlex
import time
from dataclasses import dataclass, field
from pathlib import Path

from rich.console import Console
from rich.markup import escape

from nori_tests.cli_ui.stream_formatter import StreamFormatter
from nori_tests.core.auth import AuthConfig
from nori_tests.core.config import RunnerConfig
from nori_tests.core.discovery import discover_tests
from nori_tests.core.models import TestReport, TestResult, TestStatus
from nori_tests.core.prompt import append_status_instructions
from nori_tests.core.status_file import StatusFileError, parse_status_file
from nori_tests.sandbox.bridge import OutputChunk, drain
from nori_tests.sandbox.container import (
    DOCKER_SOCKET,
    ContainerManager,
    ContainerSpec,
    MountConfig,
    SandboxConfig,
    sanitize_container_name,
)

logger = logging.getLogger(__name__)

NO_STATUS_FILE_ERROR = "No status file was created. Claude may not have completed the task."


@dataclass
class RunOptions:
    """Per-invocation options from the command line."""

    auth: AuthConfig = field(default_factory=AuthConfig)
    keep_containers: bool = False
    dry_run: bool = False
    privileged: bool = False
    stream: bool = False
    work_dir: Path | None = None  # Defaults to the current directory


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _docker_socket_mount() -> MountConfig | None:
    """Host Docker socket at the same path, so tests can start sibling containers."""
    if not Path(DOCKER_SOCKET).exists():
        return None
    return MountConfig(DOCKER_SOCKET, DOCKER_SOCKET)


class StreamPrinter:
    """Print streamed container output as it arrives."""

    def __init__(self, console: Console):
        self.console = console
        self.formatter = StreamFormatter()

    def __call__(self, chunk: OutputChunk) -> None:
        if chunk.stream == "stdout":
            for line in self.formatter.process_chunk(chunk.text):
                self.console.print(f"    {line}")
        else:
            self.console.print(escape(chunk.text), style="dim", end="")

    def finish(self) -> None:
        for line in self.formatter.flush():
            self.console.print(f"    {line}")


class TestRunner:
    """Run every test in a folder and aggregate a report."""

    __test__ = False

    def __init__(
        self,
        config: RunnerConfig | None = None,
        manager: ContainerManager | None = None,
        console: Console | None = None,
    ):
        self.config = config or RunnerConfig()
        self._manager = manager
        self.console = console or Console()

    @property
    def manager(self) -> ContainerManager:
        # Created lazily so dry runs never contact Docker
        if self._manager is None:
            self._manager = ContainerManager(
                SandboxConfig(image=self.config.image, timeout=self.config.timeout)
            )
        return self._manager

    def run(self, folder: str | Path, options: RunOptions) -> TestReport:
        """Discover and run all tests in folder.

        Raises:
            FileNotFoundError / NotADirectoryError: Bad folder
            SandboxError: Docker unavailable or the image cannot be pulled
        """
        start = time.monotonic()
        test_files = discover_tests(folder, self.config.test_extension)
        results: list[TestResult] = []

        if options.dry_run:
            for test_file in test_files:
                results.append(TestResult(test_file=test_file.name, status=TestStatus.SUCCESS))
            return TestReport.from_results(results, _elapsed_ms(start))

        if test_files and self.config.pull_image:
            self.manager.ensure_image(self.config.image)

        for index, test_file in enumerate(test_files, start=1):
            self.console.print(
                f"\n[bold][{index}/{len(test_files)}] Running:[/bold] {escape(test_file.name)}"
            )
            test_start = time.monotonic()
            try:
                result = self.run_single(test_file, options)
            except Exception as e:
                logger.debug(f"Test {test_file.name} raised", exc_info=True)
                result = TestResult(
                    test_file=test_file.name,
                    status=TestStatus.FAILURE,
                    error=str(e),
                    duration_ms=_elapsed_ms(test_start),
                )
                self.console.print(f"  [red]✗ ERROR:[/red] {escape(str(e))}")
            else:
                if result.passed:
                    self.console.print(f"  [green]✓ PASSED[/green] ({result.duration_ms}ms)")
                else:
                    self.console.print(
                        f"  [red]✗ FAILED:[/red] {escape(result.error or 'Unknown error')}"
                    )
            results.append(result)

        return TestReport.from_results(results, _elapsed_ms(start))

    def run_single(self, test_file: Path, options: RunOptions) -> TestResult:
        """Run one test file in its own container."""
        start = time.monotonic()
        work_dir = (options.work_dir or Path.cwd()).resolve()
        status_path = work_dir / self.config.status_file_name
        prompt_path = work_dir / self.config.prompt_file_name

        prompt = append_status_instructions(
            test_file.read_text(encoding="utf-8"), str(status_path)
        )
        # A status file left by an earlier run must not count for this one
        status_path.unlink(missing_ok=True)
        prompt_path.write_text(prompt, encoding="utf-8")

        try:
            spec = self._container_spec(test_file, work_dir, options)
            command = self.build_command(prompt_path, options.stream)
            image = self.config.image

            if options.stream:
                printer = StreamPrinter(self.console)
                returncode = drain(
                    self.manager.run_command_streaming(image, command, spec),
                    on_chunk=printer,
                )
                printer.finish()
            else:
                execution = self.manager.run_command(image, command, spec)
                returncode = execution.returncode
                if returncode != 0 and execution.stderr:
                    logger.info(f"Agent stderr for {test_file.name}:\n{execution.stderr[-2000:]}")
            logger.debug(f"Agent for {test_file.name} exited with {returncode}")

            status, error = self.read_status(status_path)
        finally:
            prompt_path.unlink(missing_ok=True)

        return TestResult(
            test_file=test_file.name,
            status=status,
            error=error,
            duration_ms=_elapsed_ms(start),
        )

    def _container_spec(
        self,
        test_file: Path,
        work_dir: Path,
        options: RunOptions,
    ) -> ContainerSpec:
        home_dir = self.manager.config.home_dir
        container_name = None
        if options.keep_containers:
            stem = sanitize_container_name(test_file.stem)
            container_name = f"nori-test-{stem}-{int(time.time() * 1000)}"

        mounts = [MountConfig(str(work_dir), str(work_dir))]
        socket_mount = _docker_socket_mount()
        if socket_mount is not None:
            mounts.append(socket_mount)

        session_file = options.auth.session_file_to_copy
        return ContainerSpec(
            work_dir=str(work_dir),
            mounts=tuple(mounts),
            env={"HOME": home_dir, **options.auth.env},
            privileged=options.privileged,
            container_name=container_name,
            keep_container=options.keep_containers,
            inject_file=str(session_file) if session_file else None,
            inject_dir=home_dir,
        )

    def build_command(self, prompt_path: Path, stream: bool) -> list[str]:
        """Shell command that runs the agent on the prompt file."""
        output_format = "stream-json --verbose" if stream else "text"
        agent = (
            f"npx -y {shlex.quote(self.config.agent_package)} "
            f'-p "$(cat {shlex.quote(str(prompt_path))})" '
            f"--dangerously-skip-permissions --output-format {output_format}"
        )
        return ["sh", "-c", agent]

    @staticmethod
    def read_status(status_path: Path) -> tuple[TestStatus, str | None]:
        """Interpret the status file; a missing or malformed file is a failure."""
        if not status_path.exists():
            return TestStatus.FAILURE, NO_STATUS_FILE_ERROR
        try:
            status = parse_status_file(status_path.read_text(encoding="utf-8"))
        except StatusFileError as e:
            return TestStatus.FAILURE, str(e)
        finally:
            status_path.unlink(missing_ok=True)
        return status.status, status.error


def run_tests(
    folder: str | Path,
    options: RunOptions,
    config: RunnerConfig | None = None,
    console: Console | None = None,
) -> TestReport:
    """Convenience wrapper around TestRunner.run."""
    return TestRunner(config=config, console=console).run(folder, options)
