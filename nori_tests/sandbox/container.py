"""Container lifecycle for isolated agent runs.

One call owns one container from creation to removal:

    created -> (file injected)? -> attached -> started -> exited -> (removed)?

Two execution modes share the same preamble (_launch):
1. run_command - buffered; returns an ExecutionResult once the process exits
2. run_command_streaming - generator of OutputChunk values; returns the exit code

SECURITY: The guarded process runs as a fixed non-root uid. Isolation is the
container boundary itself; nothing here inspects what the process does.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Any, Callable, Generator, Mapping

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from pydantic import BaseModel, ConfigDict
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import ReadTimeout

from nori_tests.sandbox.archive import pack_directories, pack_file
from nori_tests.sandbox.bridge import ChunkBridge, OutputChunk
from nori_tests.sandbox.demux import FrameDemuxer, pump
from nori_tests.sandbox.errors import (
    ArchiveInjectionError,
    ContainerRuntimeError,
    ContainerSetupError,
    DockerNotAvailableError,
    ImagePullError,
)

logger = logging.getLogger(__name__)

DOCKER_SOCKET = "/var/run/docker.sock"
DEFAULT_UID = 1000
DEFAULT_GID = 1000


class ExecutionResult(BaseModel):
    """Result of a buffered container execution."""

    model_config = ConfigDict(frozen=True)

    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False


@dataclass
class SandboxConfig:
    """Configuration for agent containers."""

    # Default for ensure_image()
    image: str = "node:20"

    # Runtime connection; None means DOCKER_HOST or the default socket
    docker_url: str | None = None
    api_timeout: int = 60  # Per-request timeout for non-blocking API calls

    # Container user (claude-code refuses to skip permissions as root)
    uid: int = DEFAULT_UID
    gid: int | None = None  # None = GID owning the host Docker socket
    home_dir: str = "/home/node"

    # Timeouts
    timeout: float | None = None  # Process timeout; None waits forever
    flush_timeout: float = 5.0  # Grace period for the output stream to close after exit

    # Output limits (prevent OOM from unbounded output)
    max_output_bytes: int = 10 * 1024 * 1024  # 10MB max stdout/stderr

    # Labels applied to every container so leftovers can be found
    labels: dict[str, str] = field(default_factory=lambda: {"nori-tests": "true"})


@dataclass(frozen=True)
class MountConfig:
    """A bind mount from a host path into the container."""

    host_path: str
    container_path: str
    read_only: bool = False

    def bind(self) -> str:
        mode = "ro" if self.read_only else "rw"
        return f"{self.host_path}:{self.container_path}:{mode}"


@dataclass(frozen=True)
class ContainerSpec:
    """Options for one container execution. Created fresh per run.

    Immutable: mounts are stored as a tuple and env as a read-only mapping.
    """

    work_dir: str
    mounts: tuple[MountConfig, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    privileged: bool = False
    container_name: str | None = None
    keep_container: bool = False
    # Host file copied into inject_dir (default: container user's home) before start
    inject_file: str | None = None
    inject_dir: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "mounts", tuple(self.mounts))
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    def validate(self, image: str, command: list[str]) -> None:
        """Check inputs before any container exists.

        Raises:
            ContainerSetupError: On empty image/command, relative work dir,
                                 or a mount whose host path does not exist
        """
        if not image:
            raise ContainerSetupError("Image reference must not be empty")
        if not command:
            raise ContainerSetupError("Command must not be empty")
        if not PurePosixPath(self.work_dir).is_absolute():
            raise ContainerSetupError(f"Working directory must be absolute: {self.work_dir}")
        for mount in self.mounts:
            if not Path(mount.host_path).exists():
                raise ContainerSetupError(f"Mount source does not exist: {mount.host_path}")
            if not PurePosixPath(mount.container_path).is_absolute():
                raise ContainerSetupError(
                    f"Mount target must be absolute: {mount.container_path}"
                )
        for key in self.env:
            if not key or "=" in key:
                raise ContainerSetupError(f"Invalid environment variable name: {key!r}")
        if self.inject_file and not Path(self.inject_file).is_file():
            raise ContainerSetupError(f"File to inject does not exist: {self.inject_file}")


def _truncate_output(output: str, max_bytes: int) -> str:
    """Truncate output to max_bytes, adding truncation notice if needed.

    Prevents downstream memory issues from unbounded command output.
    """
    if len(output.encode("utf-8", errors="replace")) <= max_bytes:
        return output

    # Truncate by bytes, ensuring we don't cut in the middle of a UTF-8 sequence
    truncated = output.encode("utf-8", errors="replace")[:max_bytes].decode(
        "utf-8", errors="ignore"
    )
    return truncated + f"\n\n[OUTPUT TRUNCATED - exceeded {max_bytes} bytes]"


def sanitize_container_name(name: str) -> str:
    """Sanitize a string for use in Docker container names.

    Docker container names must match: [a-zA-Z0-9][a-zA-Z0-9_.-]*
    """
    sanitized = re.sub(r"[^a-zA-Z0-9_.-]", "-", name)
    sanitized = sanitized.lstrip("_.-")
    sanitized = re.sub(r"-+", "-", sanitized)
    sanitized = sanitized[:64]
    if not sanitized:
        sanitized = "test"
    return sanitized.lower()


def _docker_socket_gid(socket_path: str = DOCKER_SOCKET) -> int:
    """GID owning the Docker socket, so the container user can reach it."""
    try:
        return os.stat(socket_path).st_gid
    except OSError:
        return DEFAULT_GID


def _get_docker_user(config: SandboxConfig) -> str:
    """Get the "UID:GID" string for the container user.

    Can be overridden via NORI_DOCKER_USER env var.
    """
    env_override = os.environ.get("NORI_DOCKER_USER")
    if env_override:
        return env_override
    gid = config.gid if config.gid is not None else _docker_socket_gid()
    return f"{config.uid}:{gid}"


def _parse_ids(user: str) -> tuple[int | None, int | None]:
    """Numeric (uid, gid) from a "UID:GID" user string, None where not numeric."""
    uid_part, _, gid_part = user.partition(":")
    uid = int(uid_part) if uid_part.isdigit() else None
    gid = int(gid_part) if gid_part.isdigit() else None
    return uid, gid


def _disable_socket_timeout(sock: Any) -> None:
    """Let the attach socket block until the process produces output.

    The API client applies its request timeout to the underlying socket;
    a quiet agent would otherwise end the stream early.
    """
    for candidate in (sock, getattr(sock, "_sock", None)):
        if candidate is not None and hasattr(candidate, "settimeout"):
            candidate.settimeout(None)


def connect(config: SandboxConfig) -> docker.DockerClient:
    """Connect to the container runtime and verify it answers.

    Raises:
        DockerNotAvailableError: If the daemon cannot be reached
    """
    try:
        if config.docker_url:
            client = docker.DockerClient(base_url=config.docker_url, timeout=config.api_timeout)
        else:
            client = docker.from_env(timeout=config.api_timeout)
        client.ping()
    except (DockerException, RequestsConnectionError) as e:
        raise DockerNotAvailableError(f"Docker is not running or not accessible: {e}") from e
    return client


class _Launch:
    """A started container plus the thread reading its output stream."""

    def __init__(self, container_id: str, sink: Callable[[OutputChunk], None]):
        self.container_id = container_id
        self.sink = sink
        self.sock: Any = None
        self.reader: threading.Thread | None = None
        self.reader_error: Exception | None = None

    @property
    def short_id(self) -> str:
        return self.container_id[:12]

    def start_reader(self, sock: Any) -> None:
        self.sock = sock
        demuxer = FrameDemuxer(
            on_stdout=lambda text: self.sink(OutputChunk("stdout", text)),
            on_stderr=lambda text: self.sink(OutputChunk("stderr", text)),
        )
        self.reader = threading.Thread(
            target=self._read,
            args=(demuxer,),
            name=f"nori-output-{self.short_id}",
            daemon=True,
        )
        self.reader.start()

    def _read(self, demuxer: FrameDemuxer) -> None:
        try:
            pump(self.sock, demuxer)
        except Exception as e:
            self.reader_error = e
            logger.debug(f"Output reader for container {self.short_id} stopped: {e}")

    def join_reader(self, timeout: float) -> bool:
        """Wait for the output stream to close. Returns False on timeout."""
        if self.reader is None:
            return True
        self.reader.join(timeout)
        if self.reader.is_alive():
            logger.warning(
                f"Output stream of container {self.short_id} still open "
                f"{timeout}s after exit; output may be truncated"
            )
            return False
        return True

    def raise_reader_error(self) -> None:
        """Raise the reader's failure as ContainerRuntimeError, if it failed."""
        if self.reader_error is not None:
            raise ContainerRuntimeError(
                f"Output stream of container {self.short_id} failed: {self.reader_error}"
            ) from self.reader_error

    def close_socket(self) -> None:
        if self.sock is None:
            return
        try:
            self.sock.close()
        except OSError as e:
            logger.debug(f"Closing attach socket failed: {e}")


class ContainerManager:
    """Create, run and remove one container per call.

    Calls are independent: each owns its container exclusively and nothing is
    shared between concurrent calls except the runtime connection.
    """

    def __init__(
        self,
        config: SandboxConfig | None = None,
        client: docker.DockerClient | None = None,
    ):
        self.config = config or SandboxConfig()
        if client is None:
            client = connect(self.config)
        self.client = client
        self.api = client.api
        self.user = _get_docker_user(self.config)

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def pull_image(self, image: str) -> None:
        """Pull an image, returning once the runtime reports completion.

        Progress events are only logged.

        Raises:
            ImagePullError: If the runtime reports an error
        """
        logger.info(f"Pulling image {image}")
        try:
            for event in self.api.pull(image, stream=True, decode=True):
                if "error" in event:
                    raise ImagePullError(f"Failed to pull {image}: {event['error']}")
                status = event.get("status")
                if status:
                    logger.debug(f"{image}: {status} {event.get('progress', '')}".rstrip())
        except (APIError, RequestsConnectionError) as e:
            raise ImagePullError(f"Failed to pull {image}: {e}") from e

    def ensure_image(self, image: str | None = None) -> None:
        """Pull the image (default: config.image) only if it is not present locally."""
        image = image or self.config.image
        try:
            self.api.inspect_image(image)
        except ImageNotFound:
            self.pull_image(image)
        except APIError as e:
            raise ContainerSetupError(f"Failed to inspect image {image}: {e}") from e

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run_command(
        self,
        image: str,
        command: list[str],
        spec: ContainerSpec,
    ) -> ExecutionResult:
        """Run command in a fresh container and collect its output.

        Args:
            image: Image reference
            command: Argument vector (no shell is added)
            spec: Mounts, environment and lifecycle options

        Returns:
            ExecutionResult with the process exit code and accumulated output

        Raises:
            ContainerSetupError: Invalid input or creation failure
            ArchiveInjectionError: File injection failed (container removed)
            ContainerRuntimeError: Attach, start, wait or the output stream failed
        """
        stdout: list[str] = []
        stderr: list[str] = []

        def accumulate(chunk: OutputChunk) -> None:
            (stdout if chunk.stream == "stdout" else stderr).append(chunk.text)

        launch = self._launch(image, command, spec, accumulate)
        try:
            returncode, timed_out = self._wait(launch)
            launch.join_reader(self.config.flush_timeout)
            launch.raise_reader_error()
        finally:
            self._finish(launch, spec)

        if timed_out:
            stderr.append(f"\nCommand timed out after {self.config.timeout}s")

        max_bytes = self.config.max_output_bytes
        return ExecutionResult(
            returncode=returncode,
            stdout=_truncate_output("".join(stdout), max_bytes),
            stderr=_truncate_output("".join(stderr), max_bytes),
            timed_out=timed_out,
        )

    def run_command_streaming(
        self,
        image: str,
        command: list[str],
        spec: ContainerSpec,
    ) -> Generator[OutputChunk, None, int]:
        """Run command in a fresh container, yielding output as it arrives.

        The container is created when the generator is first advanced. The
        generator's return value is the exit code (see bridge.drain). Closing
        the generator early still removes the container.

        Raises:
            Same as run_command, from the first next() or from the point the
            failure happens.
        """
        bridge = ChunkBridge()
        launch = self._launch(image, command, spec, bridge.put)
        outcome: dict[str, Any] = {}
        waiter = threading.Thread(
            target=self._wait_and_close,
            args=(launch, bridge, outcome),
            name=f"nori-wait-{launch.short_id}",
            daemon=True,
        )
        waiter.start()
        try:
            yield from bridge
            waiter.join()
        finally:
            self._finish(launch, spec)
        return outcome["returncode"]

    def _wait_and_close(
        self,
        launch: _Launch,
        bridge: ChunkBridge,
        outcome: dict[str, Any],
    ) -> None:
        """Wait for exit concurrently with consumption, then close the bridge."""
        try:
            returncode, timed_out = self._wait(launch)
            launch.join_reader(self.config.flush_timeout)
            launch.raise_reader_error()
            if timed_out:
                bridge.push("stderr", f"\nCommand timed out after {self.config.timeout}s")
            outcome["returncode"] = returncode
        except Exception as e:
            bridge.close(error=e)
            return
        bridge.close()

    def _launch(
        self,
        image: str,
        command: list[str],
        spec: ContainerSpec,
        sink: Callable[[OutputChunk], None],
    ) -> _Launch:
        """Shared preamble: create, inject, attach, start.

        On any failure after creation the container is removed before the
        error propagates.
        """
        spec.validate(image, command)
        container_id = self._create(image, command, spec)
        launch = _Launch(container_id, sink)
        try:
            if spec.inject_file:
                self._inject(container_id, spec.inject_file, spec.inject_dir or self.config.home_dir)
            # Attach before start so no early output is lost
            launch.start_reader(self._attach(container_id))
            self._start(container_id)
        except Exception:
            launch.close_socket()
            self._remove(container_id)
            raise
        return launch

    def _create(self, image: str, command: list[str], spec: ContainerSpec) -> str:
        binds = [mount.bind() for mount in spec.mounts]
        environment = [f"{key}={value}" for key, value in spec.env.items()]

        try:
            host_config = self.api.create_host_config(
                binds=binds,
                privileged=spec.privileged,
            )
            container = self.api.create_container(
                image=image,
                command=list(command),
                user=self.user,
                working_dir=spec.work_dir,
                environment=environment or None,
                host_config=host_config,
                name=spec.container_name,
                labels=dict(self.config.labels),
                tty=False,
                stdin_open=False,
            )
        except (APIError, RequestsConnectionError) as e:
            raise ContainerSetupError(f"Failed to create container from {image}: {e}") from e

        container_id = container["Id"]
        for warning in container.get("Warnings") or []:
            logger.warning(f"Container {container_id[:12]}: {warning}")
        logger.debug(
            f"Created container {container_id[:12]} ({image}) as {self.user}, "
            f"privileged={spec.privileged}, mounts={binds}"
        )
        return container_id

    def _inject(self, container_id: str, host_file: str, target_dir: str) -> None:
        """Copy host_file into target_dir of the created (not started) container."""
        uid, gid = _parse_ids(self.user)
        host_path = Path(host_file)
        try:
            data = pack_file(host_path, uid=uid, gid=gid)
            try:
                ok = self.api.put_archive(container_id, target_dir, data)
            except NotFound:
                self._ensure_directory(container_id, target_dir, uid, gid)
                ok = self.api.put_archive(container_id, target_dir, data)
        except (APIError, OSError, RequestsConnectionError) as e:
            raise ArchiveInjectionError(
                f"Failed to inject {host_path.name} into {target_dir}: {e}"
            ) from e
        if not ok:
            raise ArchiveInjectionError(f"Runtime rejected archive for {target_dir}")
        logger.debug(f"Injected {host_path.name} into {container_id[:12]}:{target_dir}")

    def _ensure_directory(
        self,
        container_id: str,
        directory: str,
        uid: int | None,
        gid: int | None,
    ) -> None:
        """Create directory (and missing parents) in a container that is not running.

        The exec interface needs a running container, so the missing tree is
        written as a directory-only archive at the deepest existing ancestor.
        """
        existing = PurePosixPath(directory)
        missing: list[str] = []
        while existing != existing.parent and not self._path_exists(container_id, str(existing)):
            missing.insert(0, existing.name)
            existing = existing.parent
        if not missing:
            return
        data = pack_directories("/".join(missing), uid=uid, gid=gid)
        if not self.api.put_archive(container_id, str(existing), data):
            raise ArchiveInjectionError(f"Runtime rejected directory archive for {directory}")
        logger.debug(f"Created {directory} in {container_id[:12]}")

    def _path_exists(self, container_id: str, path: str) -> bool:
        # HEAD on the archive endpoint stats the path without opening a tar stream
        url = self.api._url("/containers/{0}/archive", container_id)
        response = self.api.head(url, params={"path": path}, timeout=self.config.api_timeout)
        try:
            self.api._raise_for_status(response)
        except NotFound:
            return False
        finally:
            response.close()
        return True

    def _attach(self, container_id: str) -> Any:
        try:
            sock = self.api.attach_socket(
                container_id,
                params={"stdout": 1, "stderr": 1, "stream": 1},
            )
        except (APIError, RequestsConnectionError) as e:
            raise ContainerRuntimeError(f"Failed to attach to {container_id[:12]}: {e}") from e
        _disable_socket_timeout(sock)
        return sock

    def _start(self, container_id: str) -> None:
        try:
            self.api.start(container_id)
        except (APIError, RequestsConnectionError) as e:
            raise ContainerRuntimeError(f"Failed to start {container_id[:12]}: {e}") from e
        logger.debug(f"Started container {container_id[:12]}")

    def _wait(self, launch: _Launch) -> tuple[int, bool]:
        """Block until the process exits. Returns (exit code, timed out)."""
        timeout = self.config.timeout
        try:
            result = self.api.wait(launch.container_id, timeout=timeout)
        except (ReadTimeout, RequestsConnectionError) as e:
            if timeout is None:
                raise ContainerRuntimeError(
                    f"Lost connection waiting for {launch.short_id}: {e}"
                ) from e
            logger.warning(f"Container {launch.short_id} timed out after {timeout}s, killing")
            self._kill(launch.container_id)
            return -1, True
        except APIError as e:
            raise ContainerRuntimeError(f"Failed waiting for {launch.short_id}: {e}") from e

        error = result.get("Error")
        if error and error.get("Message"):
            logger.warning(f"Runtime reported an error for {launch.short_id}: {error['Message']}")
        returncode = int(result["StatusCode"])
        logger.debug(f"Container {launch.short_id} exited with {returncode}")
        return returncode, False

    def _kill(self, container_id: str) -> None:
        try:
            self.api.kill(container_id)
        except APIError as e:
            # Usually already exited
            logger.debug(f"Kill of {container_id[:12]} failed: {e}")

    def _finish(self, launch: _Launch, spec: ContainerSpec) -> None:
        launch.close_socket()
        if spec.keep_container:
            logger.info(f"Keeping container {spec.container_name or launch.short_id}")
            return
        self._remove(launch.container_id)

    def _remove(self, container_id: str) -> None:
        """Force-remove a container. Never raises."""
        try:
            self.api.remove_container(container_id, force=True)
        except (APIError, RequestsConnectionError) as e:
            logger.warning(f"Failed to remove container {container_id[:12]}: {e}")
        else:
            logger.debug(f"Removed container {container_id[:12]}")
