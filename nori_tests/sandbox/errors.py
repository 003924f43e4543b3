"""Error taxonomy for container execution.

Setup and injection errors abort a run before the container starts. Runtime
errors abort a started run. Removal errors are never raised (see
ContainerManager._remove).
"""


class SandboxError(Exception):
    """Error in sandbox execution."""

    pass


class DockerNotAvailableError(SandboxError):
    """Docker is required but not available."""

    pass


class ContainerSetupError(SandboxError):
    """Invalid input or runtime failure before the container exists."""

    pass


class ImagePullError(ContainerSetupError):
    """The runtime reported a failed image pull."""

    pass


class ArchiveInjectionError(SandboxError):
    """Writing a file into the created (not yet started) container failed."""

    pass


class ContainerRuntimeError(SandboxError):
    """Attach, start or wait failed on a created container."""

    pass


class DemuxError(SandboxError):
    """The multiplexed output stream is not correctly framed."""

    pass
