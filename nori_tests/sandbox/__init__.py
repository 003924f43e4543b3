"""Sandbox module for isolated execution of the agent in containers."""

from nori_tests.sandbox.bridge import ChunkBridge, OutputChunk, drain
from nori_tests.sandbox.container import (
    ContainerManager,
    ContainerSpec,
    ExecutionResult,
    MountConfig,
    SandboxConfig,
)
from nori_tests.sandbox.errors import (
    ArchiveInjectionError,
    ContainerRuntimeError,
    ContainerSetupError,
    DockerNotAvailableError,
    ImagePullError,
    SandboxError,
)

__all__ = [
    "ArchiveInjectionError",
    "ChunkBridge",
    "ContainerManager",
    "ContainerRuntimeError",
    "ContainerSetupError",
    "ContainerSpec",
    "DockerNotAvailableError",
    "ExecutionResult",
    "ImagePullError",
    "MountConfig",
    "OutputChunk",
    "SandboxConfig",
    "SandboxError",
    "drain",
]
