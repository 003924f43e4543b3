"""Runner configuration, optionally loaded from .nori-tests.yaml.

Example file:

    image: node:20
    timeout: 1800          # seconds per test; omit for no limit
    test_extension: .md
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = ".nori-tests.yaml"


class ConfigError(Exception):
    """Configuration file is unreadable or has invalid values."""

    pass


@dataclass
class RunnerConfig:
    """Settings for the test orchestrator."""

    image: str = "node:20"
    status_file_name: str = ".nori-test-status.json"
    prompt_file_name: str = ".nori-test-prompt.md"
    test_extension: str = ".md"
    agent_package: str = "@anthropic-ai/claude-code"
    timeout: float | None = None
    pull_image: bool = True


_TYPES: dict[str, tuple[type, ...]] = {
    "image": (str,),
    "status_file_name": (str,),
    "prompt_file_name": (str,),
    "test_extension": (str,),
    "agent_package": (str,),
    "timeout": (int, float, type(None)),
    "pull_image": (bool,),
}


def load_runner_config(path: Path) -> RunnerConfig:
    """Load RunnerConfig from a YAML file; defaults if the file is absent.

    Unknown keys are ignored with a warning.

    Raises:
        ConfigError: If the file is not valid YAML or a value has the wrong type
    """
    if not path.exists():
        return RunnerConfig()

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")

    known = {f.name for f in fields(RunnerConfig)}
    values: dict[str, Any] = {}
    for key, value in data.items():
        if key not in known:
            logger.warning(f"Ignoring unknown config key '{key}' in {path}")
            continue
        expected = _TYPES[key]
        # bool is an int subclass; reject it for numeric fields
        if not isinstance(value, expected) or (isinstance(value, bool) and bool not in expected):
            raise ConfigError(
                f"Invalid value for '{key}' in {path}: {value!r}"
            )
        values[key] = value

    if "timeout" in values and values["timeout"] is not None and values["timeout"] <= 0:
        raise ConfigError(f"'timeout' must be positive in {path}")

    return RunnerConfig(**values)
