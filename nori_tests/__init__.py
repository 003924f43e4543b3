"""nori-tests - run markdown test prompts through an AI agent in isolated containers.

Each test file becomes a prompt for the agent, executed in a disposable Docker
container; the agent reports pass/fail through a status file.
"""

__version__ = "0.1.0"
