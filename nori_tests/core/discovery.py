"""Test discovery: markdown prompts in a single folder."""

from pathlib import Path


def discover_tests(folder: str | Path, extension: str = ".md") -> list[Path]:
    """List test files directly inside folder (non-recursive).

    Returns:
        Absolute paths of regular files ending in extension, sorted by name

    Raises:
        FileNotFoundError: If folder does not exist
        NotADirectoryError: If folder is not a directory
    """
    path = Path(folder).resolve()
    if not path.exists():
        raise FileNotFoundError(f"Directory does not exist: {path}")
    if not path.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {path}")

    return sorted(
        entry for entry in path.iterdir()
        if entry.is_file() and entry.name.endswith(extension)
    )
