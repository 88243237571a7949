"""Repository walking.

Collects the source files an index run should look at, respecting
``.gitignore`` when present, and locates the repository root.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import pathspec

from cearch.symbols import language_for_path

logger = logging.getLogger(__name__)

# Maximum number of files to index
MAX_FILES = 20000

# Directories that never hold first-party source
_SKIP_DIRS = {
    "node_modules",
    "venv",
    ".venv",
    "__pycache__",
    ".git",
    ".svn",
    ".hg",
    "dist",
    "build",
    ".next",
    "target",
    "vendor",
    ".tox",
    "coverage",
    ".cache",
    "env",
    ".env",
    ".pytest_cache",
    ".mypy_cache",
    ".eggs",
}


def find_git_root(start: str | Path) -> Path | None:
    """Walk upward from *start* to the first directory containing ``.git``.

    ``.git`` may be a directory or a file (worktrees use a gitdir file).
    Returns None when no repository root exists at or above *start*.
    """
    current = Path(start).resolve()
    if not current.is_dir():
        current = current.parent

    for candidate in (current, *current.parents):
        if (candidate / ".git").exists():
            return candidate
    return None


def load_gitignore(folder: str | Path) -> Any:
    """Load .gitignore patterns from *folder*.

    Returns a pathspec.PathSpec object or None.
    """
    gitignore_path = Path(folder) / ".gitignore"
    if not gitignore_path.is_file():
        return None
    try:
        patterns = gitignore_path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        logger.warning("Could not read %s: %s", gitignore_path, exc)
        return None
    return pathspec.PathSpec.from_lines("gitignore", patterns)


def is_binary(path: str | Path) -> bool:
    """Check if file is binary by looking for null bytes in first 8KB."""
    try:
        with open(path, "rb") as f:
            chunk = f.read(8192)
            return b"\x00" in chunk
    except OSError:
        return True  # Can't read = treat as binary


def collect_files(folder: str | Path) -> list[str]:
    """Collect all indexable source files under *folder*.

    Skips:
    - Hidden files and directories
    - Symlinks (files and directories)
    - Files without a registered language
    - Binary files
    - Files matching .gitignore patterns

    Limits output to MAX_FILES files.
    """
    folder_path = Path(folder).resolve()
    gitignore = load_gitignore(folder_path)
    files: list[str] = []

    for root, dirs, filenames in os.walk(folder_path, followlinks=False):
        if len(files) >= MAX_FILES:
            logger.warning("File limit (%d) reached in %s", MAX_FILES, folder_path)
            break

        # Sorted so the walk itself is deterministic
        dirs[:] = sorted(
            d
            for d in dirs
            if d not in _SKIP_DIRS
            and not d.startswith(".")
            and not (Path(root) / d).is_symlink()
        )

        rel_root = Path(root).relative_to(folder_path)

        for filename in sorted(filenames):
            if len(files) >= MAX_FILES:
                break

            if filename.startswith("."):
                continue

            full_path = Path(root) / filename
            if language_for_path(full_path) is None:
                continue

            if full_path.is_symlink():
                continue

            rel_path = (rel_root / filename).as_posix()
            if gitignore and gitignore.match_file(rel_path):
                continue

            if is_binary(full_path):
                continue

            files.append(str(full_path))

    return sorted(files)
