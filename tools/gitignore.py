""".gitignore-aware filtering for directory listings."""

import os
import logging
from typing import Dict, Optional, Set

import pathspec

from backend import Backend

logger = logging.getLogger(__name__)

ALWAYS_SKIP_DIRS: Set[str] = {
    ".git", "node_modules", "__pycache__", ".venv", "venv",
    ".mypy_cache", ".pytest_cache", ".tox", ".eggs",
    "dist", "build", ".next", ".cache", "coverage", "htmlcov",
}

ALWAYS_SKIP_EXTENSIONS: Set[str] = {".pyc", ".pyo", ".so", ".dylib", ".o", ".class", ".map"}

_gitignore_cache: Dict[str, Optional[pathspec.PathSpec]] = {}


def load_gitignore(backend: Backend) -> Optional[pathspec.PathSpec]:
    """Load and cache the workspace root's .gitignore as a PathSpec, or None."""
    root = backend.working_directory
    if root in _gitignore_cache:
        return _gitignore_cache[root]

    spec = None
    try:
        if backend.file_exists(".gitignore"):
            spec = pathspec.PathSpec.from_lines("gitwildmatch", backend.read_file(".gitignore").splitlines())
    except (OSError, ValueError) as e:
        logger.debug(f"Failed to parse .gitignore: {e}")

    _gitignore_cache[root] = spec
    return spec


def is_ignored(rel_path: str, name: str, is_dir: bool,
               gitignore_spec: Optional[pathspec.PathSpec]) -> bool:
    """Check a path against the hardcoded skips and the .gitignore spec."""
    if is_dir and name in ALWAYS_SKIP_DIRS:
        return True
    if not is_dir and os.path.splitext(name)[1] in ALWAYS_SKIP_EXTENSIONS:
        return True
    if gitignore_spec:
        return gitignore_spec.match_file(rel_path + "/" if is_dir else rel_path)
    return False


def invalidate_gitignore_cache(working_directory: Optional[str] = None) -> None:
    if working_directory:
        _gitignore_cache.pop(os.path.abspath(working_directory), None)
    else:
        _gitignore_cache.clear()
