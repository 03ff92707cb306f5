"""
Workspace backend for the tool implementations.

Tools reach files and the shell only through a Backend, which keeps every
path inside a single workspace root. LocalBackend is the on-disk version.
"""

import fnmatch
import logging
import os
import re
import signal
import subprocess
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional, Tuple

logger = logging.getLogger(__name__)

# Never descended into by content search
_SEARCH_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build"}

SearchHit = Tuple[str, int, str]


class WorkspaceEscape(ValueError):
    """A tool path resolved to somewhere outside the workspace root."""


class Backend(ABC):
    """File and command access rooted at one workspace directory."""

    @property
    @abstractmethod
    def working_directory(self) -> str:
        """Absolute workspace root."""

    @abstractmethod
    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        """Entries of a directory, sorted by name: {name, type, ext?, size?}."""

    @abstractmethod
    def read_file(self, path: str) -> str:
        ...

    @abstractmethod
    def write_file(self, path: str, content: str) -> None:
        """Create or overwrite a file; missing parent directories are created."""

    @abstractmethod
    def file_exists(self, path: str) -> bool:
        ...

    @abstractmethod
    def is_dir(self, path: str) -> bool:
        ...

    @abstractmethod
    def run_command(self, command: str, cwd: str = ".", timeout: int = 30) -> Tuple[str, str, int]:
        """(stdout, stderr, exit code). A timeout yields exit code -1."""

    @abstractmethod
    def search(self, pattern: str, path: str = ".", include: Optional[str] = None,
               max_results: int = 100) -> List[SearchHit]:
        """Regex search over text files: (workspace-relative path, line number, line)."""

    def resolve_path(self, path: str) -> str:
        """Absolute, normalised form of a workspace-relative (or absolute) path."""
        joined = path if os.path.isabs(path) else os.path.join(self.working_directory, path)
        return os.path.normpath(joined)

    def relative_path(self, path: str) -> str:
        rel = os.path.relpath(self.resolve_path(path), self.working_directory)
        return "." if rel == os.curdir else rel


class LocalBackend(Backend):
    """Backend over the local filesystem and /bin/sh."""

    def __init__(self, working_directory: str = "."):
        self._root = os.path.abspath(working_directory)

    @property
    def working_directory(self) -> str:
        return self._root

    def confine(self, path: str) -> str:
        """Resolve path, refusing anything outside the workspace root."""
        target = os.path.abspath(self.resolve_path(path)) if path else self._root
        inside = target == self._root or target.startswith(self._root + os.sep)
        if not inside:
            raise WorkspaceEscape(f"Path escapes working directory: {path!r}")
        return target

    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        entries: List[Dict[str, Any]] = []
        with os.scandir(self.confine(path)) as it:
            for item in sorted(it, key=lambda d: d.name):
                if item.is_dir():
                    entries.append({"name": item.name, "type": "directory"})
                elif item.is_file():
                    entries.append({
                        "name": item.name,
                        "type": "file",
                        "ext": os.path.splitext(item.name)[1].lstrip("."),
                        "size": item.stat().st_size,
                    })
        return entries

    def read_file(self, path: str) -> str:
        with open(self.confine(path), "r", encoding="utf-8", errors="replace") as fh:
            return fh.read()

    def write_file(self, path: str, content: str) -> None:
        target = self.confine(path)
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, "w", encoding="utf-8") as fh:
            fh.write(content)

    def file_exists(self, path: str) -> bool:
        return os.path.exists(self.confine(path))

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(self.confine(path))

    def run_command(self, command: str, cwd: str = ".", timeout: int = 30) -> Tuple[str, str, int]:
        logger.debug(f"Running in {cwd}: {command}")
        # New session so a timeout can take down the whole process group
        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=self.confine(cwd),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
        try:
            out, err = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Command timed out after {timeout}s: {command}")
            self._terminate(proc)
            out, err = proc.communicate(timeout=5)
            return out or "", f"Command timed out after {timeout}s\n{err or ''}", -1
        return out or "", err or "", proc.returncode

    @staticmethod
    def _terminate(proc: subprocess.Popen) -> None:
        try:
            os.killpg(os.getpgid(proc.pid), signal.SIGTERM)
        except OSError:
            pass
        try:
            proc.kill()
        except OSError:
            pass

    def _search_candidates(self, root: str, include: Optional[str]) -> List[str]:
        if os.path.isfile(root):
            return [root]
        found = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in _SEARCH_SKIP_DIRS)
            found.extend(
                os.path.join(dirpath, name) for name in sorted(filenames)
                if not include or fnmatch.fnmatch(name, include)
            )
        return found

    def search(self, pattern: str, path: str = ".", include: Optional[str] = None,
               max_results: int = 100) -> List[SearchHit]:
        regex = re.compile(pattern)
        hits: List[SearchHit] = []
        for candidate in self._search_candidates(self.confine(path), include):
            rel = os.path.relpath(candidate, self._root)
            try:
                with open(candidate, "r", encoding="utf-8", errors="strict") as fh:
                    for lineno, line in enumerate(fh, 1):
                        if not regex.search(line):
                            continue
                        hits.append((rel, lineno, line.rstrip("\n")))
                        if len(hits) >= max_results:
                            return hits
            except (UnicodeDecodeError, OSError):
                continue  # binary or unreadable
        return hits
