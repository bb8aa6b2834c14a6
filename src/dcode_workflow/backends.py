"""Sandbox filesystem access for executors and the artifact layer.

The engine never touches the filesystem itself. Two collaborators here do it
on its behalf, both scoped to the sandbox (worktree) path handed to a run:

* ``FilesystemArtifactReader`` re-reads each step's declared artifact files so
  the primary-artifact context layer is always fresh.
* ``build_sandbox_backend`` gives agent executors a ``deepagents`` filesystem
  backend rooted at the sandbox, with the workflow definition directory
  (``.vision/`` by default) made read-only so an agent cannot rewrite the
  manifest it is being driven by.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path, PurePosixPath
from typing import Protocol

from deepagents.backends import FilesystemBackend
from deepagents.backends.protocol import (
    BackendProtocol,
    EditResult,
    FileDownloadResponse,
    FileInfo,
    FileUploadResponse,
    GrepMatch,
    WriteResult,
)

from .context import ArtifactSnapshot

logger = logging.getLogger(__name__)

_TRUNCATION_MARKER = "\n... [truncated at {limit} bytes]"


class SandboxEscapeError(ValueError):
    """A sandbox-relative path resolved outside the sandbox root."""


def resolve_sandbox_path(sandbox_root: Path, relative: str) -> Path:
    """Resolve ``relative`` under ``sandbox_root``, refusing anything that escapes it.

    A leading ``/`` is read as the sandbox root, matching the virtual paths
    agents see.

    Raises:
        SandboxEscapeError: If the path is blank or climbs out of the sandbox.
    """
    if not relative.strip():
        raise SandboxEscapeError("artifact path must be non-empty")
    candidate = PurePosixPath(relative.lstrip("/"))
    root = sandbox_root.resolve()
    resolved = (root / candidate).resolve()
    if resolved != root and root not in resolved.parents:
        raise SandboxEscapeError(f"artifact path {relative!r} escapes sandbox {root}")
    return resolved


class ArtifactReader(Protocol):
    def read(self, sandbox_path: str, paths: Sequence[str]) -> list[ArtifactSnapshot]:
        ...


class FilesystemArtifactReader:
    """Reads step artifacts from disk on every call; nothing is cached between steps."""

    def __init__(self, *, max_bytes: int = 200_000) -> None:
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        self.max_bytes = max_bytes

    def read(self, sandbox_path: str, paths: Sequence[str]) -> list[ArtifactSnapshot]:
        root = Path(sandbox_path)
        snapshots: list[ArtifactSnapshot] = []
        for relative in paths:
            path = resolve_sandbox_path(root, relative)
            if not path.is_file():
                logger.warning("Artifact %s not found under sandbox %s", relative, sandbox_path)
                snapshots.append(ArtifactSnapshot(path=relative, content=None))
                continue
            data = path.read_bytes()
            text = data[: self.max_bytes].decode("utf-8", errors="replace")
            if len(data) > self.max_bytes:
                text += _TRUNCATION_MARKER.format(limit=self.max_bytes)
            snapshots.append(ArtifactSnapshot(path=relative, content=text))
        return snapshots


class ProtectedDirectoryBackend(BackendProtocol):
    """Makes one sandbox directory read-only while delegating everything else.

    Reads (``read``, ``ls_info``, ``grep_raw``, ``glob_info``,
    ``download_files``) are always permitted. Writes, edits and uploads that
    target the protected directory return an error result instead of touching
    disk, per the ``BackendProtocol`` contract.
    """

    _PROTECTED_ERROR = "Cannot modify workflow definition file: {path}"

    def __init__(self, backend: BackendProtocol, protected_dir: str) -> None:
        self._backend = backend
        self._protected = protected_dir.strip("/")

    def _is_protected(self, file_path: str) -> bool:
        parts = PurePosixPath("/" + file_path.lstrip("/")).parts[1:]
        return bool(parts) and parts[0] == self._protected

    def ls_info(self, path: str) -> list[FileInfo]:
        return self._backend.ls_info(path)

    def read(self, file_path: str, offset: int = 0, limit: int = 2000) -> str:
        return self._backend.read(file_path, offset=offset, limit=limit)

    def grep_raw(self, pattern: str, path: str | None = None, glob: str | None = None) -> list[GrepMatch] | str:
        return self._backend.grep_raw(pattern, path=path, glob=glob)

    def glob_info(self, pattern: str, path: str = "/") -> list[FileInfo]:
        return self._backend.glob_info(pattern, path=path)

    def write(self, file_path: str, content: str) -> WriteResult:
        if self._is_protected(file_path):
            msg = self._PROTECTED_ERROR.format(path=file_path)
            logger.warning(msg)
            return WriteResult(error=msg)
        return self._backend.write(file_path, content)

    def edit(self, file_path: str, old_string: str, new_string: str, replace_all: bool = False) -> EditResult:
        if self._is_protected(file_path):
            msg = self._PROTECTED_ERROR.format(path=file_path)
            logger.warning(msg)
            return EditResult(error=msg)
        return self._backend.edit(file_path, old_string, new_string, replace_all=replace_all)

    def upload_files(self, files: list[tuple[str, bytes]]) -> list[FileUploadResponse]:
        # The whole batch is rejected if any file targets the protected directory.
        blocked = [path for path, _ in files if self._is_protected(path)]
        if blocked:
            return [FileUploadResponse(path=path, error=self._PROTECTED_ERROR.format(path=path)) for path in blocked]
        return self._backend.upload_files(files)

    def download_files(self, paths: list[str]) -> list[FileDownloadResponse]:
        return self._backend.download_files(paths)


def build_sandbox_backend(sandbox_root: Path, *, protected_dir: str = ".vision") -> BackendProtocol:
    """Return a virtual-mode filesystem backend rooted at the sandbox.

    Composition (innermost to outermost)::

        FilesystemBackend(sandbox_root, virtual_mode=True) -> ProtectedDirectoryBackend
    """
    if not sandbox_root.is_dir():
        raise FileNotFoundError(f"Sandbox path does not exist or is not a directory: {sandbox_root}")
    base = FilesystemBackend(root_dir=sandbox_root, virtual_mode=True)
    return ProtectedDirectoryBackend(base, protected_dir)
