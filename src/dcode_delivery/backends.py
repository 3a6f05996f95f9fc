"""Filesystem backend handed to deep agents working inside a project.

Agents edit the project through a ``FilesystemBackend`` rooted at the
project directory in virtual mode. ``ProtectedPathBackend`` wraps it so the
pipeline's own records (the state directory and ``.git``) can never be
written by an agent, and local secret files (``.env*``) are never read.
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath

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

logger = logging.getLogger(__name__)

PROTECTED_WRITE_ERROR = "Cannot modify pipeline-managed path: {path}"
SECRET_READ_ERROR = "ACCESS DENIED: '{path}' holds local secrets and is not readable by agents."


def _parts(file_path: str) -> tuple[str, ...]:
    return tuple(part for part in PurePosixPath(file_path).parts if part not in {"/", ""})


def is_secret_file(file_path: str) -> bool:
    parts = _parts(file_path)
    return bool(parts) and (parts[-1] == ".env" or parts[-1].startswith(".env."))


class ProtectedPathBackend(BackendProtocol):
    """Blocks agent writes to pipeline-managed directories and reads of secrets.

    Protected directories are matched on the first path component, so
    ``/.dcode/state.json`` is protected while ``/src/.dcode.py`` is not.
    Listings and searches drop secret files from their results.
    """

    def __init__(self, backend: BackendProtocol, protected_dirs: tuple[str, ...]) -> None:
        self._backend = backend
        self._protected_dirs = frozenset(protected_dirs)

    def _is_protected(self, file_path: str) -> bool:
        parts = _parts(file_path)
        return bool(parts) and parts[0] in self._protected_dirs

    def _blocked_write(self, file_path: str) -> str | None:
        if self._is_protected(file_path):
            msg = PROTECTED_WRITE_ERROR.format(path=file_path)
            logger.warning(msg)
            return msg
        return None

    def ls_info(self, path: str) -> list[FileInfo]:
        return [info for info in self._backend.ls_info(path) if not is_secret_file(str(info.get("path", "")))]

    def read(self, file_path: str, offset: int = 0, limit: int = 2000) -> str:
        if is_secret_file(file_path):
            logger.info("blocked agent read of secret file %s", file_path)
            return SECRET_READ_ERROR.format(path=file_path)
        return self._backend.read(file_path, offset=offset, limit=limit)

    def grep_raw(self, pattern: str, path: str | None = None, glob: str | None = None) -> list[GrepMatch] | str:
        matches = self._backend.grep_raw(pattern, path=path, glob=glob)
        if isinstance(matches, str):
            return matches
        return [match for match in matches if not is_secret_file(str(match.get("path", "")))]

    def glob_info(self, pattern: str, path: str = "/") -> list[FileInfo]:
        infos = self._backend.glob_info(pattern, path=path)
        return [info for info in infos if not is_secret_file(str(info.get("path", "")))]

    def write(self, file_path: str, content: str) -> WriteResult:
        blocked = self._blocked_write(file_path)
        if blocked:
            return WriteResult(error=blocked)
        return self._backend.write(file_path, content)

    def edit(self, file_path: str, old_string: str, new_string: str, replace_all: bool = False) -> EditResult:
        blocked = self._blocked_write(file_path)
        if blocked:
            return EditResult(error=blocked)
        return self._backend.edit(file_path, old_string, new_string, replace_all=replace_all)

    def upload_files(self, files: list[tuple[str, bytes]]) -> list[FileUploadResponse]:
        """Upload files; one protected target rejects the whole batch."""
        blocked = [path for path, _ in files if self._is_protected(path)]
        if blocked:
            return [FileUploadResponse(path=path, error=PROTECTED_WRITE_ERROR.format(path=path)) for path in blocked]
        return self._backend.upload_files(files)

    def download_files(self, paths: list[str]) -> list[FileDownloadResponse]:
        secret = [path for path in paths if is_secret_file(path)]
        if secret:
            return [
                FileDownloadResponse(path=path, content=None, error=SECRET_READ_ERROR.format(path=path))
                for path in secret
            ]
        return self._backend.download_files(paths)


def build_project_backend(project_dir: Path, state_dir: str = ".dcode") -> BackendProtocol:
    """Compose the backend deep agents use for one project.

    Composition (innermost to outermost)::

        FilesystemBackend(project_dir, virtual_mode=True) -> ProtectedPathBackend
    """
    base = FilesystemBackend(root_dir=project_dir, virtual_mode=True)
    return ProtectedPathBackend(base, protected_dirs=(_parts(state_dir)[0], ".git"))
