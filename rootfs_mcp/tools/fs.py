"""
Filesystem tools for the rootfs MCP server.

Security features:
- Pure path normalization (no filesystem access before the containment check)
- Containment: every path must be the allowed base or a descendant of it
- Separator-boundary prefix check (``/base`` never admits ``/baseEvil``)
- The allowed base itself can never be deleted or moved
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import os
from pathlib import Path
import shutil
from types import ModuleType
from typing import Any

import humanize

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 1_048_576  # 1 MiB


def _human_size(size_bytes: int) -> str:
    """Return human-readable file size."""
    return humanize.naturalsize(size_bytes, binary=True)


class FailureKind(str, Enum):
    """Caller-facing failure categories carried by a failed FsResult."""

    CONTAINMENT_VIOLATION = "containment_violation"
    NOT_FOUND = "not_found"
    WRONG_TYPE = "wrong_type"
    IO_FAILURE = "io_failure"
    FORBIDDEN_TARGET = "forbidden_target"
    INVALID_ARGUMENT = "invalid_argument"


class PathSecurityError(Exception):
    """Raised when a requested path resolves outside the allowed base."""

    def __init__(self, message: str, path: str | None = None, root: str | None = None):
        super().__init__(message)
        self.path = path
        self.root = root


class InvalidPathError(PathSecurityError):
    """Raised for path strings that cannot be resolved at all (e.g. NUL bytes)."""


@dataclass
class FsResult:
    """Result from filesystem operation."""

    success: bool
    data: Any
    meta: dict[str, Any]
    error: str | None = None
    kind: FailureKind | None = None

    @classmethod
    def ok(cls, data: Any, **meta: Any) -> FsResult:
        return cls(success=True, data=data, meta=meta)

    @classmethod
    def fail(cls, kind: FailureKind, error: str, **meta: Any) -> FsResult:
        return cls(success=False, data=None, meta=meta, error=error, kind=kind)


class PathGuard:
    """
    Resolve client-supplied paths against a fixed base directory.

    Normalization is pure path algebra: targets do not have to exist and
    symlinks are not followed. ``pathmod`` is ``os.path`` in production;
    tests pass ``ntpath``/``posixpath`` to exercise the other flavor.

    Example:
        guard = PathGuard("/data")
        guard.resolve("sub/../a.txt")   # "/data/a.txt"
        guard.resolve("../etc/passwd")  # raises PathSecurityError
    """

    def __init__(self, root: str | os.PathLike[str], pathmod: ModuleType = os.path):
        self.pathmod = pathmod
        root_str = os.fspath(root)
        if not pathmod.isabs(root_str):
            raise ValueError(f"Allowed base must be an absolute path: {root_str}")
        self.root: str = pathmod.normpath(root_str)
        self.sep: str = pathmod.sep
        # "/" and "C:\" already end with the separator
        self._prefix = self.root if self.root.endswith(self.sep) else self.root + self.sep

    def contains(self, normalized: str) -> bool:
        """True if an already-normalized absolute path is the base or below it."""
        return normalized == self.root or normalized.startswith(self._prefix)

    def resolve(self, requested: str | None) -> str:
        """
        Resolve a requested path to a contained absolute path.

        Args:
            requested: Empty (the base itself), absolute, or base-relative path

        Returns:
            Normalized absolute path inside the base

        Raises:
            InvalidPathError: If the path contains NUL bytes
            PathSecurityError: If the path normalizes outside the base
        """
        if requested is not None and not isinstance(requested, str):
            raise InvalidPathError(f"Path must be a string: {requested!r}", root=self.root)
        raw = (requested or "").strip()
        if not raw or raw == ".":
            return self.root

        if "\x00" in raw:
            raise InvalidPathError("Path contains null bytes", path=raw, root=self.root)

        if self.pathmod.isabs(raw):
            candidate = raw
        else:
            candidate = self.pathmod.join(self.root, raw)

        normalized = self.pathmod.normpath(candidate)
        if not self.contains(normalized):
            raise PathSecurityError(
                f"Path not allowed: {normalized} (allowed base: {self.root})",
                path=normalized,
                root=self.root,
            )
        return normalized

    def relative(self, resolved: str) -> str:
        """Base-relative form of a resolved path ("." for the base itself)."""
        return self.pathmod.relpath(resolved, self.root)


def _rejected(exc: PathSecurityError) -> FsResult:
    kind = (
        FailureKind.INVALID_ARGUMENT
        if isinstance(exc, InvalidPathError)
        else FailureKind.CONTAINMENT_VIOLATION
    )
    return FsResult.fail(kind, str(exc), path=exc.path, root=exc.root)


def _os_failure(exc: OSError, action: str, **meta: Any) -> FsResult:
    """Map an OSError raised by the single filesystem effect to a failure kind."""
    if isinstance(exc, FileNotFoundError):
        kind = FailureKind.NOT_FOUND
    elif isinstance(exc, (IsADirectoryError, NotADirectoryError, FileExistsError)):
        kind = FailureKind.WRONG_TYPE
    else:
        kind = FailureKind.IO_FAILURE
    return FsResult.fail(kind, f"{action} error: {exc}", **meta)


def _require_text(value: Any, name: str) -> FsResult | None:
    if not isinstance(value, str):
        return FsResult.fail(FailureKind.INVALID_ARGUMENT, f"{name} must be a string")
    return None


class FsOperations:
    """
    The filesystem operations offered to MCP clients.

    One instance is shared by every session; it holds no per-session state.
    Each method resolves its path arguments through the guard first, then
    performs exactly one filesystem action. Expected failures come back as
    a failed FsResult, never as an exception.
    """

    def __init__(self, guard: PathGuard, default_max_bytes: int = DEFAULT_MAX_BYTES):
        self.guard = guard
        self.default_max_bytes = default_max_bytes

    @property
    def root(self) -> str:
        return self.guard.root

    def list_dir(self, path: str | None = None) -> FsResult:
        """List immediate children, one ``DIR ``/``FILE`` tagged line each."""
        try:
            resolved = self.guard.resolve(path)
        except PathSecurityError as e:
            return _rejected(e)

        target = Path(resolved)
        if not target.exists():
            return FsResult.fail(
                FailureKind.NOT_FOUND, f"Directory not found: {resolved}", path=resolved
            )
        if not target.is_dir():
            return FsResult.fail(
                FailureKind.WRONG_TYPE, f"Not a directory: {resolved}", path=resolved
            )

        try:
            with os.scandir(resolved) as it:
                entries = sorted(
                    ((entry.name, entry.is_dir(follow_symlinks=False)) for entry in it),
                    key=lambda item: item[0],
                )
        except OSError as e:
            return _os_failure(e, "List", path=resolved)

        dirs = sum(1 for _, is_dir in entries if is_dir)
        text = "\n".join(f"{'DIR ' if is_dir else 'FILE'}\t{name}" for name, is_dir in entries)
        logger.debug(f"list {path!r} -> {resolved} ({len(entries)} entries)")
        return FsResult.ok(
            text,
            path=resolved,
            entries=len(entries),
            dirs=dirs,
            files=len(entries) - dirs,
        )

    def read_file(self, path: str | None, max_bytes: int | None = None) -> FsResult:
        """
        Read a file as UTF-8 text.

        Args:
            path: File path to read
            max_bytes: Cap on bytes read (default 1 MiB); the tail is dropped

        Returns:
            FsResult whose data is the decoded text
        """
        limit = self.default_max_bytes if max_bytes is None else max_bytes
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            return FsResult.fail(
                FailureKind.INVALID_ARGUMENT, f"maxBytes must be a positive integer: {limit!r}"
            )

        try:
            resolved = self.guard.resolve(path)
        except PathSecurityError as e:
            return _rejected(e)

        target = Path(resolved)
        if not target.exists():
            return FsResult.fail(
                FailureKind.NOT_FOUND, f"File not found: {resolved}", path=resolved
            )
        if not target.is_file():
            return FsResult.fail(FailureKind.WRONG_TYPE, f"Not a file: {resolved}", path=resolved)

        try:
            with open(target, "rb") as f:
                raw = f.read(limit)
                truncated = bool(f.read(1))
        except OSError as e:
            return _os_failure(e, "Read", path=resolved)

        # A cut inside a multi-byte sequence becomes U+FFFD
        text = raw.decode("utf-8", errors="replace")
        logger.debug(f"read {path!r} -> {resolved} ({len(text)} chars)")
        return FsResult.ok(
            text,
            path=resolved,
            bytes_read=len(raw),
            size_human=_human_size(len(raw)),
            truncated=truncated,
            chars=len(text),
        )

    def _put(self, path: str | None, content: Any, mode: str) -> FsResult:
        invalid = _require_text(content, "content")
        if invalid:
            return invalid

        try:
            resolved = self.guard.resolve(path)
        except PathSecurityError as e:
            return _rejected(e)

        target = Path(resolved)
        data = content.encode("utf-8")
        action = "Write" if mode == "wb" else "Append"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, mode) as f:
                f.write(data)
        except OSError as e:
            return _os_failure(e, action, path=resolved)

        verb = "Wrote" if mode == "wb" else "Appended"
        return FsResult.ok(
            f"{verb} {len(content)} chars ({len(data)} bytes) to {resolved}",
            path=resolved,
            chars=len(content),
            bytes_written=len(data),
            size_human=_human_size(len(data)),
        )

    def write_file(self, path: str | None, content: str) -> FsResult:
        """Create or fully overwrite a file, creating parent directories."""
        return self._put(path, content, "wb")

    def append_file(self, path: str | None, content: str) -> FsResult:
        """Append to a file, creating it and its parent directories if absent."""
        return self._put(path, content, "ab")

    def make_dir(self, path: str | None) -> FsResult:
        """Create a directory and any missing ancestors."""
        try:
            resolved = self.guard.resolve(path)
        except PathSecurityError as e:
            return _rejected(e)

        try:
            Path(resolved).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return _os_failure(e, "Mkdir", path=resolved)

        return FsResult.ok(f"Created directory {resolved}", path=resolved)

    def rename(self, old_path: str | None, new_path: str | None) -> FsResult:
        """Move/rename in one step, creating the destination's parent directories."""
        try:
            src = self.guard.resolve(old_path)
            dst = self.guard.resolve(new_path)
        except PathSecurityError as e:
            return _rejected(e)

        if self.root in (src, dst):
            return FsResult.fail(
                FailureKind.FORBIDDEN_TARGET,
                f"Cannot move the allowed base: {self.root}",
                source=src,
                dest=dst,
            )
        if not os.path.lexists(src):
            return FsResult.fail(
                FailureKind.NOT_FOUND, f"Source not found: {src}", source=src, dest=dst
            )

        try:
            Path(dst).parent.mkdir(parents=True, exist_ok=True)
            os.replace(src, dst)
        except OSError as e:
            return _os_failure(e, "Rename", source=src, dest=dst)

        return FsResult.ok(f"Renamed {src} -> {dst}", source=src, dest=dst)

    def delete(self, path: str | None) -> FsResult:
        """Recursively remove a file or directory. The base itself is never deletable."""
        try:
            resolved = self.guard.resolve(path)
        except PathSecurityError as e:
            return _rejected(e)

        if resolved == self.root:
            return FsResult.fail(
                FailureKind.FORBIDDEN_TARGET,
                f"Cannot delete the allowed base: {self.root}",
                path=resolved,
            )

        target = Path(resolved)
        if not os.path.lexists(resolved):
            return FsResult.fail(
                FailureKind.NOT_FOUND, f"Path not found: {resolved}", path=resolved
            )

        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
                what = "directory"
            else:
                target.unlink()
                what = "file"
        except OSError as e:
            return _os_failure(e, "Delete", path=resolved)

        return FsResult.ok(f"Deleted {what} {resolved}", path=resolved, type=what)

    def copy_file(self, src_path: str | None, dest_path: str | None) -> FsResult:
        """Copy file content (not directories), creating the destination's parents."""
        try:
            src = self.guard.resolve(src_path)
            dst = self.guard.resolve(dest_path)
        except PathSecurityError as e:
            return _rejected(e)

        source = Path(src)
        if not source.exists():
            return FsResult.fail(
                FailureKind.NOT_FOUND, f"Source not found: {src}", source=src, dest=dst
            )
        if source.is_dir():
            return FsResult.fail(
                FailureKind.WRONG_TYPE,
                f"Source is a directory (only files can be copied): {src}",
                source=src,
                dest=dst,
            )

        try:
            Path(dst).parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src, dst)
            size = Path(dst).stat().st_size
        except OSError as e:
            return _os_failure(e, "Copy", source=src, dest=dst)

        return FsResult.ok(
            f"Copied {size} bytes {src} -> {dst}",
            source=src,
            dest=dst,
            bytes_copied=size,
            size_human=_human_size(size),
        )
