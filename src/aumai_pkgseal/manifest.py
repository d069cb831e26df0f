"""Deterministic manifests of a package directory."""

from __future__ import annotations

import hashlib
import io
import logging
import os
from collections.abc import Callable, Iterator, Mapping
from fnmatch import fnmatchcase
from pathlib import Path
from typing import BinaryIO, Protocol

from aumai_pkgseal.errors import BuildCancelled, ManifestIOError, UnsafePath
from aumai_pkgseal.models import (
    FileCheck,
    FileEntry,
    FileStatus,
    Manifest,
    ManifestConfig,
    SymlinkPolicy,
    check_relative_path,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File sources
# ---------------------------------------------------------------------------


class FileSource(Protocol):
    """Supplies the file list and raw bytes a manifest is built from."""

    def iter_files(self) -> Iterator[str]:
        """Yield relative POSIX paths of regular files, in any order."""
        ...

    def open(self, path: str) -> BinaryIO:
        """Open *path* (as yielded by :meth:`iter_files`) for binary reading."""
        ...


def _is_excluded(path: str, patterns: list[str]) -> bool:
    return any(fnmatchcase(path, pattern) for pattern in patterns)


class FilesystemSource:
    """Regular files below a directory on the local filesystem."""

    def __init__(self, root: str | Path, config: ManifestConfig | None = None) -> None:
        self.root = Path(root)
        self.config = config or ManifestConfig()

    def _relative(self, full: Path) -> str:
        relative = full.relative_to(self.root).as_posix()
        try:
            return check_relative_path(relative)
        except ValueError as exc:
            raise UnsafePath(str(exc), path=relative) from exc

    def _on_symlink(self, relative: str) -> bool:
        """Apply the symlink policy; return True if the link should be used."""
        policy = self.config.symlinks
        if policy == SymlinkPolicy.follow:
            return True
        if policy == SymlinkPolicy.skip:
            logger.warning("Skipping symbolic link %s", relative)
            return False
        raise UnsafePath(f"Refusing to follow symbolic link: {relative}", path=relative)

    def iter_files(self) -> Iterator[str]:
        follow = self.config.symlinks == SymlinkPolicy.follow
        exclude = self.config.exclude
        visited: set[tuple[int, int]] = set()

        def _walk_error(exc: OSError) -> None:
            raise ManifestIOError(
                f"Cannot list directory {exc.filename}: {exc.strerror}",
                path=exc.filename,
            ) from exc

        for dirpath, dirnames, filenames in os.walk(
            self.root, followlinks=follow, onerror=_walk_error
        ):
            current = Path(dirpath)
            if follow:
                stat = current.stat()
                if (stat.st_dev, stat.st_ino) in visited:
                    logger.warning("Skipping directory cycle at %s", current)
                    dirnames[:] = []
                    continue
                visited.add((stat.st_dev, stat.st_ino))

            kept = []
            for name in sorted(dirnames):
                full = current / name
                relative = self._relative(full)
                if _is_excluded(relative, exclude):
                    continue
                if full.is_symlink() and not self._on_symlink(relative):
                    continue
                kept.append(name)
            dirnames[:] = kept

            for name in sorted(filenames):
                full = current / name
                relative = self._relative(full)
                if _is_excluded(relative, exclude):
                    continue
                if full.is_symlink():
                    if not self._on_symlink(relative):
                        continue
                    if not full.exists():
                        raise ManifestIOError(
                            f"Dangling symbolic link: {relative}", path=relative
                        )
                if not full.is_file():
                    logger.debug("Ignoring non-regular file %s", relative)
                    continue
                yield relative

    def open(self, path: str) -> BinaryIO:
        return (self.root / path).open("rb")


class MemorySource:
    """An in-memory tree mapping relative paths to file contents."""

    def __init__(self, files: Mapping[str, bytes]) -> None:
        self._files = dict(files)

    def iter_files(self) -> Iterator[str]:
        yield from self._files

    def open(self, path: str) -> BinaryIO:
        try:
            return io.BytesIO(self._files[path])
        except KeyError:
            raise FileNotFoundError(path) from None


# ---------------------------------------------------------------------------
# ManifestBuilder
# ---------------------------------------------------------------------------


class ManifestBuilder:
    """Walk a file source and produce a sorted, hashed :class:`Manifest`.

    A build is atomic: it returns a complete manifest or raises.  Nothing is
    returned if a file becomes unreadable or the build is cancelled.
    """

    def __init__(self, config: ManifestConfig | None = None) -> None:
        self.config = config or ManifestConfig()

    def build(
        self,
        root: str | Path,
        should_cancel: Callable[[], bool] | None = None,
    ) -> Manifest:
        """Build a manifest of every regular file below *root*.

        Args:
            root: The package directory.
            should_cancel: Optional probe (e.g. ``threading.Event().is_set``)
                checked before each file; when it returns true the build
                stops with :class:`BuildCancelled`.

        Raises:
            ManifestIOError: if *root* is not a directory or any file cannot
                be read.
            UnsafePath: for a rejected symlink or an unrepresentable path.
        """
        root_path = Path(root)
        if not root_path.is_dir():
            raise ManifestIOError(
                f"Package root does not exist or is not a directory: {root}",
                path=str(root),
            )
        return self.build_from(FilesystemSource(root_path, self.config), should_cancel)

    def build_from(
        self,
        source: FileSource,
        should_cancel: Callable[[], bool] | None = None,
    ) -> Manifest:
        """Build a manifest from any :class:`FileSource`."""
        digests: dict[str, tuple[str, int]] = {}

        for path in source.iter_files():
            if should_cancel is not None and should_cancel():
                raise BuildCancelled("Manifest build cancelled", path=path)
            if _is_excluded(path, self.config.exclude):
                continue
            try:
                check_relative_path(path)
            except ValueError as exc:
                raise UnsafePath(str(exc), path=path) from exc
            if path in digests:
                raise ManifestIOError(f"Duplicate path in file source: {path}", path=path)
            digests[path] = self._digest(source, path)
            logger.debug("Hashed %s (%d bytes)", path, digests[path][1])

        manifest = Manifest(
            files=[
                FileEntry(path=path, hash=digest, size=size)
                for path, (digest, size) in sorted(digests.items())
            ]
        )
        logger.info(
            "Built manifest of %d file(s), %d bytes", len(manifest.files), manifest.total_size
        )
        return manifest

    def _digest(self, source: FileSource, path: str) -> tuple[str, int]:
        hasher = hashlib.sha256()
        size = 0
        try:
            with source.open(path) as fh:
                for chunk in iter(lambda: fh.read(self.config.chunk_size), b""):
                    hasher.update(chunk)
                    size += len(chunk)
        except OSError as exc:
            raise ManifestIOError(f"Cannot read {path}: {exc}", path=path) from exc
        return hasher.hexdigest(), size


# ---------------------------------------------------------------------------
# On-disk comparison
# ---------------------------------------------------------------------------


def verify_files(
    root: str | Path,
    manifest: Manifest,
    config: ManifestConfig | None = None,
) -> list[FileCheck]:
    """Compare *manifest* with the current contents of *root*.

    Every manifest path is reported as ``ok``, ``modified`` or ``missing``;
    files present on disk but absent from the manifest are ``unexpected``.
    The result is sorted by path.
    """
    actual = {entry.path: entry for entry in ManifestBuilder(config).build(root).files}
    checks: list[FileCheck] = []

    for entry in manifest.files:
        found = actual.pop(entry.path, None)
        if found is None:
            status = FileStatus.missing
        elif found.hash != entry.hash or found.size != entry.size:
            status = FileStatus.modified
        else:
            status = FileStatus.ok
        checks.append(FileCheck(path=entry.path, status=status))

    for path in actual:
        checks.append(FileCheck(path=path, status=FileStatus.unexpected))

    checks.sort(key=lambda check: check.path)
    return checks


__all__ = [
    "FileSource",
    "FilesystemSource",
    "ManifestBuilder",
    "MemorySource",
    "verify_files",
]
