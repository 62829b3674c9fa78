"""
Snapshot store for the panel updater.

A snapshot is a gzip-compressed tar archive of the application tree, written
to the archive directory as ``<prefix>-<UTC timestamp>.tar.gz`` with the
timestamp's ':' replaced by '-', so that lexical and chronological order
coincide. Snapshots are never modified after creation:

- create() writes to a hidden partial file and renames it into place
- list() only reads
- delete() is the only operation that removes one
- restore() only reads the archive; it writes into the application tree

Every name received from outside is validated before any filesystem call.
"""

from __future__ import annotations

import fnmatch
import os
import re
import tarfile
import zlib
from datetime import UTC, datetime, timedelta
from pathlib import Path

import psutil
from pydantic import BaseModel, ConfigDict

from panel_updater.errors import (
    CorruptArchiveError,
    InvalidNameError,
    IOFailureError,
    NotFoundError,
)
from panel_updater.logging import get_logger

logger = get_logger(__name__)

ARCHIVE_SUFFIX = ".tar.gz"
PARTIAL_PREFIX = ".partial-"
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S"
_TIMESTAMP_PATTERN = r"\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}\.\d{3}Z"


class Snapshot(BaseModel):
    """
    An immutable archive of the application tree.

    Attributes:
        name: File name inside the archive directory.
        size_bytes: Size of the archive file.
        created_at: UTC time encoded in the name.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    size_bytes: int
    created_at: datetime


def format_snapshot_name(prefix: str, when: datetime) -> str:
    """
    Build the snapshot file name for a point in time.

    Example:
        >>> format_snapshot_name("backup", datetime(2024, 5, 1, 12, 30, 5, 250000, tzinfo=UTC))
        'backup-2024-05-01T12-30-05.250Z.tar.gz'
    """
    when = when.astimezone(UTC)
    stamp = f"{when.strftime(_TIMESTAMP_FORMAT)}.{when.microsecond // 1000:03d}Z"
    return f"{prefix}-{stamp}{ARCHIVE_SUFFIX}"


def validate_snapshot_name(name: str, prefix: str) -> str:
    """
    Check a snapshot name without touching the filesystem.

    Raises:
        InvalidNameError: If the name contains a path separator or a
            parent-directory segment, or does not match the naming pattern.
    """
    if not isinstance(name, str) or not name:
        raise InvalidNameError("Backup file name is required", details={"name": name})
    if ".." in name or "/" in name or "\\" in name or "\x00" in name:
        raise InvalidNameError("Invalid backup file name", details={"name": name})
    pattern = rf"{re.escape(prefix)}-{_TIMESTAMP_PATTERN}{re.escape(ARCHIVE_SUFFIX)}"
    if not re.fullmatch(pattern, name):
        raise InvalidNameError("Invalid backup file name", details={"name": name})
    return name


def _created_at_from_name(name: str, prefix: str) -> datetime:
    stamp = name[len(prefix) + 1 : -len(ARCHIVE_SUFFIX)]
    base, millis = stamp.rstrip("Z").split(".")
    parsed = datetime.strptime(base, _TIMESTAMP_FORMAT).replace(tzinfo=UTC)
    return parsed + timedelta(milliseconds=int(millis))


def _escapes_tree(path: Path, rel: str) -> bool:
    """Whether ``path`` is a symbolic link with an absolute or outside target."""
    if not path.is_symlink():
        return False
    target = os.readlink(path)
    resolved = os.path.normpath(os.path.join(os.path.dirname(rel), target))
    if os.path.isabs(target) or resolved == ".." or resolved.startswith("../"):
        logger.warning(
            "Skipping symbolic link that points outside the application tree",
            extra={"path": rel, "target": target},
        )
        return True
    return False


class ArchiveStore:
    """
    Creates, lists, deletes and restores snapshots of one application tree.

    Attributes:
        root: The application tree that is archived.
        archive_dir: Directory holding the snapshots.
        prefix: Snapshot file-name prefix.
        exclude: Names (any depth) or root-relative paths, fnmatch-style,
            never captured. The archive directory is always excluded.
        min_free_bytes: Free space required before a snapshot is written.
    """

    def __init__(
        self,
        root: Path | str,
        archive_dir: Path | str,
        *,
        prefix: str = "backup",
        exclude: list[str] | None = None,
        min_free_bytes: int = 0,
    ) -> None:
        self.root = Path(root).absolute()
        self.archive_dir = Path(archive_dir).absolute()
        self.prefix = prefix
        self.exclude = list(exclude or [])
        self.min_free_bytes = min_free_bytes

    def validate_name(self, name: str) -> str:
        """Validate a snapshot name for this store. No filesystem access."""
        return validate_snapshot_name(name, self.prefix)

    def path_for(self, name: str) -> Path:
        """
        Return the path of an existing snapshot.

        Raises:
            InvalidNameError: If the name is invalid (checked first).
            NotFoundError: If no such snapshot exists.
        """
        self.validate_name(name)
        path = self.archive_dir / name
        if not path.is_file():
            raise NotFoundError(
                f"Backup file not found: {name}",
                details={"name": name},
            )
        return path

    def _is_excluded(self, rel: str, absolute: Path) -> bool:
        if absolute == self.archive_dir:
            return True
        name = rel.rsplit("/", 1)[-1]
        for pattern in self.exclude:
            if "/" in pattern:
                if fnmatch.fnmatch(rel, pattern.strip("/")):
                    return True
            elif fnmatch.fnmatch(name, pattern):
                return True
        return False

    def _walk(self) -> list[tuple[Path, str]]:
        """
        Return (absolute, relative) pairs for every captured entry.

        Symbolic links that point outside the tree are left out: restore()
        refuses to extract them, so capturing them would make the snapshot
        unrestorable.
        """
        entries: list[tuple[Path, str]] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            current = Path(dirpath)
            rel_dir = current.relative_to(self.root).as_posix()
            kept = []
            for d in sorted(dirnames):
                rel = d if rel_dir == "." else f"{rel_dir}/{d}"
                if self._is_excluded(rel, current / d) or _escapes_tree(current / d, rel):
                    continue
                kept.append(d)
                entries.append((current / d, rel))
            dirnames[:] = kept
            for f in sorted(filenames):
                rel = f if rel_dir == "." else f"{rel_dir}/{f}"
                if not self._is_excluded(rel, current / f) and not _escapes_tree(current / f, rel):
                    entries.append((current / f, rel))
        return entries

    def _check_free_space(self) -> None:
        if not self.min_free_bytes:
            return
        free = psutil.disk_usage(str(self.archive_dir)).free
        if free < self.min_free_bytes:
            raise IOFailureError(
                "Not enough free disk space to create a backup",
                details={
                    "archive_dir": str(self.archive_dir),
                    "free_bytes": free,
                    "required_bytes": self.min_free_bytes,
                },
            )

    def _next_name(self) -> str:
        when = datetime.now(UTC)
        name = format_snapshot_name(self.prefix, when)
        # Names are unique to the millisecond; step forward on a collision.
        while (self.archive_dir / name).exists():
            when += timedelta(milliseconds=1)
            name = format_snapshot_name(self.prefix, when)
        return name

    def create(self) -> Snapshot:
        """
        Archive the application tree into a new snapshot.

        Returns:
            The new Snapshot.

        Raises:
            IOFailureError: If the archive cannot be written.
        """
        try:
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            self._check_free_space()
            name = self._next_name()
        except OSError as e:
            raise IOFailureError(
                f"Cannot prepare backup directory: {e}",
                details={"archive_dir": str(self.archive_dir)},
            ) from e

        final = self.archive_dir / name
        partial = self.archive_dir / f"{PARTIAL_PREFIX}{name}"
        logger.info("Creating backup", extra={"snapshot": name, "root": str(self.root)})

        try:
            entries = self._walk()
            with tarfile.open(partial, "w:gz") as tar:
                for absolute, rel in entries:
                    tar.add(absolute, arcname=rel, recursive=False)
            os.replace(partial, final)
            size = final.stat().st_size
        except (OSError, tarfile.TarError) as e:
            logger.error(
                "Backup creation failed",
                extra={"snapshot": name, "error": str(e)},
                exc_info=True,
            )
            partial.unlink(missing_ok=True)
            raise IOFailureError(
                f"Failed to create backup: {e}",
                details={"name": name},
            ) from e

        snapshot = Snapshot(
            name=name,
            size_bytes=size,
            created_at=_created_at_from_name(name, self.prefix),
        )
        logger.info(
            "Backup created",
            extra={"snapshot": name, "size_bytes": size, "entries": len(entries)},
        )
        return snapshot

    def list(self) -> list[Snapshot]:
        """
        Return all snapshots, newest first.

        Entries that do not look like snapshots or cannot be read are skipped.
        """
        try:
            names = [p.name for p in self.archive_dir.iterdir()]
        except FileNotFoundError:
            return []
        except OSError as e:
            raise IOFailureError(
                f"Cannot read backup directory: {e}",
                details={"archive_dir": str(self.archive_dir)},
            ) from e

        snapshots: list[Snapshot] = []
        for name in names:
            try:
                self.validate_name(name)
                stat = (self.archive_dir / name).stat()
                created_at = _created_at_from_name(name, self.prefix)
            except (InvalidNameError, OSError, ValueError):
                logger.debug("Skipping archive directory entry", extra={"entry": name})
                continue
            snapshots.append(
                Snapshot(name=name, size_bytes=stat.st_size, created_at=created_at)
            )

        snapshots.sort(key=lambda s: s.name, reverse=True)
        return snapshots

    def delete(self, name: str) -> None:
        """
        Delete a snapshot.

        Raises:
            InvalidNameError: If the name is invalid (no filesystem access).
            NotFoundError: If the snapshot does not exist.
            IOFailureError: If the file cannot be removed.
        """
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError as e:
            raise NotFoundError(
                f"Backup file not found: {name}", details={"name": name}
            ) from e
        except OSError as e:
            raise IOFailureError(
                f"Failed to delete backup: {e}", details={"name": name}
            ) from e
        logger.info("Backup deleted", extra={"snapshot": name})

    def restore(
        self,
        name: str,
        into_root: Path | str | None = None,
        *,
        clean: bool = False,
    ) -> list[str]:
        """
        Extract a snapshot over the application tree.

        Existing files are overwritten. With ``clean``, files that are not
        in the archive are removed afterwards; excluded paths and the archive
        directory are never touched.

        Args:
            name: Snapshot name.
            into_root: Destination; defaults to the store's root.
            clean: Remove files absent from the archive.

        Returns:
            Root-relative paths removed by a clean restore.

        Raises:
            InvalidNameError: If the name is invalid (no filesystem access).
            NotFoundError: If the snapshot does not exist.
            CorruptArchiveError: If the archive cannot be read.
            IOFailureError: If extraction fails while writing.
        """
        path = self.path_for(name)
        destination = Path(into_root) if into_root is not None else self.root
        logger.info(
            "Restoring backup",
            extra={"snapshot": name, "into": str(destination), "clean": clean},
        )

        try:
            with tarfile.open(path, "r:gz") as tar:
                entries = tar.getmembers()
                # Refuse the archive before writing anything into the tree.
                for member in entries:
                    tarfile.data_filter(member, str(destination))
                members = {m.name.rstrip("/") for m in entries}
                tar.extractall(destination, members=entries, filter="data")
        except (tarfile.TarError, EOFError, zlib.error) as e:
            logger.error(
                "Backup archive is unreadable",
                extra={"snapshot": name, "error": str(e)},
                exc_info=True,
            )
            raise CorruptArchiveError(
                f"Backup archive is corrupt: {name}",
                details={"name": name, "error": str(e)},
            ) from e
        except OSError as e:
            raise IOFailureError(
                f"Failed to extract backup: {e}", details={"name": name}
            ) from e

        removed: list[str] = []
        if clean:
            removed = self._remove_absent(destination, members)

        logger.info(
            "Backup restored",
            extra={"snapshot": name, "members": len(members), "removed": len(removed)},
        )
        return removed

    def _remove_absent(self, destination: Path, members: set[str]) -> list[str]:
        removed: list[str] = []
        absent_dirs: list[tuple[Path, str]] = []
        try:
            for dirpath, dirnames, filenames in os.walk(destination):
                current = Path(dirpath)
                rel_dir = current.relative_to(destination).as_posix()
                kept = []
                for d in dirnames:
                    rel = d if rel_dir == "." else f"{rel_dir}/{d}"
                    absolute = current / d
                    if self._is_excluded(rel, absolute):
                        continue
                    if absolute.is_symlink():
                        if rel not in members:
                            absolute.unlink()
                            removed.append(rel)
                        continue
                    kept.append(d)
                    if rel not in members:
                        absent_dirs.append((absolute, rel))
                # Excluded trees are never descended into.
                dirnames[:] = kept
                for f in filenames:
                    rel = f if rel_dir == "." else f"{rel_dir}/{f}"
                    if rel in members or self._is_excluded(rel, current / f):
                        continue
                    (current / f).unlink()
                    removed.append(rel)

            # Deepest first, so emptied parents can go too.
            for absolute, rel in reversed(absent_dirs):
                if any(absolute.iterdir()):
                    continue
                absolute.rmdir()
                removed.append(rel)
        except OSError as e:
            raise IOFailureError(
                f"Failed to remove files absent from the backup: {e}",
                details={"into": str(destination)},
            ) from e
        return removed
