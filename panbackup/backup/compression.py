"""
Archive creation for backup entries.

Archives are tar streams compressed with zstandard:
    {archive_dir}/{archive_name}-{YYYYMMDD}.tar.zst

If that name is taken, -1, -2, ... is appended before the extension.
An existing file is never overwritten.
"""

import os
import logging
import tarfile
from datetime import date
from pathlib import Path
from typing import Iterator, Optional

import zstandard

from .placeholders import format_run_date


logger = logging.getLogger(__name__)

ARCHIVE_EXTENSION = '.tar.zst'
COMPRESSION_LEVEL = 19
DEFAULT_BASE_NAME = 'backup'
MAX_NAME_SUFFIX = 10000


class ArchiveError(Exception):
    """Raised when archive creation fails."""
    pass


class ArchiveExistsError(ArchiveError):
    """Raised when the target archive path is already taken."""
    pass


def sanitize_base_name(base_name: str) -> str:
    """
    Normalize an archive base name.

    Blank names fall back to 'backup'; path separators become underscores
    so the archive always lands directly in the archive directory.

    Args:
        base_name: Resolved archive_name

    Returns:
        Safe base name
    """
    name = (base_name or '').strip()
    if not name:
        return DEFAULT_BASE_NAME
    for separator in ('/', '\\', os.sep):
        name = name.replace(separator, '_')
    return name


def archive_candidates(archive_dir: str, base_name: str, run_date: date) -> Iterator[Path]:
    """
    Yield candidate archive paths in order of preference.

    Args:
        archive_dir: Directory where archives are written
        base_name: Archive base name
        run_date: Date used in the file name

    Yields:
        {base}-{date}.tar.zst, then {base}-{date}-1.tar.zst, -2, ...
    """
    stem = f"{sanitize_base_name(base_name)}-{format_run_date(run_date)}"
    directory = Path(archive_dir)

    yield directory / f"{stem}{ARCHIVE_EXTENSION}"
    for suffix in range(1, MAX_NAME_SUFFIX + 1):
        yield directory / f"{stem}-{suffix}{ARCHIVE_EXTENSION}"


def build_archive_path(archive_dir: str, base_name: str, run_date: date) -> Path:
    """
    Find the first archive path that does not collide with an existing file.

    Raises:
        ArchiveError: If every candidate name is taken
    """
    for candidate in archive_candidates(archive_dir, base_name, run_date):
        if not candidate.exists():
            return candidate
    raise ArchiveError(f"No free archive name for {base_name} in {archive_dir}")


def _member_name_within(source: Path, arcname: str, path: str) -> Optional[str]:
    """Member name path would get inside the archive of source, or None if outside it."""
    relative = os.path.relpath(os.path.realpath(path), os.path.realpath(source))
    if relative == os.curdir or relative.split(os.sep)[0] == os.pardir:
        return None
    return f"{arcname}/{Path(relative).as_posix()}"


def create_archive(source_path: str, archive_path: str, level: int = COMPRESSION_LEVEL) -> str:
    """
    Create a zstd-compressed tar archive from a file or directory.

    Directories are added recursively under their own basename; a single
    file becomes one entry named after its basename.

    Args:
        source_path: File or directory to archive
        archive_path: Output path (must not exist)
        level: zstd compression level

    Returns:
        Path to the created archive

    Raises:
        ArchiveExistsError: If archive_path already exists
        ArchiveError: If the source is unreadable or writing fails
    """
    source = Path(source_path)
    if not source.exists():
        raise ArchiveError(f"Path does not exist: {source_path}")
    if not source.is_dir() and not source.is_file():
        raise ArchiveError(f"Source path is not a file or directory: {source_path}")

    arcname = source.name or DEFAULT_BASE_NAME
    excluded = _member_name_within(source, arcname, archive_path) if source.is_dir() else None

    def skip_own_archive(member: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
        if member.name == excluded:
            logger.debug(f"Skipping archive being written: {archive_path}")
            return None
        return member

    try:
        raw = open(archive_path, 'xb')
    except FileExistsError:
        raise ArchiveExistsError(f"Archive already exists: {archive_path}")
    except OSError as e:
        raise ArchiveError(f"Failed to create archive file {archive_path}: {e}") from e

    try:
        with raw:
            compressor = zstandard.ZstdCompressor(level=level)
            with compressor.stream_writer(raw) as writer:
                with tarfile.open(fileobj=writer, mode='w|') as tar:
                    tar.add(str(source), arcname=arcname, recursive=True, filter=skip_own_archive)
        return str(archive_path)
    except (OSError, tarfile.TarError, zstandard.ZstdError) as e:
        # Clean up partial archive on failure
        try:
            os.remove(archive_path)
        except OSError:
            logger.warning(f"Could not remove partial archive: {archive_path}")
        raise ArchiveError(f"Failed to create archive: {e}") from e


def create_dated_archive(source_path: str, archive_dir: str, base_name: str, run_date: date) -> str:
    """
    Create an archive under the first free dated name.

    Names are claimed with exclusive creation, so two entries racing for
    the same name end up with different suffixes.

    Returns:
        Path to the created archive

    Raises:
        ArchiveError: If the archive cannot be created
    """
    try:
        Path(archive_dir).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ArchiveError(f"Failed to create archive directory {archive_dir}: {e}") from e

    for candidate in archive_candidates(archive_dir, base_name, run_date):
        if candidate.exists():
            continue
        try:
            return create_archive(str(source_path), str(candidate))
        except ArchiveExistsError:
            continue

    raise ArchiveError(f"No free archive name for {base_name} in {archive_dir}")


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        ArchiveError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise ArchiveError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise ArchiveError(f"Failed to get archive size: {e}") from e
