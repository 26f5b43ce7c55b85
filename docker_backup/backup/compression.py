"""
Archive handling for service backups.

Archives are tar streams compressed with zstandard. The service directory
is stored under its basename so that extraction recreates
<target>/<service>/... including the _dumps directory.
"""

import os
import re
import tarfile
from datetime import date, datetime
from pathlib import Path
from typing import Optional, Sequence

import zstandard as zstd

from ..models import ARCHIVE_SUFFIX, ArchiveDescriptor
from .sources import should_exclude


COMPRESSED_SUFFIX = '.tar.zst'

ARCHIVE_PATTERN = re.compile(
    r'^(?P<service>.+)-(?P<date>\d{4}-\d{2}-\d{2})(?:_(?P<time>\d{6}))?' + re.escape(ARCHIVE_SUFFIX) + r'$'
)


class CompressionError(Exception):
    """Raised when archive creation or extraction fails."""
    pass


def create_archive(
    source_path: str,
    output_path: str,
    level: int = 3,
    exclude_patterns: Sequence[str] = (),
) -> str:
    """
    Create a zstd compressed tar archive of a directory.

    Args:
        source_path: Directory to archive
        output_path: Archive file to write (.tar.zst)
        level: Zstandard compression level
        exclude_patterns: Glob patterns of paths to leave out

    Returns:
        Path to the created archive file

    Raises:
        CompressionError: If archive creation fails
    """
    source = Path(source_path)
    if not source.is_dir():
        raise CompressionError(f"Path does not exist: {source_path}")

    arcname = source.name

    def _filter(info: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
        relative = info.name[len(arcname):].lstrip('/')
        if relative and should_exclude(relative, exclude_patterns):
            return None
        return info

    try:
        cctx = zstd.ZstdCompressor(level=level)
        with open(output_path, 'wb') as raw:
            with cctx.stream_writer(raw) as compressed:
                with tarfile.open(fileobj=compressed, mode='w|') as tar:
                    tar.add(str(source), arcname=arcname, recursive=True, filter=_filter)
        return output_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(output_path):
            try:
                os.remove(output_path)
            except OSError:
                pass
        raise CompressionError(f"Failed to create archive: {e}")


def extract_archive(archive_path: str, target_dir: str):
    """
    Extract a zstd compressed tar archive into target_dir.

    Raises:
        CompressionError: If the archive is unreadable or contains unsafe paths
    """
    target = Path(target_dir).resolve()
    target.mkdir(parents=True, exist_ok=True)

    try:
        dctx = zstd.ZstdDecompressor()
        with open(archive_path, 'rb') as raw:
            with dctx.stream_reader(raw) as decompressed:
                with tarfile.open(fileobj=decompressed, mode='r|') as tar:
                    for member in tar:
                        member_path = (target / member.name).resolve()
                        if not str(member_path).startswith(str(target)):
                            raise CompressionError(f"Unsafe path in archive: {member.name}")
                        tar.extract(member, path=str(target), filter='data')
    except CompressionError:
        raise
    except Exception as e:
        raise CompressionError(f"Extraction failed: {e}")


def archive_descriptor_for(service: str, now: Optional[datetime] = None, timestamp: bool = False) -> ArchiveDescriptor:
    """
    Build the descriptor of today's archive for a service.

    Args:
        service: Service name
        now: Point in time the archive belongs to (defaults to now)
        timestamp: Append the time of day so several runs per day do not collide
    """
    now = now or datetime.now()
    return ArchiveDescriptor(service, now.date(), now.time().replace(microsecond=0) if timestamp else None)


def parse_archive_filename(filename: str) -> Optional[ArchiveDescriptor]:
    """
    Parse <service>-YYYY-MM-DD[_HHMMSS].tar.zst.age.

    Returns:
        ArchiveDescriptor, or None if the name does not follow the convention
    """
    match = ARCHIVE_PATTERN.match(filename)
    if not match:
        return None
    try:
        archive_date = date.fromisoformat(match.group('date'))
        archive_time = datetime.strptime(match.group('time'), '%H%M%S').time() if match.group('time') else None
    except ValueError:
        return None
    return ArchiveDescriptor(match.group('service'), archive_date, archive_time)


def strip_archive_extension(filename: str) -> str:
    """Strip .tar.zst.age or .tar.zst from an archive filename."""
    for suffix in (ARCHIVE_SUFFIX, COMPRESSED_SUFFIX):
        if filename.endswith(suffix):
            return filename[:-len(suffix)]
    return os.path.splitext(filename)[0]


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
