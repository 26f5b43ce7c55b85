"""
Unit tests for archive handling (docker_backup/backup/compression.py).

Tests zstd tar creation and extraction, and the archive naming convention.
"""

import io
import tarfile
from datetime import date, datetime, time

import pytest
import zstandard as zstd
from freezegun import freeze_time

from docker_backup.backup.compression import (
    CompressionError,
    archive_descriptor_for,
    create_archive,
    extract_archive,
    get_archive_size,
    parse_archive_filename,
    strip_archive_extension,
)


def _names(archive_path):
    with open(archive_path, 'rb') as raw:
        with zstd.ZstdDecompressor().stream_reader(raw) as reader:
            with tarfile.open(fileobj=reader, mode='r|') as tar:
                return sorted(member.name for member in tar)


class TestCreateArchive:
    """Test archive creation."""

    def test_archive_under_service_name(self, service_dir, tmp_path):
        archive = create_archive(str(service_dir), str(tmp_path / 'blog.tar.zst'), level=3)

        names = _names(archive)
        assert 'blog/docker-compose.yml' in names
        assert 'blog/data/posts.txt' in names
        assert all(name == 'blog' or name.startswith('blog/') for name in names)

    def test_exclude_patterns(self, service_dir, tmp_path):
        (service_dir / 'cache').mkdir()
        (service_dir / 'cache' / 'blob').write_text('x')

        archive = create_archive(str(service_dir), str(tmp_path / 'blog.tar.zst'),
                                 exclude_patterns=['*.log', 'cache'])

        names = _names(archive)
        assert 'blog/logs/app.log' not in names
        assert 'blog/cache' not in names
        assert 'blog/cache/blob' not in names
        assert 'blog/data/posts.txt' in names

    def test_missing_source(self, tmp_path):
        with pytest.raises(CompressionError, match='does not exist'):
            create_archive(str(tmp_path / 'missing'), str(tmp_path / 'out.tar.zst'))

    def test_failure_removes_partial_archive(self, service_dir, tmp_path):
        output = tmp_path / 'nested' / 'missing-dir' / 'out.tar.zst'

        with pytest.raises(CompressionError, match='Failed to create archive'):
            create_archive(str(service_dir), str(output))

        assert not output.exists()


class TestExtractArchive:
    """Test archive extraction."""

    def test_extract_recreates_service_directory(self, service_dir, tmp_path):
        (service_dir / '_dumps').mkdir()
        (service_dir / '_dumps' / 'app-pg_app_db.pgfc').write_bytes(b'PGDMP')
        archive = create_archive(str(service_dir), str(tmp_path / 'blog.tar.zst'))

        target = tmp_path / 'restore'
        extract_archive(archive, str(target))

        assert (target / 'blog' / 'data' / 'posts.txt').read_text() == 'hello world'
        assert (target / 'blog' / '_dumps' / 'app-pg_app_db.pgfc').read_bytes() == b'PGDMP'

    def test_rejects_path_traversal(self, tmp_path):
        archive = tmp_path / 'evil.tar.zst'
        payload = b'gotcha'
        with open(archive, 'wb') as raw:
            with zstd.ZstdCompressor().stream_writer(raw) as writer:
                with tarfile.open(fileobj=writer, mode='w|') as tar:
                    info = tarfile.TarInfo('../evil.txt')
                    info.size = len(payload)
                    tar.addfile(info, io.BytesIO(payload))

        with pytest.raises(CompressionError, match='Unsafe path'):
            extract_archive(str(archive), str(tmp_path / 'restore'))

        assert not (tmp_path / 'evil.txt').exists()

    def test_rejects_absolute_symlink(self, tmp_path):
        archive = tmp_path / 'link.tar.zst'
        with open(archive, 'wb') as raw:
            with zstd.ZstdCompressor().stream_writer(raw) as writer:
                with tarfile.open(fileobj=writer, mode='w|') as tar:
                    info = tarfile.TarInfo('blog/passwd')
                    info.type = tarfile.SYMTYPE
                    info.linkname = '/etc/passwd'
                    tar.addfile(info)

        with pytest.raises(CompressionError, match='Extraction failed'):
            extract_archive(str(archive), str(tmp_path / 'restore'))

        assert not (tmp_path / 'restore' / 'blog' / 'passwd').is_symlink()

    def test_garbage_input(self, tmp_path):
        archive = tmp_path / 'garbage.tar.zst'
        archive.write_bytes(b'not zstd at all')

        with pytest.raises(CompressionError, match='Extraction failed'):
            extract_archive(str(archive), str(tmp_path / 'restore'))


class TestArchiveNames:
    """Test the <service>-<date>[_<time>].tar.zst.age convention."""

    @freeze_time('2026-02-12 03:15:42')
    def test_descriptor_for_today(self):
        assert archive_descriptor_for('blog').filename == 'blog-2026-02-12.tar.zst.age'

    @freeze_time('2026-02-12 03:15:42')
    def test_descriptor_with_timestamp(self):
        assert archive_descriptor_for('blog', timestamp=True).filename == 'blog-2026-02-12_031542.tar.zst.age'

    def test_descriptor_for_given_time(self):
        descriptor = archive_descriptor_for('wiki', datetime(2025, 12, 31, 23, 59))

        assert descriptor.date == date(2025, 12, 31)
        assert descriptor.time is None

    def test_parse(self):
        descriptor = parse_archive_filename('blog-api-2026-02-12.tar.zst.age')

        assert descriptor.service == 'blog-api'
        assert descriptor.date == date(2026, 2, 12)
        assert descriptor.time is None

    def test_parse_with_time(self):
        descriptor = parse_archive_filename('blog-2026-02-12_031542.tar.zst.age')

        assert descriptor.service == 'blog'
        assert descriptor.time == time(3, 15, 42)

    @pytest.mark.parametrize('filename', [
        'blog-2026-02-12.tar.zst',
        'blog-2026-13-01.tar.zst.age',
        'blog.tar.zst.age',
        'README.md',
    ])
    def test_parse_rejects(self, filename):
        assert parse_archive_filename(filename) is None

    def test_strip_extension(self):
        assert strip_archive_extension('blog-2026-02-12.tar.zst.age') == 'blog-2026-02-12'
        assert strip_archive_extension('blog-2026-02-12.tar.zst') == 'blog-2026-02-12'

    def test_get_archive_size(self, tmp_path):
        path = tmp_path / 'a'
        path.write_bytes(b'12345')

        assert get_archive_size(str(path)) == 5
        with pytest.raises(CompressionError, match='not found'):
            get_archive_size(str(tmp_path / 'missing'))
