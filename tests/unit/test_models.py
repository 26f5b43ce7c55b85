"""
Unit tests for data models (docker_backup/models.py).

Tests archive naming, run status lines and the run summary.
"""

from datetime import date, datetime, time, timedelta

from docker_backup.models import (
    ArchiveDescriptor,
    BackupSummary,
    DatabaseDefinition,
    DbType,
    PipelineRun,
    RestoreCandidate,
    Stage,
    format_size,
)


class TestArchiveDescriptor:
    """Test archive filenames."""

    def test_filename(self):
        assert ArchiveDescriptor('blog', date(2026, 2, 12)).filename == 'blog-2026-02-12.tar.zst.age'

    def test_filename_with_time(self):
        descriptor = ArchiveDescriptor('blog', date(2026, 2, 12), time(3, 15, 42))

        assert descriptor.filename == 'blog-2026-02-12_031542.tar.zst.age'


class TestPipelineRun:
    """Test per-service run state."""

    def test_ok_status_line(self):
        start = datetime(2026, 2, 12, 3, 0, 0)
        run = PipelineRun('blog', size_bytes=2048, started_at=start, completed_at=start + timedelta(seconds=42))

        assert not run.failed
        assert run.status_line() == 'blog: OK 2.0 KB in 42s'

    def test_failed_status_line(self):
        run = PipelineRun('wiki', stage=Stage.FAILED, errors=['boom'], outcomes={'failed_stage': 'dumping'})

        assert run.failed
        assert run.status_line() == 'wiki: FAILED at dumping (1 error(s))'

    def test_warnings_do_not_fail(self):
        assert not PipelineRun('blog', warnings=['pre-backup hook failed']).failed


class TestBackupSummary:
    """Test the summary handed to the notifier."""

    def _summary(self):
        start = datetime(2026, 2, 12, 3, 0, 0)
        summary = BackupSummary(started_at=start, completed_at=start + timedelta(seconds=90))
        summary.runs = [
            PipelineRun('blog', size_bytes=1024 * 1024),
            PipelineRun('wiki', errors=['Container wiki-db is not running, cannot dump'],
                        outcomes={'failed_stage': 'dumping'}),
        ]
        return summary

    def test_errors_prefixed_with_service(self):
        summary = self._summary()
        summary.run_errors.append('Service not found: ghost')
        summary.retention_errors.append('Failed to delete blog-2026-01-01.tar.zst.age: denied')

        assert summary.errors == [
            'Service not found: ghost',
            'wiki: Container wiki-db is not running, cannot dump',
            'Failed to delete blog-2026-01-01.tar.zst.age: denied',
        ]
        assert summary.total_errors == 3

    def test_headline(self):
        summary = self._summary()

        assert summary.headline() == 'Backed up 2 service(s) in 90s, total size: 1.0 MB, 1 error(s)'
        assert summary.status == 'failure'

    def test_success(self):
        summary = BackupSummary(runs=[PipelineRun('blog', size_bytes=10)])

        assert not summary.failed
        assert summary.status == 'success'
        assert 'error' not in summary.headline()

    def test_details(self):
        summary = self._summary()
        summary.pruned = {'blog': 3, 'wiki': 1}

        details = summary.details()

        assert '  wiki: FAILED at dumping (1 error(s))' in details
        assert 'Pruned 4 archive(s)' in details
        assert 'Errors:' in details

    def test_details_lists_warnings(self):
        summary = BackupSummary(runs=[
            PipelineRun('blog', warnings=['pre-backup hook failed: flush.sh exited 1']),
            PipelineRun('wiki'),
        ])

        details = summary.details()

        assert not summary.failed
        assert 'Warnings:\n  blog: pre-backup hook failed: flush.sh exited 1' in details
        assert 'Errors:' not in details
        assert 'Pruned' not in details


class TestSmallTypes:
    """Test helpers on the remaining types."""

    def test_dump_extension(self):
        assert DbType.POSTGRES.dump_extension == 'pgfc'
        assert DbType.MYSQL.dump_extension == 'sql'

    def test_database_definition_repr(self):
        assert repr(DatabaseDefinition(1, 'pg', 'postgres', (), True)) == \
            '<DatabaseDefinition 1 pg type=postgres names=all>'

    def test_candidate_stem(self):
        assert RestoreCandidate('/x/_dumps/app-pg_app_db.pgfc', 'app-pg', 'postgres', 'app_db').stem == 'app-pg_app_db'

    def test_format_size(self):
        assert format_size(512) == '512.0 B'
        assert format_size(1536) == '1.5 KB'
        assert format_size(5 * 1024 ** 3) == '5.0 GB'
