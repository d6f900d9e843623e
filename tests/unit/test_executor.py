"""
Unit tests for backup executor (backupd/backup/executor.py).

Tests BackupExecutor running one job through produce and prune.
"""

import logging
import os
from unittest.mock import MagicMock

from freezegun import freeze_time

from backupd.backup.archive import PipelineFailedError
from backupd.backup.executor import BackupExecutor, JobResult, execute_backup_job
from backupd.backup.retention import RetentionManager
from backupd.models import Job, Daily


def make_job(source, backup_dir, secret='jobsecret', retention=1):
    return Job(
        source_dir=str(source),
        backup_dir=str(backup_dir),
        secret=secret,
        schedule=Daily(),
        retention=retention,
    )


def mock_producer(error):
    producer = MagicMock()
    producer.extension = 'tar.gz.enc'
    producer.compressor.name = 'gzip'
    producer.produce.side_effect = error
    return producer


class TestBackupExecutor:
    """Test BackupExecutor basic functionality."""

    def test_executor_initialization(self, gzip_producer, source_tree, backup_dir):
        """Test BackupExecutor initializes correctly."""
        job = make_job(source_tree, backup_dir)

        executor = BackupExecutor(job, gzip_producer)

        assert executor.job == job
        assert executor.producer == gzip_producer
        assert isinstance(executor.retention_manager, RetentionManager)
        assert executor.result is None
        assert executor.logs == []

    @freeze_time("2024-01-15 00:00:00")
    def test_successful_run(self, gzip_producer, source_tree, backup_dir):
        """Test a successful run creates the artifact and reports success."""
        job = make_job(source_tree, backup_dir)

        result = BackupExecutor(job, gzip_producer).execute()

        assert isinstance(result, JobResult)
        assert result.succeeded
        assert result.status == 'success'
        assert result.failed_stage is None
        assert result.artifact_path == str(backup_dir / 'backup_data_20240115_000000.tar.gz.enc')
        assert os.path.isfile(result.artifact_path)
        assert result.started_at is not None
        assert result.completed_at is not None
        assert any('Backup created successfully' in log for log in result.logs)

    def test_retention_applied_after_success(self, gzip_producer, source_tree, backup_dir):
        """Test older artifacts beyond retention are removed after a run."""
        backup_dir.mkdir()
        old = backup_dir / 'backup_data_20200101_000000.tar.gz.enc'
        old.write_bytes(b'old')
        os.utime(str(old), (1577836800, 1577836800))
        job = make_job(source_tree, backup_dir, retention=1)

        result = BackupExecutor(job, gzip_producer).execute()

        assert result.succeeded
        assert result.deleted_count == 1
        assert not old.exists()
        assert os.listdir(str(backup_dir)) == [os.path.basename(result.artifact_path)]

    def test_source_missing(self, gzip_producer, tmp_path, backup_dir):
        """Test a missing source fails at the source stage without pruning."""
        retention = MagicMock()
        job = make_job(tmp_path / 'missing', backup_dir)

        result = BackupExecutor(job, gzip_producer, retention).execute()

        assert result.status == 'failed'
        assert result.failed_stage == 'source'
        assert 'does not exist' in result.error_message
        retention.prune.assert_not_called()

    def test_pipeline_failure_skips_retention(self, source_tree, backup_dir):
        """Test a failed run never prunes existing artifacts."""
        retention = MagicMock()
        producer = mock_producer(PipelineFailedError('compress', 'boom'))
        job = make_job(source_tree, backup_dir)

        result = BackupExecutor(job, producer, retention).execute()

        assert result.status == 'failed'
        assert result.failed_stage == 'compress'
        assert result.artifact_path is None
        retention.prune.assert_not_called()

    def test_unexpected_error(self, source_tree, backup_dir):
        """Test an unexpected exception becomes a failed result."""
        producer = mock_producer(RuntimeError('something odd'))
        job = make_job(source_tree, backup_dir)

        result = BackupExecutor(job, producer).execute()

        assert result.status == 'failed'
        assert result.failed_stage == 'unknown'
        assert result.error_message == 'something odd'
        assert result.completed_at is not None

    def test_retention_error_keeps_success(self, gzip_producer, source_tree, backup_dir):
        """Test a retention failure does not fail the backup."""
        retention = MagicMock()
        retention.prune.side_effect = PermissionError('denied')
        job = make_job(source_tree, backup_dir)

        result = BackupExecutor(job, gzip_producer, retention).execute()

        assert result.succeeded
        assert result.deleted_count == 0
        assert any('Retention for' in log for log in result.logs)

    def test_prune_called_with_job_identity(self, gzip_producer, source_tree, backup_dir):
        """Test retention is scoped to the job's basename and extension."""
        retention = MagicMock()
        retention.prune.return_value = 0
        job = make_job(source_tree, backup_dir, retention=4)

        BackupExecutor(job, gzip_producer, retention).execute()

        retention.prune.assert_called_once_with(str(backup_dir), 'data', 'tar.gz.enc', 4)

    def test_secret_not_logged(self, gzip_producer, tmp_path, source_tree, backup_dir, caplog):
        """Test the job secret stays out of logs for success and failure."""
        caplog.set_level(logging.DEBUG)
        ok = BackupExecutor(make_job(source_tree, backup_dir, secret='S3cr3t!'), gzip_producer).execute()
        failed = BackupExecutor(make_job(tmp_path / 'missing', backup_dir, secret='S3cr3t!'), gzip_producer).execute()

        assert 'S3cr3t!' not in caplog.text
        assert not any('S3cr3t!' in log for log in ok.logs + failed.logs)


class TestExecuteBackupJob:
    """Test the execute_backup_job() entry point."""

    def test_execute_backup_job(self, gzip_producer, source_tree, backup_dir):
        """Test the helper runs the job and returns its result."""
        result = execute_backup_job(make_job(source_tree, backup_dir), gzip_producer)

        assert result.succeeded
        assert os.path.isfile(result.artifact_path)
