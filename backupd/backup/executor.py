"""
Backup executor - runs one job end to end.

Workflow:
1. Build the artifact name from the source basename and current time
2. Produce the artifact (archive, compress, encrypt)
3. Enforce retention, only after a successful run
4. Record the outcome in a JobResult

Every failure is caught here and turned into a failed JobResult, so a broken
job never stops the other jobs of a tick.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from backupd.models import Job
from .archive import (
    ArchiveProducer,
    ArchiveError,
    SourceMissingError,
    DestUnwritableError,
    PipelineFailedError,
    generate_artifact_filename,
)
from .retention import RetentionManager


logger = logging.getLogger(__name__)


@dataclass
class JobResult:
    """Outcome of one job run."""
    job: Job
    status: str = 'running'
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    artifact_path: Optional[str] = None
    deleted_count: int = 0
    failed_stage: Optional[str] = None
    error_message: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 'success'


def _failed_stage(error: Exception) -> str:
    if isinstance(error, PipelineFailedError):
        return error.stage
    if isinstance(error, SourceMissingError):
        return 'source'
    if isinstance(error, DestUnwritableError):
        return 'destination'
    return 'unknown'


class BackupExecutor:
    """
    Orchestrates produce-then-prune for a single job.
    """

    def __init__(self, job: Job, producer: ArchiveProducer, retention_manager: RetentionManager = None):
        """
        Initialize backup executor.

        Args:
            job: Job to execute
            producer: Archive producer holding the process-wide compressor
            retention_manager: Retention manager (a fresh one if omitted)
        """
        self.job = job
        self.producer = producer
        self.retention_manager = retention_manager or RetentionManager()
        self.result = None
        self.artifact_path = None
        self.logs = []

    def execute(self) -> JobResult:
        """
        Execute the backup job.

        Returns:
            JobResult with status 'success' or 'failed'
        """
        self.result = JobResult(job=self.job, started_at=datetime.now())

        self._log(f"Starting backup of {self.job.source_dir} (retention={self.job.retention})")

        try:
            self._execute_workflow()
            self.result.status = 'success'

        except ArchiveError as e:
            self.result.status = 'failed'
            self.result.failed_stage = _failed_stage(e)
            self.result.error_message = str(e)
            self._log(f"Backup of {self.job.source_dir} failed ({self.result.failed_stage}): {e}", logging.ERROR)

        except Exception as e:
            self.result.status = 'failed'
            self.result.failed_stage = 'unknown'
            self.result.error_message = str(e)
            logger.exception(f"Unexpected error while backing up {self.job.source_dir}")
            self._log(f"Backup of {self.job.source_dir} failed: {e}", logging.ERROR)

        finally:
            self.result.completed_at = datetime.now()
            self.result.logs = list(self.logs)

        return self.result

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        # Step 1: Artifact name
        filename = generate_artifact_filename(self.job.source_dir, self.producer.extension)
        output_path = os.path.join(self.job.backup_dir, filename)
        self._log(f"Creating backup {filename} using {self.producer.compressor.name}")

        # Step 2: Produce
        self.artifact_path = self.producer.produce(self.job.source_dir, output_path, self.job.secret)
        self.result.artifact_path = self.artifact_path
        self._log(f"Backup created successfully: {self.artifact_path}")

        # Step 3: Retention
        try:
            deleted = self.retention_manager.prune(
                self.job.backup_dir,
                self.job.basename,
                self.producer.extension,
                self.job.retention,
            )
        except OSError as e:
            self._log(f"Retention for {self.job.backup_dir} failed: {e}", logging.WARNING)
            return

        self.result.deleted_count = deleted
        if deleted:
            self._log(f"Removed {deleted} old backup(s) from {self.job.backup_dir}")

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def execute_backup_job(job: Job, producer: ArchiveProducer) -> JobResult:
    """
    Execute one job.

    Args:
        job: Job to execute
        producer: Archive producer to use

    Returns:
        JobResult with execution results
    """
    executor = BackupExecutor(job, producer)
    return executor.execute()
