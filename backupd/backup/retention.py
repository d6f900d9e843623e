"""
Retention policy enforcement for backups.

Keeps the newest N artifacts of a job in its backup directory and deletes
the rest. Only files matching the job's artifact name pattern are ever
considered; anything else in the directory is left alone.
"""

import logging
import os
from datetime import datetime
from typing import List, Dict, Any

from .archive import artifact_pattern


logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Manages count-based retention for backup jobs.
    """

    def __init__(self):
        """Initialize retention manager."""
        self.logs = []

    def list_artifacts(self, backup_dir: str, basename: str, extension: str) -> List[Dict[str, Any]]:
        """
        List a job's artifacts, newest first.

        Args:
            backup_dir: Job's backup directory (not searched recursively)
            basename: Basename of the job's source directory
            extension: Artifact extension, e.g. 'tar.gz.enc'

        Returns:
            List of dicts with 'path', 'name' and 'modified'
        """
        if not os.path.isdir(backup_dir):
            return []

        pattern = artifact_pattern(basename, extension)
        artifacts = []

        with os.scandir(backup_dir) as entries:
            for entry in entries:
                if not entry.is_file(follow_symlinks=False) or not pattern.match(entry.name):
                    continue
                artifacts.append({
                    'path': entry.path,
                    'name': entry.name,
                    'modified': entry.stat(follow_symlinks=False).st_mtime,
                })

        # Filenames embed the creation time, so they break mtime ties
        artifacts.sort(key=lambda a: (a['modified'], a['name']), reverse=True)
        return artifacts

    def prune(self, backup_dir: str, basename: str, extension: str, retention: int) -> int:
        """
        Delete all but the newest ``retention`` artifacts of one job.

        Args:
            backup_dir: Job's backup directory
            basename: Basename of the job's source directory
            extension: Artifact extension
            retention: Number of artifacts to keep

        Returns:
            Number of artifacts deleted
        """
        artifacts = self.list_artifacts(backup_dir, basename, extension)
        to_delete = artifacts[max(retention, 0):]

        deleted_count = 0
        for artifact in to_delete:
            try:
                os.remove(artifact['path'])
                deleted_count += 1
                self._log(f"Deleted old backup: {artifact['path']}")
            except FileNotFoundError:
                # already gone, e.g. removed by hand between listing and deletion
                continue
            except OSError as e:
                self._log(f"Failed to delete old backup {artifact['path']}: {e}", level=logging.ERROR)

        if deleted_count:
            self._log(
                f"Retention for {basename} in {backup_dir}: "
                f"kept {min(len(artifacts), retention)}, deleted {deleted_count}"
            )

        return deleted_count

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
