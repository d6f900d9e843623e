"""
Backup module for backupd.

This module handles the core backup functionality including:
- Compression capability selection
- Archive production (archive, compress, encrypt)
- Execution of a single job
- Retention policy enforcement
"""

from .executor import BackupExecutor, JobResult, execute_backup_job
from .compression import detect_compressor, get_compressor, CompressionError
from .archive import ArchiveProducer, ArchiveError
from .retention import RetentionManager

__all__ = [
    'BackupExecutor',
    'JobResult',
    'execute_backup_job',
    'detect_compressor',
    'get_compressor',
    'CompressionError',
    'ArchiveProducer',
    'ArchiveError',
    'RetentionManager'
]
