"""
Shared pytest fixtures for backupd tests.

This module provides fixtures for:
- Settings pointing at a temporary directory
- Source directory trees to back up
- Job list files
- Archive producers with a fast key derivation
- Reading produced artifacts back
"""

import io
import logging
import tarfile

import pytest

from backupd.backup.archive import ArchiveProducer
from backupd.backup.compression import GzipCompressor
from backupd.config import DevelopmentConfig
from backupd.utils.crypto import decrypt_stream


# Keeps key derivation fast in tests
TEST_KDF_ITERATIONS = 1000


@pytest.fixture(scope='function')
def test_config(tmp_path):
    """
    Settings with every runtime file under tmp_path.
    """
    class TestConfig(DevelopmentConfig):
        DEBUG = False
        CONFIG_FILE = str(tmp_path / 'backup_system.conf')
        LOG_FILE = str(tmp_path / 'logs' / 'backup_system.log')
        PID_FILE = str(tmp_path / 'run' / 'backup_system.pid')
        COMPRESSOR = 'gzip'
        KDF_ITERATIONS = TEST_KDF_ITERATIONS
        REQUIRE_ROOT = False
        POLL_INTERVAL = 60

    return TestConfig


@pytest.fixture
def source_tree(tmp_path):
    """
    Create a source directory to back up.

    Creates:
    - data/file1.txt
    - data/file2.log
    - data/nested/file3.txt
    """
    source = tmp_path / 'data'
    source.mkdir()
    (source / 'file1.txt').write_text('Test content 1')
    (source / 'file2.log').write_text('Test log content')

    nested = source / 'nested'
    nested.mkdir()
    (nested / 'file3.txt').write_text('Nested content')

    return source


@pytest.fixture
def backup_dir(tmp_path):
    """Backup destination (not created yet)."""
    return tmp_path / 'backups'


@pytest.fixture
def write_job_list(test_config):
    """
    Write lines to the test job list.

    Returns a function taking the lines and returning the file path.
    """
    def _write(*lines):
        with open(test_config.CONFIG_FILE, 'w', encoding='utf-8') as f:
            f.write('\n'.join(lines) + '\n')
        return test_config.CONFIG_FILE

    return _write


@pytest.fixture
def gzip_producer():
    """ArchiveProducer using in-process gzip."""
    return ArchiveProducer(GzipCompressor(), kdf_iterations=TEST_KDF_ITERATIONS)


@pytest.fixture
def read_artifact():
    """
    Decrypt and untar an artifact.

    Returns a function (path, secret, mode='r:gz') -> {member name: bytes or None}.
    """
    def _read(path, secret, mode='r:gz'):
        plain = io.BytesIO()
        with open(path, 'rb') as f:
            decrypt_stream(f, plain, secret)
        plain.seek(0)

        members = {}
        with tarfile.open(fileobj=plain, mode=mode) as tar:
            for member in tar.getmembers():
                if member.isfile():
                    members[member.name] = tar.extractfile(member).read()
                else:
                    members[member.name] = None
        return members

    return _read


@pytest.fixture
def restore_logging():
    """Put the root logger back the way it was after configure_logging() tests."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    apscheduler_level = logging.getLogger('apscheduler').level

    yield

    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
    logging.getLogger('apscheduler').setLevel(apscheduler_level)
