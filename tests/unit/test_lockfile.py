"""
Unit tests for lock record helpers (backupd/utils/lockfile.py).
"""

import json
import os
from unittest.mock import patch

import psutil

from backupd.utils.lockfile import (
    create_lock,
    lock_guard,
    remove_stale_lock,
    write_lock,
    read_lock,
    remove_lock,
    lock_exists,
    is_pid_alive,
)


class TestLockRecord:
    """Test creating, reading and removing the lock record."""

    def test_create_is_exclusive(self, tmp_path):
        """Test only the first create succeeds."""
        path = str(tmp_path / 'run' / 'backup.pid')

        assert create_lock(path, pid=1234) is True
        assert create_lock(path, pid=5678) is False
        assert read_lock(path)['pid'] == 1234

    def test_create_records_current_pid(self, tmp_path):
        """Test the current PID is recorded by default."""
        path = str(tmp_path / 'backup.pid')

        create_lock(path)

        record = read_lock(path)
        assert record['pid'] == os.getpid()
        assert record['ts'] is not None

    def test_write_replaces_record(self, tmp_path):
        """Test write_lock() overwrites the recorded PID."""
        path = str(tmp_path / 'backup.pid')
        create_lock(path, pid=1234)

        write_lock(path, pid=4321)

        assert read_lock(path)['pid'] == 4321
        assert not os.path.exists(path + '.tmp')

    def test_write_creates_missing_directory(self, tmp_path):
        """Test write_lock() works when the run directory does not exist yet."""
        path = str(tmp_path / 'run' / 'backupd' / 'backup.pid')

        write_lock(path, pid=4321)

        assert read_lock(path)['pid'] == 4321

    def test_record_is_json(self, tmp_path):
        """Test the record holds pid and ts as JSON."""
        path = tmp_path / 'backup.pid'
        create_lock(str(path), pid=99)

        data = json.loads(path.read_text())

        assert set(data) == {'pid', 'ts'}

    def test_read_plain_integer(self, tmp_path):
        """Test a plain PID file is understood."""
        path = tmp_path / 'backup.pid'
        path.write_text('4242\n')

        assert read_lock(str(path)) == {'pid': 4242, 'ts': None}

    def test_read_garbage(self, tmp_path):
        """Test an unreadable record reads as None."""
        path = tmp_path / 'backup.pid'
        path.write_text('not a pid')

        assert read_lock(str(path)) is None

    def test_read_missing(self, tmp_path):
        """Test a missing record reads as None."""
        assert read_lock(str(tmp_path / 'nope.pid')) is None

    def test_remove(self, tmp_path):
        """Test removing the record, twice."""
        path = str(tmp_path / 'backup.pid')
        create_lock(path)

        assert lock_exists(path)
        assert remove_lock(path) is True
        assert not lock_exists(path)
        assert remove_lock(path) is False


class TestStaleTakeover:
    """Test replacing a stale lock record."""

    def test_removes_record_holding_dead_pid(self, tmp_path):
        """Test the record is removed when it still holds the dead PID."""
        path = str(tmp_path / 'backup.pid')
        create_lock(path, pid=4242)

        with lock_guard(path):
            assert remove_stale_lock(path, 4242) is True

        assert not lock_exists(path)

    def test_keeps_record_replaced_since(self, tmp_path):
        """Test a record another start wrote in the meantime is left alone."""
        path = str(tmp_path / 'backup.pid')
        create_lock(path, pid=5151)

        with lock_guard(path):
            assert remove_stale_lock(path, 4242) is False

        assert read_lock(path)['pid'] == 5151

    def test_unreadable_record(self, tmp_path):
        """Test an unreadable record is removed only when it was seen unreadable."""
        path = tmp_path / 'backup.pid'
        path.write_text('not a pid')

        assert remove_stale_lock(str(path), 4242) is False
        assert remove_stale_lock(str(path), None) is True
        assert remove_stale_lock(str(path), None) is False

    def test_guard_creates_directory(self, tmp_path):
        """Test the guard file is created next to the record."""
        path = str(tmp_path / 'run' / 'backup.pid')

        with lock_guard(path):
            assert os.path.exists(path + '.guard')


class TestIsPidAlive:
    """Test process liveness checks."""

    def test_current_process_alive(self):
        """Test our own PID is alive."""
        assert is_pid_alive(os.getpid()) is True

    @patch('backupd.utils.lockfile.psutil.pid_exists', return_value=False)
    def test_missing_process(self, mock_exists):
        """Test a PID with no process is dead."""
        assert is_pid_alive(999999) is False

    @patch('backupd.utils.lockfile.psutil.Process')
    @patch('backupd.utils.lockfile.psutil.pid_exists', return_value=True)
    def test_zombie_is_dead(self, mock_exists, mock_process):
        """Test a zombie counts as dead."""
        mock_process.return_value.status.return_value = psutil.STATUS_ZOMBIE

        assert is_pid_alive(4242) is False

    @patch('backupd.utils.lockfile.psutil.Process')
    @patch('backupd.utils.lockfile.psutil.pid_exists', return_value=True)
    def test_access_denied_is_alive(self, mock_exists, mock_process):
        """Test a process owned by someone else still counts as alive."""
        mock_process.return_value.status.side_effect = psutil.AccessDenied(4242)

        assert is_pid_alive(4242) is True

    @patch('backupd.utils.lockfile.psutil.Process', side_effect=psutil.NoSuchProcess(4242))
    @patch('backupd.utils.lockfile.psutil.pid_exists', return_value=True)
    def test_process_vanished(self, mock_exists, mock_process):
        """Test a process that exits during the check is dead."""
        assert is_pid_alive(4242) is False
