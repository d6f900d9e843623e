"""
Daemon lifecycle for backupd.

Lifecycle: stopped -> starting -> running -> stopped

- start: refuse if a live lock record exists, validate the job list and the
  compressor, detach, record the daemon PID, run the scheduler
- stop: SIGTERM the recorded PID, SIGKILL it if it lingers, and remove the
  lock record once it is gone
- status: report liveness, read-only

The lock record is the only state shared between invocations. It is created
exclusively, and a stale record is only taken over under a guard lock, so two
concurrent starts cannot both succeed.
"""

import logging
import os
import signal
import sys
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import psutil

from backupd.backup.archive import ArchiveProducer
from backupd.backup.compression import detect_compressor
from backupd.job_config import load_jobs
from backupd.scheduler import BackupScheduler
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


logger = logging.getLogger(__name__)


class LifecycleError(Exception):
    """Raised when a lifecycle command cannot proceed."""
    pass


class AlreadyRunningError(LifecycleError):
    """Raised by start when a live daemon already holds the lock record."""
    pass


class PrivilegeError(LifecycleError):
    """Raised when a command needs root and the caller is not root."""
    pass


class DaemonStatus(Enum):
    RUNNING = 'running'
    NOT_RUNNING = 'not_running'
    STALE_LOCK = 'stale_lock'


class LifecycleState(Enum):
    STOPPED = 'stopped'
    STARTING = 'starting'
    RUNNING = 'running'


@dataclass
class StatusReport:
    """What status (or stop) found in the lock record."""
    status: DaemonStatus
    pid: Optional[int] = None

    def __str__(self):
        if self.status is DaemonStatus.RUNNING:
            return f"Backup system is running (PID {self.pid})"
        if self.status is DaemonStatus.STALE_LOCK:
            if self.pid is None:
                return "Stale lock record (unreadable)"
            return f"Stale lock record (PID {self.pid} not alive)"
        return "Backup system is not running"


@dataclass
class DaemonState:
    """Process-wide daemon state, owned by one ProcessController."""
    pid_file: str
    lifecycle: LifecycleState = LifecycleState.STOPPED
    pid: Optional[int] = None

    @property
    def is_running(self) -> bool:
        return self.lifecycle is LifecycleState.RUNNING


def require_root(config):
    """
    Raises:
        PrivilegeError: If config.REQUIRE_ROOT is set and we are not root
    """
    if not getattr(config, 'REQUIRE_ROOT', False):
        return
    if hasattr(os, 'geteuid') and os.geteuid() != 0:
        raise PrivilegeError("This command must be run as root (sudo)")


class ProcessController:
    """
    Starts, stops and reports on the backup daemon.
    """

    def __init__(self, config, startup_timeout: float = 5.0, stop_timeout: float = 10.0):
        """
        Args:
            config: Settings class (see backupd.config)
            startup_timeout: Seconds start() waits for the detached daemon to take the lock
            stop_timeout: Seconds stop() waits for the daemon to exit
        """
        self.config = config
        self.state = DaemonState(pid_file=config.PID_FILE)
        self.startup_timeout = startup_timeout
        self.stop_timeout = stop_timeout
        self.scheduler = None

    @property
    def pid_file(self) -> str:
        return self.state.pid_file

    def status(self) -> StatusReport:
        """Report daemon liveness from the lock record."""
        if not lock_exists(self.pid_file):
            return StatusReport(DaemonStatus.NOT_RUNNING)

        record = read_lock(self.pid_file)
        if record is None:
            return StatusReport(DaemonStatus.STALE_LOCK)

        if is_pid_alive(record['pid']):
            return StatusReport(DaemonStatus.RUNNING, record['pid'])
        return StatusReport(DaemonStatus.STALE_LOCK, record['pid'])

    def stop(self) -> StatusReport:
        """
        Stop the daemon recorded in the lock record.

        The daemon gets SIGTERM first and SIGKILL if it is still alive after
        stop_timeout. The lock record is only removed once the process is gone.

        Returns:
            The status found before stopping: RUNNING (now stopped),
            STALE_LOCK (record removed) or NOT_RUNNING (nothing done)

        Raises:
            LifecycleError: If the daemon survives SIGKILL
        """
        report = self.status()

        if report.status is DaemonStatus.NOT_RUNNING:
            return report

        if report.status is DaemonStatus.RUNNING:
            if not self._terminate(report.pid):
                raise LifecycleError(f"Backup system (PID {report.pid}) did not exit; lock record kept")
            logger.info(f"Backup system stopped (PID {report.pid})")
        else:
            logger.warning(f"Removing stale lock record {self.pid_file}")

        remove_lock(self.pid_file)
        return report

    def _terminate(self, pid: int) -> bool:
        """
        Terminate ``pid``, escalating to SIGKILL.

        Returns:
            True once the process is gone
        """
        try:
            process = psutil.Process(pid)
            process.terminate()
            try:
                process.wait(timeout=self.stop_timeout)
                return True
            except psutil.TimeoutExpired:
                logger.warning(f"PID {pid} did not exit within {self.stop_timeout}s after SIGTERM, killing it")

            process.kill()
            process.wait(timeout=self.stop_timeout)
            return True
        except psutil.NoSuchProcess:
            return True
        except psutil.TimeoutExpired:
            logger.error(f"PID {pid} still alive after SIGKILL")
            return False

    def start(self, foreground: bool = False) -> StatusReport:
        """
        Start the daemon.

        Configuration and compressor problems are raised before detaching,
        so the operator sees them.

        Args:
            foreground: Run the loop in this process instead of detaching

        Returns:
            In the launching process: the status once the daemon has taken over.
            In the process that ran the loop: NOT_RUNNING after it stopped.

        Raises:
            AlreadyRunningError: If a live daemon holds the lock record
            ConfigError: If the job list is missing or empty
            CompressionError: If no compressor can be used
        """
        report = self.status()
        if report.status is DaemonStatus.RUNNING:
            raise AlreadyRunningError(f"Backup system is already running (PID {report.pid})")

        self.state.lifecycle = LifecycleState.STARTING
        try:
            config_path = os.path.abspath(self.config.CONFIG_FILE)
            jobs = load_jobs(config_path, self.config.DEFAULT_RETENTION)
            compressor = detect_compressor(self.config.COMPRESSOR)

            if not self._acquire_lock(report):
                raise AlreadyRunningError("Another instance is starting or running")
        except Exception:
            self.state.lifecycle = LifecycleState.STOPPED
            raise

        logger.info(f"Starting backup system with {len(jobs)} job(s)")

        producer = ArchiveProducer(compressor, self.config.KDF_ITERATIONS)

        if foreground:
            self._run(config_path, producer)
            return StatusReport(DaemonStatus.NOT_RUNNING)

        if self._daemonize():
            self.state.lifecycle = LifecycleState.STOPPED
            return self._wait_for_daemon()

        self._run_detached(config_path, producer)

    def _acquire_lock(self, report: StatusReport) -> bool:
        """
        Create the lock record, taking over the stale record ``report`` saw.

        Returns:
            False if another start got there first
        """
        with lock_guard(self.pid_file):
            if report.status is DaemonStatus.STALE_LOCK:
                if remove_stale_lock(self.pid_file, report.pid):
                    logger.warning(f"Removed stale lock record {self.pid_file} ({report})")
            return create_lock(self.pid_file)

    def _run_detached(self, config_path: str, producer: ArchiveProducer):
        """Run the loop in the detached daemon, then exit without waiting for an in-flight tick."""
        exit_code = 0
        try:
            self._run(config_path, producer)
        except Exception:
            logger.exception("Backup daemon crashed")
            exit_code = 1
        finally:
            logging.shutdown()
            os._exit(exit_code)

    def _run(self, config_path: str, producer: ArchiveProducer):
        write_lock(self.pid_file)
        self.state.pid = os.getpid()
        self.state.lifecycle = LifecycleState.RUNNING

        self.scheduler = BackupScheduler(
            config_path,
            producer,
            poll_interval=self.config.POLL_INTERVAL,
            default_retention=self.config.DEFAULT_RETENTION,
        )

        previous_handlers = self._install_signal_handlers()
        try:
            self.scheduler.start()
        finally:
            for signum, handler in previous_handlers.items():
                signal.signal(signum, handler)
            self._teardown()

    def _install_signal_handlers(self) -> dict:
        previous = {}
        for signum in (signal.SIGTERM, signal.SIGINT):
            previous[signum] = signal.signal(signum, self._handle_signal)
        return previous

    def _handle_signal(self, signum, frame):
        logger.info(f"Received signal {signal.Signals(signum).name}, shutting down")
        if self.scheduler is not None:
            self.scheduler.stop()

    def _teardown(self):
        record = read_lock(self.pid_file)
        if record is not None and record['pid'] == os.getpid():
            remove_lock(self.pid_file)
        self.state.lifecycle = LifecycleState.STOPPED
        self.state.pid = None
        logger.info("Backup system shut down")

    def _daemonize(self) -> bool:
        """
        Detach from the terminal with a double fork.

        Returns:
            True in the launching process, False in the daemon
        """
        pid = os.fork()
        if pid > 0:
            os.waitpid(pid, 0)
            return True

        os.setsid()
        if os.fork() > 0:
            os._exit(0)

        os.umask(0o022)
        sys.stdout.flush()
        sys.stderr.flush()
        with open(os.devnull, 'rb') as devnull_in:
            os.dup2(devnull_in.fileno(), sys.stdin.fileno())
        with open(os.devnull, 'ab') as devnull_out:
            os.dup2(devnull_out.fileno(), sys.stdout.fileno())
            os.dup2(devnull_out.fileno(), sys.stderr.fileno())
        return False

    def _wait_for_daemon(self) -> StatusReport:
        """Wait until the detached daemon has rewritten the lock record with its own PID."""
        own_pid = os.getpid()
        deadline = time.monotonic() + self.startup_timeout

        while time.monotonic() < deadline:
            record = read_lock(self.pid_file)
            if record is not None and record['pid'] != own_pid:
                return self.status()
            time.sleep(0.1)

        record = read_lock(self.pid_file)
        if record is not None and record['pid'] == own_pid:
            remove_lock(self.pid_file)
            raise LifecycleError(
                f"Backup daemon did not start within {self.startup_timeout}s; see {self.config.LOG_FILE}"
            )
        return self.status()
