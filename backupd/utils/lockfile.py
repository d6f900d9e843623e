"""
Lock record helpers for the backup daemon.

The lock record is a small JSON file holding the daemon's PID and start
time. It is created with O_CREAT | O_EXCL so that only one start can win,
and rewritten atomically when the detached daemon takes it over.

Plain-integer PID files are also read, so a record left behind by older
tooling is still recognised.
"""

import contextlib
import datetime
import errno
import fcntl
import json
import logging
import os

import psutil


logger = logging.getLogger(__name__)


def _lock_payload(pid: int) -> bytes:
    data = {"pid": pid, "ts": datetime.datetime.now(datetime.timezone.utc).isoformat()}
    return json.dumps(data).encode("utf-8")


def create_lock(path: str, pid: int = None) -> bool:
    """
    Create the lock record if and only if it does not exist yet.

    Args:
        path: Lock record path
        pid: PID to record (defaults to the current process)

    Returns:
        True if the record was created, False if one already exists
    """
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except OSError as e:
        if e.errno == errno.EEXIST:
            return False
        raise

    try:
        os.write(fd, _lock_payload(pid if pid is not None else os.getpid()))
    finally:
        os.close(fd)
    return True


def write_lock(path: str, pid: int = None):
    """
    Replace the lock record's contents atomically.

    Args:
        path: Lock record path
        pid: PID to record (defaults to the current process)
    """
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp = path + ".tmp"
    with open(tmp, "wb") as f:
        f.write(_lock_payload(pid if pid is not None else os.getpid()))
    os.replace(tmp, path)


def read_lock(path: str):
    """
    Read the lock record.

    Args:
        path: Lock record path

    Returns:
        Dict with at least 'pid', or None if there is no usable record
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read().strip()
    except FileNotFoundError:
        return None
    except OSError:
        logger.exception("Failed to read lock record %s", path)
        return None

    if content.isdigit():
        return {"pid": int(content), "ts": None}

    try:
        data = json.loads(content)
        return {"pid": int(data["pid"]), "ts": data.get("ts")}
    except (ValueError, KeyError, TypeError):
        logger.warning("Unreadable lock record %s", path)
        return None


def remove_lock(path: str) -> bool:
    """
    Remove the lock record.

    Returns:
        True if a record was removed, False if there was none
    """
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False


def remove_stale_lock(path: str, stale_pid) -> bool:
    """
    Remove the lock record only if it still holds ``stale_pid``.

    Call under lock_guard(); another start may have replaced the record
    since it was found stale.

    Args:
        path: Lock record path
        stale_pid: PID that was found dead, or None for an unreadable record

    Returns:
        True if the record was removed
    """
    if not os.path.exists(path):
        return False

    record = read_lock(path)
    current_pid = record["pid"] if record is not None else None
    if current_pid != stale_pid:
        return False
    return remove_lock(path)


@contextlib.contextmanager
def lock_guard(path: str):
    """
    Serialize lock record takeover between concurrent starts.

    Holds an exclusive flock on ``<path>.guard`` for the duration of the block.
    """
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    fd = os.open(path + ".guard", os.O_CREAT | os.O_WRONLY, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        yield
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


def lock_exists(path: str) -> bool:
    return os.path.exists(path)


def is_pid_alive(pid: int) -> bool:
    """
    Check if a process with the given PID is alive.

    Zombies count as dead.
    """
    try:
        if not psutil.pid_exists(int(pid)):
            return False
        return psutil.Process(int(pid)).status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, ValueError):
        return False
    except psutil.AccessDenied:
        # exists, but owned by someone else
        return True
