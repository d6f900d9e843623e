"""
Job list loader.

The job list is a UTF-8 text file with one job per line:

    source_dir|backup_dir|secret|schedule|[retention]

Blank lines and lines starting with '#' are ignored. A malformed line is
logged and dropped; the rest of the file still loads.
"""

import logging
import os
import re
from typing import List

from backupd.models import Job, parse_schedule


logger = logging.getLogger(__name__)

FIELD_DELIMITER = '|'
COMMENT_MARKER = '#'
DEFAULT_RETENTION = 1

_RETENTION_RE = re.compile(r'^[0-9]+$')


class ConfigError(Exception):
    """Raised when the job list cannot be loaded."""
    pass


class ConfigMissingError(ConfigError):
    """Raised when the job list file does not exist."""
    pass


class ConfigEmptyError(ConfigError):
    """Raised when the job list file has zero content."""
    pass


class MalformedLineError(ConfigError):
    """Raised for a single unusable line of the job list."""
    pass


def check_config_file(path: str):
    """
    Verify the job list exists and is non-empty.

    Args:
        path: Path to the job list

    Raises:
        ConfigMissingError: If the file does not exist
        ConfigEmptyError: If the file is empty
    """
    if not os.path.isfile(path):
        raise ConfigMissingError(f"Configuration file {path} not found")

    if os.path.getsize(path) == 0:
        raise ConfigEmptyError(f"Configuration file {path} is empty")


def parse_retention(value: str, source_dir: str, default: int = DEFAULT_RETENTION) -> int:
    """
    Resolve the optional retention field.

    An absent or empty field gives the default silently. Anything that is
    not a positive integer also gives the default, with a warning.
    """
    if not value:
        return default

    if not _RETENTION_RE.match(value) or int(value) < 1:
        logger.warning(
            f"Invalid retention value '{value}' for directory {source_dir}. "
            f"Using default value {default}"
        )
        return default

    return int(value)


def parse_config_line(line: str, line_number: int = 0, default_retention: int = DEFAULT_RETENTION):
    """
    Parse one line of the job list.

    Args:
        line: Raw line from the file
        line_number: 1-based line number, for diagnostics
        default_retention: Retention used when the field is absent or invalid

    Returns:
        Job instance, or None for blank and comment lines

    Raises:
        MalformedLineError: If the line does not hold 4 or 5 usable fields
    """
    stripped = line.strip()
    if not stripped or stripped.startswith(COMMENT_MARKER):
        return None

    fields = [f.strip() for f in stripped.split(FIELD_DELIMITER)]

    if len(fields) < 4 or len(fields) > 5:
        raise MalformedLineError(
            f"line {line_number}: expected 4 or 5 fields separated by "
            f"'{FIELD_DELIMITER}', got {len(fields)}"
        )

    source_dir, backup_dir, secret, schedule = fields[:4]
    retention_field = fields[4] if len(fields) == 5 else ''

    for name, value in (('source directory', source_dir),
                        ('backup directory', backup_dir),
                        ('secret', secret),
                        ('schedule', schedule)):
        if not value:
            raise MalformedLineError(f"line {line_number}: empty {name}")

    return Job(
        source_dir=source_dir,
        backup_dir=backup_dir,
        secret=secret,
        schedule=parse_schedule(schedule),
        retention=parse_retention(retention_field, source_dir, default_retention),
        line_number=line_number,
    )


def load_jobs(path: str, default_retention: int = DEFAULT_RETENTION) -> List[Job]:
    """
    Load the ordered job list.

    Args:
        path: Path to the job list
        default_retention: Retention used when a line omits it

    Returns:
        Jobs in file order; malformed lines are logged and left out

    Raises:
        ConfigMissingError: If the file does not exist
        ConfigEmptyError: If the file is empty
    """
    check_config_file(path)

    jobs = []
    with open(path, 'r', encoding='utf-8') as f:
        for line_number, line in enumerate(f, start=1):
            try:
                job = parse_config_line(line, line_number, default_retention)
            except MalformedLineError as e:
                logger.error(f"Skipping malformed configuration line in {path}: {e}")
                continue

            if job is not None:
                jobs.append(job)

    return jobs
