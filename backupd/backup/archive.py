"""
Archive production: one source directory in, one encrypted artifact out.

The default pipeline chains three stages without writing anything
intermediate to disk:

1. archive: tar stream of the source directory, rooted at its basename
2. compress: the compressor selected at startup
3. encrypt: AES-256-GCM keyed by the job secret

The zip capability fuses all three stages into one AES zip writer.

Artifacts are named backup_<basename>_<YYYYMMDD_HHMMSS>.<ext>[.enc] and are
written to a .part file first, then renamed into place.
"""

import logging
import os
import re
import tarfile
from datetime import datetime
from pathlib import Path

import pyzipper

from backupd.models import source_basename
from backupd.utils.crypto import EncryptingWriter, DEFAULT_ITERATIONS
from .compression import Compressor


logger = logging.getLogger(__name__)

ARTIFACT_PREFIX = 'backup_'
ENCRYPTED_SUFFIX = 'enc'
PARTIAL_SUFFIX = '.part'
TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'


class ArchiveError(Exception):
    """Raised when an artifact cannot be produced."""
    pass


class SourceMissingError(ArchiveError):
    """Raised when the source directory does not exist."""
    pass


class DestUnwritableError(ArchiveError):
    """Raised when the backup directory or artifact cannot be created."""
    pass


class PipelineFailedError(ArchiveError):
    """Raised when one stage of the pipeline fails."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"{stage} stage failed: {message}")


def artifact_extension(compressor: Compressor) -> str:
    """Extension of the final artifact, including the encryption suffix."""
    if compressor.encrypts:
        return compressor.extension
    return f"{compressor.extension}.{ENCRYPTED_SUFFIX}"


def generate_artifact_filename(source_dir: str, extension: str, timestamp: datetime = None) -> str:
    """
    Generate the artifact filename for a backup run.

    Format: backup_{basename}_{YYYYMMDD_HHMMSS}.{extension}

    Args:
        source_dir: Source directory of the job
        extension: Artifact extension, e.g. 'tar.gz.enc'
        timestamp: Creation time (defaults to now)

    Returns:
        Filename (without path)
    """
    if timestamp is None:
        timestamp = datetime.now()
    return f"{ARTIFACT_PREFIX}{source_basename(source_dir)}_{timestamp.strftime(TIMESTAMP_FORMAT)}.{extension}"


def artifact_pattern(basename: str, extension: str):
    """Compiled regex matching exactly the artifacts of one job."""
    return re.compile(
        rf'^{re.escape(ARTIFACT_PREFIX + basename)}_[0-9]{{8}}_[0-9]{{6}}\.{re.escape(extension)}$'
    )


def _run_stage(stage: str, func, *args):
    try:
        return func(*args)
    except PipelineFailedError:
        raise
    except Exception as e:
        raise PipelineFailedError(stage, str(e)) from e


class _StageWriter:
    """Tags any failure of the wrapped writer with its stage name."""

    def __init__(self, stage: str, target):
        self.stage = stage
        self._target = target

    def write(self, data):
        return _run_stage(self.stage, self._target.write, data)

    def flush(self):
        flush = getattr(self._target, 'flush', None)
        if flush is not None:
            _run_stage(self.stage, flush)

    def close(self):
        _run_stage(self.stage, self._target.close)

    def abort(self):
        abort = getattr(self._target, 'abort', None)
        if abort is not None:
            abort()


class ArchiveProducer:
    """
    Produces encrypted, compressed artifacts with one fixed compressor.
    """

    def __init__(self, compressor: Compressor, kdf_iterations: int = DEFAULT_ITERATIONS):
        """
        Args:
            compressor: Capability selected once at startup
            kdf_iterations: PBKDF2 rounds for the encryption stage
        """
        self.compressor = compressor
        self.kdf_iterations = kdf_iterations

    @property
    def extension(self) -> str:
        return artifact_extension(self.compressor)

    def produce(self, source_dir: str, output_path: str, secret: str) -> str:
        """
        Archive, compress and encrypt ``source_dir`` into ``output_path``.

        Args:
            source_dir: Directory to back up
            output_path: Final artifact path
            secret: Encryption secret, passed through unlogged

        Returns:
            Path of the created artifact

        Raises:
            SourceMissingError: If source_dir does not exist
            DestUnwritableError: If the output cannot be created
            PipelineFailedError: If a pipeline stage fails
        """
        if not os.path.isdir(source_dir):
            raise SourceMissingError(f"Source directory {source_dir} does not exist")

        dest_dir = os.path.dirname(output_path) or '.'
        try:
            os.makedirs(dest_dir, exist_ok=True)
        except OSError as e:
            raise DestUnwritableError(f"Failed to create backup directory {dest_dir}: {e}")

        partial_path = output_path + PARTIAL_SUFFIX

        try:
            if self.compressor.encrypts:
                self._write_zip(source_dir, partial_path, secret)
            else:
                self._write_pipeline(source_dir, partial_path, secret)

            try:
                os.replace(partial_path, output_path)
            except OSError as e:
                raise DestUnwritableError(f"Failed to move artifact into place: {e}")

        except ArchiveError as e:
            logger.error(f"Backup of {source_dir} failed: {e}")
            self._remove_partial(partial_path)
            raise

        logger.info(f"Backup created: {output_path}")
        return output_path

    def _open_output(self, path: str):
        try:
            return open(path, 'wb')
        except OSError as e:
            raise DestUnwritableError(f"Failed to open {path} for writing: {e}")

    def _write_pipeline(self, source_dir: str, partial_path: str, secret: str):
        with self._open_output(partial_path) as out:
            encrypt = _StageWriter(
                'encrypt',
                _run_stage('encrypt', EncryptingWriter, out, secret, self.kdf_iterations)
            )
            compress = _StageWriter(
                'compress',
                _run_stage('compress', self.compressor.open_writer, encrypt)
            )

            try:
                _run_stage('archive', self._write_tar, source_dir, compress, partial_path)
                compress.close()
                encrypt.close()
            except BaseException:
                compress.abort()
                raise

    def _write_tar(self, source_dir: str, fileobj, partial_path: str):
        source = Path(source_dir)
        skip = os.path.abspath(partial_path)

        def exclude_partial(tarinfo):
            # the artifact being written may live inside the source tree
            if os.path.abspath(os.path.join(str(source.parent), tarinfo.name)) == skip:
                return None
            return tarinfo

        tar = tarfile.open(fileobj=fileobj, mode='w|')
        tar.add(str(source), arcname=source.name, recursive=True, filter=exclude_partial)
        tar.close()

    def _write_zip(self, source_dir: str, partial_path: str, secret: str):
        source = Path(source_dir)
        skip = os.path.abspath(partial_path)

        with self._open_output(partial_path) as out:
            try:
                with pyzipper.AESZipFile(
                    out,
                    'w',
                    compression=pyzipper.ZIP_DEFLATED,
                    encryption=pyzipper.WZ_AES,
                ) as zipf:
                    zipf.setpassword(secret.encode())
                    for item in sorted(source.rglob('*')):
                        if item.is_file() and os.path.abspath(str(item)) != skip:
                            zipf.write(item, str(item.relative_to(source.parent)))
            except Exception as e:
                raise PipelineFailedError('archive', str(e)) from e

    def _remove_partial(self, partial_path: str):
        if os.path.exists(partial_path):
            try:
                os.remove(partial_path)
            except OSError as e:
                logger.warning(f"Failed to remove partial artifact {partial_path}: {e}")
