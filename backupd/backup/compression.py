"""
Compression capabilities for backup archives.

Supported, in order of preference when auto-detecting:
- pigz: parallel gzip through the external pigz binary
- gzip: zlib compressed tar
- xz: LZMA compressed tar
- bzip2: Bzip2 compressed tar
- tar: no compression (tar only)

One more capability, zip, is only used when selected explicitly: it is an
archive format with built-in AES encryption, so it replaces the separate
compress and encrypt stages.
"""

import importlib
import logging
import shutil
import subprocess
import threading


logger = logging.getLogger(__name__)

PREFERENCE_ORDER = ('pigz', 'gzip', 'xz', 'bzip2', 'tar')


class CompressionError(Exception):
    """Raised when no compressor can be used or a compressor fails."""
    pass


def _module_available(module_name: str) -> bool:
    try:
        importlib.import_module(module_name)
    except ImportError:
        return False
    return True


class Compressor:
    """
    A way of compressing a tar stream.

    Subclasses set ``name`` and ``extension`` and implement open_writer().
    """

    name = None
    extension = None
    # True when the archive format encrypts by itself
    encrypts = False

    def is_available(self) -> bool:
        return True

    def open_writer(self, raw):
        """
        Wrap ``raw`` in a writer that compresses everything written to it.

        Closing the returned writer flushes compressed output but must not
        close ``raw``.
        """
        raise NotImplementedError

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.name} .{self.extension}>"


class PigzCompressor(Compressor):
    name = 'pigz'
    extension = 'tar.gz'
    executable = 'pigz'

    def is_available(self) -> bool:
        return shutil.which(self.executable) is not None

    def open_writer(self, raw):
        return SubprocessWriter([shutil.which(self.executable) or self.executable, '-c'], raw)


class GzipCompressor(Compressor):
    name = 'gzip'
    extension = 'tar.gz'

    def __init__(self, level: int = 6):
        self.level = level

    def is_available(self) -> bool:
        return _module_available('zlib')

    def open_writer(self, raw):
        import gzip
        return gzip.GzipFile(fileobj=raw, mode='wb', compresslevel=self.level)


class XzCompressor(Compressor):
    name = 'xz'
    extension = 'tar.xz'

    def is_available(self) -> bool:
        return _module_available('lzma')

    def open_writer(self, raw):
        import lzma
        return lzma.LZMAFile(raw, mode='wb')


class Bzip2Compressor(Compressor):
    name = 'bzip2'
    extension = 'tar.bz2'

    def is_available(self) -> bool:
        return _module_available('bz2')

    def open_writer(self, raw):
        import bz2
        return bz2.BZ2File(raw, mode='wb')


class TarCompressor(Compressor):
    """Plain tar, always available."""
    name = 'tar'
    extension = 'tar'

    def open_writer(self, raw):
        return _PassthroughWriter(raw)


class ZipCompressor(Compressor):
    """AES-encrypted zip; archiving, compression and encryption in one step."""
    name = 'zip'
    extension = 'zip'
    encrypts = True

    def is_available(self) -> bool:
        return _module_available('pyzipper')

    def open_writer(self, raw):
        raise CompressionError("zip archives are written directly, not as a tar stream")


_COMPRESSORS = {
    cls.name: cls
    for cls in (PigzCompressor, GzipCompressor, XzCompressor, Bzip2Compressor, TarCompressor, ZipCompressor)
}


class _PassthroughWriter:
    def __init__(self, raw):
        self._raw = raw

    def write(self, data):
        return self._raw.write(data)

    def flush(self):
        self._raw.flush()

    def close(self):
        self._raw.flush()


class SubprocessWriter:
    """
    Pipe data through an external filter command.

    Data written here goes to the command's stdin; a pump thread copies the
    command's stdout into ``raw``. close() waits for the command and raises
    CompressionError if it exited non-zero.
    """

    def __init__(self, args, raw, chunk_size: int = 1024 * 1024):
        self.args = list(args)
        self._raw = raw
        self._chunk_size = chunk_size
        self._error = None
        self._closed = False

        try:
            self._proc = subprocess.Popen(
                self.args,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise CompressionError(f"Failed to start {self.args[0]}: {e}")

        self._pump = threading.Thread(
            target=self._drain, name=f"{self.args[0]}-pump", daemon=True
        )
        self._pump.start()

    def _drain(self):
        try:
            for chunk in iter(lambda: self._proc.stdout.read(self._chunk_size), b''):
                self._raw.write(chunk)
        except Exception as e:
            self._error = e
            self._proc.kill()

    def write(self, data):
        if self._error is not None:
            raise self._error
        try:
            self._proc.stdin.write(data)
        except (BrokenPipeError, ValueError) as e:
            if self._error is not None:
                raise self._error
            raise CompressionError(f"{self.args[0]} stopped accepting input: {e}")
        return len(data)

    def flush(self):
        pass

    def close(self):
        if self._closed:
            return
        self._closed = True

        try:
            self._proc.stdin.close()
        except BrokenPipeError:
            pass

        self._pump.join()
        stderr = self._proc.stderr.read().decode(errors='replace').strip()
        returncode = self._proc.wait()

        if self._error is not None:
            raise self._error
        if returncode != 0:
            raise CompressionError(
                f"{self.args[0]} exited with status {returncode}: {stderr or 'no output'}"
            )

    def abort(self):
        """Kill the command without waiting for its output."""
        self._closed = True
        if self._proc.poll() is None:
            self._proc.kill()
        self._pump.join(timeout=5)
        self._proc.wait()


def get_compressor(name: str) -> Compressor:
    """
    Create a compressor by name.

    Raises:
        CompressionError: If the name is unknown
    """
    if name not in _COMPRESSORS:
        raise CompressionError(
            f"Invalid compressor: {name}. "
            f"Valid options: {['auto'] + list(_COMPRESSORS.keys())}"
        )
    return _COMPRESSORS[name]()


def detect_compressor(preference: str = 'auto') -> Compressor:
    """
    Choose the compressor for this process.

    With 'auto', walks PREFERENCE_ORDER and takes the first available
    capability. A named capability must be available.

    Args:
        preference: 'auto' or a compressor name

    Returns:
        Compressor instance

    Raises:
        CompressionError: If nothing usable is found
    """
    if preference == 'auto':
        for name in PREFERENCE_ORDER:
            compressor = get_compressor(name)
            if compressor.is_available():
                logger.info(f"Using compressor: {compressor.name} (extension .{compressor.extension})")
                return compressor
        raise CompressionError(
            f"No compressor found ({'/'.join(PREFERENCE_ORDER)})"
        )

    compressor = get_compressor(preference)
    if not compressor.is_available():
        raise CompressionError(f"Compressor '{preference}' is not available on this system")

    logger.info(f"Using compressor: {compressor.name} (extension .{compressor.extension})")
    return compressor
