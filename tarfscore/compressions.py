import contextlib
import dataclasses
import itertools
import logging
import sys
from collections.abc import Sequence
from typing import IO, Callable, Optional, cast

from .formats import ARCHIVE_FORMATS, COMPRESSION_FORMATS, FID, FileFormatID, might_be_format
from .utils import CompressionError

logger = logging.getLogger(__name__)

try:
    import indexed_gzip
except ImportError:
    indexed_gzip = None  # type: ignore

try:
    import rapidgzip
except ImportError:
    rapidgzip = None  # type: ignore

try:
    import xz
except ImportError:
    xz = None  # type: ignore

try:
    import zstandard
except ImportError:
    zstandard = None  # type: ignore


TAR_CONTRACTED_EXTENSIONS: dict[FileFormatID, list[str]] = {
    FID.BZIP2: ['tb2', 'tbz', 'tbz2', 'tz2'],
    FID.GZIP: ['taz', 'tgz'],
    FID.XZ: ['txz'],
    FID.ZSTANDARD: ['tzst'],
}


@dataclasses.dataclass
class CompressionBackendInfo:
    # Wraps a raw file object into a forward-readable file object yielding the decompressed data.
    # Closing the returned object must not close the raw one.
    open: Callable[[IO[bytes]], IO[bytes]]
    formats: set[FileFormatID]
    # (module name, package name on PyPI) pairs, which all must be importable for the backend to be usable.
    requiredModules: list[tuple[str, str]]

    def is_available(self) -> bool:
        return all(module in sys.modules for module, _ in self.requiredModules)


# A mounted archive is only ever decompressed from the start up to the requested member and then thrown
# away, so parallel decompression would mostly prefetch unneeded data. Use parallelization=1 everywhere.
# The dictionary order is the default backend preference.
COMPRESSION_BACKENDS: dict[str, CompressionBackendInfo] = {
    'rapidgzip-bzip2': CompressionBackendInfo(
        (lambda x: rapidgzip.IndexedBzip2File(x, parallelization=1)),
        {FID.BZIP2},
        [('rapidgzip', 'rapidgzip')],
    ),
    'rapidgzip': CompressionBackendInfo(
        (lambda x: rapidgzip.RapidgzipFile(x, parallelization=1)),
        {FID.GZIP},
        [('rapidgzip', 'rapidgzip')],
    ),
    'indexed_gzip': CompressionBackendInfo(
        (lambda x: indexed_gzip.IndexedGzipFile(fileobj=x, drop_handles=False)),
        {FID.GZIP},
        [('indexed_gzip', 'indexed_gzip')],
    ),
    'zstandard': CompressionBackendInfo(
        (lambda x: cast(IO[bytes], zstandard.ZstdDecompressor().stream_reader(x, closefd=False))),
        {FID.ZSTANDARD},
        [('zstandard', 'zstandard')],
    ),
    'xz': CompressionBackendInfo(
        (lambda x: cast(IO[bytes], xz.open(x))),
        {FID.XZ},
        [('xz', 'python-xz')],
    ),
}


def find_available_backend(
    compression: FileFormatID,
    prioritizedBackends: Optional[Sequence[str]] = None,
) -> Optional[CompressionBackendInfo]:
    """
    Returns the first installed backend for the given compression. Backends named in prioritizedBackends
    are tried first, in the given order. Names of unknown or non-matching backends are ignored.
    """
    candidates = [name for name, info in COMPRESSION_BACKENDS.items() if compression in info.formats]
    for name in itertools.chain(prioritizedBackends or [], candidates):
        if name in candidates and COMPRESSION_BACKENDS[name].is_available():
            return COMPRESSION_BACKENDS[name]
    return None


def strip_suffix_from_archive(path: str) -> str:
    """Strips extensions like .tar.gz or .gz or .tgz, ..."""
    compressionSuffixes = [suffix for signature in COMPRESSION_FORMATS.values() for suffix in signature.suffixes]
    suffixes = itertools.chain(
        (suffix for suffixes in TAR_CONTRACTED_EXTENSIONS.values() for suffix in suffixes),
        ('t' + suffix for suffix in compressionSuffixes),
        ('tar.' + suffix for suffix in compressionSuffixes),
        compressionSuffixes,
        (suffix for signature in ARCHIVE_FORMATS.values() for suffix in signature.suffixes),
    )
    for suffix in suffixes:
        if path.lower().endswith('.' + suffix.lower()):
            return path[: -(len(suffix) + 1)]
    return path


def _decodes(fileobj: IO[bytes], compression: FileFormatID, backend: CompressionBackendInfo) -> bool:
    decoder = None
    try:
        decoder = backend.open(fileobj)
        # An empty decompressed stream cannot contain a TAR either.
        if decoder.read(1):
            return True
        logger.info("A file with magic bytes for %s decompressed to an empty stream.", compression.name)
    except Exception as exception:
        logger.info(
            "A file with magic bytes for %s could not be decompressed because: %s",
            compression.name,
            exception,
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
    finally:
        if decoder is not None:
            with contextlib.suppress(Exception):
                decoder.close()
    return False


def detect_compression(
    fileobj: IO[bytes], prioritizedBackends: Optional[Sequence[str]] = None
) -> Optional[FileFormatID]:
    """
    Returns the compression the given file object is wrapped in or None if it seems to be uncompressed.
    A compression is only returned if a decoder could actually be created and decompress at least one byte.
    The file is always probed from its start and left positioned at its start for all outcomes.
    """
    # isinstance(fileobj, io.IOBase) does not work for everything. Therefore, do duck-typing.
    if any(not hasattr(fileobj, method) for method in ['seekable', 'seek', 'read', 'tell']):
        logger.info("Cannot detect compression for %s because it does not look like a file object.", fileobj)
        return None
    if not fileobj.seekable():
        logger.info("Cannot detect compression for %s because it is not seekable.", fileobj)
        return None

    fileobj.seek(0)
    try:
        for compression in COMPRESSION_FORMATS:
            if not might_be_format(fileobj, compression):
                continue

            backend = find_available_backend(compression, prioritizedBackends=prioritizedBackends)
            if not backend:
                logger.warning(
                    "A file with magic bytes for %s could not be opened because no appropriate Python module "
                    "could be loaded. Are some dependencies missing?",
                    compression.name,
                )
                return None

            if _decodes(fileobj, compression, backend):
                return compression
            fileobj.seek(0)
    finally:
        fileobj.seek(0)

    return None


def open_compressed_file(
    fileobj: IO[bytes],
    compression: Optional[FileFormatID],
    prioritizedBackends: Optional[Sequence[str]] = None,
) -> IO[bytes]:
    """
    Returns a file object yielding the decompressed contents of fileobj, or fileobj itself if compression is None.
    The returned object should be closed before fileobj. Closing it does not close fileobj.
    """
    if compression is None:
        return fileobj

    backend = find_available_backend(compression, prioritizedBackends=prioritizedBackends)
    if not backend:
        packages = sorted(
            {
                package
                for info in COMPRESSION_BACKENDS.values()
                if compression in info.formats
                for _, package in info.requiredModules
            }
        )
        raise CompressionError(
            f"Cannot open a {compression.name} compressed TAR file '{getattr(fileobj, 'name', fileobj)}' "
            f"without any of these packages: {', '.join(packages)}"
        )

    decoder = backend.open(fileobj)
    logger.debug("Undid %s file compression by using: %s", compression.name, type(decoder).__name__)
    return decoder
