import errno
import os
import platform
from typing import Optional, get_type_hints


class TarfsError(Exception):
    """Base exception for tarfscore module. Carries the errno to report to the filesystem caller."""

    errno = errno.EIO

    def __init__(self, message: str = "", errno: Optional[int] = None):  # pylint: disable=redefined-outer-name
        super().__init__(message)
        if errno is not None:
            self.errno = errno


class UnsupportedFormatError(TarfsError):
    """Exception for inputs that are not tar archives or contain malformed tar records."""


class CompressionError(UnsupportedFormatError):
    """Exception for trying to open files with unsupported compression or unavailable decompression module."""


class ArchiveIOError(TarfsError, OSError):
    """Exception for open, read, or close failures against the backing archive file."""

    def __init__(self, message: str = "", errno: Optional[int] = None):  # pylint: disable=redefined-outer-name
        # OSError.__init__ would interpret two arguments as (errno, strerror), so only forward the message.
        TarfsError.__init__(self, message, errno)


class NotFoundError(TarfsError):
    """Exception for lookup misses and hardlinks whose target does not exist in the archive."""

    errno = errno.ENOENT


class NotSupportedError(TarfsError):
    """Exception for requests the read-only, forward-only filesystem cannot serve, e.g., non-sequential reads."""

    errno = errno.ENOTSUP


class PermissionDeniedError(TarfsError):
    """Exception for open requests with write intent."""

    errno = errno.EACCES


def overrides(parentClass):
    """Simple decorator that checks that a method with the same name exists in the parent class"""

    def overrider(method):
        if platform.python_implementation() == 'PyPy':
            return method

        assert method.__name__ in dir(parentClass)
        parentMethod = getattr(parentClass, method.__name__)
        assert callable(parentMethod)

        if os.getenv('TARFS_CHECK_OVERRIDES', '').lower() not in ('1', 'yes', 'on', 'enable', 'enabled'):
            return method

        # If the parent is not typed, e.g., fusepy, then do not show errors for the typed derived class.
        parentTypes = get_type_hints(parentMethod)
        for argument, argumentType in get_type_hints(method).items():
            if argument in parentTypes:
                parentType = parentTypes[argument]
                assert argumentType == parentType, f"{method.__name__}: {argument}: {argumentType} != {parentType}"

        return method

    return overrider


def ceil_div(dividend, divisor):
    return -(dividend // -divisor)


def normalize_path(path: str) -> str:
    """
    Strips leading '/' and './' components as well as trailing slashes from a path stored in a tar header.
    Returns an empty string for paths that only consist of such components, e.g., '.', './', or '/'.
    """
    while True:
        if path.startswith('/'):
            path = path[1:]
        elif path.startswith('./'):
            path = path[2:]
        else:
            break
    path = path.rstrip('/')
    return '' if path == '.' else path
