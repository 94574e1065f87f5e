import contextlib
import errno
import itertools
import logging
import os
import stat
import tarfile
from typing import Any, Optional

from tarfscore.archive import Node, format_tree, open_archive
from tarfscore.filesystem import FilesystemAdapter, Handle
from tarfscore.utils import TarfsError, overrides

from .fuse import fuse

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def _translate_errors(operation: str, path: str):
    try:
        yield
    except fuse.FuseOSError:
        raise
    except TarfsError as exception:
        logger.debug(
            "%s '%s' failed with: %s", operation, path, exception, exc_info=logger.isEnabledFor(logging.DEBUG)
        )
        raise fuse.FuseOSError(exception.errno) from exception
    except Exception as exception:
        logger.error(
            "Caught exception %s when trying to %s '%s'! Returning errno.EIO.",
            exception,
            operation,
            path,
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
        raise fuse.FuseOSError(errno.EIO) from exception


class FuseMount(fuse.Operations):
    """
    Exposes a TAR archive as a read-only fusepy file system.

    Path handling and the mapping to FUSE errno values live here. Everything else is delegated to
    tarfscore.filesystem.FilesystemAdapter, which works with nodes instead of paths.
    Paths given to the overridden methods always start with a slash.
    Write operations like mkdir, write, or unlink are not overridden and fail with EROFS.

    See https://github.com/libfuse/libfuse/blob/master/include/fuse.h for the semantics of each operation.
    """

    # Each opened file decompresses the archive from the start again, so ask readers for large chunks.
    MINIMUM_BLOCK_SIZE = 256 * 1024

    # Record indexes start at 0 but readdir callers may treat d_ino 0 as a deleted entry.
    INODE_OFFSET = 1

    use_ns = True

    def __init__(self, pathToMount: str, mountPoint: str, **options) -> None:
        self.mountPoint = os.path.realpath(mountPoint)  # Strip trailing slashes and normalizes.
        self.mountPointWasCreated = False

        # Maps FUSE file handles to the handles returned by FilesystemAdapter.open.
        self.openedFiles: dict[int, Handle] = {}
        # Starts at 1 because it can't hurt to never return 0. Calling next on it is atomic.
        self._fileHandles = itertools.count(1)

        if os.path.exists(self.mountPoint) and not os.path.isdir(self.mountPoint):
            raise ValueError(f"Mount point '{self.mountPoint}' must either not exist or be a directory!")

        dumpTree = bool(options.pop('dumpTree', False))

        # fmt: off
        archive = open_archive(
            pathToMount,
            encoding            = options.get('encoding', tarfile.ENCODING),
            ignoreZeros         = bool(options.get('ignoreZeros', False)),
            prioritizedBackends = options.get('prioritizedBackends'),
        )
        # fmt: on
        if dumpTree:
            logger.debug("Reconstructed tree of %s:\n%s", pathToMount, format_tree(archive))

        self.filesystem = FilesystemAdapter(archive)

        if mountPoint and not os.path.exists(mountPoint):
            os.mkdir(mountPoint)
            self.mountPointWasCreated = True

        statResults = os.lstat(self.mountPoint)
        self.mountPointInfo = {key: getattr(statResults, key) for key in dir(statResults) if key.startswith('st_')}

        if logger.isEnabledFor(logging.WARNING):
            print("Created mount point at:", self.mountPoint)

    def __enter__(self):
        return self

    def __exit__(self, exception_type, exception_value, exception_traceback):
        if hasattr(super(), "__exit__"):
            super().__exit__(exception_type, exception_value, exception_traceback)
        self._close()

    def _close(self) -> None:
        # Also called for partially constructed objects.
        filesystem = getattr(self, 'filesystem', None)
        for handle in list(getattr(self, 'openedFiles', {}).values()):
            try:
                if filesystem is not None:
                    filesystem.release(handle)
            except Exception as exception:
                logger.warning(
                    "Failed to release file handle because of: %s",
                    exception,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
        if hasattr(self, 'openedFiles'):
            self.openedFiles.clear()

        try:
            if getattr(self, 'mountPointWasCreated', False) and getattr(self, 'mountPoint', None):
                os.rmdir(self.mountPoint)
                self.mountPoint = ""
                self.mountPointWasCreated = False
        except Exception as exception:
            logger.warning(
                "Failed to remove the created mount point directory because of: %s",
                exception,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )

    def __del__(self) -> None:
        self._close()

    def _lookup(self, path: str) -> Node:
        node = self.filesystem.root()
        for name in path.split('/'):
            if name:
                node = self.filesystem.lookup(node, name)
        return node

    def _add_new_handle(self, handle: Handle) -> int:
        # fh is 64-bit in fuse_common.h, so the counter will not wrap around in practice.
        fileHandle = next(self._fileHandles)
        self.openedFiles[fileHandle] = handle
        return fileHandle

    def _stat(self, node: Node) -> dict[str, Any]:
        attributes = self.filesystem.attributes(node)
        return {
            'st_ino': attributes.inode + FuseMount.INODE_OFFSET,
            'st_size': attributes.size,
            'st_mode': attributes.mode,
            'st_uid': attributes.uid,
            'st_gid': attributes.gid,
            'st_mtime': int(attributes.mtime * 1e9),
            'st_atime': int(attributes.atime * 1e9),
            'st_ctime': int(attributes.ctime * 1e9),
            'st_nlink': attributes.nlink,
            'st_blksize': FuseMount.MINIMUM_BLOCK_SIZE,
            # Counted in 512 B units regardless of st_blksize. See stat(2).
            'st_blocks': attributes.blocks,
        }

    @overrides(fuse.Operations)
    def getattr(self, path: str, fh=None) -> dict[str, Any]:
        with _translate_errors("stat", path):
            return self._stat(self._lookup(path))

    @overrides(fuse.Operations)
    def readdir(self, path: str, fh):
        with _translate_errors("list", path):
            node = self._lookup(path)
            if not node.is_dir():
                raise fuse.FuseOSError(errno.ENOTDIR)
            entries = self.filesystem.list_directory(node)

        # FUSE resolves . and .. in paths itself. They only need to show up in listings.
        yield '.', {'st_mode': stat.S_IFDIR}, 0
        if path == '/':
            yield '..', {'st_mode': self.mountPointInfo['st_mode']}, 0
        else:
            yield '..', {'st_mode': stat.S_IFDIR}, 0

        for entry in entries:
            yield entry.name, {'st_mode': entry.type, 'st_ino': entry.inode + FuseMount.INODE_OFFSET}, 0

    @overrides(fuse.Operations)
    def readlink(self, path: str) -> str:
        with _translate_errors("read link", path):
            return self.filesystem.read_link(self._lookup(path))

    @overrides(fuse.Operations)
    def open(self, path: str, flags: int) -> int:
        with _translate_errors("open", path):
            return self._add_new_handle(self.filesystem.open(self._lookup(path), flags))

    @overrides(fuse.Operations)
    def release(self, path: str, fh) -> int:
        handle = self.openedFiles.pop(fh, None)
        if handle is None:
            raise fuse.FuseOSError(errno.ESTALE)

        with _translate_errors("close", path):
            self.filesystem.release(handle)
        return 0

    @overrides(fuse.Operations)
    def read(self, path: str, size: int, offset: int, fh) -> bytes:
        handle: Optional[Handle] = self.openedFiles.get(fh)
        if handle is None:
            logger.warning("Given file handle %s for '%s' does not exist.", fh, path)
            raise fuse.FuseOSError(errno.EBADF)

        with _translate_errors("read", path):
            return self.filesystem.read(handle, offset, size)

    @overrides(fuse.Operations)
    def statfs(self, path: str):
        # Python, among others, uses f_bsize as its default buffer size.
        return {
            'f_bsize': FuseMount.MINIMUM_BLOCK_SIZE,
            'f_frsize': FuseMount.MINIMUM_BLOCK_SIZE,
            'f_namemax': 255,
        }
