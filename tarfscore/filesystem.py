"""
Exposes an Archive with filesystem semantics independent of any particular transport like FUSE.
Nodes themselves act as directory handles and opened regular files are served by forward-only readers.
"""

import dataclasses
import errno
import logging
import os
import stat
from typing import Union

from .archive import Archive, EntryReader, FileType, Node, open_entry
from .links import LinkResolver
from .utils import ArchiveIOError, NotFoundError, NotSupportedError, PermissionDeniedError, ceil_div

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Attributes:
    # fmt: off
    inode  : int
    size   : int
    # Number of 512 B blocks.
    blocks : int
    mode   : int
    uid    : int
    gid    : int
    mtime  : float
    atime  : float
    ctime  : float
    nlink  : int
    # fmt: on


@dataclasses.dataclass(frozen=True)
class DirectoryEntry:
    inode: int
    name: str
    # Either stat.S_IFDIR or stat.S_IFREG.
    type: int


class SequentialReader:
    """A read handle that only allows reading at the position where the last read stopped."""

    def __init__(self, node: Node, reader: EntryReader) -> None:
        self.node = node
        self.position = 0
        self._reader = reader

    def read(self, offset: int, size: int) -> bytes:
        if offset != self.position:
            raise NotSupportedError(
                f"Cannot read '{self.node.fullPath}' at offset {offset} because only sequential reads from "
                f"offset {self.position} are possible."
            )
        data = self._reader.read(size)
        self.position += len(data)
        return data

    def close(self) -> None:
        self._reader.close()


Handle = Union[Node, SequentialReader]


class FilesystemAdapter:
    def __init__(self, archive: Archive) -> None:
        self.archive = archive
        self.links = LinkResolver(archive.walk())
        logger.info("Found %d distinct hardlink targets.", len(self.links))

    def root(self) -> Node:
        return self.archive.root

    def _inode(self, node: Node) -> int:
        return self.archive.recordCount if node is self.archive.root else node.index

    def attributes(self, node: Node) -> Attributes:
        node = self.links.resolve_node(node)
        if node.fileType == FileType.SYMLINK:
            # st_size of a symbolic link is the length of its target in bytes, not in characters.
            size = len(node.linkname.encode(self.archive.encoding, 'surrogateescape'))
        else:
            size = node.size
        # fmt: off
        return Attributes(
            inode  = self._inode(node),
            size   = size,
            blocks = ceil_div(size, 512),
            mode   = node.mode,
            uid    = node.uid,
            gid    = node.gid,
            mtime  = node.mtime,
            atime  = node.atime,
            ctime  = node.ctime,
            nlink  = 2 if node.is_dir() else 1 + self.links.link_count(node),
        )
        # fmt: on

    def lookup(self, parent: Node, name: str) -> Node:
        # On duplicate names, the first one in archive order is returned.
        for child in self.archive.children(parent):
            if child.name == name:
                return child
        raise NotFoundError(f"'{name}' does not exist in '/{parent.fullPath}'.")

    def list_directory(self, parent: Node) -> tuple[DirectoryEntry, ...]:
        return tuple(
            DirectoryEntry(self._inode(child), child.name, stat.S_IFDIR if child.is_dir() else stat.S_IFREG)
            for child in self.archive.children(parent)
        )

    def read_link(self, node: Node) -> str:
        if node.fileType != FileType.SYMLINK:
            raise NotSupportedError(f"'{node.fullPath}' is not a symbolic link.", errno.EINVAL)
        return node.linkname

    def open(self, node: Node, flags: int = os.O_RDONLY) -> Handle:
        if flags & os.O_ACCMODE != os.O_RDONLY:
            raise PermissionDeniedError(f"Cannot open '{node.fullPath}' for writing on a read-only filesystem.")

        node = self.links.resolve_node(node)
        if node.is_dir():
            return node
        if node.fileType != FileType.REGULAR:
            raise NotSupportedError(f"Cannot open '{node.fullPath}' of type {node.fileType.name.lower()}.")

        logger.debug("Opening '%s' by skipping %d TAR records.", node.fullPath, node.index + 1)
        return SequentialReader(node, open_entry(self.archive, node))

    def read(self, handle: Handle, offset: int, size: int) -> bytes:
        if isinstance(handle, Node):
            raise NotSupportedError(f"Cannot read from directory '{handle.fullPath}'.", errno.EISDIR)
        return handle.read(offset, size)

    def release(self, handle: Handle) -> None:
        if isinstance(handle, Node):
            return
        try:
            handle.close()
        except ArchiveIOError:
            raise
        except Exception as exception:
            raise ArchiveIOError(f"Failed to close '{handle.node.fullPath}': {exception}") from exception
