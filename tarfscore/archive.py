"""
Builds the in-memory node tree for a possibly compressed TAR file and reopens the TAR file to access
member contents. No index is written anywhere: the archive is scanned once on open and every content
access decompresses the archive again from the start up to the requested member.
"""

import dataclasses
import enum
import logging
import os
import stat
import tarfile
from collections.abc import Iterator, Sequence
from typing import IO, Optional

from .compressions import detect_compression, open_compressed_file
from .formats import FileFormatID
from .utils import ArchiveIOError, TarfsError, UnsupportedFormatError, normalize_path

logger = logging.getLogger(__name__)

ROOT_INDEX = -1


class FileType(enum.Enum):
    REGULAR = 1
    DIRECTORY = 2
    SYMLINK = 3
    HARDLINK = 4
    OTHER = 5


@dataclasses.dataclass
class ArchiveEntry:
    """One harvested TAR record. The index is the position of the record in the decompressed stream."""

    # fmt: off
    index   : int
    path    : str
    tarInfo : tarfile.TarInfo
    # fmt: on


@dataclasses.dataclass
class Node:
    # fmt: off
    index    : int
    name     : str
    fullPath : str
    linkname : str
    size     : int
    mode     : int
    fileType : FileType
    uid      : int
    gid      : int
    mtime    : float
    atime    : float
    ctime    : float
    # Index of the parent node inside Archive.nodes or None for top-level nodes.
    parent   : Optional[int]               = None
    # Indexes of the child nodes in archive order.
    children : list[int]                   = dataclasses.field(default_factory=list)
    # fmt: on

    def is_dir(self) -> bool:
        return self.fileType == FileType.DIRECTORY


@dataclasses.dataclass
class Archive:
    # fmt: off
    sourcePath          : str
    compression         : Optional[FileFormatID]
    encoding            : str
    ignoreZeros         : bool
    recordCount         : int
    nodes               : dict[int, Node]
    topLevel            : list[int]
    root                : Node
    prioritizedBackends : Optional[Sequence[str]] = None
    # fmt: on

    def children(self, node: Node) -> list[Node]:
        return [self.nodes[index] for index in node.children]

    def walk(self) -> Iterator[Node]:
        """Yields all nodes excluding the synthetic root in pre-order, i.e., in archive order."""
        stack = list(reversed(self.topLevel))
        while stack:
            node = self.nodes[stack.pop()]
            yield node
            stack.extend(reversed(node.children))


def _tar_info_full_mode(tarInfo: tarfile.TarInfo) -> int:
    """
    Returns the full mode for a TarInfo object. Note that TarInfo.mode only contains the permission bits
    and not other bits like set for directory, symbolic links, and other special files.
    """

    # fmt: off
    return (
        tarInfo.mode
        | ( stat.S_IFDIR if tarInfo.isdir () else 0 )
        | ( stat.S_IFREG if tarInfo.isfile() or tarInfo.type == b'D' else 0 )
        | ( stat.S_IFLNK if tarInfo.issym () else 0 )
        | ( stat.S_IFCHR if tarInfo.ischr () else 0 )
        | ( stat.S_IFBLK if tarInfo.isblk () else 0 )
        | ( stat.S_IFIFO if tarInfo.isfifo() else 0 )
    )
    # fmt: on


def _tar_info_file_type(tarInfo: tarfile.TarInfo) -> FileType:
    if tarInfo.isdir():
        return FileType.DIRECTORY
    if tarInfo.issym():
        return FileType.SYMLINK
    if tarInfo.islnk():
        return FileType.HARDLINK
    if tarInfo.isfile():
        return FileType.REGULAR
    return FileType.OTHER


def _pax_time(tarInfo: tarfile.TarInfo, key: str) -> float:
    value = tarInfo.pax_headers.get(key)
    if value is not None:
        try:
            return float(value)
        except ValueError:
            logger.warning("Ignoring invalid PAX %s value '%s' for: %s", key, value, tarInfo.name)
    return tarInfo.mtime


def _create_node(entry: ArchiveEntry, parent: Optional[Node]) -> Node:
    tarInfo = entry.tarInfo
    # fmt: off
    return Node(
        index    = entry.index,
        name     = entry.path.rsplit('/', 1)[-1],
        fullPath = entry.path,
        linkname = tarInfo.linkname,
        size     = tarInfo.size,
        mode     = _tar_info_full_mode(tarInfo),
        fileType = _tar_info_file_type(tarInfo),
        uid      = tarInfo.uid,
        gid      = tarInfo.gid,
        mtime    = tarInfo.mtime,
        atime    = _pax_time(tarInfo, 'atime'),
        ctime    = _pax_time(tarInfo, 'ctime'),
        parent   = None if parent is None else parent.index,
    )
    # fmt: on


def harvest_entries(
    fileobj: IO[bytes], encoding: str = tarfile.ENCODING, ignoreZeros: bool = False
) -> list[ArchiveEntry]:
    """
    Reads all TAR headers from the given decompressed stream exactly once and in order.
    Raises UnsupportedFormatError if not even the first record could be parsed and ArchiveIOError
    for all failures after that, e.g., for truncated archives.
    """
    entries: list[ArchiveEntry] = []
    try:
        # Stream mode never seeks backwards, which is the only thing the decompressors guarantee to support.
        # fmt: off
        with tarfile.open(
            fileobj      = fileobj,
            mode         = 'r|',
            ignore_zeros = ignoreZeros,
            encoding     = encoding,
        ) as tarFile:
            # fmt: on
            for tarInfo in tarFile:
                # Clear this in order to limit memory usage by tarfile.
                tarFile.members = []
                entries.append(ArchiveEntry(len(entries), normalize_path(tarInfo.name), tarInfo))
    except tarfile.ReadError as exception:
        if not entries:
            raise UnsupportedFormatError(f"Not a valid TAR file: {exception}") from exception
        raise ArchiveIOError(f"Failed to read TAR record after {len(entries)} records: {exception}") from exception
    except TarfsError:
        raise
    except Exception as exception:
        # Decompression backends raise all kinds of exceptions for corrupted data, e.g., zstandard.ZstdError.
        raise ArchiveIOError(f"Failed to read TAR record after {len(entries)} records: {exception}") from exception

    return entries


def _collect_children(entries: Sequence[ArchiveEntry], position: int, parent: Node, nodes: dict[int, Node]) -> int:
    """
    Consumes the contiguous run of descendants of parent beginning at position
    and returns the position of the first entry not belonging to parent.
    """
    # tarfile strips trailing slashes from directory names, so the separator has to be appended here.
    prefix = parent.fullPath + '/'
    while position < len(entries):
        entry = entries[position]
        if not entry.path:
            position += 1
            continue
        if not entry.path.startswith(prefix):
            break

        position += 1
        node = _create_node(entry, parent)
        nodes[node.index] = node
        parent.children.append(node.index)
        if node.is_dir():
            position = _collect_children(entries, position, node, nodes)

    return position


def build_tree(entries: Sequence[ArchiveEntry]) -> tuple[dict[int, Node], list[int]]:
    """
    Reconstructs the directory hierarchy from the harvested entries. This assumes that each directory entry
    is directly followed by all of its descendants, which is how archivers write TAR files.
    Returns the node arena and the indexes of the top-level nodes in archive order.
    """
    nodes: dict[int, Node] = {}
    topLevel: list[int] = []

    position = 0
    while position < len(entries):
        entry = entries[position]
        position += 1

        if not entry.path:
            continue

        # Files deeper down appearing before their directory cannot be placed into the hierarchy.
        if '/' in entry.path and not entry.tarInfo.isdir():
            logger.warning("Skipping '%s' because it is not preceded by its parent directory.", entry.path)
            continue

        node = _create_node(entry, None)
        nodes[node.index] = node
        topLevel.append(node.index)
        if node.is_dir():
            position = _collect_children(entries, position, node, nodes)

    return nodes, topLevel


def open_archive(
    path: str,
    encoding: str = tarfile.ENCODING,
    ignoreZeros: bool = False,
    prioritizedBackends: Optional[Sequence[str]] = None,
) -> Archive:
    try:
        rawFile = open(path, 'rb')
    except OSError as exception:
        raise ArchiveIOError(f"Failed to open archive '{path}': {exception}", exception.errno) from exception

    with rawFile:
        compression = detect_compression(rawFile, prioritizedBackends=prioritizedBackends)
        logger.info("Detected compression %s for: %s", compression.name if compression else "none", path)

        fileStats = os.fstat(rawFile.fileno())
        decompressedFile = open_compressed_file(rawFile, compression, prioritizedBackends=prioritizedBackends)
        try:
            entries = harvest_entries(decompressedFile, encoding=encoding, ignoreZeros=ignoreZeros)
        finally:
            if decompressedFile is not rawFile:
                decompressedFile.close()

    nodes, topLevel = build_tree(entries)

    # The record count is used as inode for the root because no archive node can have it as index.
    # fmt: off
    root = Node(
        index    = ROOT_INDEX,
        name     = '',
        fullPath = '',
        linkname = '',
        size     = 0,
        mode     = stat.S_IFDIR | 0o555,
        fileType = FileType.DIRECTORY,
        uid      = fileStats.st_uid,
        gid      = fileStats.st_gid,
        mtime    = fileStats.st_mtime,
        atime    = fileStats.st_atime,
        ctime    = fileStats.st_ctime,
        children = list(topLevel),
    )
    # fmt: on

    logger.info("Harvested %d TAR records into %d nodes from: %s", len(entries), len(nodes), path)
    if len(nodes) < sum(1 for entry in entries if entry.path):
        logger.warning(
            "Some TAR records could not be placed into the directory hierarchy. "
            "The archive entries might not be in depth-first order."
        )

    return Archive(
        sourcePath=path,
        compression=compression,
        encoding=encoding,
        ignoreZeros=ignoreZeros,
        recordCount=len(entries),
        nodes=nodes,
        topLevel=topLevel,
        root=root,
        prioritizedBackends=prioritizedBackends,
    )


class EntryReader:
    """
    Owns the reopened archive file, the decompressor and the tarfile stream for one opened member
    and reads the member contents strictly forward.
    """

    def __init__(
        self, rawFile: IO[bytes], decompressedFile: IO[bytes], tarFile: tarfile.TarFile, memberFile: IO[bytes]
    ):
        self.rawFile = rawFile
        self.decompressedFile = decompressedFile
        self.tarFile = tarFile
        self.memberFile = memberFile

    def read(self, size: int = -1) -> bytes:
        try:
            return self.memberFile.read(size)
        except Exception as exception:
            raise ArchiveIOError(f"Failed to read from archive member: {exception}") from exception

    def close(self) -> None:
        # Close everything even if one of the closes fails and report the first failure.
        closeError: Optional[Exception] = None
        toClose: list = [self.memberFile, self.tarFile]
        if self.decompressedFile is not self.rawFile:
            toClose.append(self.decompressedFile)
        toClose.append(self.rawFile)
        for file in toClose:
            try:
                file.close()
            except Exception as exception:
                logger.warning("Failed to close %s because of: %s", type(file).__name__, exception)
                if closeError is None:
                    closeError = exception

        if closeError is not None:
            raise ArchiveIOError(f"Failed to close archive member: {closeError}") from closeError

    def __enter__(self):
        return self

    def __exit__(self, exception_type, exception_value, exception_traceback):
        self.close()


def open_entry(archive: Archive, node: Node) -> EntryReader:
    """
    Reopens the archive, decompresses it again from the start and skips over node.index + 1 records to
    reach the contents of the given node. This costs time linear in the position of the node.
    """
    try:
        rawFile = open(archive.sourcePath, 'rb')
    except OSError as exception:
        raise ArchiveIOError(
            f"Failed to reopen archive '{archive.sourcePath}': {exception}", exception.errno
        ) from exception

    decompressedFile: Optional[IO[bytes]] = None
    tarFile: Optional[tarfile.TarFile] = None
    try:
        decompressedFile = open_compressed_file(
            rawFile, archive.compression, prioritizedBackends=archive.prioritizedBackends
        )
        # fmt: off
        tarFile = tarfile.open(
            fileobj      = decompressedFile,
            mode         = 'r|',
            ignore_zeros = archive.ignoreZeros,
            encoding     = archive.encoding,
        )
        # fmt: on

        tarInfo = None
        for _ in range(node.index + 1):
            tarInfo = tarFile.next()
            tarFile.members = []
            if tarInfo is None:
                break

        if tarInfo is None or normalize_path(tarInfo.name) != node.fullPath:
            raise ArchiveIOError(
                f"Record {node.index} in '{archive.sourcePath}' is not '{node.fullPath}' anymore. "
                "Was the archive modified after mounting?"
            )

        memberFile = tarFile.extractfile(tarInfo)
        if memberFile is None:
            raise ArchiveIOError(f"Record {node.index} ('{node.fullPath}') has no contents to read.")
    except Exception as exception:
        for file in (tarFile, decompressedFile):
            if file is not None and file is not rawFile:
                try:
                    file.close()
                except Exception as closeException:
                    logger.debug("Ignoring close failure during cleanup: %s", closeException)
        rawFile.close()

        if isinstance(exception, TarfsError):
            raise
        raise ArchiveIOError(
            f"Failed to seek to '{node.fullPath}' in '{archive.sourcePath}': {exception}"
        ) from exception

    return EntryReader(rawFile, decompressedFile, tarFile, memberFile)


def format_tree(archive: Archive) -> str:
    """Returns a human-readable listing of the reconstructed hierarchy for debugging."""
    lines = []

    def append(node: Node, depth: int):
        suffix = '/' if node.is_dir() else ''
        if node.fileType in (FileType.SYMLINK, FileType.HARDLINK):
            suffix = f" -> {node.linkname}"
        fileType = node.fileType.name.lower()
        lines.append(f"{'  ' * depth}{node.name}{suffix} [{node.index}, {fileType}, {node.size} B]")
        for child in archive.children(node):
            append(child, depth + 1)

    for index in archive.topLevel:
        append(archive.nodes[index], 0)
    return '\n'.join(lines)
