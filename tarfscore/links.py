import collections
import logging
from collections.abc import Iterable
from typing import Optional

from .archive import FileType, Node
from .utils import NotFoundError, normalize_path

logger = logging.getLogger(__name__)


class LinkResolver:
    """
    Maps hardlink target paths to the nodes they refer to.

    TAR stores hardlinks as records without contents whose linkname is the archive path of another record.
    The targets are collected in one pass over the nodes in archive order and resolved against the
    complete tree afterwards, so that targets appearing after their hardlinks are found, too.
    If multiple nodes share the target path, then the last one in archive order wins, which is the
    one an extraction with tar would have left on disk.
    """

    def __init__(self, nodes: Iterable[Node]) -> None:
        nodes = list(nodes)

        pending: dict[str, list[Node]] = collections.defaultdict(list)
        for node in nodes:
            if node.fileType == FileType.HARDLINK:
                pending[normalize_path(node.linkname)].append(node)

        self._targets: dict[str, Optional[Node]] = dict.fromkeys(pending)
        for node in nodes:
            if node.fullPath in self._targets:
                self._targets[node.fullPath] = node

        for path in self.unresolved():
            logger.warning(
                "Hardlink target '%s' of %s does not exist in the archive.",
                path,
                ', '.join(f"'{node.fullPath}'" for node in pending[path]),
            )

        # Number of hardlinks per resolved target index, following chains.
        self._linkCounts: collections.Counter = collections.Counter()
        for links in pending.values():
            for link in links:
                try:
                    self._linkCounts[self.resolve_node(link).index] += 1
                except NotFoundError as exception:
                    logger.debug("Not counting hardlink '%s': %s", link.fullPath, exception)

    def __len__(self) -> int:
        return len(self._targets)

    def resolve(self, path: str) -> Optional[Node]:
        return self._targets.get(normalize_path(path))

    def resolve_node(self, node: Node) -> Node:
        """Follows hardlinks until a node that is not a hardlink itself is reached."""
        visited = set()
        while node.fileType == FileType.HARDLINK:
            if node.index in visited:
                raise NotFoundError(f"Hardlink '{node.fullPath}' is part of a cycle.")
            visited.add(node.index)

            target = self.resolve(node.linkname)
            if target is None:
                raise NotFoundError(f"Hardlink target '{node.linkname}' of '{node.fullPath}' does not exist.")
            node = target
        return node

    def link_count(self, node: Node) -> int:
        """Returns how many hardlinks in the archive resolve to the given node."""
        return self._linkCounts.get(node.index, 0)

    def unresolved(self) -> list[str]:
        return [path for path, node in self._targets.items() if node is None]
