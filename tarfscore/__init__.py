"""tarfs Core

This is the backend of tarfs. It can be used as a library without FUSE.

It scans a possibly compressed TAR file once, reconstructs its directory hierarchy in memory, and
serves file contents by decompressing the archive again from the start for each opened file.

Example:

    from tarfscore.archive import open_archive
    from tarfscore.filesystem import FilesystemAdapter

    filesystem = FilesystemAdapter(open_archive("foo.tar.gz"))
    node = filesystem.lookup(filesystem.root(), "bar")

    print("Contents of /bar:")
    handle = filesystem.open(node)
    print(filesystem.read(handle, 0, filesystem.attributes(node).size))
    filesystem.release(handle)
"""

from .version import __version__
