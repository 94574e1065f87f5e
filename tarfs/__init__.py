"""tarfs

This is the FUSE frontend for tarfscore.
It is normally not intended to be used as a library.

The installed tarfs script will load this module and call its 'cli' function,
which could also be done programmatically:

    from tarfs.cli import cli

    cli(["--foreground", "foo.tar.gz", "mounted"])
"""

from .version import __version__
