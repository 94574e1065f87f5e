#!/usr/bin/env python3
# -*- coding: utf-8 -*-

# We explicitly do want to import FUSE as late as possible here because loading libfuse fails on systems
# without it and neither unmounting nor the argument parsing needs it.
# pylint: disable=import-outside-toplevel

import argparse
import logging
import os
import subprocess
import sys
import tarfile
import traceback
from typing import Any, Optional

from rich.logging import RichHandler

from tarfscore.compressions import COMPRESSION_BACKENDS, strip_suffix_from_archive
from tarfscore.utils import TarfsError

from .version import __version__

logger = logging.getLogger(__name__)

LOG_LEVELS = [logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG]


class _CustomFormatter(argparse.ArgumentDefaultsHelpFormatter, argparse.RawDescriptionHelpFormatter):
    def add_arguments(self, actions):
        actions = sorted(actions, key=lambda x: getattr(x, 'option_strings'))
        super().add_arguments(actions)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='tarfs',
        formatter_class=_CustomFormatter,
        add_help=False,
        description='''\
Mount a TAR archive, which may be compressed with bzip2, gzip, zstd, or xz, as a read-only filesystem.

No index is created. Instead, each opened file will be decompressed from the start of the archive,
which makes opening files near the end of large compressed archives slow.
Files can only be read sequentially.
''',
        epilog='''\
Examples:

 - tarfs archive.tar.gz
 - tarfs --foreground -d 3 --dump-tree archive.tar mountpoint
 - tarfs --unmount mountpoint
''',
    )

    commonGroup = parser.add_argument_group("Optional Arguments")
    positionalGroup = parser.add_argument_group("Positional Options")
    tarGroup = parser.add_argument_group("Tar Options")
    advancedGroup = parser.add_argument_group("Advanced Options")

    # fmt: off
    commonGroup.add_argument(
        '-h', '--help', action='help', default=argparse.SUPPRESS,
        help='Show this help message and exit.')

    commonGroup.add_argument(
        '-u', '--unmount', action='store_true',
        help='Unmount the given mount point. Equivalent to calling "fusermount -u".')

    commonGroup.add_argument(
        '-v', '--version', action='version', version=f"tarfs {__version__}",
        help='Print version information and exit.')

    # TAR Options

    tarGroup.add_argument(
        '-e', '--encoding', type=str, default=tarfile.ENCODING,
        help='Specify an input encoding used for file names among others in the TAR. '
             'This must be used when, e.g., trying to open a latin1 encoded TAR on an UTF-8 system. '
             'Possible encodings: https://docs.python.org/3/library/codecs.html#standard-encodings')

    tarGroup.add_argument(
        '-i', '--ignore-zeros', action='store_true',
        help='Ignore zeroed blocks in archive. Normally, two consecutive 512-blocks filled with zeroes mean EOF '
             'and tarfs stops reading after encountering them. This option instructs it to read further and '
             'is useful when reading archives created with the -A option.')

    # Advanced Options

    advancedGroup.add_argument(
        '-f', '--foreground', action='store_true', default=False,
        help='Keeps the python program in foreground so it can print debug '
             'output when the mounted path is accessed.')

    advancedGroup.add_argument(
        '-d', '--debug', type=int, default=1,
        help='Sets the debugging level. Higher means more output. Currently, 3 is the highest.')

    advancedGroup.add_argument(
        '--fuse-debug', action='store_true', default=False,
        help='Enables the debug output of libfuse, i.e., it logs each FUSE request. Implies --foreground.')

    advancedGroup.add_argument(
        '-o', '--fuse', type=str, default='',
        help='Comma separated FUSE options. See "man mount.fuse" for help. '
             'Example: --fuse "allow_other,entry_timeout=2.8,gid=0". ')

    advancedGroup.add_argument(
        '--allow-other', action='store_true', default=False,
        help='Allow other users to access the mounted filesystem. Same as -o allow_other.')

    advancedGroup.add_argument(
        '--allow-root', action='store_true', default=False,
        help='Allow root to access the mounted filesystem. Same as -o allow_root.')

    advancedGroup.add_argument(
        '--auto-unmount', action='store_true', default=False,
        help='Unmount the filesystem automatically when the process exits. Same as -o auto_unmount.')

    advancedGroup.add_argument(
        '--dump-tree', action='store_true', default=False,
        help='Log the reconstructed directory hierarchy at debug level, i.e., with -d 3, before mounting.')

    advancedGroup.add_argument(
        '--use-backend', type=str, action='append',
        help='Specify a backend to be used with higher priority for opening compressed archives. '
             'Option can be specified multiple times. Backends: ' + ', '.join(COMPRESSION_BACKENDS))

    positionalGroup.add_argument(
        'archive', type=str,
        help='The path to the TAR archive to mount or the mount point to unmount with --unmount.')

    positionalGroup.add_argument(
        'mount_point', nargs='?',
        help='The path to a folder to mount the TAR contents into. '
             'If no mount path is specified, the TAR will be mounted to a folder of the same name '
             'but without a file extension.')
    # fmt: on

    return parser


def setup_logging(debug: int) -> None:
    level = LOG_LEVELS[max(0, min(debug, len(LOG_LEVELS) - 1))]
    logging.basicConfig(
        level=level, format="%(message)s", datefmt="[%X]", handlers=[RichHandler(show_path=debug >= 3)], force=True
    )


def unmount(mountPoint: str) -> int:
    # No os.path.ismount check first. A killed FUSE process leaves a mount point behind that errors on any query.
    try:
        subprocess.run(["fusermount", "-u", mountPoint], check=True, capture_output=True)
        logger.info("Successfully called fusermount -u.")
        return 0
    except Exception as exception:
        logger.info("fusermount -u %s failed with: %s", mountPoint, exception)

    try:
        subprocess.run(["umount", mountPoint], check=True, capture_output=True)
        logger.info("Successfully called umount '%s'.", mountPoint)
        return 0
    except Exception as exception:
        logger.info("umount %s failed with: %s", mountPoint, exception)

    logger.error("Failed to unmount '%s'.", mountPoint)
    return 1


def determine_mount_point(archivePath: str) -> str:
    mountPoint = strip_suffix_from_archive(archivePath)

    # Files might not have a standard archive file extension. Therefore, try to generically strip the extension.
    if mountPoint == archivePath:
        mountPoint = os.path.splitext(mountPoint)[0]

    # The archive itself occupies that path.
    if mountPoint == archivePath:
        mountPoint = mountPoint + ".mounted"

    if os.path.exists(mountPoint) and not os.path.isdir(mountPoint):
        raise argparse.ArgumentTypeError(
            "No mount point was specified and failed to automatically infer a valid one. "
            "Please explicitly specify a mount point. See --help."
        )

    logger.info("No mount point specified. Automatically inferred: %s", mountPoint)
    return mountPoint


def parse_fuse_options(args) -> dict[str, Any]:
    """Converts the comma separated list of key[=value] options and the shortcut flags into kwargs for fusepy."""
    fusekwargs: dict[str, Any] = (
        dict(option.split('=', 1) if '=' in option else (option, True) for option in args.fuse.split(','))
        if args.fuse
        else {}
    )
    for flag in ('allow_other', 'allow_root', 'auto_unmount'):
        if getattr(args, flag):
            fusekwargs[flag] = True
    if args.fuse_debug:
        fusekwargs['debug'] = True

    # Reads must arrive exactly in the order and with the offsets the application requested because
    # kernel readahead would otherwise request offsets that the sequential readers cannot serve.
    fusekwargs.setdefault('direct_io', True)
    fusekwargs.setdefault('use_ino', True)
    return fusekwargs


def parsed_args_to_options(args) -> dict[str, Any]:
    # fmt: off
    return {
        'pathToMount'         : args.archive,
        'mountPoint'          : args.mount_point,
        'encoding'            : args.encoding,
        'ignoreZeros'         : bool(args.ignore_zeros),
        'dumpTree'            : bool(args.dump_tree),
        'prioritizedBackends' : args.prioritizedBackends,
    }
    # fmt: on


def process_parsed_arguments(args) -> int:
    if args.unmount:
        return unmount(args.mount_point or args.archive)

    if not os.path.isfile(args.archive):
        raise argparse.ArgumentTypeError(f"File '{args.archive}' is not a file!")
    args.archive = os.path.realpath(args.archive)

    if not args.mount_point:
        args.mount_point = determine_mount_point(args.archive)
    args.mount_point = os.path.realpath(args.mount_point)

    args.prioritizedBackends = (
        [backend for backendString in args.use_backend for backend in backendString.split(',')]
        if args.use_backend
        else []
    )
    for backend in args.prioritizedBackends:
        if backend not in COMPRESSION_BACKENDS:
            raise argparse.ArgumentTypeError(
                f"Unknown backend '{backend}'. Known backends: {', '.join(COMPRESSION_BACKENDS)}"
            )

    fusekwargs = parse_fuse_options(args)
    foreground = bool(args.foreground or args.fuse_debug)

    # Import late to not require libfuse for the other code paths.
    from .fuse import fuse
    from .FuseMount import FuseMount

    # Indexing happens in the constructor, so errors in it abort before anything gets mounted.
    with FuseMount(**parsed_args_to_options(args)) as fuseOperationsObject:
        try:
            fuse.FUSE(
                operations=fuseOperationsObject,
                mountpoint=args.mount_point,
                foreground=foreground,
                ro=True,
                fsname='tarfs',
                subtype='tarfs',
                **fusekwargs,
            )
        except RuntimeError as exception:
            raise TarfsError(
                "FUSE mountpoint could not be created. See previous output for more information."
            ) from exception

    return 0


def cli(rawArgs: Optional[list[str]] = None) -> int:
    """
    Command line interface for tarfs. Call with args = [ '--help' ] for a description.

    rawArgs: In general, rawArgs is None, meaning sys.argv is used. When used programmatically with a custom
             list of arguments, the first argument should not be the path to the script / the executable,
             i.e., call either cli() or cli(sys.argv[1:])!
    """

    # The debug level is needed for the error output even if argparse fails.
    tmpArgs = rawArgs if rawArgs else sys.argv
    debug = 1
    for i in range(len(tmpArgs) - 1):
        if tmpArgs[i] in ['-d', '--debug'] and tmpArgs[i + 1].isdecimal():
            try:
                debug = int(tmpArgs[i + 1])
            except ValueError:
                continue

    try:
        args = create_parser().parse_args(rawArgs)
        setup_logging(args.debug)
        return process_parsed_arguments(args)
    except (FileNotFoundError, TarfsError, argparse.ArgumentTypeError, ValueError) as exception:
        print("[Error]", exception)
        if debug >= 3:
            traceback.print_exc()

    return 1
