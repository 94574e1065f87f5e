"""
Cheap signature checks for TAR and the compressions a TAR may be wrapped in.
Nothing in here decompresses anything. These checks only decide which decoders are worth trying.

See:
 - https://en.wikipedia.org/wiki/List_of_file_signatures
 - https://www.gnu.org/software/tar/manual/html_node/Standard.html
"""

import dataclasses
import enum
import struct
import tarfile
from typing import IO, Callable, Optional, Union


class FileFormatID(enum.Enum):
    # fmt: off
    TAR       = 'tar'
    BZIP2     = 'bzip2'
    GZIP      = 'gzip'
    XZ        = 'xz'
    ZSTANDARD = 'zstandard'
    # fmt: on


FID = FileFormatID

ZSTANDARD_FRAME_MAGIC = 0xFD2FB528
# The lower 4 bits of skippable frame magics are user-defined.
ZSTANDARD_SKIPPABLE_MAGIC = 0x184D2A50


def is_tar(fileobj: IO[bytes], encoding: str = tarfile.ENCODING) -> bool:
    """Returns True if the first 512 B record parses as a TAR header with a valid checksum."""
    oldOffset = fileobj.tell()
    try:
        tarfile.TarInfo.frombuf(fileobj.read(tarfile.BLOCKSIZE), encoding, 'surrogateescape')
        return True
    except tarfile.HeaderError:
        return False
    finally:
        fileobj.seek(oldOffset)


def _has_bzip2_block_magic(fileobj: IO[bytes]) -> bool:
    # 'BZh' + block size digit + the BCD digits of pi, which start each compressed block.
    header = fileobj.read(10)
    return header[:3] == b'BZh' and header[3:4].isdigit() and header[4:] == bytes.fromhex('314159265359')


def _has_zstandard_frame(fileobj: IO[bytes]) -> bool:
    # https://github.com/facebook/zstd/blob/dev/doc/zstd_compression_format.md#skippable-frames
    while True:
        header = fileobj.read(4)
        if len(header) < 4:
            return False
        magic = struct.unpack('<L', header)[0]
        if magic & 0xFFFF_FFF0 != ZSTANDARD_SKIPPABLE_MAGIC:
            return magic == ZSTANDARD_FRAME_MAGIC

        frameSize = fileobj.read(4)
        if len(frameSize) < 4:
            return False
        fileobj.seek(struct.unpack('<L', frameSize)[0], 1)


@dataclasses.dataclass
class FormatSignature:
    # File name suffixes without the leading '.'.
    suffixes: list[str]
    # Constant bytes at the start of the format, if there are any.
    magic: Optional[bytes] = None
    # Further header validation reading from the start of the format. Should rather accept too much than
    # too little because a rejected file will not even be tried with a decoder.
    validate: Optional[Callable[[IO[bytes]], bool]] = None


ARCHIVE_FORMATS: dict[FileFormatID, FormatSignature] = {
    FID.TAR: FormatSignature(['tar'], validate=is_tar),
}

# Compressions are probed in this order. The first one whose signature matches and whose decoder
# produces data wins.
COMPRESSION_FORMATS: dict[FileFormatID, FormatSignature] = {
    FID.BZIP2: FormatSignature(['bz2', 'bzip2'], b'BZh', _has_bzip2_block_magic),
    FID.GZIP: FormatSignature(['gz', 'gzip'], b'\x1f\x8b'),
    FID.ZSTANDARD: FormatSignature(['zst', 'zstd', 'pzstd'], validate=_has_zstandard_frame),
    FID.XZ: FormatSignature(['xz'], b'\xfd7zXZ\x00'),
}


def might_be_format(fileobj: IO[bytes], fid: Union[FileFormatID, FormatSignature]) -> bool:
    """Checks the signature starting at the current offset, which is restored afterwards."""
    if isinstance(fid, FormatSignature):
        signature = fid
    else:
        signature = ARCHIVE_FORMATS[fid] if fid in ARCHIVE_FORMATS else COMPRESSION_FORMATS[fid]

    oldOffset = fileobj.tell()
    try:
        if signature.magic is not None and fileobj.read(len(signature.magic)) != signature.magic:
            return False
        if signature.validate is None:
            return signature.magic is not None
        fileobj.seek(oldOffset)
        return signature.validate(fileobj)
    finally:
        fileobj.seek(oldOffset)
