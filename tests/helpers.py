import bz2
import gzip
import io
import lzma
import os
import tarfile

import zstandard

from tarfscore.compressions import find_available_backend
from tarfscore.formats import FileFormatID

COMPRESSORS = {
    None: lambda data: data,
    FileFormatID.BZIP2: bz2.compress,
    FileFormatID.GZIP: gzip.compress,
    FileFormatID.ZSTANDARD: lambda data: zstandard.ZstdCompressor().compress(data),
    FileFormatID.XZ: lambda data: lzma.compress(data, format=lzma.FORMAT_XZ),
}

EXTENSIONS = {
    None: '.tar',
    FileFormatID.BZIP2: '.tar.bz2',
    FileFormatID.GZIP: '.tar.gz',
    FileFormatID.ZSTANDARD: '.tar.zst',
    FileFormatID.XZ: '.tar.xz',
}

# Only test compressions for which a decompression backend is installed.
AVAILABLE_COMPRESSIONS = [None] + [
    compression for compression in COMPRESSORS if compression and find_available_backend(compression)
]


def add_file(tarArchive, name, contents, **attributes):
    if isinstance(contents, str):
        contents = contents.encode()
    tinfo = tarfile.TarInfo(name)
    tinfo.size = len(contents)
    for key, value in attributes.items():
        setattr(tinfo, key, value)
    tarArchive.addfile(tinfo, io.BytesIO(contents))


def make_folder(tarArchive, name, **attributes):
    tinfo = tarfile.TarInfo(name)
    tinfo.type = tarfile.DIRTYPE
    tinfo.mode = 0o755
    for key, value in attributes.items():
        setattr(tinfo, key, value)
    tarArchive.addfile(tinfo, io.BytesIO())


def add_link(tarArchive, name, target, linkType=tarfile.LNKTYPE):
    tinfo = tarfile.TarInfo(name)
    tinfo.type = linkType
    tinfo.linkname = target
    tarArchive.addfile(tinfo)


def make_tar(fill, tarFormat=tarfile.PAX_FORMAT) -> bytes:
    """Calls fill with an opened tarfile.TarFile object to add members and returns the TAR file contents."""
    data = io.BytesIO()
    with tarfile.open(fileobj=data, mode='w:', format=tarFormat) as tarArchive:
        fill(tarArchive)
    return data.getvalue()


def write_archive(folder, name, tarData, compression=None) -> str:
    path = os.path.join(str(folder), name + EXTENSIONS[compression])
    with open(path, 'wb') as file:
        file.write(COMPRESSORS[compression](tarData))
    return path


def fill_scenario(tarArchive):
    make_folder(tarArchive, 'dir')
    add_file(tarArchive, 'dir/file.txt', "0123456789")
    add_link(tarArchive, 'link.txt', 'dir/file.txt')
