# pylint: disable=wrong-import-position

import io
import os
import sys

import pytest
from helpers import AVAILABLE_COMPRESSIONS, COMPRESSORS, add_file, make_tar

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from tarfscore.compressions import (  # noqa: E402
    detect_compression,
    find_available_backend,
    open_compressed_file,
    strip_suffix_from_archive,
)
from tarfscore.formats import COMPRESSION_FORMATS, FileFormatID, is_tar, might_be_format  # noqa: E402
from tarfscore.utils import CompressionError, UnsupportedFormatError  # noqa: E402


def _tar_data():
    return make_tar(lambda tarArchive: add_file(tarArchive, 'bar', "foo\n"))


def test_strip_suffix_from_archive():
    sst = strip_suffix_from_archive

    assert sst('a.tar.bz2') == 'a'
    assert sst('a.tar.BZ2') == 'a'
    assert sst('a.tar.BZIP2') == 'a'
    assert sst('a.tar.gz') == 'a'
    assert sst('a.tar.gzip') == 'a'
    assert sst('a.tar.xz') == 'a'
    assert sst('a.tar.zst') == 'a'
    assert sst('a.tar') == 'a'
    assert sst('a.mp3') == 'a.mp3'

    assert sst('a.tbz2') == 'a'
    assert sst('a.TBZ2') == 'a'
    assert sst('a.tgz') == 'a'
    assert sst('a.txz') == 'a'
    assert sst('a.tzst') == 'a'


def test_compression_probe_order():
    assert list(COMPRESSION_FORMATS) == [
        FileFormatID.BZIP2,
        FileFormatID.GZIP,
        FileFormatID.ZSTANDARD,
        FileFormatID.XZ,
    ]


def test_detect_uncompressed():
    file = io.BytesIO(_tar_data())
    assert detect_compression(file) is None
    assert file.tell() == 0
    assert is_tar(file)
    assert file.tell() == 0


@pytest.mark.parametrize("compression", [compression for compression in AVAILABLE_COMPRESSIONS if compression])
def test_detect_compression(compression):
    data = COMPRESSORS[compression](_tar_data())
    file = io.BytesIO(data)

    assert might_be_format(file, compression)
    assert file.tell() == 0

    assert detect_compression(file) == compression
    assert file.tell() == 0

    for otherCompression in COMPRESSION_FORMATS:
        if otherCompression != compression:
            assert not might_be_format(file, otherCompression)
            assert file.tell() == 0

    decompressed = open_compressed_file(file, compression)
    try:
        assert decompressed.read() == _tar_data()
    finally:
        decompressed.close()


@pytest.mark.parametrize("compression", AVAILABLE_COMPRESSIONS)
def test_detect_compression_from_any_position(compression):
    file = io.BytesIO(COMPRESSORS[compression](_tar_data()))
    file.seek(5)
    assert detect_compression(file) == compression
    assert file.tell() == 0


def test_detect_compression_rewinds_to_start():
    data = COMPRESSORS[FileFormatID.GZIP](_tar_data())
    file = io.BytesIO(b"garbage" + data)
    file.seek(7)
    # Only the start of the file is considered, and there is no gzip magic there.
    assert detect_compression(file) is None
    assert file.tell() == 0


def test_detect_compression_on_garbage():
    for data in [b"", b"BZh", b"\x1f\x8b", b"\xfd7zXZ\x00", b"\x28\xb5\x2f\xfd", b"not a tar file" * 100]:
        file = io.BytesIO(data)
        assert detect_compression(file) is None
        assert file.tell() == 0


def test_detect_compression_with_non_file_object():
    assert detect_compression(b"\x1f\x8b") is None  # type: ignore


def test_open_uncompressed_returns_same_object():
    file = io.BytesIO(_tar_data())
    assert open_compressed_file(file, None) is file


def test_find_available_backend_prioritization():
    backend = find_available_backend(FileFormatID.GZIP)
    if backend is None:
        pytest.skip("No gzip backend installed.")

    # Unknown and non-matching backends are ignored.
    assert find_available_backend(FileFormatID.GZIP, prioritizedBackends=['xz', 'foo']) is backend


def test_missing_backend_raises(monkeypatch):
    monkeypatch.setattr('tarfscore.compressions.find_available_backend', lambda *args, **kwargs: None)
    with pytest.raises(CompressionError) as exception:
        open_compressed_file(io.BytesIO(b""), FileFormatID.XZ)
    assert isinstance(exception.value, UnsupportedFormatError)
    assert 'python-xz' in str(exception.value)
