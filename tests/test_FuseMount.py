# pylint: disable=wrong-import-position

import errno
import os
import stat
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

try:
    from tarfs.fuse import fuse  # noqa: E402
    from tarfs.FuseMount import FuseMount  # noqa: E402
except (ImportError, OSError, SystemExit):
    # Loading the FUSE binding requires libfuse to be installed.
    FuseMount = None  # type: ignore

pytestmark = pytest.mark.skipif(FuseMount is None, reason="FUSE is not available")


@pytest.fixture
def mounted(scenario_path, tmp_path):
    with FuseMount(scenario_path, str(tmp_path / 'mounted'), dumpTree=True) as operations:
        yield operations


def test_mount_point_lifecycle(scenario_path, tmp_path):
    mountPoint = tmp_path / 'mounted'
    with FuseMount(scenario_path, str(mountPoint)):
        assert mountPoint.is_dir()
    assert not mountPoint.exists()

    mountPoint.mkdir()
    with FuseMount(scenario_path, str(mountPoint)):
        pass
    assert mountPoint.is_dir()

    (tmp_path / 'file').write_text("not a folder")
    with pytest.raises(ValueError):
        FuseMount(scenario_path, str(tmp_path / 'file'))


def test_getattr(mounted):
    assert stat.S_ISDIR(mounted.getattr('/')['st_mode'])
    assert mounted.getattr('/')['st_ino'] == 4
    assert stat.S_ISDIR(mounted.getattr('/dir')['st_mode'])

    attributes = mounted.getattr('/dir/file.txt')
    assert stat.S_ISREG(attributes['st_mode'])
    assert attributes['st_size'] == 10
    assert attributes['st_blocks'] == 1
    assert attributes['st_ino'] == 2
    assert attributes['st_nlink'] == 2
    assert mounted.getattr('/link.txt') == attributes

    with pytest.raises(fuse.FuseOSError) as exception:
        mounted.getattr('/dir/missing.txt')
    assert exception.value.errno == errno.ENOENT


def test_readdir(mounted):
    assert [entry[0] for entry in mounted.readdir('/', 0)] == ['.', '..', 'dir', 'link.txt']
    assert [entry[0] for entry in mounted.readdir('/dir', 0)] == ['.', '..', 'file.txt']

    # No listed entry may have inode 0.
    inodes = {entry[0]: entry[1].get('st_ino') for entry in mounted.readdir('/', 0)}
    assert inodes['dir'] == 1
    assert inodes['link.txt'] == 3

    with pytest.raises(fuse.FuseOSError) as exception:
        list(mounted.readdir('/link.txt', 0))
    assert exception.value.errno == errno.ENOTDIR


def test_open_read_release(mounted):
    fh = mounted.open('/link.txt', os.O_RDONLY)
    assert mounted.read('/link.txt', 4, 0, fh) == b"0123"

    with pytest.raises(fuse.FuseOSError) as exception:
        mounted.read('/link.txt', 4, 0, fh)
    assert exception.value.errno == errno.ENOTSUP

    assert mounted.read('/link.txt', 100, 4, fh) == b"456789"
    assert mounted.release('/link.txt', fh) == 0

    with pytest.raises(fuse.FuseOSError) as exception:
        mounted.release('/link.txt', fh)
    assert exception.value.errno == errno.ESTALE

    with pytest.raises(fuse.FuseOSError) as exception:
        mounted.read('/link.txt', 4, 0, fh)
    assert exception.value.errno == errno.EBADF

    with pytest.raises(fuse.FuseOSError) as exception:
        mounted.open('/link.txt', os.O_RDWR)
    assert exception.value.errno == errno.EACCES


def test_readlink(mounted):
    with pytest.raises(fuse.FuseOSError) as exception:
        mounted.readlink('/link.txt')
    assert exception.value.errno == errno.EINVAL


def test_statfs(mounted):
    assert mounted.statfs('/')['f_bsize'] == FuseMount.MINIMUM_BLOCK_SIZE


def test_unexpected_error(mounted, monkeypatch):
    def fail(*args, **kwargs):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(mounted.filesystem, 'open', fail)
    with pytest.raises(fuse.FuseOSError) as exception:
        mounted.open('/link.txt', os.O_RDONLY)
    assert exception.value.errno == errno.EIO


def test_read_only(mounted):
    with pytest.raises(fuse.FuseOSError) as exception:
        mounted.mkdir('/new', 0o755)
    assert exception.value.errno == errno.EROFS
