# Copyright Red Hat
#
# tests/__init__.py - OS snapshot pair manager test package
#
# This file is part of the ossnap project.
#
# SPDX-License-Identifier: Apache-2.0
import logging
import shutil
import os
from os.path import exists, isdir, join

import ossnap
import ossnap.manager.plugins as plugins

log = logging.getLogger()
log.setLevel(logging.DEBUG)
formatter = logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s')
file_handler = logging.FileHandler("test.log")
file_handler.setFormatter(formatter)
console_handler = logging.StreamHandler()
console_handler.setFormatter(formatter)
log.addHandler(file_handler)
log.addHandler(console_handler)

#: File system UUID reported by ``MockEngine``
MOCK_FS_UUID = "0b2f6f1e-5a4c-4b7e-9a63-1f1c2d3e4f50"


class MockArgs(object):
    config = None
    config_dir = None
    debug = None
    verbose = 0
    version = False
    name = None
    source = None
    dest = None
    keep = 0
    rootfs_archive = None
    homefs_archive = None
    out_dir = None


class MockEngine(plugins.Plugin):
    """Storage engine double implementing subvolumes as plain directories"""

    def __init__(self, logger=None):
        super().__init__(logger or logging.getLogger("tests"))
        self.fs_uuid = MOCK_FS_UUID
        self.default_id = None
        self.fail_on = {}

    def _maybe_fail(self, op, path):
        if os.path.basename(path) == self.fail_on.get(op):
            raise ossnap.OssnapCalloutError(f"Injected {op} failure for {path}")

    def snapshot_subvolume(self, source, dest):
        self._maybe_fail("snapshot", dest)
        if not isdir(source):
            raise ossnap.OssnapNotFoundError(f"{source} not found")
        if exists(dest):
            raise ossnap.OssnapExistsError(f"{dest} exists")
        shutil.copytree(source, dest, symlinks=True)

    def create_subvolume(self, path):
        self._maybe_fail("create", path)
        try:
            os.mkdir(path)
        except FileExistsError as err:
            raise ossnap.OssnapExistsError(f"{path} exists") from err

    def delete_subvolume(self, path):
        self._maybe_fail("delete", path)
        if not isdir(path):
            raise ossnap.OssnapNotFoundError(f"{path} not found")
        shutil.rmtree(path)

    def move_subvolume(self, source, dest):
        self._maybe_fail("move", source)
        if exists(dest):
            raise ossnap.OssnapExistsError(f"{dest} exists")
        os.rename(source, dest)

    def subvolume_id(self, path):
        return os.stat(path).st_ino

    def set_default_subvolume(self, subvolume_id, mount_point):
        self.default_id = subvolume_id

    def filesystem_uuid(self, mount_point):
        return self.fs_uuid


class MockSession(object):
    """Mount session double that records acquire/release calls"""

    opened = 0
    closed = 0

    def __init__(self, config):
        self.root = config.mount_point

    def __enter__(self):
        MockSession.opened += 1
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        MockSession.closed += 1
        return False


def make_half(mount_point, subvolume):
    path = join(mount_point, subvolume)
    os.makedirs(path)
    return path


def make_pair(mount_point, name, version=None, initialized=False, fstab_uuid=None):
    """
    Create both halves of pair ``name`` (the live system for ``""``) below
    ``mount_point`` as plain directories.
    """
    pair = ossnap.PairRef(name)
    root = make_half(mount_point, pair.subvolume(ossnap.HalfKind.ROOT))
    home = make_half(mount_point, pair.subvolume(ossnap.HalfKind.HOME))
    os.makedirs(join(root, "etc"))
    if version is not None:
        with open(join(root, "etc", "os-release"), "w", encoding="utf8") as fp:
            fp.write(f'NAME="Test OS"\nVERSION_ID="{version}"\n')
    if initialized:
        with open(join(home, ossnap.FACTORY_SENTINEL), "w", encoding="utf8") as fp:
            fp.write("")
    if fstab_uuid is not None:
        with open(join(root, "etc", "fstab"), "w", encoding="utf8") as fp:
            fp.write(
                f"UUID={fstab_uuid} / btrfs subvol=@ 0 0\n"
                f"UUID={fstab_uuid} /home btrfs subvol=@home 0 0\n"
            )
    return root, home


def have_root():
    """Return ``True`` if the test suite is running as the root user,
    and ``False`` otherwise.
    """
    return os.geteuid() == 0 and os.getegid() == 0
