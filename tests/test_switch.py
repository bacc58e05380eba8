# Copyright Red Hat
#
# tests/test_switch.py - Switch-over engine tests
#
# This file is part of the ossnap project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
from unittest.mock import patch
import tempfile
import logging
import stat
import os
from os.path import exists, isdir, join

import ossnap
from ossnap.manager._registry import Registry
from ossnap.manager._pairs import PairOps
from ossnap.manager._switch import (
    RESTORE_HOOKS_DIR,
    SwitchOver,
    SwitchState,
    find_restore_hooks,
    repair_fstab_uuid,
    run_restore_hooks,
)

from tests import MOCK_FS_UUID, MockEngine, make_pair

log = logging.getLogger()

_OLD_UUID = "7d3c1a9e-2b4f-4c8d-8e1f-a0b1c2d3e4f5"
_NOW = 1700000000


def _write_hook(root, name, mode=0o755):
    hooks_dir = join(root, RESTORE_HOOKS_DIR)
    os.makedirs(hooks_dir, exist_ok=True)
    path = join(hooks_dir, name)
    with open(path, "w", encoding="utf8") as fp:
        fp.write("#!/bin/sh\nexit 0\n")
    os.chmod(path, mode)
    return path


class FstabRepairTests(unittest.TestCase):
    """Test repair_fstab_uuid"""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.fstab = join(self._tmp.name, "fstab")

    def tearDown(self):
        self._tmp.cleanup()

    def _write(self, content):
        with open(self.fstab, "w", encoding="utf8") as fp:
            fp.write(content)

    def _read(self):
        with open(self.fstab, "r", encoding="utf8") as fp:
            return fp.read()

    def test_replaces_every_occurrence(self):
        self._write(
            f"# root on UUID={_OLD_UUID}\n"
            f"UUID={_OLD_UUID} / btrfs subvol=@ 0 0\n"
            f"UUID={_OLD_UUID} /home btrfs subvol=@home 0 0\n"
            "UUID=abcd-1234 /boot/efi vfat umask=0077 0 2\n"
        )
        os.chmod(self.fstab, 0o640)
        self.assertTrue(repair_fstab_uuid(self.fstab, MOCK_FS_UUID))
        content = self._read()
        self.assertNotIn(_OLD_UUID, content)
        self.assertEqual(content.count(MOCK_FS_UUID), 3)
        self.assertIn("UUID=abcd-1234 /boot/efi", content)
        self.assertEqual(stat.S_IMODE(os.stat(self.fstab).st_mode), 0o640)
        self.assertFalse(exists(self.fstab + ".ossnap.tmp"))

    def test_identical_uuid_untouched(self):
        original = f"UUID={MOCK_FS_UUID} / btrfs subvol=@ 0 0\n"
        self._write(original)
        before = os.stat(self.fstab).st_ino
        self.assertFalse(repair_fstab_uuid(self.fstab, MOCK_FS_UUID))
        self.assertEqual(self._read(), original)
        self.assertEqual(os.stat(self.fstab).st_ino, before)

    def test_no_uuid_entry(self):
        original = "/dev/vda2 / btrfs subvol=@ 0 0\n"
        self._write(original)
        self.assertFalse(repair_fstab_uuid(self.fstab, MOCK_FS_UUID))
        self.assertEqual(self._read(), original)

    def test_missing_fstab(self):
        self.assertFalse(repair_fstab_uuid(self.fstab, MOCK_FS_UUID))
        self.assertFalse(exists(self.fstab))


class RestoreHookTests(unittest.TestCase):
    """Test restore hook discovery and execution"""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = self._tmp.name

    def tearDown(self):
        self._tmp.cleanup()

    def test_find_restore_hooks_none(self):
        self.assertEqual(find_restore_hooks(self.root), [])

    def test_find_restore_hooks_sorted_executable(self):
        _write_hook(self.root, "20-second")
        _write_hook(self.root, "10-first")
        _write_hook(self.root, "README", mode=0o644)
        os.makedirs(join(self.root, RESTORE_HOOKS_DIR, "30-subdir"))
        self.assertEqual(find_restore_hooks(self.root), ["10-first", "20-second"])

    @patch("ossnap.manager._switch.ChrootMount")
    def test_run_restore_hooks_failures_not_raised(self, mock_chroot_cls):
        _write_hook(self.root, "10-ok")
        _write_hook(self.root, "20-fail")
        _write_hook(self.root, "30-broken")
        chroot = mock_chroot_cls.return_value.__enter__.return_value
        chroot.exec.side_effect = [0, 3, ossnap.OssnapArgumentError("bad")]

        with self.assertLogs("ossnap.manager._switch", level="WARNING") as cm:
            results = run_restore_hooks(self.root, "test root")

        self.assertEqual([r.name for r in results], ["10-ok", "20-fail", "30-broken"])
        self.assertEqual([r.ok for r in results], [True, False, False])
        self.assertEqual(results[1].status, 3)
        self.assertEqual(results[2].status, -1)
        self.assertEqual(results[2].error, "bad")
        output = "\n".join(cm.output)
        self.assertIn("20-fail", output)
        self.assertIn("30-broken", output)
        chroot.exec.assert_any_call([join("/", RESTORE_HOOKS_DIR, "10-ok")])
        mock_chroot_cls.assert_called_once_with(self.root, "test root")

    @patch("ossnap.manager._switch.ChrootMount")
    def test_run_restore_hooks_no_hooks_no_binds(self, mock_chroot_cls):
        self.assertEqual(run_restore_hooks(self.root, "test root"), [])
        mock_chroot_cls.assert_not_called()


class SwitchOverTests(unittest.TestCase):
    """Test the restore state machine"""

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        self._tmp = tempfile.TemporaryDirectory()
        self.mount_point = self._tmp.name
        self.engine = MockEngine()
        self.registry = Registry(self.engine, self.mount_point)
        self.pair_ops = PairOps(self.engine, self.registry)
        self.switch = SwitchOver(
            self.engine, self.registry, self.pair_ops, clock=lambda: _NOW
        )
        live_root, _ = make_pair(
            self.mount_point, "", version="40", initialized=True, fstab_uuid=_OLD_UUID
        )
        with open(join(live_root, "live-marker"), "w", encoding="utf8") as fp:
            fp.write("live")
        make_pair(self.mount_point, "foo", version="39", fstab_uuid=_OLD_UUID)

    def tearDown(self):
        log.debug("Tearing down %s", self._testMethodName)
        self._tmp.cleanup()

    def _path(self, *parts):
        return join(self.mount_point, *parts)

    def test_backup_name(self):
        self.assertEqual(self.switch.backup_name(), f"saved-{_NOW}")

    def test_restore(self):
        backup = self.switch.restore("foo")

        self.assertEqual(backup, f"saved-{_NOW}")
        self.assertEqual(self.switch.state, SwitchState.IDLE)
        # Previous live system preserved as the backup
        self.assertTrue(self.registry.exists(backup))
        self.assertTrue(exists(self._path(f"{backup}-@", "live-marker")))
        # Target promoted and still present
        self.assertTrue(self.registry.exists("foo"))
        self.assertTrue(self.registry.exists(""))
        self.assertEqual(self.registry.os_version_of(""), "39")
        self.assertFalse(exists(self._path("@", "live-marker")))
        # Boot configuration repaired
        self.assertEqual(self.engine.default_id, os.stat(self._path("@")).st_ino)
        with open(self._path("@", "etc", "fstab"), "r", encoding="utf8") as fp:
            fstab = fp.read()
        self.assertNotIn(_OLD_UUID, fstab)
        self.assertIn(f"UUID={MOCK_FS_UUID} / btrfs", fstab)
        # Source pair fstab untouched
        with open(self._path("foo-@", "etc", "fstab"), "r", encoding="utf8") as fp:
            self.assertIn(_OLD_UUID, fp.read())

    @patch("ossnap.manager._switch.ChrootMount")
    def test_restore_runs_hooks_in_promoted_root(self, mock_chroot_cls):
        _write_hook(self._path("foo-@"), "10-fixup")
        chroot = mock_chroot_cls.return_value.__enter__.return_value
        chroot.exec.return_value = 1

        self.switch.restore("foo")

        mock_chroot_cls.assert_called_once_with(self._path("@"), "live system")
        self.assertEqual(len(self.switch.hook_results), 1)
        self.assertFalse(self.switch.hook_results[0].ok)
        self.assertEqual(self.switch.state, SwitchState.IDLE)

    def test_restore_live_rejected(self):
        for name in ("", "@", None):
            with self.assertRaises(ossnap.OssnapArgumentError):
                self.switch.restore(name)
        self.assertEqual(self.switch.state, SwitchState.IDLE)

    def test_restore_missing_target(self):
        with self.assertRaises(ossnap.OssnapNotFoundError):
            self.switch.restore("nope")
        self.assertTrue(isdir(self._path("@")))
        self.assertEqual(self.switch.state, SwitchState.IDLE)

    def test_restore_backup_collision_fails_fast(self):
        make_pair(self.mount_point, f"saved-{_NOW}")
        with self.assertRaises(ossnap.OssnapExistsError):
            self.switch.restore("foo")
        self.assertTrue(exists(self._path("@", "live-marker")))
        self.assertEqual(self.switch.state, SwitchState.IDLE)

    def test_restore_promote_failure_is_fatal(self):
        self.engine.fail_on["snapshot"] = "@home"
        with self.assertRaises(ossnap.OssnapStateError) as cm:
            self.switch.restore("foo")
        self.assertIsInstance(cm.exception.__cause__, ossnap.OssnapCalloutError)
        self.assertIn("manual intervention", str(cm.exception))
        self.assertEqual(self.switch.state, SwitchState.FAILED)
        # Backup completed, promotion left partial
        self.assertTrue(self.registry.exists(f"saved-{_NOW}"))
        self.assertTrue(isdir(self._path("@")))
        self.assertFalse(isdir(self._path("@home")))

    def test_restore_backup_failure_is_fatal(self):
        self.engine.fail_on["move"] = "@"
        with self.assertRaises(ossnap.OssnapStateError):
            self.switch.restore("foo")
        self.assertEqual(self.switch.state, SwitchState.FAILED)
        self.assertTrue(self.registry.exists(""))

    def test_restore_undecodable_fstab_is_fatal(self):
        with open(self._path("foo-@", "etc", "fstab"), "wb") as fp:
            fp.write(b"UUID=abc / btrfs subvol=@ 0 0 # \xff\xfe\n")
        with self.assertRaises(ossnap.OssnapStateError) as cm:
            self.switch.restore("foo")
        self.assertIsInstance(cm.exception.__cause__, ossnap.OssnapSystemError)
        self.assertIn("manual intervention", str(cm.exception))
        self.assertEqual(self.switch.state, SwitchState.FAILED)
        self.assertTrue(self.registry.exists(f"saved-{_NOW}"))

    def test_restore_repair_failure_is_fatal(self):
        with patch.object(
            self.engine,
            "filesystem_uuid",
            side_effect=ossnap.OssnapCalloutError("btrfs filesystem show failed"),
        ):
            with self.assertRaises(ossnap.OssnapStateError):
                self.switch.restore("foo")
        self.assertEqual(self.switch.state, SwitchState.FAILED)
        self.assertTrue(self.registry.exists(""))
        self.assertTrue(self.registry.exists(f"saved-{_NOW}"))
