# Copyright Red Hat
#
# tests/test_command.py - CLI layer tests
#
# This file is part of the ossnap project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
from unittest.mock import MagicMock, patch
from contextlib import redirect_stdout, redirect_stderr
import tempfile
import logging
import io
import os
from os.path import join

log = logging.getLogger()

import ossnap
import ossnap.command as command
from ossnap.manager import PairInfo, HookResult

from tests import MockArgs


class CommandTestsBase(unittest.TestCase):
    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        self._tmp = tempfile.TemporaryDirectory()
        self.conf_d = self._tmp.name
        with open(join(self.conf_d, "00-test.conf"), "w", encoding="utf8") as fp:
            fp.write("[Global]\nPartition = /dev/vdb\nMountPoint = /mnt/ossnap\n")

    def tearDown(self):
        log.debug("Tearing down %s", self._testMethodName)
        ossnap.set_debug_mask(0)
        self._tmp.cleanup()

    def get_main_args(self):
        """
        Return an argument array (in the form of sys.argv) reflecting the
        ``ossnap`` command with the test configuration directory.

        :returns: A list of command arguments.
        """
        return ["ossnap", "--config-dir", self.conf_d]

    def run_main(self, *args):
        """
        Call ``main()`` with ``args`` appended to the base arguments and
        return the exit status and captured standard output.
        """
        out = io.StringIO()
        with redirect_stdout(out), redirect_stderr(io.StringIO()):
            status = command.main(self.get_main_args() + list(args))
        return status, out.getvalue()


class CommandTestsSimple(CommandTestsBase):
    """
    Test command interfaces that do not touch the manager
    """

    def test_unknown_verb(self):
        status, _ = self.run_main("frobnicate")
        self.assertEqual(status, 1)

    def test_no_verb(self):
        status, _ = self.run_main()
        self.assertEqual(status, 1)

    def test_wrong_arity(self):
        self.assertEqual(self.run_main("delete")[0], 1)
        self.assertEqual(self.run_main("delete", "a", "b")[0], 1)
        self.assertEqual(self.run_main("rename", "a")[0], 1)
        self.assertEqual(self.run_main("inject", "a", "b")[0], 1)
        self.assertEqual(self.run_main("export", "a")[0], 1)

    @patch("os.geteuid", return_value=1000)
    def test_version(self, _geteuid):
        status, out = self.run_main("version")
        self.assertEqual(status, 0)
        self.assertEqual(out.strip(), ossnap.__version__)

    @patch("os.geteuid", return_value=1000)
    def test_version_option(self, _geteuid):
        for opt in ("-v", "--version"):
            status, out = self.run_main(opt)
            self.assertEqual(status, 0)
            self.assertEqual(out.strip(), ossnap.__version__)

    @patch("os.geteuid", return_value=1000)
    def test_help(self, _geteuid):
        status, out = self.run_main("help")
        self.assertEqual(status, 0)
        self.assertIn("usage:", out)
        for opt in ("-h", "--help"):
            status, out = self.run_main(opt)
            self.assertEqual(status, 0)
            self.assertIn("restore", out)

    @patch("os.geteuid", return_value=1000)
    def test_requires_root(self, _geteuid):
        with patch("ossnap.command.Manager") as mock_manager:
            status, _ = self.run_main("list")
        self.assertEqual(status, 1)
        mock_manager.assert_not_called()

    @patch("os.geteuid", return_value=0)
    def test_config_incomplete(self, _geteuid):
        with patch.dict(os.environ, {}, clear=True):
            with redirect_stderr(io.StringIO()):
                status = command.main(
                    ["ossnap", "-c", join(self.conf_d, "missing"), "list"]
                )
        self.assertEqual(status, 1)

    def test_bad_debug(self):
        status, _ = self.run_main("--debug", "bogus", "list")
        self.assertEqual(status, 1)

    def test_set_debug(self):
        command.set_debug("manager,switch")
        self.assertEqual(
            ossnap.get_debug_mask(),
            ossnap.OSSNAP_DEBUG_MANAGER | ossnap.OSSNAP_DEBUG_SWITCH,
        )
        command.set_debug("all")
        self.assertEqual(ossnap.get_debug_mask(), ossnap.OSSNAP_DEBUG_ALL)

    def test_set_debug_none(self):
        ossnap.set_debug_mask(0)
        command.set_debug(None)
        self.assertEqual(ossnap.get_debug_mask(), 0)

    def test_set_debug_unknown(self):
        with self.assertRaises(ValueError):
            command.set_debug("manager,bogus")

    def test_setup_logging_levels(self):
        args = MockArgs()
        for verbose, level in ((0, logging.WARNING), (1, logging.INFO), (2, logging.DEBUG)):
            args.verbose = verbose
            command.setup_logging(args)
            self.assertEqual(logging.getLogger("ossnap").level, level)
        self.assertEqual(len(logging.getLogger("ossnap").handlers), 1)


@patch("os.geteuid", return_value=0)
@patch("ossnap.command.Manager")
class CommandDispatchTests(CommandTestsBase):
    """
    Test verb dispatch to the manager
    """

    def test_list(self, mock_manager_cls, _geteuid):
        manager = mock_manager_cls.return_value
        manager.list_pairs.return_value = [
            PairInfo("factory", "39", True),
            PairInfo("foo", "1.0.6.10", False),
        ]
        status, out = self.run_main("list")
        self.assertEqual(status, 0)
        self.assertEqual(out, "factory (39, factory)\nfoo (1.0.6.10)\n")
        config = mock_manager_cls.call_args[0][0]
        self.assertEqual(config.partition, "/dev/vdb")
        self.assertEqual(config.mount_point, "/mnt/ossnap")

    def test_create_from_live(self, mock_manager_cls, _geteuid):
        status, _ = self.run_main("create", "foo")
        self.assertEqual(status, 0)
        mock_manager_cls.return_value.create_pair.assert_called_once_with(None, "foo")

    def test_create_from_pair(self, mock_manager_cls, _geteuid):
        status, _ = self.run_main("create", "foo", "bar")
        self.assertEqual(status, 0)
        mock_manager_cls.return_value.create_pair.assert_called_once_with("foo", "bar")

    def test_delete(self, mock_manager_cls, _geteuid):
        self.assertEqual(self.run_main("delete", "foo")[0], 0)
        mock_manager_cls.return_value.delete_pair.assert_called_once_with("foo")

    def test_delete_failure(self, mock_manager_cls, _geteuid):
        mock_manager_cls.return_value.delete_pair.side_effect = (
            ossnap.OssnapProtectedError("Refusing to delete the 'factory' snapshot pair")
        )
        with self.assertLogs(command._log, level="ERROR") as cm:
            status, _ = self.run_main("delete", "factory")
        self.assertEqual(status, 1)
        self.assertIn("Command failed", "\n".join(cm.output))

    def test_delete_failure_debug_raises(self, mock_manager_cls, _geteuid):
        mock_manager_cls.return_value.delete_pair.side_effect = (
            ossnap.OssnapProtectedError("protected")
        )
        with self.assertRaises(ossnap.OssnapProtectedError):
            self.run_main("--debug", "all", "delete", "factory")

    def test_rename(self, mock_manager_cls, _geteuid):
        self.assertEqual(self.run_main("rename", "foo", "bar")[0], 0)
        mock_manager_cls.return_value.rename_pair.assert_called_once_with("foo", "bar")

    def test_restore(self, mock_manager_cls, _geteuid):
        manager = mock_manager_cls.return_value
        manager.restore.return_value = "saved-1700000000"
        manager.hook_results = [HookResult("10-ok", 0), HookResult("20-bad", 1)]
        with self.assertLogs(command._log, level="WARNING") as cm:
            status, out = self.run_main("restore", "foo")
        self.assertEqual(status, 0)
        self.assertIn("saved-1700000000", out)
        self.assertIn("20-bad", "\n".join(cm.output))
        manager.restore.assert_called_once_with("foo")

    def test_restore_failure(self, mock_manager_cls, _geteuid):
        mock_manager_cls.return_value.restore.side_effect = ossnap.OssnapStateError(
            "Restore of 'foo' failed"
        )
        self.assertEqual(self.run_main("restore", "foo")[0], 1)

    def test_enter(self, mock_manager_cls, _geteuid):
        mock_manager_cls.return_value.enter.return_value = 0
        self.assertEqual(self.run_main("enter")[0], 0)
        mock_manager_cls.return_value.enter.assert_called_once_with(None)

    def test_enter_status(self, mock_manager_cls, _geteuid):
        mock_manager_cls.return_value.enter.return_value = 3
        self.assertEqual(self.run_main("enter", "foo")[0], 3)
        mock_manager_cls.return_value.enter.assert_called_once_with("foo")

    def test_inject(self, mock_manager_cls, _geteuid):
        status, _ = self.run_main("inject", "root.tar.zst", "home.tar.zst", "foo")
        self.assertEqual(status, 0)
        mock_manager_cls.return_value.inject.assert_called_once_with(
            "root.tar.zst", "home.tar.zst", "foo"
        )

    def test_export(self, mock_manager_cls, _geteuid):
        mock_manager_cls.return_value.export.return_value = (
            "/out/rootfs-foo-1.0.tar.zst",
            "/out/homefs-foo-1.0.tar.zst",
        )
        status, out = self.run_main("export", "foo", "/out")
        self.assertEqual(status, 0)
        self.assertEqual(
            out.splitlines(),
            ["/out/rootfs-foo-1.0.tar.zst", "/out/homefs-foo-1.0.tar.zst"],
        )

    def test_purge(self, mock_manager_cls, _geteuid):
        mock_manager_cls.return_value.purge.return_value = ["saved-1"]
        self.assertEqual(self.run_main("purge", "--keep", "2")[0], 0)
        mock_manager_cls.return_value.purge.assert_called_once_with(keep=2)

    def test_purge_default_keep(self, mock_manager_cls, _geteuid):
        mock_manager_cls.return_value.purge.return_value = []
        self.assertEqual(self.run_main("purge")[0], 0)
        mock_manager_cls.return_value.purge.assert_called_once_with(keep=0)
