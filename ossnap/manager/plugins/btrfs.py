# Copyright Red Hat
#
# ossnap/manager/plugins/btrfs.py - Btrfs storage engine plugin
#
# This file is part of the ossnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Btrfs storage engine plugin
"""
from subprocess import run, CalledProcessError
from os import environ, rename
from os.path import lexists
from shutil import which
import re

from ossnap import (
    OssnapCalloutError,
    OssnapExistsError,
    OssnapNotFoundError,
    OssnapSystemError,
)
from ossnap.manager.plugins import Plugin

# Main btrfs executable
BTRFS_CMD = "btrfs"

# btrfs command groups
BTRFS_SUBVOLUME = "subvolume"
BTRFS_FILESYSTEM = "filesystem"

# btrfs subvolume subcommands
BTRFS_SNAPSHOT = "snapshot"
BTRFS_CREATE = "create"
BTRFS_DELETE = "delete"
BTRFS_SHOW = "show"
BTRFS_SET_DEFAULT = "set-default"

#: Key for the subvolume identifier in ``btrfs subvolume show`` output.
BTRFS_SUBVOLUME_ID = "Subvolume ID"

_FS_UUID_RE = re.compile(r"\buuid:\s*(?P<uuid>[0-9a-fA-F-]{36})")


def _decode_stderr(err):
    """
    Decode and strip the stderr member of a ``CalledProcessError`` and
    return the result as a string.

    :param err: A ``CalledProcessError`` like exception.
    :returns: A stripped string representation of the exception's stderr
              member.
    """
    if err.stderr is None:
        return ""
    return err.stderr.decode("utf8").strip()


def _check_btrfs_present():
    """
    Check for the presence of the btrfs command.

    :raises: ``OssnapNotFoundError`` if the btrfs command is not found.
    """
    if not which(BTRFS_CMD):
        raise OssnapNotFoundError("btrfs command not found")


class Btrfs(Plugin):
    """
    Btrfs subvolume storage engine.
    """

    def __init__(self, logger):
        super().__init__(logger)
        _check_btrfs_present()
        self._env = dict(environ, LC_ALL="C", LANG="C")

    def _run(self, cmd_args):
        """
        Run the btrfs command ``cmd_args`` with a sanitized locale and return
        its decoded standard output.

        :param cmd_args: The btrfs command and its arguments.
        :raises: ``OssnapCalloutError`` if the command fails.
        """
        self._log_debug("Calling %s", " ".join(cmd_args))
        try:
            btrfs_cmd = run(cmd_args, capture_output=True, check=True, env=self._env)
        except CalledProcessError as err:
            raise OssnapCalloutError(
                f"{' '.join(cmd_args[:3])} failed with: {_decode_stderr(err)}"
            ) from err
        return btrfs_cmd.stdout.decode("utf8")

    def snapshot_subvolume(self, source, dest):
        self._log_debug("Snapshotting subvolume %s to %s", source, dest)
        self._run([BTRFS_CMD, BTRFS_SUBVOLUME, BTRFS_SNAPSHOT, source, dest])

    def create_subvolume(self, path):
        self._log_debug("Creating subvolume %s", path)
        self._run([BTRFS_CMD, BTRFS_SUBVOLUME, BTRFS_CREATE, path])

    def delete_subvolume(self, path):
        self._log_debug("Deleting subvolume %s", path)
        self._run([BTRFS_CMD, BTRFS_SUBVOLUME, BTRFS_DELETE, path])

    def move_subvolume(self, source, dest):
        """
        Move the subvolume at ``source`` to ``dest``. Btrfs subvolumes are
        renamed like directories, so this is a plain ``rename(2)``.
        """
        self._log_debug("Moving subvolume %s to %s", source, dest)
        # rename(2) silently replaces an empty directory at dest.
        if lexists(dest):
            raise OssnapExistsError(f"Subvolume {dest} already exists")
        try:
            rename(source, dest)
        except FileNotFoundError as err:
            raise OssnapNotFoundError(f"Subvolume {source} not found: {err}") from err
        except (FileExistsError, IsADirectoryError) as err:
            raise OssnapExistsError(f"Subvolume {dest} already exists: {err}") from err
        except OSError as err:
            raise OssnapSystemError(
                f"Failed to move subvolume {source} to {dest}: {err}"
            ) from err

    def subvolume_id(self, path):
        output = self._run([BTRFS_CMD, BTRFS_SUBVOLUME, BTRFS_SHOW, path])
        for line in output.splitlines():
            key, _, value = line.strip().partition(":")
            if key.strip() == BTRFS_SUBVOLUME_ID:
                try:
                    return int(value.strip())
                except ValueError as err:
                    raise OssnapCalloutError(
                        f"Malformed subvolume ID for {path}: {value.strip()}"
                    ) from err
        raise OssnapCalloutError(f"Could not find subvolume ID for {path}")

    def set_default_subvolume(self, subvolume_id, mount_point):
        self._log_debug(
            "Setting default subvolume of %s to %d", mount_point, subvolume_id
        )
        self._run(
            [
                BTRFS_CMD,
                BTRFS_SUBVOLUME,
                BTRFS_SET_DEFAULT,
                str(subvolume_id),
                mount_point,
            ]
        )

    def filesystem_uuid(self, mount_point):
        output = self._run([BTRFS_CMD, BTRFS_FILESYSTEM, BTRFS_SHOW, mount_point])
        match = _FS_UUID_RE.search(output)
        if not match:
            raise OssnapCalloutError(
                f"Could not find file system UUID for {mount_point}"
            )
        return match.group("uuid")


__all__ = [
    "Btrfs",
]
