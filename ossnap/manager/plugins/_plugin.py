# Copyright Red Hat
#
# ossnap/manager/plugins/_plugin.py - Storage engine plugin interface
#
# This file is part of the ossnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Storage engine plugin interface.
"""
from typing import Iterator
import os


class Plugin:
    """
    Abstract base class for copy-on-write storage engine plugins.

    Every primitive operates on a single subvolume and is assumed to be
    atomic at that granularity: pair level ordering and error policy are
    implemented by the callers.
    """

    def __init__(self, logger):
        self.logger = logger

    def _log_error(self, *args):
        """
        Log at error level.
        """
        self.logger.error(*args)

    def _log_warn(self, *args):
        """
        Log at warning level.
        """
        self.logger.warning(*args)

    def _log_info(self, *args):
        """
        Log at info level.
        """
        self.logger.info(*args)

    def _log_debug(self, *args):
        """
        Log at debug level.
        """
        self.logger.debug(*args)

    def list_subvolumes(self, mount_point: str) -> Iterator[str]:
        """
        Generate the names of the top-level subvolume directories found at
        ``mount_point``, in native directory enumeration order.

        :param mount_point: The mount point of the top-level volume.
        """
        with os.scandir(mount_point) as entries:
            for entry in entries:
                if entry.is_dir(follow_symlinks=False):
                    yield entry.name

    def snapshot_subvolume(self, source: str, dest: str):
        """
        Create a writable snapshot of the subvolume at ``source`` at the
        path ``dest``.

        :param source: The path of the subvolume to snapshot.
        :param dest: The path of the new snapshot subvolume.
        """
        raise NotImplementedError

    def create_subvolume(self, path: str):
        """
        Create a new, empty subvolume at ``path``.

        :param path: The path of the subvolume to create.
        """
        raise NotImplementedError

    def delete_subvolume(self, path: str):
        """
        Delete the subvolume at ``path``.

        :param path: The path of the subvolume to delete.
        """
        raise NotImplementedError

    def move_subvolume(self, source: str, dest: str):
        """
        Move the subvolume at ``source`` to ``dest`` in place.

        :param source: The current path of the subvolume.
        :param dest: The new path of the subvolume.
        """
        raise NotImplementedError

    def subvolume_id(self, path: str) -> int:
        """
        Return the storage engine's internal identifier for the subvolume at
        ``path``.

        :param path: The path of the subvolume to look up.
        :returns: The subvolume identifier.
        """
        raise NotImplementedError

    def set_default_subvolume(self, subvolume_id: int, mount_point: str):
        """
        Make the subvolume ``subvolume_id`` the default subvolume of the
        file system mounted at ``mount_point``.

        :param subvolume_id: The identifier returned by ``subvolume_id()``.
        :param mount_point: A path on the file system to modify.
        """
        raise NotImplementedError

    def filesystem_uuid(self, mount_point: str) -> str:
        """
        Return the UUID reported by the file system mounted at
        ``mount_point``.

        :param mount_point: A path on the file system to query.
        :returns: The file system UUID as a string.
        """
        raise NotImplementedError


__all__ = [
    "Plugin",
]
