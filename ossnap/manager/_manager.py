# Copyright Red Hat
#
# ossnap/manager/_manager.py - OS snapshot pair manager
#
# This file is part of the ossnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Manager interface and configuration.
"""
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass
from os.path import isabs, isdir, join
from typing import List, Optional, Tuple
from functools import wraps
from glob import glob
import logging
import os

from ossnap import (
    OSSNAP_SUBSYSTEM_MANAGER,
    LIVE_NAME,
    OssnapArgumentError,
    OssnapConfigError,
    HalfKind,
    PairRef,
    is_live_name,
)

from ._archive import ArchiveBridge
from ._mounts import MountSession, ChrootMount
from ._pairs import PairOps
from ._registry import Registry
from ._signals import suspend_signals
from ._switch import SwitchOver
from .plugins.btrfs import Btrfs

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_manager(msg, *args, **kwargs):
    """A wrapper for manager subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": OSSNAP_SUBSYSTEM_MANAGER}, **kwargs)


#: Default configuration fragment directory
OSSNAP_CONF_D_PATH = "/etc/ossnap/ossnap.conf.d"

#: Configuration fragment glob
_OSSNAP_CFG_GLOB = "*.conf"

#: Configuration section
_OSSNAP_CFG_GLOBAL = "Global"

#: Backing partition configuration key
_OSSNAP_CFG_PARTITION = "Partition"

#: Mount point configuration key
_OSSNAP_CFG_MOUNT_POINT = "MountPoint"

#: Environment override for the backing partition
OSSNAP_PARTITION_ENV = "OSSNAP_PARTITION"

#: Environment override for the mount point
OSSNAP_MOUNTPOINT_ENV = "OSSNAP_MOUNTPOINT"

#: Fallback interactive shell for ``enter``
_DEFAULT_SHELL = "/bin/bash"


@dataclass(frozen=True)
class OssnapConfig:
    """
    Manager configuration.
    """

    partition: str
    mount_point: str

    def __post_init__(self):
        if not self.partition:
            raise OssnapConfigError("Partition must not be empty")
        if not self.mount_point or not isabs(self.mount_point):
            raise OssnapConfigError(
                f"MountPoint must be an absolute path: '{self.mount_point}'"
            )

    @classmethod
    def from_dir(cls, config_dir: str = OSSNAP_CONF_D_PATH, environ=None):
        """
        Load ``OssnapConfig`` from the INI-style configuration fragments in
        ``config_dir``, applying environment overrides.

        Fragments named ``*.conf`` are read in lexical order; later values
        replace earlier ones. ``OSSNAP_PARTITION`` and ``OSSNAP_MOUNTPOINT``
        override values read from the files.

        :param config_dir: Path to the configuration fragment directory.
        :param environ: A mapping to read overrides from (``os.environ`` by
                        default).
        :returns: A new ``OssnapConfig`` instance.
        :raises: ``OssnapConfigError`` if a fragment cannot be parsed or a
                 value is missing.
        """
        environ = os.environ if environ is None else environ
        partition = None
        mount_point = None

        cfg = ConfigParser()
        if isdir(config_dir):
            fragments = sorted(glob(join(config_dir, _OSSNAP_CFG_GLOB)))
            _log_debug("Loading configuration from %s", ", ".join(fragments))
            try:
                cfg.read(fragments)
            except ConfigParserError as err:
                raise OssnapConfigError(
                    f"Error parsing configuration in {config_dir}: {err}"
                ) from err
        else:
            _log_debug("Configuration directory %s not found", config_dir)

        if cfg.has_section(_OSSNAP_CFG_GLOBAL):
            section = cfg[_OSSNAP_CFG_GLOBAL]
            partition = section.get(_OSSNAP_CFG_PARTITION)
            mount_point = section.get(_OSSNAP_CFG_MOUNT_POINT)

        partition = environ.get(OSSNAP_PARTITION_ENV) or partition
        mount_point = environ.get(OSSNAP_MOUNTPOINT_ENV) or mount_point

        missing = [
            key
            for key, value in (
                (_OSSNAP_CFG_PARTITION, partition),
                (_OSSNAP_CFG_MOUNT_POINT, mount_point),
            )
            if not value
        ]
        if missing:
            raise OssnapConfigError(
                f"Configuration incomplete: {', '.join(missing)} not set in "
                f"{config_dir} or the environment"
            )

        return cls(partition=partition.strip(), mount_point=mount_point.strip())


@dataclass(frozen=True)
class PairInfo:
    """
    Listing entry for one snapshot pair.
    """

    name: str
    version: str
    factory: bool

    def __str__(self):
        factory = ", factory" if self.factory else ""
        return f"{self.name} ({self.version}{factory})"


# pylint: disable=protected-access
def _with_mount_session(func):
    """
    Decorator for Manager methods that operate on the mounted top-level
    volume: exactly one ``MountSession`` is held for the duration of the
    call and released on every exit path.
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        # args[0] is self
        manager = args[0]
        with manager._session_class(manager.config) as session:
            _log_debug_manager("Acquired mount session at %s", session.root)
            try:
                return func(*args, **kwargs)
            finally:
                _log_debug_manager("Releasing mount session at %s", session.root)

    return wrapper


class Manager:
    """
    Snapshot pair manager high level interface.
    """

    def __init__(self, config: OssnapConfig, engine=None, session_class=None):
        """
        Initialise a new ``Manager``.

        :param config: The ``OssnapConfig`` to use.
        :param engine: A storage engine ``Plugin``; a ``Btrfs`` instance is
                       created if not given.
        :param session_class: The mount session class (``MountSession``).
        """
        self.config = config
        self.engine = engine if engine is not None else Btrfs(_log)
        self._session_class = session_class or MountSession
        self.mount_point = config.mount_point
        self.hook_results = []

    def _registry(self):
        return Registry(self.engine, self.mount_point)

    def _pair_ops(self):
        return PairOps(self.engine, self._registry())

    @_with_mount_session
    def list_pairs(self) -> List[PairInfo]:
        """
        Return a ``PairInfo`` for every snapshot pair, sorted by name.
        """
        registry = self._registry()
        return [
            PairInfo(name, registry.os_version_of(name), registry.is_factory_like(name))
            for name in sorted(registry.list())
        ]

    @suspend_signals
    @_with_mount_session
    def create_pair(self, source: Optional[str], dest: str):
        """
        Create snapshot pair ``dest`` from ``source``.

        :param source: The pair to snapshot, or ``None`` for the live system.
        :param dest: The name of the new pair.
        """
        self._pair_ops().create_pair(source, dest)

    @suspend_signals
    @_with_mount_session
    def delete_pair(self, name: str):
        """
        Delete snapshot pair ``name``.

        :param name: The pair to delete.
        """
        self._pair_ops().delete_pair(name)

    @suspend_signals
    @_with_mount_session
    def rename_pair(self, source: str, dest: str):
        """
        Rename snapshot pair ``source`` to ``dest``.

        :param source: The pair to rename.
        :param dest: The new name.
        """
        self._pair_ops().rename_pair(source, dest)

    @suspend_signals
    @_with_mount_session
    def restore(self, name: str) -> str:
        """
        Make snapshot pair ``name`` the live system.

        :param name: The pair to promote.
        :returns: The name of the backup of the previous live system.
        """
        registry = self._registry()
        switch = SwitchOver(self.engine, registry, PairOps(self.engine, registry))
        try:
            return switch.restore(name)
        finally:
            self.hook_results = switch.hook_results

    @_with_mount_session
    def enter(self, name: Optional[str] = None, command=None) -> int:
        """
        Run an interactive shell, or ``command``, chrooted into the root half
        of pair ``name``.

        :param name: The pair to enter, or ``None`` for the live system.
        :param command: An optional command to run instead of the shell.
        :returns: The exit status of the command.
        """
        name = LIVE_NAME if is_live_name(name) else name
        self._registry().assert_exists(name)
        pair = PairRef(name)
        if command is None:
            command = [os.environ.get("SHELL") or _DEFAULT_SHELL]
        root = pair.path(self.mount_point, HalfKind.ROOT)
        _log_info("Entering %s at %s", pair, root)
        with ChrootMount(root, str(pair)) as chroot:
            return chroot.exec(command)

    @suspend_signals
    @_with_mount_session
    def inject(self, rootfs_archive: str, homefs_archive: str, name: str):
        """
        Create snapshot pair ``name`` from a pair of archives.

        :param rootfs_archive: Path to the root half archive.
        :param homefs_archive: Path to the home half archive.
        :param name: The name of the new pair.
        """
        bridge = ArchiveBridge(self.engine, self._registry())
        bridge.inject(rootfs_archive, homefs_archive, name)

    @_with_mount_session
    def export(self, name: str, out_dir: str) -> Tuple[str, str]:
        """
        Export snapshot pair ``name`` as a pair of archives in ``out_dir``.

        :param name: The pair to export.
        :param out_dir: The output directory.
        :returns: The paths of the root and home archives.
        """
        return ArchiveBridge(self.engine, self._registry()).export(name, out_dir)

    @suspend_signals
    @_with_mount_session
    def purge(self, keep: int = 0) -> List[str]:
        """
        Delete automatic live system backups, keeping the newest ``keep``.

        :param keep: The number of backups to retain.
        :returns: The names of the deleted backups, oldest first.
        """
        if keep < 0:
            raise OssnapArgumentError(f"Backup count to keep must be >= 0: {keep}")
        registry = self._registry()
        pair_ops = PairOps(self.engine, registry)
        backups = registry.backups()
        doomed = backups[: max(len(backups) - keep, 0)]
        for name in doomed:
            pair_ops.delete_pair(name)
        _log_debug_manager(
            "Purged %d of %d backups (keep=%d)", len(doomed), len(backups), keep
        )
        return doomed


__all__ = [
    "OSSNAP_CONF_D_PATH",
    "OssnapConfig",
    "PairInfo",
    "Manager",
]
