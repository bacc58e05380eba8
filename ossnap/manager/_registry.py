# Copyright Red Hat
#
# ossnap/manager/_registry.py - Snapshot pair name registry
#
# This file is part of the ossnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Snapshot pair enumeration and name validation.
"""
from typing import Iterator, List
import logging
import os

from ossnap import (
    OSSNAP_SUBSYSTEM_MANAGER,
    OSSNAP_VALID_NAME_CHARS,
    BACKUP_PREFIX,
    FACTORY_SENTINEL,
    UNKNOWN_VERSION,
    PAIR_HALVES,
    OssnapExistsError,
    OssnapNotFoundError,
    OssnapInvalidIdentifierError,
    HalfKind,
    PairRef,
    pair_name_from_subvolume,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_warn = _log.warning


def _log_debug_manager(msg, *args, **kwargs):
    """A wrapper for manager subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": OSSNAP_SUBSYSTEM_MANAGER}, **kwargs)


#: Release metadata files searched for ``VERSION_ID``, relative to a root half.
_OS_RELEASE_PATHS = ("etc/os-release", "usr/lib/os-release")

#: Release metadata key holding the OS version.
_VERSION_ID_KEY = "VERSION_ID="


def validate_name(name: str):
    """
    Validate a snapshot pair name for a pair that is about to be created.

    :param name: The base name to validate.
    :raises: ``OssnapInvalidIdentifierError`` if the name fails validation.
    """
    if not name:
        raise OssnapInvalidIdentifierError("Snapshot pair name cannot be empty")
    if name in (".", ".."):
        raise OssnapInvalidIdentifierError(f"Snapshot pair name cannot be '{name}'")
    for char in name:
        if char not in OSSNAP_VALID_NAME_CHARS:
            raise OssnapInvalidIdentifierError(
                f"Snapshot pair name cannot include '{char}'"
            )
    if name.startswith(BACKUP_PREFIX):
        raise OssnapInvalidIdentifierError(
            f"Snapshot pair names starting with '{BACKUP_PREFIX}' are reserved "
            "for automatic backups"
        )


class Registry:
    """
    View of the snapshot pairs present in a mounted top-level volume.

    The registry holds no state of its own: every query reads the volume.
    """

    def __init__(self, engine, mount_point: str):
        """
        Initialise a new ``Registry``.

        :param engine: The storage engine ``Plugin`` instance.
        :param mount_point: The mount point of the top-level volume.
        """
        self.engine = engine
        self.mount_point = mount_point

    def _half_exists(self, pair: PairRef, kind: HalfKind) -> bool:
        return os.path.isdir(pair.path(self.mount_point, kind))

    def list(self) -> Iterator[str]:
        """
        Generate the base names of every pair with both halves present, in
        directory enumeration order. Each call starts a new enumeration.
        """
        for subvolume in self.engine.list_subvolumes(self.mount_point):
            name = pair_name_from_subvolume(subvolume)
            if name is None:
                continue
            if self._half_exists(PairRef(name), HalfKind.HOME):
                yield name
            else:
                _log_debug_manager("Ignoring partial pair %s", name)

    def backups(self) -> List[str]:
        """
        Return the names of automatic live system backups, oldest first.
        """

        def _timestamp(name):
            try:
                return int(name.removeprefix(BACKUP_PREFIX))
            except ValueError:
                return 0

        names = [name for name in self.list() if name.startswith(BACKUP_PREFIX)]
        return sorted(names, key=lambda name: (_timestamp(name), name))

    def exists(self, name: str) -> bool:
        """
        Test whether both halves of pair ``name`` exist.
        """
        pair = PairRef(name)
        return all(self._half_exists(pair, kind) for kind in PAIR_HALVES)

    def assert_exists(self, name: str):
        """
        Raise ``OssnapNotFoundError`` unless both halves of ``name`` exist.
        """
        if not self.exists(name):
            raise OssnapNotFoundError(f"Snapshot pair '{PairRef(name)}' not found")

    def assert_absent(self, name: str):
        """
        Raise ``OssnapExistsError`` if either half of ``name`` exists.
        """
        pair = PairRef(name)
        for kind in PAIR_HALVES:
            if self._half_exists(pair, kind):
                raise OssnapExistsError(
                    f"Subvolume '{pair.subvolume(kind)}' already exists"
                )

    def os_version_of(self, name: str) -> str:
        """
        Return the ``VERSION_ID`` of the OS installed in the root half of
        pair ``name``, or ``"???"`` if it cannot be determined.
        """
        root = PairRef(name).path(self.mount_point, HalfKind.ROOT)
        for rel_path in _OS_RELEASE_PATHS:
            release_path = os.path.join(root, rel_path)
            try:
                with open(release_path, "r", encoding="utf8") as fp:
                    for line in fp:
                        if line.startswith(_VERSION_ID_KEY):
                            value = line.removeprefix(_VERSION_ID_KEY).strip()
                            return value.strip("\"'") or UNKNOWN_VERSION
            except OSError as err:
                _log_debug("Cannot read %s: %s", release_path, err)
                continue
            except UnicodeDecodeError as err:
                _log_warn("Malformed release file %s: %s", release_path, err)
                continue
        return UNKNOWN_VERSION

    def is_factory_like(self, name: str) -> bool:
        """
        Test whether pair ``name`` has not yet been initialized by a user.
        """
        home = PairRef(name).path(self.mount_point, HalfKind.HOME)
        return not os.path.exists(os.path.join(home, FACTORY_SENTINEL))


__all__ = [
    "Registry",
    "validate_name",
]
