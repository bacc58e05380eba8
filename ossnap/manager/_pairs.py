# Copyright Red Hat
#
# ossnap/manager/_pairs.py - Snapshot pair operations
#
# This file is part of the ossnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Pair level wrappers around the single subvolume storage primitives.

Every operation is applied to the root half and then to the home half. A
failure on the second half leaves a partial pair behind: it is reported and
re-raised, never rolled back.
"""
from typing import Optional
import logging

from ossnap import (
    OSSNAP_SUBSYSTEM_MANAGER,
    FACTORY_NAME,
    LIVE_NAME,
    PAIR_HALVES,
    OssnapError,
    OssnapExistsError,
    OssnapProtectedError,
    PairRef,
    is_live_name,
)

from ._registry import validate_name

_log = logging.getLogger(__name__)

_log_info = _log.info
_log_error = _log.error


def _log_debug_manager(msg, *args, **kwargs):
    """A wrapper for manager subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": OSSNAP_SUBSYSTEM_MANAGER}, **kwargs)


def _report_partial(operation, done, failed, err):
    """
    Log the leftover state of a pair operation that failed after changing
    one or more halves.
    """
    if not done:
        return
    _log_error(
        "%s failed on %s after completing %s: manual cleanup required (%s)",
        operation,
        failed,
        ", ".join(done),
        err,
    )


class PairOps:
    """
    Create, delete and rename snapshot pairs.
    """

    def __init__(self, engine, registry):
        """
        Initialise a new ``PairOps``.

        :param engine: The storage engine ``Plugin`` instance.
        :param registry: The ``Registry`` for the mounted volume.
        """
        self.engine = engine
        self.registry = registry
        self.mount_point = registry.mount_point

    def snapshot_halves(self, source: PairRef, dest: PairRef):
        """
        Snapshot both halves of ``source`` into ``dest`` without any name
        checks.
        """
        done = []
        for kind in PAIR_HALVES:
            try:
                self.engine.snapshot_subvolume(
                    source.path(self.mount_point, kind),
                    dest.path(self.mount_point, kind),
                )
            except OssnapError as err:
                _report_partial("Snapshot", done, dest.subvolume(kind), err)
                raise
            done.append(dest.subvolume(kind))

    def move_halves(self, source: PairRef, dest: PairRef):
        """
        Move both halves of ``source`` to ``dest`` without any name checks.
        """
        done = []
        for kind in PAIR_HALVES:
            try:
                self.engine.move_subvolume(
                    source.path(self.mount_point, kind),
                    dest.path(self.mount_point, kind),
                )
            except OssnapError as err:
                _report_partial("Rename", done, source.subvolume(kind), err)
                raise
            done.append(f"{source.subvolume(kind)} -> {dest.subvolume(kind)}")

    def create_pair(self, source: Optional[str], dest: str):
        """
        Snapshot pair ``source`` (the live system if ``None``) as ``dest``.

        :param source: The pair to snapshot, or ``None`` for the live system.
        :param dest: The name of the new pair.
        :raises: ``OssnapInvalidIdentifierError``, ``OssnapNotFoundError``,
                 ``OssnapExistsError`` or a storage engine error.
        """
        source = LIVE_NAME if is_live_name(source) else source
        validate_name(dest)
        self.registry.assert_exists(source)
        self.registry.assert_absent(dest)

        _log_debug_manager("Creating pair %s from %s", dest, PairRef(source))
        self.snapshot_halves(PairRef(source), PairRef(dest))
        _log_info("Created snapshot pair %s from %s", dest, PairRef(source))

    def delete_pair(self, name: str):
        """
        Delete both halves of pair ``name``.

        :param name: The pair to delete.
        :raises: ``OssnapProtectedError`` for ``factory`` or the live system,
                 ``OssnapNotFoundError`` if the pair does not exist.
        """
        if name == FACTORY_NAME:
            raise OssnapProtectedError(
                f"Refusing to delete the '{FACTORY_NAME}' snapshot pair"
            )
        if is_live_name(name):
            raise OssnapProtectedError("Refusing to delete the live system")
        self.registry.assert_exists(name)

        pair = PairRef(name)
        done = []
        for kind in PAIR_HALVES:
            try:
                self.engine.delete_subvolume(pair.path(self.mount_point, kind))
            except OssnapError as err:
                _report_partial("Delete", done, pair.subvolume(kind), err)
                raise
            done.append(pair.subvolume(kind))
        _log_info("Deleted snapshot pair %s", name)

    def rename_pair(self, source: str, dest: str):
        """
        Rename pair ``source`` to ``dest``.

        :param source: The pair to rename.
        :param dest: The new name.
        :raises: ``OssnapNotFoundError`` if ``source`` does not exist,
                 ``OssnapExistsError`` if either half of ``dest`` exists.
        """
        if is_live_name(source):
            raise OssnapProtectedError(
                "Refusing to rename the live system: use 'create' or 'restore'"
            )
        self.registry.assert_exists(source)
        validate_name(dest)
        if source == dest:
            raise OssnapExistsError(f"Snapshot pair '{dest}' already exists")
        self.registry.assert_absent(dest)

        self.move_halves(PairRef(source), PairRef(dest))
        _log_info("Renamed snapshot pair %s to %s", source, dest)


__all__ = [
    "PairOps",
]
