# Copyright Red Hat
#
# ossnap/manager/_switch.py - Live system switch-over engine
#
# This file is part of the ossnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Switch-over of the live system to another snapshot pair.

A restore backs the live pair up as ``saved-<timestamp>``, snapshots the
target pair into the live ``@``/``@home`` slots and then repairs the boot
configuration of the promoted root:

1. the promoted ``@`` subvolume becomes the default subvolume,
2. the restore hooks shipped inside the promoted root are run, and
3. the file system UUID in the promoted root's ``etc/fstab`` is updated.

Failures after the live pair has been touched are not rolled back: they are
raised as ``OssnapStateError`` so that the operator can repair the volume by
hand.
"""
from dataclasses import dataclass
from typing import Callable, List, Optional
from enum import Enum
import logging
import shutil
import time
import os

from ossnap import (
    OSSNAP_SUBSYSTEM_SWITCH,
    BACKUP_PREFIX,
    LIVE_NAME,
    PAIR_HALVES,
    OssnapError,
    OssnapArgumentError,
    OssnapNotFoundError,
    OssnapStateError,
    OssnapSystemError,
    FsTabReader,
    HalfKind,
    PairRef,
    is_live_name,
)

from ._mounts import ChrootMount

_log = logging.getLogger(__name__)

_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_switch(msg, *args, **kwargs):
    """A wrapper for switch subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": OSSNAP_SUBSYSTEM_SWITCH}, **kwargs)


#: Restore hook directory, relative to the promoted root.
RESTORE_HOOKS_DIR = "usr/lib/ossnap/restore.d"

#: Boot mount table, relative to the promoted root.
FSTAB_PATH = "etc/fstab"

_UUID_PREFIX = "UUID="


class SwitchState(Enum):
    """
    Switch-over engine states.
    """

    IDLE = "idle"
    BACKING_UP = "backing up the live system"
    PROMOTING = "promoting the target pair"
    REPAIRING_BOOT = "repairing the boot configuration"
    FAILED = "failed"

    def __str__(self):
        return self.value


@dataclass
class HookResult:
    """
    Outcome of one restore hook.
    """

    name: str
    status: int
    error: Optional[str] = None

    @property
    def ok(self):
        """
        ``True`` if the hook ran and exited with status zero.
        """
        return self.error is None and self.status == 0


def find_restore_hooks(root: str) -> List[str]:
    """
    Return the names of the executable restore hooks in ``root``, sorted.

    :param root: The root file system tree to search.
    """
    hooks_dir = os.path.join(root, RESTORE_HOOKS_DIR)
    if not os.path.isdir(hooks_dir):
        return []
    hooks = []
    for name in sorted(os.listdir(hooks_dir)):
        path = os.path.join(hooks_dir, name)
        if os.path.isfile(path) and os.access(path, os.X_OK):
            hooks.append(name)
        else:
            _log_debug_switch("Skipping non-executable hook %s", path)
    return hooks


def run_restore_hooks(root: str, name: str) -> List[HookResult]:
    """
    Run every restore hook found in ``root`` chrooted into ``root`` with the
    host API file systems bound in. A failing hook is logged and the
    remaining hooks still run; hook failures are never raised.

    :param root: The promoted root file system tree.
    :param name: A name for the tree used in log messages.
    :returns: A list of ``HookResult`` values, one per hook.
    """
    hooks = find_restore_hooks(root)
    if not hooks:
        _log_debug_switch("No restore hooks found in %s", root)
        return []

    results = []
    with ChrootMount(root, name) as chroot:
        for hook in hooks:
            hook_path = os.path.join("/", RESTORE_HOOKS_DIR, hook)
            _log_info("Running restore hook %s", hook)
            try:
                status = chroot.exec([hook_path])
            except (OSError, OssnapError) as err:
                results.append(HookResult(hook, -1, str(err)))
                continue
            results.append(HookResult(hook, status))

    for result in results:
        if not result.ok:
            _log_warn(
                "Restore hook %s failed (status=%d)%s",
                result.name,
                result.status,
                f": {result.error}" if result.error else "",
            )
    return results


def repair_fstab_uuid(fstab_path: str, fs_uuid: str) -> bool:
    """
    Replace the file system UUID referenced by the root entry of the fstab
    at ``fstab_path`` with ``fs_uuid``.

    The file is edited textually: every occurrence of the old UUID is
    replaced. If the UUIDs already match the file is left untouched.

    :param fstab_path: Path to the fstab of the promoted root.
    :param fs_uuid: The UUID reported by the file system.
    :returns: ``True`` if the file was rewritten.
    """
    try:
        fstab = FsTabReader(fstab_path)
    except OssnapNotFoundError:
        _log_warn("No fstab found at %s: skipping UUID repair", fstab_path)
        return False

    old_uuid = None
    for entry in fstab.lookup("where", "/"):
        if entry.what.startswith(_UUID_PREFIX):
            old_uuid = entry.what.removeprefix(_UUID_PREFIX)
            break

    if not old_uuid:
        _log_warn("No UUID= root entry in %s: skipping UUID repair", fstab_path)
        return False

    if old_uuid == fs_uuid:
        _log_debug_switch("Root UUID in %s is up to date (%s)", fstab_path, fs_uuid)
        return False

    _log_info("Updating %s root UUID from %s to %s", fstab_path, old_uuid, fs_uuid)
    tmp_path = f"{fstab_path}.ossnap.tmp"
    try:
        with open(fstab_path, "r", encoding="utf8") as fp:
            content = fp.read()
        with open(tmp_path, "w", encoding="utf8") as fp:
            fp.write(content.replace(old_uuid, fs_uuid))
        shutil.copymode(fstab_path, tmp_path)
        os.replace(tmp_path, fstab_path)
    except OSError as err:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise OssnapSystemError(f"Failed to update {fstab_path}: {err}") from err
    return True


class SwitchOver:
    """
    State machine promoting a snapshot pair to the live system.
    """

    def __init__(self, engine, registry, pair_ops, clock: Callable = time.time):
        """
        Initialise a new ``SwitchOver`` engine.

        :param engine: The storage engine ``Plugin`` instance.
        :param registry: The ``Registry`` for the mounted volume.
        :param pair_ops: The ``PairOps`` for the mounted volume.
        :param clock: A callable returning the current UNIX time.
        """
        self.engine = engine
        self.registry = registry
        self.pair_ops = pair_ops
        self.mount_point = registry.mount_point
        self.clock = clock
        self.state = SwitchState.IDLE
        self.hook_results: List[HookResult] = []

    def _enter(self, state: SwitchState):
        _log_debug_switch("Switch-over state %s -> %s", self.state.name, state.name)
        self.state = state

    def backup_name(self) -> str:
        """
        Return the name for a backup of the live system taken now.
        """
        return f"{BACKUP_PREFIX}{int(self.clock())}"

    def restore(self, target: str) -> str:
        """
        Make snapshot pair ``target`` the live system.

        :param target: The name of the pair to promote.
        :returns: The name of the backup taken of the previous live system.
        :raises: ``OssnapArgumentError`` if ``target`` is the live system,
                 ``OssnapNotFoundError`` if it does not exist,
                 ``OssnapExistsError`` if the backup name is taken, or
                 ``OssnapStateError`` if the switch-over fails part way.
        """
        if is_live_name(target):
            raise OssnapArgumentError("Cannot restore the live system onto itself")
        self.registry.assert_exists(target)
        self.registry.assert_exists(LIVE_NAME)

        backup = self.backup_name()
        self.registry.assert_absent(backup)

        live = PairRef(LIVE_NAME)
        self.hook_results = []
        try:
            self._enter(SwitchState.BACKING_UP)
            self.pair_ops.move_halves(live, PairRef(backup))
            _log_info("Saved live system as %s", backup)

            self._enter(SwitchState.PROMOTING)
            self.pair_ops.snapshot_halves(PairRef(target), live)
            _log_info("Promoted %s to live system", target)

            self._enter(SwitchState.REPAIRING_BOOT)
            self.repair_boot()
        except (OssnapError, OSError) as err:
            phase = self.state
            self._enter(SwitchState.FAILED)
            _log_error("Restore of %s failed while %s: %s", target, phase, err)
            raise OssnapStateError(
                f"Restore of '{target}' failed while {phase}: {err}. "
                f"The live system may be inconsistent (previous live system "
                f"saved as '{backup}' if the backup completed): manual "
                "intervention is required"
            ) from err

        self._enter(SwitchState.IDLE)
        return backup

    def repair_boot(self):
        """
        Point the default subvolume at the live root, run the restore hooks
        and fix the root UUID in the live root's fstab.
        """
        live = PairRef(LIVE_NAME)
        for kind in PAIR_HALVES:
            if not os.path.isdir(live.path(self.mount_point, kind)):
                raise OssnapNotFoundError(
                    f"Live subvolume '{live.subvolume(kind)}' missing after promotion"
                )

        root = live.path(self.mount_point, HalfKind.ROOT)

        subvolume_id = self.engine.subvolume_id(root)
        self.engine.set_default_subvolume(subvolume_id, self.mount_point)
        _log_info("Set default subvolume to %d (%s)", subvolume_id, root)

        self.hook_results = run_restore_hooks(root, str(live))

        fs_uuid = self.engine.filesystem_uuid(self.mount_point)
        repair_fstab_uuid(os.path.join(root, FSTAB_PATH), fs_uuid)


__all__ = [
    "SwitchState",
    "SwitchOver",
    "HookResult",
    "find_restore_hooks",
    "run_restore_hooks",
    "repair_fstab_uuid",
]
