# Copyright Red Hat
#
# ossnap/manager/_mounts.py - OS snapshot pair manager mount support
#
# This file is part of the ossnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Mount integration for the snapshot pair manager
"""
from subprocess import run, CalledProcessError, TimeoutExpired
from typing import Iterable, List, Optional, Union
import collections
import logging
import shlex
import os.path
import os

from ossnap import (
    OSSNAP_SUBSYSTEM_MOUNTS,
    ROOT_SUFFIX,
    OssnapError,
    OssnapNotFoundError,
    OssnapCalloutError,
    OssnapSystemError,
    OssnapArgumentError,
    OssnapMountError,
    OssnapUmountError,
    get_device_path,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_mounts(msg, *args, **kwargs):
    """A wrapper for mounts subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": OSSNAP_SUBSYSTEM_MOUNTS}, **kwargs)


#: Path to /proc/self/mounts
PROC_MOUNTS = "/proc/self/mounts"

#: API file systems bound into a chroot, in mount order.
_BIND_MOUNTS: List[str] = [
    "/sys",
    "/dev",
    "/proc",
]

#: Mount options selecting the btrfs top-level volume.
_TOP_LEVEL_OPTIONS = "subvolid=5"

#: File system type of the backing partition.
_BACKING_FSTYPE = "btrfs"

#: Timeout for mount helper programs
_OSSNAP_MOUNT_HELPER_TIMEOUT = int(os.getenv("OSSNAP_MOUNT_TIMEOUT", "60"))


def _resolve_device(device: str) -> str:
    """
    Resolve a device that may be in the form of a LABEL=... or UUID=...
    expression into a device path. If the device is neither a UUID nor
    a label reference it is returned unmodified.

    :param device: The device string to evaluate; '/dev/...', 'LABEL=...',
                   or 'UUID=...'.
    :returns: The device path.
    :rtype: ``str``
    """
    if device.startswith("UUID="):
        uuid = device.split("=", maxsplit=1)[1]
        resolved = get_device_path("uuid", uuid)
        if resolved is None:
            raise OssnapNotFoundError(f"Device with UUID '{uuid}' not found")
        device = resolved
    elif device.startswith("LABEL="):
        label = device.split("=", maxsplit=1)[1]
        resolved = get_device_path("label", label)
        if resolved is None:
            raise OssnapNotFoundError(f"Device with label '{label}' not found")
        device = resolved
    elif device.startswith("PARTUUID="):
        ident = device.split("=", maxsplit=1)[1]
        cand = f"/dev/disk/by-partuuid/{ident}"
        if not os.path.exists(cand):
            raise OssnapNotFoundError(f"Device with PARTUUID '{ident}' not found")
        device = cand
    elif device.startswith("PARTLABEL="):
        ident = device.split("=", maxsplit=1)[1]
        cand = f"/dev/disk/by-partlabel/{ident}"
        if not os.path.exists(cand):
            raise OssnapNotFoundError(f"Device with PARTLABEL '{ident}' not found")
        device = cand
    return device


def _mount(
    what: str,
    where: str,
    fstype: Optional[str] = None,
    options: str = "defaults",
    rbind: bool = False,
    rprivate: bool = False,
):
    """
    Call the mount program to mount a file system.

    :param what: The source for the mount operation.
    :param where: The path to the mount point.
    :param fstype: An optional file system type.
    :param options: Options to pass to the mount program.
    :param rbind: Perform a recursive bind mount.
    :param rprivate: Make the mount point private recursively.
    """
    mount_cmd = ["mount"]

    if not rbind:
        what = _resolve_device(what)

    if fstype:
        mount_cmd.extend(["--type", fstype])
    if rbind:
        mount_cmd.append("--rbind")
    if rprivate:
        mount_cmd.append("--make-rprivate")

    mount_cmd.extend(["--options", options, what, where])
    _log_debug_mounts("Calling %s", " ".join(mount_cmd))

    try:
        run(
            mount_cmd,
            check=True,
            capture_output=True,
            encoding="utf8",
            timeout=_OSSNAP_MOUNT_HELPER_TIMEOUT,
        )
    except TimeoutExpired as err:
        raise OssnapCalloutError(
            f"Timed out calling mount for {what} -> {where}: {err}"
        ) from err
    except CalledProcessError as err:
        raise OssnapMountError(what, where, err.returncode, err.stderr) from err


def _umount(where: str):
    """
    Call the umount program to unmount a file system.

    :param where: The mount point to be unmounted.
    """
    umount_cmd = ["umount", where]
    _log_debug_mounts("Calling %s", " ".join(umount_cmd))
    try:
        run(
            umount_cmd,
            check=True,
            capture_output=True,
            encoding="utf8",
            timeout=_OSSNAP_MOUNT_HELPER_TIMEOUT,
        )
    except TimeoutExpired as err:
        raise OssnapCalloutError(
            f"Timed out calling umount for {where}: {err}"
        ) from err
    except CalledProcessError as err:
        raise OssnapUmountError(where, err.returncode, err.stderr) from err


class ProcMountsReader:
    """Reader for /proc/mounts format files."""

    MountsEntry = collections.namedtuple(
        "MountsEntry", ["what", "where", "fstype", "options", "freq", "passno"]
    )

    def __init__(self, path=PROC_MOUNTS):
        """Initialize with the path to a mounts file.

        :param path: Path to the mounts file (e.g., '/proc/mounts')
        """
        self.path = path

    def submounts(self, root):
        """Iterate over submounts under the given mount point root.

        :param root: The mount point root (e.g., '/mnt/ossnap/@/dev')
        :returns: Yields ``MountsEntry`` objects for submounts under root.
        """
        root_prefix = root.rstrip("/") + "/"
        with open(self.path, "r", encoding="utf8") as fp:
            for line in fp:
                line = line.strip()
                if not line:
                    continue

                parts = line.split()
                if len(parts) == 6:
                    entry = self.MountsEntry(*parts)
                    if entry.where.startswith(root_prefix):
                        yield entry
                else:
                    _log_warn("Skipping malformed %s line: %s", self.path, line)


def _umount_tree(where: str):
    """
    Unmount ``where`` and every mount nested below it, deepest first.

    :param where: The top of the mount tree to remove.
    """
    pmr = ProcMountsReader()
    submounts = [mnt.where for mnt in pmr.submounts(where)]
    submounts.sort(key=lambda mp: mp.count("/"), reverse=True)
    for submount in submounts:
        _log_debug_mounts("Attempting to unmount %s", submount)
        _umount(submount)
    _umount(where)


class MountSession:
    """
    Scoped mount of the backing partition's top-level volume at the
    configured mount point.

    Use as a context manager: the volume is mounted on entry and always
    unmounted on exit, including when the body raises.
    """

    def __init__(self, config):
        """
        Initialise a new ``MountSession``.

        :param config: The ``OssnapConfig`` naming the partition and the
                       mount point.
        """
        self.partition = config.partition
        self.root = config.mount_point
        self.acquired = False

    @property
    def mounted(self):
        """
        ``True`` if a file system is mounted at the session mount point.
        """
        return os.path.ismount(self.root)

    def acquire(self):
        """
        Mount the top-level volume of the backing partition at ``self.root``,
        replacing any stale mount left at that path.
        """
        try:
            os.makedirs(self.root, exist_ok=True)
        except OSError as err:
            raise OssnapSystemError(
                f"Failed to create mount point {self.root}: {err}"
            ) from err

        if self.mounted:
            _log_warn("Unmounting stale mount at %s", self.root)
            _umount(self.root)

        _mount(
            self.partition,
            self.root,
            fstype=_BACKING_FSTYPE,
            options=_TOP_LEVEL_OPTIONS,
        )
        self.acquired = True
        _log_debug_mounts("Mounted %s at %s", self.partition, self.root)

        # Listing the top level and the live root forces the kernel to
        # notice a nested default subvolume.
        for path in (self.root, os.path.join(self.root, ROOT_SUFFIX)):
            try:
                os.listdir(path)
            except OSError as err:
                _log_debug_mounts("Settle listing of %s failed: %s", path, err)

    def release(self):
        """
        Unmount the top-level volume from ``self.root``.
        """
        if not self.acquired:
            return
        _log_debug_mounts("Unmounting %s", self.root)
        self.acquired = False
        _umount(self.root)

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is None:
            self.release()
            return False
        try:
            self.release()
        except OssnapError as err:
            _log_error("Failed to release mount at %s: %s", self.root, err)
        return False


class ChrootMount:
    """
    A root file system tree with the host API file systems bound into it.

    Use as a context manager: ``/sys``, ``/dev`` and ``/proc`` are bound on
    entry and unbound in reverse order on exit.
    """

    def __init__(self, root: str, name: str):
        """
        Initialise a new ``ChrootMount``.

        :param root: The absolute path of the root file system tree.
        :param name: A name for the tree used in log messages.
        :raises OssnapNotFoundError: If ``root`` is not a directory.
        """
        if not os.path.isdir(root):
            raise OssnapNotFoundError(f"Root path {root} is not a directory.")
        self.root = root
        self.name = name
        self._bound: List[str] = []

    def bind(self):
        """
        Bind the host API file systems into ``self.root``.
        """
        try:
            for what in _BIND_MOUNTS:
                where = os.path.join(self.root, what.lstrip("/"))
                if not os.path.isdir(where):
                    _log_warn(
                        "Bind mount point %s does not exist in %s, skipping mount",
                        where,
                        self.name,
                    )
                    continue
                _mount(what, where, rbind=True, rprivate=True)
                self._bound.append(where)
        except OssnapError as err:
            _log_warn("Bind mounts failed for %s: %s. Rolling back.", self.name, err)
            self.unbind()
            raise

    def unbind(self):
        """
        Unbind the API file systems in reverse order of binding. Every bound
        path is attempted even if an earlier one fails; the first failure
        is raised after all attempts.
        """
        first_err = None
        while self._bound:
            where = self._bound.pop()
            try:
                _umount_tree(where)
            except OssnapError as err:
                _log_error("Failed to unbind %s: %s", where, err)
                first_err = first_err or err
        if first_err:
            raise first_err

    def __enter__(self):
        self.bind()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is None:
            self.unbind()
            return False
        try:
            self.unbind()
        except OssnapError as err:
            _log_error("Failed to clean up chroot mounts for %s: %s", self.name, err)
        return False

    def exec(self, command: Union[str, Iterable[str]]) -> int:
        """
        Execute a ``command`` chrooted inside this tree.

        :param command: A command and its arguments, or a string suitable
                        for passing to ``shlex.split()``.
        :returns: The exit status of the command.
        """
        if isinstance(command, str):
            try:
                cmd_args = shlex.split(command)
            except ValueError as err:
                raise OssnapArgumentError(
                    f"Cannot parse command string: {command}"
                ) from err
        else:
            cmd_args = list(command)

        chroot_cmd = ["chroot", self.root] + cmd_args
        _log_debug_mounts("Invoking chroot command: %s", " ".join(chroot_cmd))
        try:
            status = run(chroot_cmd, check=False)
        except FileNotFoundError as err:  # pragma: no cover
            _log_error("Failed to execute chroot command: %s", err)
            return 127
        return status.returncode


__all__ = [
    "MountSession",
    "ChrootMount",
    "ProcMountsReader",
]
