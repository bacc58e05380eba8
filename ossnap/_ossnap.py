# Copyright Red Hat
#
# ossnap/_ossnap.py - OS snapshot pair manager global definitions
#
# This file is part of the ossnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Global definitions for the top-level ossnap package.
"""
from typing import Optional
from dataclasses import dataclass
from enum import Enum
import collections
import subprocess
import logging
import string
import os

_log = logging.getLogger("ossnap")

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

# Ossnap debugging subsystem mask (legacy interface)
OSSNAP_DEBUG_MANAGER = 1
OSSNAP_DEBUG_COMMAND = 2
OSSNAP_DEBUG_MOUNTS = 4
OSSNAP_DEBUG_SWITCH = 8
OSSNAP_DEBUG_ARCHIVE = 16
OSSNAP_DEBUG_ALL = (
    OSSNAP_DEBUG_MANAGER
    | OSSNAP_DEBUG_COMMAND
    | OSSNAP_DEBUG_MOUNTS
    | OSSNAP_DEBUG_SWITCH
    | OSSNAP_DEBUG_ARCHIVE
)

# Ossnap debugging subsystem names
OSSNAP_SUBSYSTEM_MANAGER = "ossnap.manager"
OSSNAP_SUBSYSTEM_COMMAND = "ossnap.command"
OSSNAP_SUBSYSTEM_MOUNTS = "ossnap.mounts"
OSSNAP_SUBSYSTEM_SWITCH = "ossnap.switch"
OSSNAP_SUBSYSTEM_ARCHIVE = "ossnap.archive"

_DEBUG_MASK_TO_SUBSYSTEM = {
    OSSNAP_DEBUG_MANAGER: OSSNAP_SUBSYSTEM_MANAGER,
    OSSNAP_DEBUG_COMMAND: OSSNAP_SUBSYSTEM_COMMAND,
    OSSNAP_DEBUG_MOUNTS: OSSNAP_SUBSYSTEM_MOUNTS,
    OSSNAP_DEBUG_SWITCH: OSSNAP_SUBSYSTEM_SWITCH,
    OSSNAP_DEBUG_ARCHIVE: OSSNAP_SUBSYSTEM_ARCHIVE,
}

_debug_subsystems = set()

ETC_FSTAB = "/etc/fstab"

#: Subvolume suffix of the root half of a pair.
ROOT_SUFFIX = "@"
#: Subvolume suffix of the home half of a pair.
HOME_SUFFIX = "@home"
#: Separator between a pair base name and the half suffix.
PAIR_SEPARATOR = "-"

#: Base name of the live system pair (``@``/``@home``).
LIVE_NAME = ""
#: Reserved pair name that can never be deleted.
FACTORY_NAME = "factory"
#: Prefix of the automatic backups taken by ``restore``.
BACKUP_PREFIX = "saved-"

#: Sentinel file in a home half marking a user-initialized pair.
FACTORY_SENTINEL = ".ossnap-initialized"

#: Placeholder reported when a pair OS version cannot be determined.
UNKNOWN_VERSION = "???"

# Constant for allow-listed name characters
OSSNAP_VALID_NAME_CHARS = set(
    string.ascii_lowercase + string.ascii_uppercase + string.digits + "+_.-"
)


class SubsystemFilter(logging.Filter):
    """
    Filters DEBUG records based on a set of enabled subsystem names.
    Non-DEBUG records or DEBUG records without a 'subsystem' attribute
    are always passed through.
    """

    def __init__(self, name=""):
        super().__init__(name)
        self.enabled_subsystems = set(_debug_subsystems)

    def filter(self, record):
        if record.levelno != logging.DEBUG:
            return True

        if not hasattr(record, "subsystem"):
            return True

        return record.subsystem in self.enabled_subsystems

    def set_debug_subsystems(self, subsystems):
        """Sets the collection of subsystems to allow."""
        self.enabled_subsystems = set(subsystems)


def get_debug_mask():
    """
    Return the current debug mask for the ``ossnap`` package.

    :returns: The current debug mask value
    :rtype: int
    """
    enabled_subsystems = set(_debug_subsystems)
    ossnap_log = logging.getLogger("ossnap")

    for handler in ossnap_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                enabled_subsystems.update(f.enabled_subsystems)

    mask_map = {v: k for k, v in _DEBUG_MASK_TO_SUBSYSTEM.items()}
    mask = 0
    for subsystem_name in enabled_subsystems:
        mask |= mask_map.get(subsystem_name, 0)
    return mask


def set_debug_mask(mask):
    """
    Set the debug mask for the ``ossnap`` package.

    :param mask: the logical OR of the ``OSSNAP_DEBUG_*``
                 values to log.
    :rtype: None
    """
    # pylint: disable=global-statement
    global _debug_subsystems

    if mask < 0 or mask > OSSNAP_DEBUG_ALL:
        raise ValueError(f"Invalid ossnap debug mask: {mask}")

    enabled_subsystems = [
        subsystem_name
        for flag, subsystem_name in _DEBUG_MASK_TO_SUBSYSTEM.items()
        if mask & flag
    ]

    ossnap_log = logging.getLogger("ossnap")
    for handler in ossnap_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                f.set_debug_subsystems(enabled_subsystems)

    _debug_subsystems = set(enabled_subsystems)


#
# Ossnap exception types
#


class OssnapError(Exception):
    """
    Base class for ossnap errors.
    """


class OssnapSystemError(OssnapError):
    """
    An error when calling the operating system.
    """


class OssnapCalloutError(OssnapError):
    """
    An error calling out to an external program.
    """


class OssnapExistsError(OssnapError):
    """
    The named snapshot pair, subvolume or archive already exists.
    """


class OssnapNotFoundError(OssnapError):
    """
    The requested object does not exist.
    """


class OssnapProtectedError(OssnapError):
    """
    The requested operation would destroy a protected pair.
    """


class OssnapInvalidIdentifierError(OssnapError):
    """
    An invalid snapshot pair name was given.
    """


class OssnapConfigError(OssnapError):
    """
    The configuration is missing a required setting or is malformed.
    """


class OssnapPrivilegeError(OssnapError):
    """
    The command requires superuser privileges.
    """


class OssnapArgumentError(OssnapError):
    """
    An invalid argument was passed to an ossnap API call.
    """


class OssnapStateError(OssnapError):
    """
    A multi-step operation failed part way through and the system may be
    left in an inconsistent state that requires manual intervention.
    """


class OssnapMountError(OssnapError):
    """
    An error performing a mount operation.
    """

    def __init__(self, what: str, where: str, status: int, stderr: str):
        """
        Initialise a new `OssnapMountError` exception.

        :param what: The source for the failed mount operation.
        :param where: The intended mount point of the operation.
        :param status: The exit status of the mount(8) program.
        :param stderr: The error message from mount(8).
        """
        self.what, self.where, self.status, self.stderr = what, where, status, stderr
        msg = f"Failed to mount {what} to {where} (status={status}): {stderr}"
        super().__init__(msg)


class OssnapUmountError(OssnapError):
    """
    An error performing an unmount operation.
    """

    def __init__(self, where: str, status: int, stderr: str):
        """
        Initialise a new `OssnapUmountError` exception.

        :param where: The mount point for the failed umount operation.
        :param status: The exit status of the umount(8) program.
        :param stderr: The error message from umount(8).
        """
        self.where, self.status, self.stderr = where, status, stderr
        msg = f"Failed to unmount {where} (status={status}): {stderr}"
        super().__init__(msg)


#
# Snapshot pair naming
#


class HalfKind(Enum):
    """
    The two halves of a snapshot pair.
    """

    ROOT = ROOT_SUFFIX
    HOME = HOME_SUFFIX

    def __str__(self):
        return "root" if self is HalfKind.ROOT else "home"

    @property
    def suffix(self):
        """
        The subvolume name suffix for this half.
        """
        return self.value


#: Pair halves in the order that pair operations are applied.
PAIR_HALVES = (HalfKind.ROOT, HalfKind.HOME)


@dataclass(frozen=True)
class PairRef:
    """
    Reference to one snapshot pair by base name. The empty name refers to
    the live system.
    """

    name: str

    @property
    def is_live(self) -> bool:
        """
        ``True`` if this reference names the live system pair.
        """
        return self.name == LIVE_NAME

    def subvolume(self, kind: HalfKind) -> str:
        """
        Return the subvolume name of the ``kind`` half of this pair.

        :param kind: The half to name.
        :returns: ``@``/``@home`` for the live system, or
                  ``<name>-@``/``<name>-@home`` otherwise.
        """
        if self.is_live:
            return kind.suffix
        return f"{self.name}{PAIR_SEPARATOR}{kind.suffix}"

    def path(self, mount_point: str, kind: HalfKind) -> str:
        """
        Return the absolute path of the ``kind`` half below ``mount_point``.
        """
        return os.path.join(mount_point, self.subvolume(kind))

    def __str__(self):
        return self.name if not self.is_live else "live system"


def pair_name_from_subvolume(subvolume: str) -> Optional[str]:
    """
    Return the pair base name for a root half subvolume name, or ``None``
    if ``subvolume`` is not a named root half.

    :param subvolume: A top-level subvolume directory name.
    :returns: The pair base name or ``None``.
    """
    suffix = PAIR_SEPARATOR + ROOT_SUFFIX
    if not subvolume.endswith(suffix):
        return None
    name = subvolume.removesuffix(suffix)
    return name or None


def is_live_name(name: Optional[str]) -> bool:
    """
    Test whether ``name`` refers to the live system, either by the empty
    base name or by the literal root subvolume name ``@``.
    """
    return name is None or name in (LIVE_NAME, ROOT_SUFFIX)


def _unescape_mounts(escaped: str) -> str:
    """
    Unescape octal escapes in values read from /proc/*mounts and fstab.

    :param escaped: The string to unescape.
    :type escaped: str
    :returns: The unescaped string with octal values replaced by literal
              character values.
    :rtype: str
    """
    return (
        escaped.replace("\\040", " ")
        .replace("\\011", "\t")
        .replace("\\012", "\n")
        .replace("\\134", "\\")
    )


class FsTabReader:
    """
    A class to read and query data from an fstab file.

    This class reads an fstab-like file and provides methods to iterate
    over its entries and look up specific entries based on their properties.
    """

    FsTabEntry = collections.namedtuple(
        "FsTabEntry", ["what", "where", "fstype", "options", "freq", "passno"]
    )

    def __init__(self, path=ETC_FSTAB):
        """
        Initializes the FsTabReader object by reading and parsing the file.

        :param path: The path to the fstab file. Defaults to '/etc/fstab'.
        :type path: str
        :raises OssnapNotFoundError: If the specified fstab file does not exist.
        :raises OssnapSystemError: If there is an error reading the fstab file.
        """
        self.path = path
        self.entries = []
        self._read_fstab()

    def _read_fstab(self):
        """
        Private method to read and parse the fstab file.
        It populates the self.entries list.
        """
        try:
            with open(self.path, "r", encoding="utf8") as f:
                for line in f:
                    line = line.split("#", 1)[0].strip()
                    if not line:
                        continue

                    parts = line.split()

                    # freq and passno are optional.
                    if len(parts) < 4 or len(parts) > 6:
                        _log_warn("Skipping malformed %s entry: %s", self.path, line)
                        continue
                    parts.extend(["0"] * (6 - len(parts)))

                    what, where, fstype, options, freq, passno = parts
                    try:
                        entry = self.FsTabEntry(
                            _unescape_mounts(what),
                            _unescape_mounts(where),
                            fstype,
                            _unescape_mounts(options),
                            int(freq),
                            int(passno),
                        )
                    except ValueError:
                        entry = self.FsTabEntry(*parts)
                    self.entries.append(entry)

        except FileNotFoundError as exc:
            _log_error("Error: The file '%s' was not found.", self.path)
            raise OssnapNotFoundError(f"FsTab file not found: {self.path}") from exc
        except IOError as e:
            _log_error("Error: Could not read the file '%s': %s", self.path, e)
            raise OssnapSystemError(f"Error reading fstab file: {self.path}") from e
        except UnicodeDecodeError as e:
            _log_error("Error: Could not decode the file '%s': %s", self.path, e)
            raise OssnapSystemError(f"Error decoding fstab file: {self.path}") from e

    def __iter__(self):
        """
        Allows iteration over the fstab entries.

        :yields:
            A 6-tuple for each entry in the fstab file:
            (what, where, fstype, options, freq, passno)
        """
        yield from self.entries

    def lookup(self, key, value):
        """
        Finds and generates all entries matching a specific key-value pair.

        :param key: The field to search by. Must be one of 'what', 'where',
                    'fstype', 'options', 'freq', or 'passno'.
        :type key: str
        :param value: The value to match for the given key.
        :type value: str|int
        :yields: A 6-tuple for each matching fstab entry.

        :raises KeyError: If the provided key is not a valid fstab field name.
        """
        if key not in self.FsTabEntry._fields:
            raise KeyError(
                f"Invalid lookup key: '{key}'. "
                f"Valid keys are: {self.FsTabEntry._fields}"
            )

        for entry in self.entries:
            if getattr(entry, key) == value:
                yield entry

    def __repr__(self):
        return f"FsTabReader(path='{self.path}')"


def get_device_path(by_type: str, identifier: str) -> Optional[str]:
    """
    Translates a filesystem UUID or label to its corresponding device path
    using the blkid command.

    :param by_type: The type of identifier to search for.
    :param identifier: The UUID or label of the filesystem.

    :returns: The device path if found, otherwise None.
    :rtype: Optional[str]

    :raises ValueError: If 'identifier' is empty or 'by_type' is not 'uuid' or 'label'.
    :raises OssnapNotFoundError: If the 'blkid' command is not found on the system.
    :raises OssnapSystemError: If the 'blkid' command exits with a non-zero status
                               for reasons other than the identifier not being found.
    """
    if by_type not in ["uuid", "label"]:
        raise ValueError("Invalid 'by_type'. Must be 'uuid' or 'label'.")
    if not identifier:
        raise ValueError("Identifier cannot be an empty string.")

    env = dict(os.environ, LC_ALL="C", LANG="C")
    command = ["blkid", f"--{by_type}", identifier]
    try:
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            check=True,
            timeout=10,
            env=env,
        )
    except FileNotFoundError as exc:
        _log_error(
            "Error: 'blkid' command not found. Please ensure it is installed and in your PATH."
        )
        raise OssnapNotFoundError("blkid command not found.") from exc
    except subprocess.TimeoutExpired as e:
        raise OssnapCalloutError(f"Timed out executing blkid: {e}") from e
    except subprocess.CalledProcessError as e:
        # blkid returns 2 if the specified UUID/label is not found.
        if e.returncode == 2:
            _log_debug("Identifier '%s' (%s) not found by blkid.", identifier, by_type)
            return None
        _log_error(
            "Error executing blkid command (return code %d): %s", e.returncode, e
        )
        _log_error("Stderr: %s", e.stderr.strip())
        raise OssnapSystemError(f"Error executing blkid command: {e}") from e

    return result.stdout.strip() or None


__all__ = [
    "ETC_FSTAB",
    "ROOT_SUFFIX",
    "HOME_SUFFIX",
    "PAIR_SEPARATOR",
    "LIVE_NAME",
    "FACTORY_NAME",
    "BACKUP_PREFIX",
    "FACTORY_SENTINEL",
    "UNKNOWN_VERSION",
    "OSSNAP_VALID_NAME_CHARS",
    # Debug logging - subsystem name interface
    "SubsystemFilter",
    "OSSNAP_SUBSYSTEM_MANAGER",
    "OSSNAP_SUBSYSTEM_COMMAND",
    "OSSNAP_SUBSYSTEM_MOUNTS",
    "OSSNAP_SUBSYSTEM_SWITCH",
    "OSSNAP_SUBSYSTEM_ARCHIVE",
    # Debug logging - legacy interface
    "OSSNAP_DEBUG_MANAGER",
    "OSSNAP_DEBUG_COMMAND",
    "OSSNAP_DEBUG_MOUNTS",
    "OSSNAP_DEBUG_SWITCH",
    "OSSNAP_DEBUG_ARCHIVE",
    "OSSNAP_DEBUG_ALL",
    "set_debug_mask",
    "get_debug_mask",
    # Exceptions
    "OssnapError",
    "OssnapSystemError",
    "OssnapCalloutError",
    "OssnapExistsError",
    "OssnapNotFoundError",
    "OssnapProtectedError",
    "OssnapInvalidIdentifierError",
    "OssnapConfigError",
    "OssnapPrivilegeError",
    "OssnapArgumentError",
    "OssnapStateError",
    "OssnapMountError",
    "OssnapUmountError",
    # Pair naming
    "HalfKind",
    "PAIR_HALVES",
    "PairRef",
    "pair_name_from_subvolume",
    "is_live_name",
    "FsTabReader",
    "get_device_path",
]
