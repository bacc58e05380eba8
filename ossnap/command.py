# Copyright Red Hat
#
# ossnap/command.py - OS snapshot pair manager command interface
#
# This file is part of the ossnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""The ``ossnap.command`` module provides both the ossnap command line
interface infrastructure, and a simple procedural interface to the
``ossnap`` library modules.

The procedural interface is used by the ``ossnap`` command line tool,
and may be used by application programs, or interactively in the
Python shell by users who do not require all the features present
in the ossnap object API.
"""
from argparse import ArgumentParser
from typing import List, Optional, Tuple
from os.path import basename
import logging
import sys
import os

from ossnap import (
    OssnapPrivilegeError,
    OSSNAP_DEBUG_MANAGER,
    OSSNAP_DEBUG_COMMAND,
    OSSNAP_DEBUG_MOUNTS,
    OSSNAP_DEBUG_SWITCH,
    OSSNAP_DEBUG_ARCHIVE,
    OSSNAP_DEBUG_ALL,
    OSSNAP_SUBSYSTEM_COMMAND,
    SubsystemFilter,
    set_debug_mask,
    __version__,
)
from ossnap.manager import Manager, OssnapConfig, PairInfo
from ossnap.manager._manager import OSSNAP_CONF_D_PATH

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_command(msg, *args, **kwargs):
    """A wrapper for command subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": OSSNAP_SUBSYSTEM_COMMAND}, **kwargs)


_DEFAULT_LOG_LEVEL = logging.WARNING
_CONSOLE_HANDLER = None


def list_pairs(manager) -> List[PairInfo]:
    """
    Return the snapshot pairs known to ``manager``, sorted by name.

    :param manager: The manager context to use
    """
    return manager.list_pairs()


def print_pairs(manager):
    """
    Print one ``name (version[, factory])`` line per snapshot pair.

    :param manager: The manager context to use
    """
    for pair in list_pairs(manager):
        print(pair)


def create_pair(manager, source: Optional[str], dest: str):
    """
    Create snapshot pair ``dest`` from ``source``, or from the live system if
    ``source`` is ``None``.

    :param manager: The manager context to use
    :param source: The pair to snapshot
    :param dest: The name of the new pair
    """
    return manager.create_pair(source, dest)


def delete_pair(manager, name: str):
    """
    Delete snapshot pair ``name``.

    :param manager: The manager context to use
    :param name: The pair to delete
    """
    return manager.delete_pair(name)


def rename_pair(manager, source: str, dest: str):
    """
    Rename a snapshot pair from ``source`` to ``dest``.
    """
    return manager.rename_pair(source, dest)


def restore_pair(manager, name: str) -> str:
    """
    Make snapshot pair ``name`` the live system and return the name of the
    backup taken of the previous live system.

    :param manager: The manager context to use
    :param name: The pair to restore
    """
    return manager.restore(name)


def enter_pair(manager, name: Optional[str] = None) -> int:
    """
    Start an interactive shell chrooted into pair ``name``, or into the live
    system. The shell invoked defaults to the SHELL environment variable if
    set, or the program at /bin/bash otherwise.
    """
    return manager.enter(name)


def inject_pair(manager, rootfs_archive: str, homefs_archive: str, name: str):
    """
    Create snapshot pair ``name`` from a pair of archives.

    :param manager: The manager context to use
    :param rootfs_archive: The root half archive
    :param homefs_archive: The home half archive
    :param name: The name of the new pair
    """
    return manager.inject(rootfs_archive, homefs_archive, name)


def export_pair(manager, name: str, out_dir: str) -> Tuple[str, str]:
    """
    Export snapshot pair ``name`` to a pair of archives in ``out_dir``.
    """
    return manager.export(name, out_dir)


def purge_backups(manager, keep: int = 0) -> List[str]:
    """
    Delete automatic live system backups, keeping the newest ``keep``.

    :param manager: The manager context to use
    :param keep: The number of backups to keep
    """
    return manager.purge(keep=keep)


def _list_cmd(cmd_args):
    """
    List snapshot pairs command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = Manager(cmd_args.config)
    print_pairs(manager)
    return 0


def _purge_cmd(cmd_args):
    """
    Purge backups command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = Manager(cmd_args.config)
    purged = purge_backups(manager, keep=cmd_args.keep)
    for name in purged:
        _log_info("Deleted backup %s", name)
    _log_info("Purged %d backup%s", len(purged), "s" if len(purged) != 1 else "")
    return 0


def _create_cmd(cmd_args):
    """
    Create snapshot pair command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = Manager(cmd_args.config)
    create_pair(manager, cmd_args.source, cmd_args.dest)
    _log_info(
        "Created snapshot pair '%s' from %s",
        cmd_args.dest,
        f"'{cmd_args.source}'" if cmd_args.source else "the live system",
    )
    return 0


def _delete_cmd(cmd_args):
    """
    Delete snapshot pair command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = Manager(cmd_args.config)
    delete_pair(manager, cmd_args.name)
    _log_info("Deleted snapshot pair '%s'", cmd_args.name)
    return 0


def _restore_cmd(cmd_args):
    """
    Restore snapshot pair command handler.

    Promote the specified snapshot pair to the live system, backing up the
    current live system first.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = Manager(cmd_args.config)
    backup = restore_pair(manager, cmd_args.name)
    failed = [result.name for result in manager.hook_results if not result.ok]
    if failed:
        _log_warn("Restore hooks failed: %s", ", ".join(failed))
    print(f"Restored '{cmd_args.name}': previous live system saved as '{backup}'")
    return 0


def _enter_cmd(cmd_args):
    """
    Enter snapshot pair command handler.

    :param cmd_args: Command line arguments for the command
    :returns: the exit status of the shell
    """
    manager = Manager(cmd_args.config)
    ret = enter_pair(manager, cmd_args.name)
    if ret:
        _log_debug_command("Shell in %s exited with status %d", cmd_args.name, ret)
    return ret


def _rename_cmd(cmd_args):
    """
    Rename snapshot pair command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = Manager(cmd_args.config)
    rename_pair(manager, cmd_args.source, cmd_args.dest)
    _log_info("Renamed snapshot pair '%s' to '%s'", cmd_args.source, cmd_args.dest)
    return 0


def _inject_cmd(cmd_args):
    """
    Inject snapshot pair command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = Manager(cmd_args.config)
    inject_pair(manager, cmd_args.rootfs_archive, cmd_args.homefs_archive, cmd_args.name)
    _log_info("Injected snapshot pair '%s'", cmd_args.name)
    return 0


def _export_cmd(cmd_args):
    """
    Export snapshot pair command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = Manager(cmd_args.config)
    for path in export_pair(manager, cmd_args.name, cmd_args.out_dir):
        print(path)
    return 0


def _help_cmd(cmd_args):
    """
    Help command handler.
    """
    cmd_args.parser.print_help()
    return 0


def _version_cmd(_cmd_args):
    """
    Version command handler.
    """
    print(__version__)
    return 0


def setup_logging(cmd_args):
    """
    Set up ossnap logging.
    """
    # pylint: disable=global-statement
    global _CONSOLE_HANDLER
    level = _DEFAULT_LOG_LEVEL
    if cmd_args.verbose and cmd_args.verbose > 1:
        level = logging.DEBUG
    elif cmd_args.verbose and cmd_args.verbose > 0:
        level = logging.INFO

    ossnap_log = logging.getLogger("ossnap")
    formatter = logging.Formatter("%(levelname)s - %(message)s")
    ossnap_log.setLevel(level)
    if ossnap_log.hasHandlers():
        ossnap_log.handlers.clear()

    # Subsystem log filtering
    _ossnap_subsystem_filter = SubsystemFilter("ossnap")

    # Main console handler
    _CONSOLE_HANDLER = logging.StreamHandler(sys.stderr)

    _CONSOLE_HANDLER.setLevel(level)
    _CONSOLE_HANDLER.setFormatter(formatter)
    _CONSOLE_HANDLER.addFilter(_ossnap_subsystem_filter)

    ossnap_log.addHandler(_CONSOLE_HANDLER)


def shutdown_logging():
    """
    Shut down ossnap logging.
    """
    logging.shutdown()


def set_debug(debug_arg):
    """
    Set debugging mask from command line argument.
    """
    if not debug_arg:
        return

    mask_map = {
        "manager": OSSNAP_DEBUG_MANAGER,
        "command": OSSNAP_DEBUG_COMMAND,
        "mounts": OSSNAP_DEBUG_MOUNTS,
        "switch": OSSNAP_DEBUG_SWITCH,
        "archive": OSSNAP_DEBUG_ARCHIVE,
        "all": OSSNAP_DEBUG_ALL,
    }

    mask = 0
    for name in debug_arg.split(","):
        if name not in mask_map:
            raise ValueError(f"Unknown debug option: {name}")
        mask |= mask_map[name]
    set_debug_mask(mask)


LIST_CMD = "list"
PURGE_CMD = "purge"
CREATE_CMD = "create"
DELETE_CMD = "delete"
RESTORE_CMD = "restore"
ENTER_CMD = "enter"
RENAME_CMD = "rename"
INJECT_CMD = "inject"
EXPORT_CMD = "export"
HELP_CMD = "help"
VERSION_CMD = "version"


def _add_pair_subparsers(parser):
    """
    Add subparsers for the snapshot pair verbs.

    :param parser: The top level argument parser
    """
    subparser = parser.add_subparsers(dest="command", help="Command")

    # list
    list_parser = subparser.add_parser(LIST_CMD, help="List snapshot pairs")
    list_parser.set_defaults(func=_list_cmd)

    # purge
    purge_parser = subparser.add_parser(
        PURGE_CMD, help="Delete automatic backups of the live system"
    )
    purge_parser.set_defaults(func=_purge_cmd)
    purge_parser.add_argument(
        "-k",
        "--keep",
        metavar="COUNT",
        type=int,
        default=0,
        help="Number of most recent backups to keep (default: 0)",
    )

    # create
    create_parser = subparser.add_parser(
        CREATE_CMD, help="Snapshot a pair, or the live system"
    )
    create_parser.set_defaults(func=_create_cmd)
    create_parser.add_argument(
        "source",
        metavar="SOURCE",
        type=str,
        nargs="?",
        default=None,
        help="The snapshot pair to snapshot (default: the live system)",
    )
    create_parser.add_argument(
        "dest",
        metavar="DEST",
        type=str,
        help="The name of the new snapshot pair",
    )

    # delete
    delete_parser = subparser.add_parser(DELETE_CMD, help="Delete a snapshot pair")
    delete_parser.set_defaults(func=_delete_cmd)
    delete_parser.add_argument(
        "name", metavar="NAME", type=str, help="The snapshot pair to delete"
    )

    # restore
    restore_parser = subparser.add_parser(
        RESTORE_CMD, help="Make a snapshot pair the live system"
    )
    restore_parser.set_defaults(func=_restore_cmd)
    restore_parser.add_argument(
        "name", metavar="NAME", type=str, help="The snapshot pair to restore"
    )

    # enter
    enter_parser = subparser.add_parser(
        ENTER_CMD, help="Start a shell chrooted into a snapshot pair"
    )
    enter_parser.set_defaults(func=_enter_cmd)
    enter_parser.add_argument(
        "name",
        metavar="NAME",
        type=str,
        nargs="?",
        default=None,
        help="The snapshot pair to enter (default: the live system)",
    )

    # rename
    rename_parser = subparser.add_parser(RENAME_CMD, help="Rename a snapshot pair")
    rename_parser.set_defaults(func=_rename_cmd)
    rename_parser.add_argument(
        "source", metavar="SOURCE", type=str, help="The snapshot pair to rename"
    )
    rename_parser.add_argument(
        "dest", metavar="DEST", type=str, help="The new snapshot pair name"
    )

    # inject
    inject_parser = subparser.add_parser(
        INJECT_CMD, help="Create a snapshot pair from archives"
    )
    inject_parser.set_defaults(func=_inject_cmd)
    inject_parser.add_argument(
        "rootfs_archive",
        metavar="ROOTFS_ARCHIVE",
        type=str,
        help="The root file system archive",
    )
    inject_parser.add_argument(
        "homefs_archive",
        metavar="HOMEFS_ARCHIVE",
        type=str,
        help="The home file system archive",
    )
    inject_parser.add_argument(
        "name", metavar="NAME", type=str, help="The name of the new snapshot pair"
    )

    # export
    export_parser = subparser.add_parser(
        EXPORT_CMD, help="Export a snapshot pair to archives"
    )
    export_parser.set_defaults(func=_export_cmd)
    export_parser.add_argument(
        "name", metavar="NAME", type=str, help="The snapshot pair to export"
    )
    export_parser.add_argument(
        "out_dir", metavar="OUTDIR", type=str, help="The directory to write to"
    )

    # help
    help_parser = subparser.add_parser(HELP_CMD, help="Show this help message")
    help_parser.set_defaults(func=_help_cmd, parser=parser, unprivileged=True)

    # version
    version_parser = subparser.add_parser(
        VERSION_CMD, help="Report the version number of ossnap"
    )
    version_parser.set_defaults(func=_version_cmd, unprivileged=True)


def _run_cmd(cmd_args):
    """
    Check privileges, load the configuration and run the selected command
    handler.
    """
    if not getattr(cmd_args, "unprivileged", False):
        if os.geteuid() != 0:
            raise OssnapPrivilegeError("ossnap must be run as the root user")
        cmd_args.config = OssnapConfig.from_dir(cmd_args.config_dir)
    return cmd_args.func(cmd_args)


def main(args):
    """
    Main entry point for ossnap.
    """
    parser = ArgumentParser(
        description="OS Snapshot Pair Manager", prog=basename(args[0])
    )

    # Global arguments
    parser.add_argument(
        "-c",
        "--config-dir",
        metavar="DIR",
        type=str,
        default=OSSNAP_CONF_D_PATH,
        help=f"Configuration fragment directory (default: {OSSNAP_CONF_D_PATH})",
    )
    parser.add_argument(
        "-d",
        "--debug",
        metavar="DEBUGOPTS",
        type=str,
        help="A list of debug options to enable",
    )
    parser.add_argument("--verbose", help="Enable verbose output", action="count")
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        help="Report the version number of ossnap",
        version=__version__,
    )

    _add_pair_subparsers(parser)

    status = 1

    try:
        cmd_args = parser.parse_args(args[1:])
    except SystemExit as err:
        # --help and --version exit zero, usage errors exit non-zero.
        return 0 if not err.code else status

    try:
        set_debug(cmd_args.debug)
    except ValueError as err:
        print(err)
        parser.print_help()
        return status

    setup_logging(cmd_args)

    _log_debug_command("Parsed %s", " ".join(args[1:]))

    if "func" not in cmd_args:
        parser.print_help()
        return status

    if cmd_args.debug:
        status = _run_cmd(cmd_args)
    else:
        try:
            status = _run_cmd(cmd_args)
        # pylint: disable=broad-except
        except KeyboardInterrupt:  # pragma: no cover
            _log_info("Exiting on user cancel")
        except Exception as err:
            _log_error("Command failed: %s", err)
            status = 1

    shutdown_logging()
    return status


def run():
    """
    Console script entry point.
    """
    sys.exit(main(sys.argv))


__all__ = [
    "list_pairs",
    "print_pairs",
    "create_pair",
    "delete_pair",
    "rename_pair",
    "restore_pair",
    "enter_pair",
    "inject_pair",
    "export_pair",
    "purge_backups",
    "main",
]


# vim: set et ts=4 sw=4 :
