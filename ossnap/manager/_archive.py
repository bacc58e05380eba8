# Copyright Red Hat
#
# ossnap/manager/_archive.py - Snapshot pair import and export
#
# This file is part of the ossnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Conversion of snapshot pairs to and from pairs of zstd compressed tar
archives.
"""
from typing import Tuple
import tarfile
import logging
import os

import zstandard as zstd

from ossnap import (
    OSSNAP_SUBSYSTEM_ARCHIVE,
    PAIR_HALVES,
    OssnapError,
    OssnapExistsError,
    OssnapNotFoundError,
    OssnapSystemError,
    HalfKind,
    PairRef,
)

from ._registry import validate_name

_log = logging.getLogger(__name__)

_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_archive(msg, *args, **kwargs):
    """A wrapper for archive subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": OSSNAP_SUBSYSTEM_ARCHIVE}, **kwargs)


#: File name extension of pair archives.
ARCHIVE_EXT = "tar.zst"

#: File name prefix of the archive for each pair half.
ARCHIVE_PREFIXES = {
    HalfKind.ROOT: "rootfs",
    HalfKind.HOME: "homefs",
}

_codec_errors = (tarfile.TarError, zstd.ZstdError)


def archive_name(kind: HalfKind, name: str, version: str) -> str:
    """
    Return the file name of the ``kind`` archive of pair ``name``.

    :param kind: The pair half.
    :param name: The pair name.
    :param version: The OS version of the pair.
    :returns: A name of the form ``rootfs-<name>-<version>.tar.zst``.
    """
    return f"{ARCHIVE_PREFIXES[kind]}-{name}-{version}.{ARCHIVE_EXT}"


def _extract_args():
    # Whole OS trees carry absolute symlinks and device nodes.
    if hasattr(tarfile, "fully_trusted_filter"):
        return {"numeric_owner": True, "filter": "fully_trusted"}
    return {"numeric_owner": True}


def extract_archive(archive: str, dest: str):
    """
    Stream-extract the zstd compressed tar ``archive`` into the directory
    ``dest``, preserving numeric ownership.

    :param archive: Path to the archive file.
    :param dest: The directory to extract into.
    """
    _log_debug_archive("Extracting %s into %s", archive, dest)
    dctx = zstd.ZstdDecompressor()
    try:
        with open(archive, "rb") as fp:
            with dctx.stream_reader(fp) as reader:
                with tarfile.open(fileobj=reader, mode="r|") as tar:
                    tar.extractall(dest, **_extract_args())
    except (OSError, *_codec_errors) as err:
        raise OssnapSystemError(
            f"Failed to extract {archive} into {dest}: {err}"
        ) from err


def create_archive(source: str, archive: str):
    """
    Stream the directory tree at ``source`` into a new zstd compressed tar
    ``archive``. Members are stored relative to ``source``. A partially
    written archive is removed on failure.

    :param source: The directory to archive.
    :param archive: Path of the archive to create; must not exist.
    """
    _log_debug_archive("Archiving %s to %s", source, archive)
    cctx = zstd.ZstdCompressor()
    try:
        with open(archive, "xb") as fp:
            with cctx.stream_writer(fp) as writer:
                with tarfile.open(
                    fileobj=writer, mode="w|", format=tarfile.PAX_FORMAT
                ) as tar:
                    tar.add(source, arcname=".", recursive=True)
    except FileExistsError as err:
        raise OssnapExistsError(f"Archive {archive} already exists") from err
    except (OSError, *_codec_errors) as err:
        try:
            os.unlink(archive)
        except OSError:
            pass
        raise OssnapSystemError(
            f"Failed to archive {source} to {archive}: {err}"
        ) from err


class ArchiveBridge:
    """
    Import snapshot pairs from archives and export them to archives.
    """

    def __init__(self, engine, registry):
        """
        Initialise a new ``ArchiveBridge``.

        :param engine: The storage engine ``Plugin`` instance.
        :param registry: The ``Registry`` for the mounted volume.
        """
        self.engine = engine
        self.registry = registry
        self.mount_point = registry.mount_point

    def inject(self, rootfs_archive: str, homefs_archive: str, name: str):
        """
        Create snapshot pair ``name`` from a root and a home archive.

        :param rootfs_archive: Path to the root half archive.
        :param homefs_archive: Path to the home half archive.
        :param name: The name of the new pair.
        :raises: ``OssnapNotFoundError`` if an archive is missing,
                 ``OssnapExistsError`` if the pair exists.
        """
        archives = dict(zip(PAIR_HALVES, (rootfs_archive, homefs_archive)))
        for archive in archives.values():
            if not os.path.isfile(archive):
                raise OssnapNotFoundError(f"Archive {archive} not found")
        validate_name(name)
        self.registry.assert_absent(name)

        pair = PairRef(name)
        for kind in PAIR_HALVES:
            path = pair.path(self.mount_point, kind)
            try:
                self.engine.create_subvolume(path)
                extract_archive(archives[kind], path)
            except OssnapError as err:
                _log_error(
                    "Inject of %s failed on the %s half: subvolumes of pair %s "
                    "may need manual cleanup (%s)",
                    name,
                    kind,
                    name,
                    err,
                )
                raise
            _log_info("Extracted %s into %s", archives[kind], pair.subvolume(kind))

    def export(self, name: str, out_dir: str) -> Tuple[str, str]:
        """
        Export snapshot pair ``name`` to two archives in ``out_dir``.

        :param name: The pair to export.
        :param out_dir: The directory to write the archives to.
        :returns: The paths of the root and home archives.
        :raises: ``OssnapNotFoundError`` if the pair or ``out_dir`` does not
                 exist, ``OssnapExistsError`` if either archive exists.
        """
        self.registry.assert_exists(name)
        if not os.path.isdir(out_dir):
            raise OssnapNotFoundError(f"Output directory {out_dir} not found")

        version = self.registry.os_version_of(name)
        paths = {
            kind: os.path.join(out_dir, archive_name(kind, name, version))
            for kind in PAIR_HALVES
        }
        for path in paths.values():
            if os.path.exists(path):
                raise OssnapExistsError(f"Archive {path} already exists")

        pair = PairRef(name)
        written = []
        for kind in PAIR_HALVES:
            try:
                create_archive(pair.path(self.mount_point, kind), paths[kind])
            except OssnapError:
                for path in written:
                    _log_warn("Removing incomplete export archive %s", path)
                    os.unlink(path)
                raise
            written.append(paths[kind])
            _log_info("Exported %s to %s", pair.subvolume(kind), paths[kind])

        return (paths[HalfKind.ROOT], paths[HalfKind.HOME])


__all__ = [
    "ARCHIVE_EXT",
    "ArchiveBridge",
    "archive_name",
    "create_archive",
    "extract_archive",
]
