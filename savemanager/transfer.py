"""
Save transfer engine - copies and deletes saves across devices.

A save on the internal device is a plain directory tree; on removable media it
is a single ``<id>.tar`` archive. Copying across that boundary archives or
extracts; copying between two removable media copies the archive bytes.
Any failure rolls the destination back to its previous state.
"""

import logging
import os
import shutil
import tarfile
from typing import Optional

from .catalog import iter_save_files
from .errors import (
    AlreadyExistsError, ArchiveError, EmptyTransferError, InvalidArgumentError,
    NotFoundError, PermissionDeniedError, SaveError, SaveIOError,
)
from .models import DeviceKind
from .monitor import log_event
from .progress import ProgressCell
from .shared_config import COPY_CHUNK_SIZE, SIDECAR_FILES, StorageLayout
from .utils import sync_to_disk

logger = logging.getLogger(__name__)

# Highest value stored while a copy is still in flight.
_IN_FLIGHT_CAP = 99


def _ratio(done: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(_IN_FLIGHT_CAP, done * 100 // total)


def check_save_id(save_id: str) -> None:
    """A save id names exactly one entry inside a device's save dir."""
    if (not save_id or save_id in ('.', '..') or '/' in save_id
            or os.sep in save_id or '\0' in save_id):
        raise InvalidArgumentError(f"Invalid save id: {save_id!r}")


def _os_error(e: OSError, message: str) -> SaveError:
    if isinstance(e, PermissionError):
        return PermissionDeniedError(message)
    return SaveIOError(message)


def _safe_member_path(root: str, member_name: str) -> str:
    """Resolve an archive member under ``root``, refusing anything that escapes it."""
    name = member_name.replace('\\', '/')
    if name.startswith('/') or os.path.isabs(name):
        raise ArchiveError(f"Absolute path in archive: {member_name}")
    target = os.path.normpath(os.path.join(root, name))
    root_abs = os.path.abspath(root)
    if os.path.commonpath([root_abs, os.path.abspath(target)]) != root_abs:
        raise ArchiveError(f"Archive entry escapes destination: {member_name}")
    return target


class TransferEngine:
    """Copy/delete operations on save entries."""

    def __init__(self, layout: StorageLayout):
        self.layout = layout

    # ── Queries ──────────────────────────────────────────────────

    def kind_of(self, device_id: str) -> DeviceKind:
        return DeviceKind.INTERNAL if self.layout.is_internal(device_id) else DeviceKind.EXTERNAL

    def device_exists(self, device_id: str) -> bool:
        if self.layout.is_internal(device_id):
            return True
        return os.path.isdir(self.layout.mount_point(device_id))

    def save_exists(self, save_id: str, device_id: str) -> bool:
        """True if the save exists on the device in either directory or archive form."""
        return (os.path.exists(self.layout.save_path(device_id, save_id))
                or os.path.exists(self.layout.archive_path(device_id, save_id)))

    # ── Durability ───────────────────────────────────────────────

    def _sync(self) -> None:
        sync_to_disk(self.layout.sync_to_disk)

    def _fsync(self, fh) -> None:
        fh.flush()
        if self.layout.sync_to_disk:
            os.fsync(fh.fileno())

    # ── Public operations ────────────────────────────────────────

    def copy_save(self, save_id: str, from_device: str, to_device: str,
                  progress: Optional[ProgressCell] = None) -> None:
        """
        Copy ``save_id`` from one device to another.

        Raises InvalidArgumentError, NotFoundError or AlreadyExistsError before
        touching the filesystem; any later failure removes whatever was created
        at the destination and re-raises.
        """
        progress = progress if progress is not None else ProgressCell()

        check_save_id(save_id)
        if from_device == to_device:
            raise InvalidArgumentError("Cannot copy to same location")
        for device_id in (from_device, to_device):
            if not self.device_exists(device_id):
                raise NotFoundError(f"Device '{device_id}' is not connected")
        if not self.save_exists(save_id, from_device):
            raise NotFoundError(f"Save file for {save_id} does not exist on '{from_device}' drive")
        if self.save_exists(save_id, to_device):
            raise AlreadyExistsError(f"Save file for {save_id} already exists on '{to_device}'")

        log_event('transfer.copy.start', f'{save_id}: {from_device} -> {to_device}')
        try:
            os.makedirs(self.layout.save_dir(to_device), exist_ok=True)
            os.makedirs(self.layout.cache_dir(to_device), exist_ok=True)
        except OSError as e:
            raise _os_error(e, f"Failed to create destination directories: {e}") from e

        from_kind = self.kind_of(from_device)
        to_kind = self.kind_of(to_device)
        try:
            if from_kind is DeviceKind.INTERNAL:
                self._archive_directory(save_id, from_device, to_device, progress)
            elif to_kind is DeviceKind.INTERNAL:
                self._extract_archive(save_id, from_device, to_device, progress)
            else:
                self._copy_archive(save_id, from_device, to_device, progress)
            self._copy_sidecars(save_id, from_device, to_device)
            self._sync()
        except (SaveError, OSError, tarfile.TarError) as e:
            self._rollback(save_id, to_device)
            log_event('transfer.copy.failed', f'{save_id}: {e}', logging.ERROR)
            if isinstance(e, SaveError):
                raise
            if isinstance(e, tarfile.TarError):
                raise ArchiveError(str(e)) from e
            raise _os_error(e, str(e)) from e

        progress.store(100)
        log_event('transfer.copy.done', f'{save_id}: {from_device} -> {to_device}')

    def delete_save(self, save_id: str, device_id: str) -> None:
        """Delete a save (directory or archive) and its sidecar cache."""
        check_save_id(save_id)
        dir_path = self.layout.save_path(device_id, save_id)
        tar_path = self.layout.archive_path(device_id, save_id)
        if not os.path.exists(dir_path) and not os.path.exists(tar_path):
            raise NotFoundError(f"Save file for {save_id} does not exist on '{device_id}' drive")

        try:
            if os.path.isdir(dir_path):
                shutil.rmtree(dir_path)
            elif os.path.exists(dir_path):
                os.remove(dir_path)
            if os.path.exists(tar_path):
                os.remove(tar_path)
        except OSError as e:
            log_event('transfer.delete.failed', f'{save_id} on {device_id}: {e}', logging.ERROR)
            raise _os_error(e, f"Failed to delete save {save_id}: {e}") from e

        cache_path = self.layout.entry_cache_dir(device_id, save_id)
        if os.path.isdir(cache_path):
            try:
                shutil.rmtree(cache_path)
            except OSError as e:
                logger.warning("Could not remove cache for %s: %s", save_id, e)

        self._sync()
        log_event('transfer.delete.done', f'{save_id} on {device_id}')

    # ── Branches ─────────────────────────────────────────────────

    def _archive_directory(self, save_id: str, from_device: str, to_device: str,
                           progress: ProgressCell) -> None:
        from_path = self.layout.save_path(from_device, save_id)
        to_tar = self.layout.archive_path(to_device, save_id)

        files = list(iter_save_files(from_path))
        total_size = sum(size for _path, _rel, size in files)
        logger.debug("Total size to archive: %d bytes", total_size)
        if total_size == 0:
            raise EmptyTransferError("No files found to archive")

        current_size = 0
        with open(to_tar, 'wb') as fh:
            with tarfile.open(fileobj=fh, mode='w', format=tarfile.GNU_FORMAT) as archive:
                for path, rel_path, size in files:
                    info = tarfile.TarInfo(rel_path.replace(os.sep, '/'))
                    info.size = size
                    st = os.stat(path)
                    info.mtime = int(st.st_mtime)
                    info.mode = st.st_mode & 0o7777
                    logger.debug("Adding file to archive: %s (%d bytes)", rel_path, size)
                    with open(path, 'rb') as src:
                        archive.addfile(info, src)
                    self._fsync(fh)

                    current_size += size
                    progress.store(_ratio(current_size, total_size))
            self._fsync(fh)

        if os.path.getsize(to_tar) == 0:
            raise EmptyTransferError("Created archive is empty")

    def _extract_archive(self, save_id: str, from_device: str, to_device: str,
                         progress: ProgressCell) -> None:
        from_tar = self.layout.archive_path(from_device, save_id)
        to_path = self.layout.save_path(to_device, save_id)
        os.makedirs(to_path, exist_ok=True)

        archive_size = os.path.getsize(from_tar)
        logger.debug("Archive size: %d bytes", archive_size)

        current_size = 0
        try:
            with tarfile.open(from_tar, 'r') as archive:
                for member in archive:
                    target = _safe_member_path(to_path, member.name)
                    if member.isdir():
                        os.makedirs(target, exist_ok=True)
                    elif member.isfile():
                        os.makedirs(os.path.dirname(target), exist_ok=True)
                        src = archive.extractfile(member)
                        if src is None:
                            raise ArchiveError(f"Unreadable archive entry: {member.name}")
                        with src, open(target, 'wb') as dst:
                            shutil.copyfileobj(src, dst)
                        if member.mode:
                            os.chmod(target, member.mode & 0o777)
                    else:
                        logger.warning("Skipping non-regular archive entry: %s", member.name)
                        continue

                    current_size += member.size
                    progress.store(_ratio(current_size, archive_size))
        except tarfile.TarError as e:
            raise ArchiveError(f"Failed to read archive {from_tar}: {e}") from e

        extracted_size = sum(size for _path, _rel, size in iter_save_files(to_path))
        logger.debug("Total extracted size: %d bytes", extracted_size)
        if extracted_size == 0:
            raise EmptyTransferError("No files were extracted from the archive")

    def _copy_archive(self, save_id: str, from_device: str, to_device: str,
                      progress: ProgressCell) -> None:
        from_tar = self.layout.archive_path(from_device, save_id)
        to_tar = self.layout.archive_path(to_device, save_id)

        file_size = os.path.getsize(from_tar)
        current_size = 0
        with open(from_tar, 'rb') as source, open(to_tar, 'wb') as dest:
            while True:
                chunk = source.read(COPY_CHUNK_SIZE)
                if not chunk:
                    break
                dest.write(chunk)
                self._fsync(dest)
                current_size += len(chunk)
                progress.store(_ratio(current_size, file_size))

    # ── Sidecars and rollback ────────────────────────────────────

    def _copy_sidecars(self, save_id: str, from_device: str, to_device: str) -> None:
        from_cache = self.layout.entry_cache_dir(from_device, save_id)
        to_cache = self.layout.entry_cache_dir(to_device, save_id)
        if os.path.isdir(to_cache):
            shutil.rmtree(to_cache)
        os.makedirs(to_cache, exist_ok=True)
        for filename in SIDECAR_FILES:
            source = os.path.join(from_cache, filename)
            if os.path.isfile(source):
                shutil.copyfile(source, os.path.join(to_cache, filename))

    def _rollback(self, save_id: str, to_device: str) -> None:
        """Remove the destination save and cache entry; errors here are only logged."""
        targets = (
            self.layout.save_path(to_device, save_id),
            self.layout.archive_path(to_device, save_id),
            self.layout.entry_cache_dir(to_device, save_id),
        )
        for target in targets:
            try:
                if os.path.isdir(target) and not os.path.islink(target):
                    shutil.rmtree(target)
                elif os.path.lexists(target):
                    os.remove(target)
            except OSError as e:
                logger.error("Rollback could not remove %s: %s", target, e)
        log_event('transfer.copy.rollback', f'{save_id} on {to_device}', logging.WARNING)
