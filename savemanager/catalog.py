"""
Save catalog - lists the save entries stored on a device.
"""

import logging
import os
import tarfile
from datetime import datetime
from typing import Iterator, List, Tuple

from .errors import InvalidArgumentError, NotFoundError, SaveIOError
from .models import CartInfo, SaveEntry
from .shared_config import (
    ARCHIVE_SUFFIX, PLAYTIME_END, PLAYTIME_LOG, PLAYTIME_START,
    StorageLayout, is_excluded_path,
)
from .utils import bytes_to_mb_rounded

logger = logging.getLogger(__name__)


def iter_save_files(root: str) -> Iterator[Tuple[str, str, int]]:
    """
    Yield ``(path, rel_path, size)`` for every regular file under ``root``,
    skipping the excluded runtime-scratch subpaths. Symlinks to files are
    followed and yield the target's size; dangling links are skipped.

    Unreadable entries are skipped, as a size estimate should not fail.
    """
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = os.path.relpath(dirpath, root)
        rel_dir = '' if rel_dir == '.' else rel_dir
        dirnames[:] = sorted(
            d for d in dirnames if not is_excluded_path(os.path.join(rel_dir, d))
        )
        for filename in sorted(filenames):
            rel_path = os.path.join(rel_dir, filename) if rel_dir else filename
            if is_excluded_path(rel_path):
                continue
            path = os.path.join(dirpath, filename)
            try:
                if not os.path.isfile(path):
                    continue
                size = os.path.getsize(path)
            except OSError:
                continue
            yield path, rel_path, size


def calculate_size_from_dir(dir_path: str) -> int:
    return sum(size for _path, _rel, size in iter_save_files(dir_path))


def calculate_size_from_tar(tar_path: str) -> int:
    try:
        return os.path.getsize(tar_path)
    except OSError as e:
        logger.warning("Failed to get tar file metadata for %s: %s", tar_path, e)
        return 0


def read_attribute(info_file: str, attribute: str) -> str:
    """
    Value of the first ``attribute=value`` line in ``info_file``, or ''.

    Raises OSError when the file cannot be read.
    """
    prefix = f"{attribute}="
    with open(info_file, 'r', encoding='utf-8', errors='replace') as f:
        for line in f:
            line = line.rstrip('\r\n')
            if line.startswith(prefix):
                return line[len(prefix):]
    return ''


def parse_kzi_file(kzi_path: str) -> CartInfo:
    """Parse a cartridge .kzi file. Id, Exec and Icon are required."""
    try:
        with open(kzi_path, 'r', encoding='utf-8', errors='replace') as f:
            content = f.read()
    except OSError as e:
        raise SaveIOError(f"Cannot read {kzi_path}: {e}") from e

    fields = {}
    for line in content.splitlines():
        if '=' not in line:
            continue
        key, value = line.split('=', 1)
        key = key.strip()
        if key in ('Name', 'Id', 'Exec', 'Icon', 'Runtime'):
            fields[key] = value.strip()

    if not all(k in fields for k in ('Id', 'Exec', 'Icon')):
        raise InvalidArgumentError(f"Invalid .kzi file: '{kzi_path}'. Missing required fields.")

    return CartInfo(
        id=fields['Id'],
        exec=fields['Exec'],
        icon=fields['Icon'],
        name=fields.get('Name'),
        runtime=fields.get('Runtime'),
    )


def _parse_rfc3339(value: str) -> datetime:
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    return datetime.fromisoformat(value)


def parse_playtime_content(content: str) -> float:
    """Sum ``start end`` RFC3339 pairs, one per line, into hours (one decimal)."""
    total_seconds = 0
    for line in content.splitlines():
        parts = line.split()
        if len(parts) != 2:
            continue
        try:
            start = _parse_rfc3339(parts[0])
            end = _parse_rfc3339(parts[1])
        except ValueError as e:
            logger.debug("Skipping playtime line %r: %s", line, e)
            continue
        try:
            total_seconds += int((end - start).total_seconds())
        except TypeError:
            # naive vs aware timestamps
            continue
    return round(total_seconds / 360.0) / 10.0


class SaveCatalog:
    """Lists the saves on a device with display name, icon and size."""

    def __init__(self, layout: StorageLayout):
        self.layout = layout

    def _resolve_save_dir(self, device_id: str) -> str:
        save_dir = self.layout.save_dir(device_id)
        if self.layout.is_internal(device_id):
            os.makedirs(save_dir, exist_ok=True)
        elif not os.path.isdir(save_dir):
            raise NotFoundError(f"Device '{device_id}' has no save directory")
        return save_dir

    def display_name(self, device_id: str, save_id: str) -> str:
        metadata_path = self.layout.metadata_path(device_id, save_id)
        try:
            return read_attribute(metadata_path, 'Name')
        except OSError as e:
            logger.debug("Failed to read metadata for %s: %s", save_id, e)
            return ''

    def get_save_details(self, device_id: str) -> List[SaveEntry]:
        """Save entries on ``device_id``, sorted case-insensitively by name (id when unnamed)."""
        save_dir = self._resolve_save_dir(device_id)
        logger.debug("Getting save details from directory: %s", save_dir)

        try:
            entries = list(os.scandir(save_dir))
        except OSError as e:
            raise SaveIOError(f"Cannot list saves in {save_dir}: {e}") from e

        details = []
        for entry in entries:
            if entry.name.endswith(ARCHIVE_SUFFIX):
                save_id = entry.name[:-len(ARCHIVE_SUFFIX)]
                size_bytes = calculate_size_from_tar(entry.path)
            else:
                save_id = entry.name
                size_bytes = calculate_size_from_dir(entry.path) if entry.is_dir() else 0

            name = self.display_name(device_id, save_id)
            details.append(SaveEntry(
                id=save_id,
                owning_device=device_id,
                icon_ref=self.layout.icon_path(device_id, save_id),
                display_name=name or None,
                size_mb=bytes_to_mb_rounded(size_bytes),
            ))

        details.sort(key=lambda e: e.sort_name.lower())
        logger.debug("Found %d save details", len(details))
        return details

    def calculate_save_size(self, save_id: str, device_id: str) -> float:
        tar_path = self.layout.archive_path(device_id, save_id)
        dir_path = self.layout.save_path(device_id, save_id)
        if os.path.exists(tar_path):
            size_bytes = calculate_size_from_tar(tar_path)
        elif os.path.isdir(dir_path):
            size_bytes = calculate_size_from_dir(dir_path)
        else:
            return 0.0
        return bytes_to_mb_rounded(size_bytes)

    def calculate_playtime(self, save_id: str, device_id: str) -> float:
        """Total recorded playtime in hours, read from the directory or the archive."""
        tar_path = self.layout.archive_path(device_id, save_id)
        dir_path = self.layout.save_path(device_id, save_id)
        if os.path.exists(tar_path):
            log, start, end = self._playtime_from_tar(tar_path)
        elif os.path.isdir(dir_path):
            log, start, end = self._playtime_from_dir(dir_path)
        else:
            return 0.0
        return parse_playtime_content(f"{log.strip()}\n{start.strip()} {end.strip()}")

    @staticmethod
    def _playtime_from_dir(dir_path: str) -> Tuple[str, str, str]:
        values = []
        for rel in (PLAYTIME_LOG, PLAYTIME_START, PLAYTIME_END):
            try:
                with open(os.path.join(dir_path, rel), 'r', encoding='utf-8') as f:
                    values.append(f.read())
            except OSError:
                values.append('')
        return values[0], values[1], values[2]

    @staticmethod
    def _playtime_from_tar(tar_path: str) -> Tuple[str, str, str]:
        wanted = {PLAYTIME_LOG: '', PLAYTIME_START: '', PLAYTIME_END: ''}
        try:
            with tarfile.open(tar_path, 'r') as archive:
                for member in archive:
                    name = member.name
                    if name.startswith('./'):
                        name = name[2:]
                    if name in wanted and member.isfile():
                        f = archive.extractfile(member)
                        if f is not None:
                            wanted[name] = f.read().decode('utf-8', errors='replace')
        except (OSError, tarfile.TarError) as e:
            logger.warning("Failed to read playtime from %s: %s", tar_path, e)
        return wanted[PLAYTIME_LOG], wanted[PLAYTIME_START], wanted[PLAYTIME_END]
