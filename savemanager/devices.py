"""
Storage device discovery - the internal store plus removable media.
"""

import logging
import os
import shutil
import threading
from collections import deque
from typing import Callable, List, Optional, Tuple

from .errors import NotFoundError, SaveIOError
from .models import DeviceKind, MediaSnapshot, StorageDevice
from .monitor import log_event, start_monitored_thread
from .shared_config import CART_EXTENSION, INTERNAL_DEVICE_ID, StorageLayout
from .utils import bytes_to_whole_mb

logger = logging.getLogger(__name__)


def find_files_by_extension(directory: str, extension: str, max_depth: int,
                            find_first: bool = False) -> List[str]:
    """
    Breadth-first search for files with ``extension`` (no dot) up to ``max_depth``.

    Unreadable entries are skipped; only a missing start directory is an error.
    Depth 0 means only ``directory`` itself.
    """
    if not os.path.isdir(directory):
        raise NotFoundError(f"Directory does not exist: {directory}")
    try:
        os.listdir(directory)
    except OSError as e:
        raise SaveIOError(f"Cannot read directory {directory}: {e}") from e

    suffix = '.' + extension.lower()
    results: List[str] = []
    queue = deque([(directory, 0)])

    while queue:
        current, depth = queue.popleft()
        if depth > max_depth:
            continue
        try:
            entries = list(os.scandir(current))
        except OSError:
            continue

        subdirs = []
        for entry in entries:
            try:
                if entry.is_file():
                    if entry.name.lower().endswith(suffix):
                        results.append(entry.path)
                        if find_first:
                            return results
                elif entry.is_dir() and depth < max_depth:
                    subdirs.append(entry.path)
            except OSError:
                continue

        for subdir in subdirs:
            queue.append((subdir, depth + 1))

    return results


class StorageDeviceRegistry:
    """Enumerates the internal store and removable media with their free space."""

    def __init__(self, layout: StorageLayout,
                 disk_usage: Optional[Callable[[str], Tuple[int, int, int]]] = None):
        self.layout = layout
        self._disk_usage = disk_usage or shutil.disk_usage

    def _free_mb(self, path: str) -> int:
        return bytes_to_whole_mb(self._disk_usage(path)[2])

    def _internal_free_mb(self) -> int:
        # The data dir may not exist yet; its nearest existing ancestor lives on the same disk.
        existing = os.path.abspath(self.layout.data_dir)
        while not os.path.exists(existing):
            parent = os.path.dirname(existing)
            if parent == existing:
                break
            existing = parent
        try:
            return self._free_mb(existing)
        except OSError as e:
            raise SaveIOError(f"Could not find internal disk for {self.layout.data_dir}: {e}") from e

    def _external_devices(self) -> List[Tuple[str, int]]:
        root = self.layout.media_root()
        if root is None:
            return []
        try:
            entries = list(os.scandir(root))
        except OSError as e:
            logger.warning("Cannot enumerate removable media under %s: %s", root, e)
            return []

        devices = []
        for entry in entries:
            if entry.name in self.layout.reserved_partitions:
                continue
            try:
                if not entry.is_dir():
                    continue
                devices.append((entry.name, self._free_mb(entry.path)))
            except OSError as e:
                logger.warning("Skipping device %s: %s", entry.name, e)
        return devices

    def list_devices(self) -> List[Tuple[str, int]]:
        """
        Return ``[(device_id, free_mb)]``, internal first.

        Raises SaveIOError when the internal disk cannot be resolved.
        """
        devices = [(INTERNAL_DEVICE_ID, self._internal_free_mb())]
        devices.extend(self._external_devices())
        return devices

    def devices(self) -> List[StorageDevice]:
        return [
            StorageDevice(
                id=device_id,
                kind=DeviceKind.INTERNAL if device_id == INTERNAL_DEVICE_ID else DeviceKind.EXTERNAL,
                free_space_mb=free,
            )
            for device_id, free in self.list_devices()
        ]

    def kind_of(self, device_id: str) -> DeviceKind:
        return DeviceKind.INTERNAL if self.layout.is_internal(device_id) else DeviceKind.EXTERNAL

    def has_save_dir(self, device_id: str) -> bool:
        if self.layout.is_internal(device_id):
            return True
        return os.path.isdir(self.layout.save_dir(device_id))

    def is_cart(self, device_id: str) -> bool:
        """A removable medium carrying a game (a .kzi next to its root) is not a save device."""
        if self.layout.is_internal(device_id):
            return False
        try:
            return bool(find_files_by_extension(
                self.layout.mount_point(device_id), CART_EXTENSION, 1, find_first=True))
        except (NotFoundError, SaveIOError):
            return False

    def is_cart_connected(self) -> bool:
        root = self.layout.media_root()
        if root is None:
            return False
        try:
            return bool(find_files_by_extension(root, CART_EXTENSION, 2, find_first=True))
        except (NotFoundError, SaveIOError):
            return False


class MediaState:
    """
    Device list shared between the refresh thread and the render loop.

    ``all_media`` holds every device; ``media`` only those usable for saves.
    Callers hold ``lock`` around update_media()/snapshot().
    """

    def __init__(self, registry: StorageDeviceRegistry):
        self.registry = registry
        self.lock = threading.Lock()
        self.all_media: List[StorageDevice] = []
        self.media: List[StorageDevice] = []
        self.selected = 0
        self.needs_memory_refresh = False

    def update_media(self) -> None:
        try:
            all_new_media = self.registry.devices()
        except SaveIOError as e:
            logger.error("Device scan failed: %s", e)
            all_new_media = []

        same_ids = (
            len(self.all_media) == len(all_new_media)
            and all(a.id == b.id for a, b in zip(self.all_media, all_new_media))
        )
        if same_ids:
            self.all_media = all_new_media
            free_by_id = {m.id: m.free_space_mb for m in all_new_media}
            for media in self.media:
                if media.id in free_by_id:
                    media.free_space_mb = free_by_id[media.id]
            return

        new_media = [
            StorageDevice(m.id, m.kind, m.free_space_mb)
            for m in all_new_media
            if self.registry.has_save_dir(m.id) and not self.registry.is_cart(m.id)
        ]

        new_pos = 0
        if 0 <= self.selected < len(self.media):
            old_id = self.media[self.selected].id
            for pos, media in enumerate(new_media):
                if media.id == old_id:
                    new_pos = pos
                    break

        log_event('devices.changed', ', '.join(m.id for m in new_media) or '<none>')
        self.all_media = all_new_media
        self.media = new_media
        self.selected = new_pos
        self.needs_memory_refresh = True

    def selected_device(self) -> Optional[StorageDevice]:
        if 0 <= self.selected < len(self.media):
            return self.media[self.selected]
        return None

    def select(self, index: int) -> None:
        if self.media:
            self.selected = max(0, min(index, len(self.media) - 1))
            self.needs_memory_refresh = True

    def snapshot(self) -> MediaSnapshot:
        return MediaSnapshot(
            all_media=[StorageDevice(m.id, m.kind, m.free_space_mb) for m in self.all_media],
            media=[StorageDevice(m.id, m.kind, m.free_space_mb) for m in self.media],
            selected=self.selected,
        )


class DeviceRefresher:
    """Background thread re-scanning devices every ``interval`` seconds."""

    def __init__(self, state: MediaState, interval: float = 1.0):
        self.state = state
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = start_monitored_thread(self._run, name='device-refresh')

    def stop(self) -> None:
        self._stop.set()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            with self.state.lock:
                self.state.update_media()
