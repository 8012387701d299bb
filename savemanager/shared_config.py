"""
Shared storage configuration.
Every save/cache path on every device is derived from a StorageLayout so the
registry, catalog and transfer engine always agree on where things live.
"""

import getpass
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

INTERNAL_DEVICE_ID = 'internal'

# Layout inside a device
INTERNAL_SAVES_SUBDIR = os.path.join('saves', 'default')
INTERNAL_CACHE_SUBDIR = 'cache'
EXTERNAL_SAVES_SUBDIR = os.path.join('kazeta', 'saves')
EXTERNAL_CACHE_SUBDIR = os.path.join('kazeta', 'cache')

ARCHIVE_SUFFIX = '.tar'
METADATA_FILENAME = 'metadata.kzi'
ICON_FILENAME = 'icon.png'
SIDECAR_FILES = (METADATA_FILENAME, ICON_FILENAME)
CART_EXTENSION = 'kzi'

# Runtime scratch data inside a save tree; never counted or copied.
EXCLUDED_DIRS = (
    '.cache',
    '.config/pulse/cookie',
    '.kazeta/share',
    '.kazeta/var/prefix/dosdevices',
    '.kazeta/var/prefix/drive_c/windows',
    '.kazeta/var/prefix/pfx',
)

PLAYTIME_LOG = '.kazeta/var/playtime.log'
PLAYTIME_START = '.kazeta/var/playtime_start'
PLAYTIME_END = '.kazeta/var/playtime_end'

COPY_CHUNK_SIZE = 8192

# Release tag of the installed launcher, compared against GitHub releases
LAUNCHER_VERSION = 'V2025.KAZETA+'


def default_media_roots() -> List[str]:
    """Candidate removable-media roots, most preferred first."""
    roots = []
    try:
        if os.listdir('/media'):
            roots.append('/media')
    except OSError:
        pass
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = ''
    if user:
        roots.append(os.path.join('/run/media', user))
    roots.append('/run/media')
    return roots


def is_excluded_path(rel_path: str) -> bool:
    """True when ``rel_path`` (relative to a save root) is one of EXCLUDED_DIRS or inside one."""
    normalized = rel_path.replace(os.sep, '/').strip('/')
    return any(
        normalized == excluded or normalized.startswith(excluded + '/')
        for excluded in EXCLUDED_DIRS
    )


@dataclass
class StorageLayout:
    """Where the internal store and removable media live on this system.

    With ``media_roots`` left as None the candidate roots are recomputed on
    every lookup, so media mounted after startup are still found.
    """
    data_dir: str
    media_roots: Optional[Sequence[str]] = None
    reserved_partitions: Sequence[str] = ('frzr_efi',)
    sync_to_disk: bool = True

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> 'StorageLayout':
        storage = settings.get('storage', {})
        roots = storage.get('media_roots')
        return cls(
            data_dir=os.path.expanduser(storage.get('data_dir', '~/.local/share/kazeta')),
            media_roots=list(roots) if roots else None,
            reserved_partitions=tuple(storage.get('reserved_partitions', ('frzr_efi',))),
            sync_to_disk=bool(storage.get('sync_to_disk', True)),
        )

    def candidate_roots(self) -> List[str]:
        if self.media_roots is not None:
            return list(self.media_roots)
        return default_media_roots()

    def media_root(self) -> Optional[str]:
        """First media root that exists, or None."""
        for root in self.candidate_roots():
            if os.path.isdir(root):
                return root
        return None

    @staticmethod
    def is_internal(device_id: str) -> bool:
        return device_id == INTERNAL_DEVICE_ID or device_id == ''

    def mount_point(self, device_id: str) -> str:
        if self.is_internal(device_id):
            return self.data_dir
        candidates = self.candidate_roots()
        root = self.media_root() or (candidates[-1] if candidates else '/run/media')
        return os.path.join(root, device_id)

    def save_dir(self, device_id: str) -> str:
        if self.is_internal(device_id):
            return os.path.join(self.data_dir, INTERNAL_SAVES_SUBDIR)
        return os.path.join(self.mount_point(device_id), EXTERNAL_SAVES_SUBDIR)

    def cache_dir(self, device_id: str) -> str:
        if self.is_internal(device_id):
            return os.path.join(self.data_dir, INTERNAL_CACHE_SUBDIR)
        return os.path.join(self.mount_point(device_id), EXTERNAL_CACHE_SUBDIR)

    def save_path(self, device_id: str, save_id: str) -> str:
        """Directory form of a save."""
        return os.path.join(self.save_dir(device_id), save_id)

    def archive_path(self, device_id: str, save_id: str) -> str:
        """Archive form of a save."""
        return os.path.join(self.save_dir(device_id), save_id + ARCHIVE_SUFFIX)

    def entry_cache_dir(self, device_id: str, save_id: str) -> str:
        return os.path.join(self.cache_dir(device_id), save_id)

    def metadata_path(self, device_id: str, save_id: str) -> str:
        return os.path.join(self.entry_cache_dir(device_id, save_id), METADATA_FILENAME)

    def icon_path(self, device_id: str, save_id: str) -> str:
        return os.path.join(self.entry_cache_dir(device_id, save_id), ICON_FILENAME)
