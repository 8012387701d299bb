"""
Data models for the save manager
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class DeviceKind(Enum):
    INTERNAL = 'internal'
    EXTERNAL = 'external'


@dataclass
class StorageDevice:
    """The internal store or one removable medium"""
    id: str
    kind: DeviceKind
    free_space_mb: int = 0


@dataclass
class SaveEntry:
    """One unit of game save data on one device"""
    id: str
    owning_device: str
    icon_ref: str
    display_name: Optional[str] = None
    size_mb: float = 0.0
    playtime_hours: Optional[float] = None

    @property
    def key(self):
        return (self.id, self.owning_device)

    @property
    def sort_name(self) -> str:
        return self.display_name or self.id


@dataclass
class TransferJob:
    """Observable state of the single active copy/delete operation"""
    progress: int = 0
    running: bool = False
    error: Optional[str] = None
    completion_signal: bool = False
    action: str = ''       # 'copy' or 'delete'
    save_id: str = ''


@dataclass
class CartInfo:
    """Metadata parsed from a cartridge .kzi file"""
    id: str
    exec: str
    icon: str
    name: Optional[str] = None
    runtime: Optional[str] = None


@dataclass
class MediaSnapshot:
    """Render-side copy of the device list"""
    all_media: List[StorageDevice] = field(default_factory=list)
    media: List[StorageDevice] = field(default_factory=list)
    selected: int = 0
