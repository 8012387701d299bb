"""
savemanager - save data storage and transfer engine for the Kazeta launcher

Moves game saves between the internal store (directory trees) and removable
media (tar archives), and runs the launcher's network features on background
tasks polled once per frame.
"""

__version__ = '1.0.0'
__author__ = 'Kazeta+'

from .models import DeviceKind, StorageDevice, SaveEntry, TransferJob, CartInfo
from .errors import (
    SaveError, NotFoundError, AlreadyExistsError, InvalidArgumentError,
    EmptyTransferError, SaveIOError, ArchiveError, NetworkError, JobBusyError,
)
from .shared_config import StorageLayout
from .devices import StorageDeviceRegistry, MediaState
from .catalog import SaveCatalog
from .progress import ProgressCell
from .transfer import TransferEngine
from .jobs import TransferJobSlot
from .bridge import channel, spawn_task, Progress, Done, Failed
from .utils import format_size


__all__ = [
    'DeviceKind',
    'StorageDevice',
    'SaveEntry',
    'TransferJob',
    'CartInfo',
    'SaveError',
    'NotFoundError',
    'AlreadyExistsError',
    'InvalidArgumentError',
    'EmptyTransferError',
    'SaveIOError',
    'ArchiveError',
    'NetworkError',
    'JobBusyError',
    'StorageLayout',
    'StorageDeviceRegistry',
    'MediaState',
    'SaveCatalog',
    'ProgressCell',
    'TransferEngine',
    'TransferJobSlot',
    'channel',
    'spawn_task',
    'Progress',
    'Done',
    'Failed',
    'format_size',
]
