"""
Utility functions for the save manager
"""

import math
import os
import shutil
import subprocess
import zipfile
import logging
from typing import List

from .errors import ArchiveError

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


def format_size(size_bytes: int) -> str:
    """
    Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted string (e.g., "1.5 MB")
    """
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1024:
            if unit == 'B':
                return f"{size_bytes} {unit}"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} PB"


def bytes_to_mb_rounded(size_bytes: int) -> float:
    """
    Convert bytes to MB, rounded up to one decimal place.

    Zero stays exactly 0.0; anything else is at least 0.1.
    """
    if size_bytes <= 0:
        return 0.0
    size_mb = size_bytes / BYTES_PER_MB
    return math.ceil(size_mb * 10) / 10


def bytes_to_whole_mb(size_bytes: int) -> int:
    return max(0, int(size_bytes // BYTES_PER_MB))


def sync_to_disk(enabled: bool = True) -> None:
    """Flush filesystem buffers. A failing sync is logged, not raised."""
    if not enabled:
        return
    sync = getattr(os, 'sync', None)
    if sync is not None:
        sync()
        return
    try:
        result = subprocess.run(['sync'], capture_output=True, check=False)
    except OSError as e:
        logger.warning("Failed to execute sync command: %s", e)
        return
    if result.returncode != 0:
        logger.warning("Sync command failed with status: %s", result.returncode)


def extract_zip(source, destination: str) -> List[str]:
    """
    Extract a zip archive (path or file object) into ``destination``.

    Entries that would land outside ``destination`` raise ArchiveError.
    Returns the extracted file paths.
    """
    root = os.path.abspath(destination)
    extracted = []
    try:
        with zipfile.ZipFile(source, 'r') as zf:
            for info in zf.infolist():
                target = os.path.abspath(os.path.join(root, info.filename))
                if os.path.commonpath([root, target]) != root:
                    raise ArchiveError(f"Zip entry escapes destination: {info.filename}")
                if info.is_dir():
                    os.makedirs(target, exist_ok=True)
                    continue
                os.makedirs(os.path.dirname(target), exist_ok=True)
                with zf.open(info) as src, open(target, 'wb') as dst:
                    shutil.copyfileobj(src, dst)
                extracted.append(target)
    except zipfile.BadZipFile as e:
        raise ArchiveError(f"Invalid zip archive: {e}") from e
    return extracted
