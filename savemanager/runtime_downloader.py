"""
Runtime downloader - installs emulator/compatibility runtimes (.kzr) from the
official runtime server and the Kazeta+ "runtimes" release.

Downloads stream in 8 KB chunks and report throttled progress through the
task bridge. Closing the screen cancels the download at its next progress
report.
"""

import logging
import os
import time
from dataclasses import dataclass
from enum import Enum, IntEnum, auto
from typing import Callable, Dict, List, Optional, Set, Tuple

import requests

from .bridge import BridgedScreen, Done, Failed, Message, Progress, ReceiverClosed, Sender
from .errors import NetworkError, NotFoundError, SaveIOError
from .monitor import log_event
from .net import DEFAULT_TIMEOUT, get_json
from .utils import BYTES_PER_MB, extract_zip

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 8192
PROGRESS_INTERVAL = 0.05

OFFICIAL_FILES = (
    'linux-1.0.kzr', 'windows-1.0.kzr', 'megadrive-1.1.kzr',
    'snes-1.0.kzr', 'nes-1.0.kzr', 'nintendo64-1.0.kzr',
)
OUTCASTER_FILES = ('dolphin-1.0.kzr', 'linux-1.1.kzr', 'windows-1.1.kzr')

# Third-party packs ship as zips; the first file listed marks the pack as installed
ZIP_EXTRACTED_FILES: Dict[str, Tuple[str, ...]] = {
    'pcengine-1.0.zip': ('pcengine-1.0.kzr', 'pcengine-info.txt'),
    'playstation-1.01.zip': ('playstation-1.01.kzr', 'playstation-info.txt'),
    'saturn-1.0.zip': ('saturn-1.0.kzr', 'saturn-info.txt'),
    'segacd-1.0.zip': ('segacd-1.0.kzr', 'segacd-info.txt'),
}


class RuntimeSource(IntEnum):
    OFFICIAL = 0
    OUTCASTER = 1
    THIRD_PARTY = 2


class RuntimePhase(Enum):
    IDLE = auto()
    FETCHING_LIST = auto()
    DISPLAYING_LIST = auto()
    CONFIRM_REDOWNLOAD = auto()
    CONFIRM_DELETE = auto()
    DOWNLOADING = auto()
    DELETING = auto()
    ERROR = auto()


@dataclass
class RemoteRuntime:
    name: str
    file_name: str
    description: str
    download_url: str
    source: RuntimeSource
    is_zip: bool = False
    is_installed: bool = False
    size_mb: Optional[float] = None


@dataclass(frozen=True)
class DownloadProgress:
    progress: Optional[float]  # 0.0..1.0, None when the size is unknown
    received_mb: float


def runtime_dir(settings_paths: Dict[str, str], dev_mode: bool) -> str:
    return settings_paths['dev_runtimes_dir'] if dev_mode else settings_paths['runtimes_dir']


def installed_runtime_files(runtimes_dir: str) -> Set[str]:
    try:
        return {entry.name for entry in os.scandir(runtimes_dir)}
    except OSError:
        return set()


def remote_file_size_mb(session: requests.Session, url: str, timeout=DEFAULT_TIMEOUT) -> Optional[float]:
    try:
        resp = session.head(url, timeout=timeout, allow_redirects=True)
    except requests.RequestException as e:
        logger.warning("HEAD request error for %s: %s", url, e)
        return None
    if resp.status_code != 200:
        logger.warning("HEAD request failed for %s: %s", url, resp.status_code)
        return None
    try:
        return int(resp.headers.get('content-length', '')) / BYTES_PER_MB
    except ValueError:
        return None


def mark_installed(runtimes: List[RemoteRuntime], installed: Set[str]) -> None:
    for runtime in runtimes:
        if runtime.is_zip:
            extracted = ZIP_EXTRACTED_FILES.get(runtime.file_name, ())
            runtime.is_installed = bool(extracted) and extracted[0] in installed
        else:
            runtime.is_installed = runtime.file_name in installed


def fetch_runtime_list(session: requests.Session, official_base_url: str, release_url: str,
                       runtimes_dir: str, timeout=DEFAULT_TIMEOUT) -> List[RemoteRuntime]:
    """Official runtimes plus the Kazeta+ release assets, sorted by (source, name)."""
    runtimes: List[RemoteRuntime] = []

    for filename in OFFICIAL_FILES:
        url = f"{official_base_url}{filename}"
        runtimes.append(RemoteRuntime(
            name=filename,
            file_name=filename,
            description="Official Kazeta runtime.",
            download_url=url,
            source=RuntimeSource.OFFICIAL,
            size_mb=remote_file_size_mb(session, url, timeout),
        ))

    try:
        release = get_json(session, release_url, timeout)
    except NetworkError as e:
        logger.warning("Failed to fetch Kazeta+ runtime release: %s", e)
        release = {}
    if not isinstance(release, dict):
        logger.warning("Failed to parse Kazeta+ runtime release JSON")
        release = {}

    for asset in release.get('assets') or []:
        name = asset.get('name', '')
        url = asset.get('browser_download_url', '')
        if name in OUTCASTER_FILES:
            runtimes.append(RemoteRuntime(
                name=name, file_name=name,
                description="Kazeta+ specific runtime.",
                download_url=url, source=RuntimeSource.OUTCASTER,
                size_mb=remote_file_size_mb(session, url, timeout),
            ))
        elif name in ZIP_EXTRACTED_FILES:
            runtimes.append(RemoteRuntime(
                name=name, file_name=name,
                description="Third-party runtime pack. This will be extracted.",
                download_url=url, source=RuntimeSource.THIRD_PARTY, is_zip=True,
                size_mb=remote_file_size_mb(session, url, timeout),
            ))

    runtimes.sort(key=lambda r: (r.source, r.name))
    mark_installed(runtimes, installed_runtime_files(runtimes_dir))

    if not runtimes:
        raise NetworkError("Failed to fetch any runtimes. Check internet connection.")
    return runtimes


def download_runtime(session: requests.Session, runtime: RemoteRuntime, runtimes_dir: str,
                     sender: Sender, timeout=DEFAULT_TIMEOUT,
                     progress_interval: float = PROGRESS_INTERVAL,
                     clock: Callable[[], float] = time.monotonic) -> str:
    """Stream ``runtime`` into ``runtimes_dir``; zips are extracted there."""
    try:
        os.makedirs(runtimes_dir, exist_ok=True)
    except OSError as e:
        raise SaveIOError(f"Failed to create runtime dir: {e}") from e

    part_path = os.path.join(runtimes_dir, runtime.file_name + '.part')
    received = 0
    try:
        with session.get(runtime.download_url, stream=True, timeout=timeout) as resp:
            if resp.status_code != 200:
                raise NetworkError(f"Download failed: Server returned {resp.status_code}")
            total = int(resp.headers.get('content-length', 0) or 0)

            last_update = clock()
            with open(part_path, 'wb') as f:
                for chunk in resp.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if not chunk:
                        continue
                    f.write(chunk)
                    received += len(chunk)
                    now = clock()
                    if now - last_update >= progress_interval:
                        progress = DownloadProgress(received / total if total else None,
                                                    received / BYTES_PER_MB)
                        if not sender.progress(progress):
                            raise ReceiverClosed("Download cancelled: UI closed")
                        last_update = now

        sender.progress(DownloadProgress(1.0, received / BYTES_PER_MB))

        if runtime.is_zip:
            extract_zip(part_path, runtimes_dir)
            os.remove(part_path)
        else:
            os.replace(part_path, os.path.join(runtimes_dir, runtime.file_name))
    except requests.RequestException as e:
        raise NetworkError(f"Download failed: {e}") from e
    except OSError as e:
        raise SaveIOError(f"Failed to save file: {e}") from e
    finally:
        if os.path.exists(part_path):
            try:
                os.remove(part_path)
            except OSError as e:
                logger.warning("Could not remove partial download %s: %s", part_path, e)

    log_event('runtime.install.done', f'{runtime.name} ({received} bytes) -> {runtimes_dir}')
    return runtime.name


def delete_runtime(runtime: RemoteRuntime, runtimes_dir: str) -> str:
    """Remove an installed runtime; for zip packs, every file the pack extracted."""
    if runtime.is_zip:
        files = ZIP_EXTRACTED_FILES.get(runtime.file_name)
        if not files:
            raise NotFoundError(f"Unknown zip file: {runtime.name}")
        deleted = 0
        last_error: Optional[OSError] = None
        for file_name in files:
            target = os.path.join(runtimes_dir, file_name)
            if not os.path.isfile(target):
                continue
            try:
                os.remove(target)
                deleted += 1
            except OSError as e:
                logger.warning("Failed to delete runtime file %s: %s", file_name, e)
                last_error = e
        if deleted == 0:
            if last_error is not None:
                raise SaveIOError(f"Failed to delete {runtime.name}: {last_error}") from last_error
            raise NotFoundError(f"Extracted files for {runtime.name} not found.")
    else:
        target = os.path.join(runtimes_dir, runtime.file_name)
        if not os.path.isfile(target):
            raise NotFoundError(f"File {runtime.file_name} not found.")
        try:
            os.remove(target)
        except OSError as e:
            raise SaveIOError(f"Failed to delete file: {e}") from e

    log_event('runtime.delete.done', f'{runtime.name} from {runtimes_dir}')
    return runtime.name


class RuntimeDownloaderScreen(BridgedScreen):
    """Idle -> FetchingList -> DisplayingList -> Downloading -> Idle (re-fetch) | Error."""

    def __init__(self, session: requests.Session, official_base_url: str, release_url: str,
                 runtimes_dir: str, timeout=DEFAULT_TIMEOUT,
                 progress_interval: float = PROGRESS_INTERVAL):
        super().__init__()
        self.session = session
        self.official_base_url = official_base_url
        self.release_url = release_url
        self.runtimes_dir = runtimes_dir
        self.timeout = timeout
        self.progress_interval = progress_interval
        self.phase = RuntimePhase.IDLE
        self.runtimes: List[RemoteRuntime] = []
        self.selected_index = 0
        self.active_name = ''
        self.progress: Optional[float] = None
        self.received_mb = 0.0
        self.last_result = ''
        self.error: Optional[str] = None

    def start_fetch(self) -> None:
        self.phase = RuntimePhase.FETCHING_LIST
        self.run_task(
            lambda sender: fetch_runtime_list(self.session, self.official_base_url,
                                              self.release_url, self.runtimes_dir, self.timeout),
            name='runtime-list',
        )

    def after_tick(self) -> None:
        if self.phase is RuntimePhase.IDLE:
            self.start_fetch()

    @property
    def selected_runtime(self) -> Optional[RemoteRuntime]:
        if 0 <= self.selected_index < len(self.runtimes):
            return self.runtimes[self.selected_index]
        return None

    def move_selection(self, delta: int) -> None:
        if self.runtimes:
            self.selected_index = max(0, min(len(self.runtimes) - 1, self.selected_index + delta))

    def select(self) -> None:
        runtime = self.selected_runtime
        if self.phase is not RuntimePhase.DISPLAYING_LIST or runtime is None:
            return
        if runtime.is_installed:
            self.phase = RuntimePhase.CONFIRM_REDOWNLOAD
        else:
            self._start_download(runtime)

    def request_delete(self) -> bool:
        runtime = self.selected_runtime
        if self.phase is not RuntimePhase.DISPLAYING_LIST or runtime is None or not runtime.is_installed:
            return False
        self.phase = RuntimePhase.CONFIRM_DELETE
        return True

    def confirm(self, yes: bool = True) -> None:
        runtime = self.selected_runtime
        if runtime is None or self.phase not in (RuntimePhase.CONFIRM_REDOWNLOAD, RuntimePhase.CONFIRM_DELETE):
            return
        if not yes:
            self.phase = RuntimePhase.DISPLAYING_LIST
        elif self.phase is RuntimePhase.CONFIRM_REDOWNLOAD:
            self._start_download(runtime)
        else:
            self.phase = RuntimePhase.DELETING
            self.active_name = f"Deleting {runtime.name}..."
            self.progress = None
            self.run_task(lambda sender: delete_runtime(runtime, self.runtimes_dir),
                          name='runtime-delete')

    def _start_download(self, runtime: RemoteRuntime) -> None:
        self.phase = RuntimePhase.DOWNLOADING
        self.active_name = runtime.name
        self.progress = 0.0
        self.received_mb = 0.0
        log_event('runtime.install.start', f'{runtime.name} <- {runtime.download_url}')
        self.run_task(
            lambda sender: download_runtime(self.session, runtime, self.runtimes_dir, sender,
                                            self.timeout, self.progress_interval),
            name='runtime-download',
        )

    def acknowledge(self) -> None:
        if self.phase is RuntimePhase.ERROR:
            self.error = None
            self.phase = RuntimePhase.IDLE

    def back(self) -> bool:
        """Returns False when the screen should be left."""
        if self.phase in (RuntimePhase.DISPLAYING_LIST, RuntimePhase.DOWNLOADING):
            # The download worker notices at its next progress report
            self.leave()
            self.phase = RuntimePhase.IDLE
            return False
        if self.phase in (RuntimePhase.CONFIRM_DELETE, RuntimePhase.CONFIRM_REDOWNLOAD):
            self.phase = RuntimePhase.DISPLAYING_LIST
        return True

    def handle_message(self, message: Message) -> None:
        if isinstance(message, Progress):
            payload = message.payload
            if self.phase is RuntimePhase.DOWNLOADING and isinstance(payload, DownloadProgress):
                self.progress = payload.progress
                self.received_mb = payload.received_mb
        elif isinstance(message, Failed):
            self.error = message.reason
            self.phase = RuntimePhase.ERROR
            log_event('runtime.failed', message.reason, logging.WARNING)
        elif isinstance(message, Done):
            if self.phase is RuntimePhase.FETCHING_LIST:
                self.runtimes = message.result or []
                self.selected_index = min(self.selected_index, max(0, len(self.runtimes) - 1))
                self.phase = RuntimePhase.DISPLAYING_LIST
            else:
                verb = 'deleted' if self.phase is RuntimePhase.DELETING else 'installed'
                self.last_result = f"'{message.result}' {verb}."
                # Idle re-fetches the list so install flags are current
                self.phase = RuntimePhase.IDLE
