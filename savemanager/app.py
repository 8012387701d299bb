"""
Headless launcher core: wires device discovery, the save catalog, the
transfer job slot and the bridged feature screens into one tick loop.

A frontend calls tick() once per frame and renders from the public state;
nothing called from tick() waits on a worker thread.
"""

import logging
import subprocess
from typing import Any, Callable, Dict, List, Optional

import requests

from .bluetooth import BluetoothScreen
from .bridge import BridgedScreen
from .catalog import SaveCatalog
from .devices import DeviceRefresher, MediaState, StorageDeviceRegistry
from .errors import SaveError
from .jobs import TransferJobSlot
from .models import MediaSnapshot, SaveEntry, TransferJob
from .monitor import log_event, monitor_action
from .net import build_session, timeout_from_settings
from .runtime_downloader import RuntimeDownloaderScreen, runtime_dir
from .settings import load_settings
from .shared_config import StorageLayout
from .theme_downloader import ThemeDownloaderScreen
from .transfer import TransferEngine
from .update_checker import UpdateCheckerScreen, UpdatePhase
from .wifi import WifiScreen

logger = logging.getLogger(__name__)

SCREEN_NAMES = ('wifi', 'bluetooth', 'update', 'themes', 'runtimes')


class Launcher:
    """Owns every long-lived piece of state the save/data screens render."""

    def __init__(self, settings: Optional[Dict[str, Any]] = None,
                 session: Optional[requests.Session] = None,
                 runner: Callable = subprocess.run):
        self.settings = settings if settings is not None else load_settings()
        self.layout = StorageLayout.from_settings(self.settings)
        timing = self.settings['timing']

        self.registry = StorageDeviceRegistry(self.layout)
        self.media = MediaState(self.registry)
        with self.media.lock:
            self.media.update_media()
        self.refresher = DeviceRefresher(self.media, timing['device_refresh_interval'])

        self.catalog = SaveCatalog(self.layout)
        self.jobs = TransferJobSlot(
            TransferEngine(self.layout),
            poll_interval=timing['progress_poll_interval'],
            start_delay=timing['start_delay'],
            completion_hold=timing['completion_hold'],
        )

        self._session = session
        self.runner = runner
        self.screens: Dict[str, BridgedScreen] = {}
        self.active_screen: Optional[str] = None

        self.saves: List[SaveEntry] = []
        self.saves_error: Optional[str] = None
        self.dialog_error: Optional[str] = None
        self.should_clear_dialogs = False
        self.reload_themes = False
        self.exit_requested = False

    # ── Lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        monitor_action('launcher start')
        self.refresher.start()

    def stop(self) -> None:
        self.refresher.stop()
        for screen in self.screens.values():
            screen.leave()
        monitor_action('launcher stop')

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = build_session(self.settings['network'].get('user_agent', 'KazetaPlus-Updater'))
        return self._session

    # ── Devices and saves ────────────────────────────────────────

    def media_snapshot(self) -> MediaSnapshot:
        with self.media.lock:
            return self.media.snapshot()

    def select_device(self, index: int) -> None:
        with self.media.lock:
            self.media.select(index)

    def refresh_saves(self, device_id: str) -> None:
        try:
            self.saves = self.catalog.get_save_details(device_id)
            self.saves_error = None
        except SaveError as e:
            logger.warning("Could not list saves on %s: %s", device_id, e)
            self.saves = []
            self.saves_error = str(e)

    def job_snapshot(self) -> TransferJob:
        return self.jobs.snapshot()

    def copy_save(self, save_id: str, from_device: str, to_device: str) -> None:
        monitor_action(f'copy {save_id} {from_device} -> {to_device}')
        self.jobs.start_copy(save_id, from_device, to_device)

    def delete_save(self, save_id: str, device_id: str) -> None:
        monitor_action(f'delete {save_id} on {device_id}')
        self.jobs.start_delete(save_id, device_id)

    # ── Screens ──────────────────────────────────────────────────

    def _build_screen(self, name: str) -> BridgedScreen:
        network = self.settings['network']
        paths = self.settings['paths']
        timeout = timeout_from_settings(self.settings)
        dev_mode = bool(self.settings.get('dev_mode'))

        if name == 'wifi':
            return WifiScreen(runner=self.runner, dev_mode=dev_mode)
        if name == 'bluetooth':
            return BluetoothScreen(runner=self.runner)
        if name == 'update':
            return UpdateCheckerScreen(self.session, network['update_releases_url'],
                                       staging_dir=paths['update_staging_dir'], timeout=timeout)
        if name == 'themes':
            return ThemeDownloaderScreen(self.session, network['theme_releases_url'],
                                         paths['themes_dir'], timeout=timeout)
        if name == 'runtimes':
            return RuntimeDownloaderScreen(self.session, network['official_runtime_base_url'],
                                           network['runtime_release_url'],
                                           runtime_dir(paths, dev_mode), timeout=timeout)
        raise KeyError(f"Unknown screen: {name}")

    def open_screen(self, name: str) -> BridgedScreen:
        if self.active_screen is not None and self.active_screen != name:
            self.close_screen()
        screen = self.screens.get(name)
        if screen is None:
            screen = self.screens[name] = self._build_screen(name)
        self.active_screen = name
        opener = getattr(screen, 'open', None)
        if opener is not None:
            opener()
        log_event('launcher.screen.open', name)
        return screen

    def close_screen(self) -> None:
        if self.active_screen is None:
            return
        screen = self.screens.pop(self.active_screen, None)
        if screen is not None:
            screen.leave()
        log_event('launcher.screen.close', self.active_screen)
        self.active_screen = None

    # ── Per-frame update ─────────────────────────────────────────

    def tick(self) -> None:
        """Fold pending background results into the launcher state. Never blocks on workers."""
        refresh_device = None
        with self.media.lock:
            if self.media.needs_memory_refresh:
                self.media.needs_memory_refresh = False
                device = self.media.selected_device()
                refresh_device = device.id if device else None
        if refresh_device is not None:
            self.refresh_saves(refresh_device)

        error, completed = self.jobs.take_events()
        if error:
            self.dialog_error = error
        if completed:
            self.should_clear_dialogs = True
            with self.media.lock:
                self.media.needs_memory_refresh = True

        if self.active_screen is None:
            return
        screen = self.screens[self.active_screen]
        screen.tick()
        if isinstance(screen, UpdateCheckerScreen) and screen.phase is UpdatePhase.INSTALLING:
            self.exit_requested = True
        if isinstance(screen, ThemeDownloaderScreen) and screen.reload_requested:
            screen.reload_requested = False
            self.reload_themes = True
