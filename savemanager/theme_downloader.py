"""
Theme downloader - lists community themes published as GitHub releases and
installs or removes them under the themes directory.
"""

import io
import logging
import os
import shutil
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Dict, List, Optional, Set

import requests

from .bridge import BridgedScreen, Done, Failed, Message, Sender
from .errors import NetworkError, NotFoundError, SaveIOError
from .monitor import log_event
from .net import DEFAULT_TIMEOUT, download_bytes, get_json
from .utils import extract_zip

logger = logging.getLogger(__name__)

DEFAULT_THEME_NAME = 'Default'


class ThemePhase(Enum):
    IDLE = auto()
    FETCHING_LIST = auto()
    DISPLAYING_LIST = auto()
    CONFIRM_REDOWNLOAD = auto()
    CONFIRM_DELETE = auto()
    DOWNLOADING = auto()
    DELETING = auto()
    SUCCESS = auto()
    ERROR = auto()


@dataclass
class RemoteTheme:
    name: str
    folder_name: str
    author: str
    description: str
    download_url: str
    is_installed: bool = False


def _author_from_body(body: str) -> str:
    for line in body.splitlines():
        if line.lower().startswith('author:'):
            return line.split(':', 1)[1].strip()
    return 'Unknown'


def themes_from_releases(releases: List[Dict[str, Any]]) -> List[RemoteTheme]:
    """One theme per release that carries a .zip asset."""
    themes = []
    for release in releases:
        asset = next((a for a in release.get('assets') or [] if a.get('name', '').endswith('.zip')), None)
        if asset is None:
            continue
        body = release.get('body') or ''
        themes.append(RemoteTheme(
            name=release.get('name') or asset['name'][:-len('.zip')],
            folder_name=asset['name'][:-len('.zip')],
            author=_author_from_body(body),
            description=body,
            download_url=asset.get('browser_download_url', ''),
        ))
    return themes


def installed_theme_folders(themes_dir: str) -> Set[str]:
    try:
        return {entry.name for entry in os.scandir(themes_dir) if entry.is_dir()}
    except OSError:
        return set()


class ThemeDownloaderScreen(BridgedScreen):
    """Idle -> FetchingList -> DisplayingList -> Downloading -> Success | Error."""

    def __init__(self, session: requests.Session, releases_url: str, themes_dir: str,
                 timeout=DEFAULT_TIMEOUT):
        super().__init__()
        self.session = session
        self.releases_url = releases_url
        self.themes_dir = themes_dir
        self.timeout = timeout
        self.phase = ThemePhase.IDLE
        self.themes: List[RemoteTheme] = []
        self.selected_index = 0
        self.message = ''
        self.error: Optional[str] = None
        # Set after an install or delete; the launcher reloads its theme assets
        self.reload_requested = False

    # ── Worker side ──────────────────────────────────────────────

    def _fetch(self, sender: Sender) -> List[RemoteTheme]:
        try:
            releases = get_json(self.session, self.releases_url, self.timeout)
        except NetworkError as e:
            raise NetworkError(f"Failed to fetch theme list from GitHub: {e}") from e
        if not isinstance(releases, list):
            raise NetworkError("Failed to parse theme list from GitHub.")
        themes = themes_from_releases(releases)
        installed = installed_theme_folders(self.themes_dir)
        for theme in themes:
            theme.is_installed = theme.folder_name in installed
        return themes

    def _install(self, theme: RemoteTheme):
        def work(sender: Sender) -> str:
            payload = download_bytes(self.session, theme.download_url, self.timeout)
            os.makedirs(self.themes_dir, exist_ok=True)
            extract_zip(io.BytesIO(payload), self.themes_dir)
            return f"'{theme.name}' installed!"
        return work

    def _delete(self, theme: RemoteTheme):
        def work(sender: Sender) -> str:
            path = os.path.join(self.themes_dir, theme.folder_name)
            if not os.path.isdir(path):
                raise NotFoundError(f"Theme folder {theme.folder_name} is not installed")
            try:
                shutil.rmtree(path)
            except OSError as e:
                raise SaveIOError(f"Failed to delete: {e}") from e
            return f"'{theme.name}' deleted."
        return work

    # ── Screen actions ───────────────────────────────────────────

    def start_fetch(self) -> None:
        self.phase = ThemePhase.FETCHING_LIST
        self.run_task(self._fetch, name='theme-list')

    def after_tick(self) -> None:
        if self.phase is ThemePhase.IDLE:
            self.start_fetch()

    @property
    def selected_theme(self) -> Optional[RemoteTheme]:
        if 0 <= self.selected_index < len(self.themes):
            return self.themes[self.selected_index]
        return None

    def move_selection(self, delta: int) -> None:
        if self.themes:
            self.selected_index = max(0, min(len(self.themes) - 1, self.selected_index + delta))

    def select(self) -> None:
        """Install the highlighted theme; installed ones ask before re-downloading."""
        theme = self.selected_theme
        if self.phase is not ThemePhase.DISPLAYING_LIST or theme is None:
            return
        if theme.is_installed:
            self.phase = ThemePhase.CONFIRM_REDOWNLOAD
        else:
            self._start_install(theme)

    def confirm(self, yes: bool = True) -> None:
        theme = self.selected_theme
        if theme is None or self.phase not in (ThemePhase.CONFIRM_REDOWNLOAD, ThemePhase.CONFIRM_DELETE):
            return
        if not yes:
            self.phase = ThemePhase.DISPLAYING_LIST
        elif self.phase is ThemePhase.CONFIRM_REDOWNLOAD:
            self._start_install(theme)
        else:
            self.phase = ThemePhase.DELETING
            self.message = theme.name
            self.run_task(self._delete(theme), name='theme-delete')

    def request_delete(self) -> bool:
        """Ask to delete the highlighted theme; the default theme and missing ones are refused."""
        theme = self.selected_theme
        if (self.phase is not ThemePhase.DISPLAYING_LIST or theme is None
                or not theme.is_installed or theme.name == DEFAULT_THEME_NAME):
            return False
        self.phase = ThemePhase.CONFIRM_DELETE
        return True

    def _start_install(self, theme: RemoteTheme) -> None:
        self.phase = ThemePhase.DOWNLOADING
        self.message = theme.name
        log_event('theme.install.start', f'{theme.name} -> {self.themes_dir}')
        self.run_task(self._install(theme), name='theme-install')

    def acknowledge(self) -> None:
        if self.phase in (ThemePhase.SUCCESS, ThemePhase.ERROR):
            self.error = None
            self.message = ''
            self.phase = ThemePhase.IDLE

    def back(self) -> bool:
        """Return to the list; returns False when the screen should be left."""
        if self.phase is ThemePhase.DISPLAYING_LIST:
            self.leave()
            self.phase = ThemePhase.IDLE
            return False
        if self.phase in (ThemePhase.CONFIRM_DELETE, ThemePhase.CONFIRM_REDOWNLOAD):
            self.phase = ThemePhase.DISPLAYING_LIST
        return True

    # ── Folding results ──────────────────────────────────────────

    def handle_message(self, message: Message) -> None:
        if isinstance(message, Failed):
            self.error = message.reason
            self.phase = ThemePhase.ERROR
            log_event('theme.failed', message.reason, logging.WARNING)
        elif isinstance(message, Done):
            if self.phase is ThemePhase.FETCHING_LIST:
                self.themes = message.result or []
                self.selected_index = min(self.selected_index, max(0, len(self.themes) - 1))
                self.phase = ThemePhase.DISPLAYING_LIST
            else:
                self.message = message.result
                self.phase = ThemePhase.SUCCESS
                self.reload_requested = True
                log_event('theme.changed', message.result)
