"""
Update checker - compares the installed version with the latest GitHub release
and installs the release's upgrade kit on request.
"""

import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

import requests

from .bridge import BridgedScreen, Done, Failed, Message, Sender
from .errors import CommandError, NetworkError
from .monitor import log_event
from .net import DEFAULT_TIMEOUT, download_bytes, get_json
from .shared_config import LAUNCHER_VERSION
from .utils import extract_zip

logger = logging.getLogger(__name__)

UPGRADE_SCRIPT = 'upgrade-to-plus.sh'
UPDATE_ZIP_NAME = 'kazeta-update.zip'

_IMG_TAG = re.compile(r'<img[^>]*>')
_MD_LINK = re.compile(r'\[([^\]]+)\]\([^)]+\)')


class UpdatePhase(Enum):
    IDLE = auto()
    CHECKING = auto()
    UP_TO_DATE = auto()
    UPDATE_AVAILABLE = auto()
    DOWNLOADING = auto()
    INSTALLING = auto()
    ERROR = auto()


@dataclass
class ReleaseAsset:
    name: str
    browser_download_url: str


@dataclass
class Release:
    tag_name: str
    body: str = ''
    assets: List[ReleaseAsset] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'Release':
        return cls(
            tag_name=d.get('tag_name', ''),
            body=d.get('body') or '',
            assets=[
                ReleaseAsset(name=a.get('name', ''), browser_download_url=a.get('browser_download_url', ''))
                for a in d.get('assets') or []
            ],
        )

    def zip_asset(self) -> Optional[ReleaseAsset]:
        return next((a for a in self.assets if a.name.endswith('.zip')), None)


def clean_release_notes(body: str) -> str:
    """Drop inline images and keep only the text of markdown links."""
    return _MD_LINK.sub(r'\1', _IMG_TAG.sub('', body)).strip()


def check_latest(session: requests.Session, url: str, current_version: str,
                 timeout=DEFAULT_TIMEOUT) -> Optional[Release]:
    """Latest release if its tag differs from ``current_version``, else None."""
    data = get_json(session, url, timeout)
    if not isinstance(data, list):
        raise NetworkError("Failed to parse response: expected a list of releases")
    if not data:
        return None
    latest = Release.from_dict(data[0])
    if latest.tag_name != current_version:
        return latest
    return None


def install_release(session: requests.Session, release: Release, staging_dir: str,
                    launcher: Callable = subprocess.Popen, timeout=DEFAULT_TIMEOUT) -> str:
    """
    Download the release's .zip kit into ``staging_dir``, extract it and start
    its upgrade script with sudo. Returns the script path.
    """
    asset = release.zip_asset()
    if asset is None:
        raise NetworkError("No .zip asset found in the latest release.")

    payload = download_bytes(session, asset.browser_download_url, timeout)
    os.makedirs(staging_dir, exist_ok=True)
    zip_path = os.path.join(staging_dir, UPDATE_ZIP_NAME)
    with open(zip_path, 'wb') as f:
        f.write(payload)

    root_dir_name = asset.name[:-len('.zip')]
    kit_path = os.path.join(staging_dir, root_dir_name)
    if os.path.isdir(kit_path):
        try:
            shutil.rmtree(kit_path)
        except OSError as e:
            logger.warning("Failed to remove old kit directory: %s", e)

    extract_zip(zip_path, staging_dir)

    script_path = os.path.join(kit_path, UPGRADE_SCRIPT)
    if not os.path.isfile(script_path):
        raise CommandError(f"{UPGRADE_SCRIPT} not found in the archive.")
    os.chmod(script_path, 0o755)

    try:
        launcher(['sudo', script_path])
    except OSError as e:
        raise CommandError(f"Failed to start upgrade script: {e}") from e
    log_event('update.install.started', f'{release.tag_name}: {script_path}')
    return script_path


class UpdateCheckerScreen(BridgedScreen):
    """Checking -> UpToDate | UpdateAvailable -> Downloading -> Installing | Error."""

    def __init__(self, session: requests.Session, releases_url: str, staging_dir: str = '/tmp',
                 current_version: str = LAUNCHER_VERSION, launcher: Callable = subprocess.Popen,
                 timeout=DEFAULT_TIMEOUT):
        super().__init__()
        self.session = session
        self.releases_url = releases_url
        self.staging_dir = staging_dir
        self.current_version = current_version
        self.launcher = launcher
        self.timeout = timeout
        self.phase = UpdatePhase.CHECKING
        self.release: Optional[Release] = None
        self.script_path: Optional[str] = None
        self.error: Optional[str] = None

    @property
    def release_notes(self) -> str:
        return clean_release_notes(self.release.body) if self.release else ''

    def open(self) -> None:
        self.phase = UpdatePhase.CHECKING
        self.error = None
        self.release = None
        self.run_task(
            lambda sender: check_latest(self.session, self.releases_url, self.current_version, self.timeout),
            name='update-check',
        )

    def install(self) -> None:
        if self.phase is not UpdatePhase.UPDATE_AVAILABLE or self.release is None:
            return
        release = self.release
        self.phase = UpdatePhase.DOWNLOADING
        log_event('update.install.start', release.tag_name)

        def work(sender: Sender) -> str:
            return install_release(self.session, release, self.staging_dir,
                                   self.launcher, self.timeout)
        self.run_task(work, name='update-install')

    def acknowledge(self) -> bool:
        """Dismiss the check result. Returns False when the screen should be left."""
        if self.phase not in (UpdatePhase.UP_TO_DATE, UpdatePhase.UPDATE_AVAILABLE, UpdatePhase.ERROR):
            return True
        self.leave()
        self.error = None
        self.release = None
        self.phase = UpdatePhase.IDLE
        return False

    def handle_message(self, message: Message) -> None:
        if isinstance(message, Failed):
            self.error = message.reason
            self.phase = UpdatePhase.ERROR
            log_event('update.failed', message.reason, logging.WARNING)
        elif isinstance(message, Done):
            if self.phase is UpdatePhase.DOWNLOADING:
                self.script_path = message.result
                self.phase = UpdatePhase.INSTALLING
            elif message.result is None:
                self.phase = UpdatePhase.UP_TO_DATE
            else:
                self.release = message.result
                self.phase = UpdatePhase.UPDATE_AVAILABLE
                log_event('update.available', self.release.tag_name)
