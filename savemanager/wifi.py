"""
Wi-Fi setup screen backed by NetworkManager's ``nmcli``.

Preparing -> Scanning -> List -> PasswordInput -> Connecting -> Connected | Error.
Every nmcli call runs on a bridge task; the screen only folds results.
"""

import logging
import subprocess
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, List, Optional

from .bridge import BridgedScreen, Done, Failed, Message, Sender
from .errors import CommandError, NetworkError
from .monitor import log_event

logger = logging.getLogger(__name__)

WIFI_SETUP_SCRIPT = '/usr/bin/kazeta-wifi-setup'
SCAN_COMMAND = ['nmcli', '--terse', '--fields', 'SSID,SIGNAL,SECURITY', 'device', 'wifi', 'list']
COMMAND_TIMEOUT = 60


class WifiPhase(Enum):
    PREPARING = auto()
    SCANNING = auto()
    LIST = auto()
    PASSWORD_INPUT = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    ERROR = auto()


@dataclass
class AccessPoint:
    ssid: str
    signal_level: int
    security: str = ''

    @property
    def is_open(self) -> bool:
        return not self.security


def parse_scan_output(stdout: str) -> List[AccessPoint]:
    """Parse ``nmcli --terse`` output (``SSID:SIGNAL:SECURITY``), strongest first."""
    aps = []
    for line in stdout.splitlines():
        parts = line.split(':')
        if len(parts) < 3:
            continue
        ssid, signal_str, security = parts[0], parts[1], parts[2]
        try:
            signal = int(signal_str)
        except ValueError:
            continue
        if not ssid or not 0 <= signal <= 255:
            continue
        aps.append(AccessPoint(ssid=ssid, signal_level=signal, security=security))
    aps.sort(key=lambda ap: ap.signal_level, reverse=True)
    return aps


class WifiScreen(BridgedScreen):
    """State machine for joining a wireless network."""

    def __init__(self, runner: Callable = subprocess.run, dev_mode: bool = False):
        super().__init__()
        self.runner = runner
        self.dev_mode = dev_mode
        self.phase = WifiPhase.PREPARING
        self.networks: List[AccessPoint] = []
        self.scan_error: Optional[str] = None
        self.selected_index = 0
        self.password = ''
        self.error: Optional[str] = None
        self._operation = ''

    # ── Commands (worker side) ───────────────────────────────────

    def _run(self, cmd: List[str]):
        try:
            return self.runner(cmd, capture_output=True, text=True, check=False,
                               timeout=COMMAND_TIMEOUT)
        except (OSError, subprocess.SubprocessError) as e:
            raise CommandError(f"Failed to run {cmd[0]}: {e}") from e

    def _prepare(self, sender: Sender) -> None:
        if self.dev_mode:
            return None
        result = self._run(['sudo', WIFI_SETUP_SCRIPT])
        if result.returncode != 0:
            raise CommandError(f"Setup script failed: {(result.stderr or '').strip()}")
        return None

    def _scan(self, sender: Sender) -> List[AccessPoint]:
        result = self._run(SCAN_COMMAND)
        return parse_scan_output(result.stdout or '')

    def _connect(self, ssid: str, password: str):
        def work(sender: Sender) -> str:
            # A stale profile with different key management makes the connect fail
            try:
                self._run(['nmcli', 'connection', 'delete', ssid])
            except CommandError as e:
                logger.debug("Could not delete existing profile for %s: %s", ssid, e)
            cmd = ['nmcli', 'device', 'wifi', 'connect', ssid]
            if password:
                cmd += ['password', password]
            result = self._run(cmd)
            if result.returncode != 0:
                raise NetworkError((result.stderr or '').strip() or f"nmcli exited with {result.returncode}")
            return ssid
        return work

    # ── Screen actions ───────────────────────────────────────────

    def _start(self, operation: str, work) -> None:
        self._operation = operation
        self.run_task(work, name=f'wifi-{operation}')

    def open(self) -> None:
        self.phase = WifiPhase.PREPARING
        self.error = None
        self._start('prepare', self._prepare)

    def scan(self) -> None:
        self.phase = WifiPhase.SCANNING
        self._start('scan', self._scan)

    @property
    def selected_network(self) -> Optional[AccessPoint]:
        if 0 <= self.selected_index < len(self.networks):
            return self.networks[self.selected_index]
        return None

    def move_selection(self, delta: int) -> None:
        if self.phase is WifiPhase.LIST and self.networks:
            self.selected_index = max(0, min(len(self.networks) - 1, self.selected_index + delta))

    def select(self) -> None:
        """Choose the highlighted network; open networks connect right away."""
        ap = self.selected_network
        if self.phase is not WifiPhase.LIST or ap is None:
            return
        self.password = ''
        if ap.is_open:
            self.connect()
        else:
            self.phase = WifiPhase.PASSWORD_INPUT

    def connect(self, password: Optional[str] = None) -> None:
        ap = self.selected_network
        if ap is None:
            return
        if password is not None:
            self.password = password
        self.phase = WifiPhase.CONNECTING
        log_event('wifi.connect.start', ap.ssid)
        self._start('connect', self._connect(ap.ssid, self.password))

    def acknowledge(self) -> None:
        if self.phase in (WifiPhase.CONNECTED, WifiPhase.ERROR):
            self.phase = WifiPhase.LIST
            self.error = None

    def back(self) -> bool:
        """Step back one level; return False when the screen should be left."""
        self.leave()
        if self.phase is WifiPhase.LIST:
            return False
        self.phase = WifiPhase.LIST
        self.password = ''
        return True

    # ── Folding results ──────────────────────────────────────────

    def handle_message(self, message: Message) -> None:
        operation = self._operation
        if isinstance(message, Failed):
            if operation == 'scan':
                self.networks = []
                self.scan_error = message.reason
                self.selected_index = 0
                self.phase = WifiPhase.LIST
                return
            self.error = message.reason
            self.phase = WifiPhase.ERROR
            log_event('wifi.failed', f'{operation}: {message.reason}', logging.WARNING)
            return
        if not isinstance(message, Done):
            return

        if operation == 'prepare':
            self.scan()
        elif operation == 'scan':
            self.networks = message.result or []
            self.scan_error = None
            self.selected_index = 0
            self.phase = WifiPhase.LIST
        elif operation == 'connect':
            self.phase = WifiPhase.CONNECTED
            log_event('wifi.connect.done', str(message.result))
