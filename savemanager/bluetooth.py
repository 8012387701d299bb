"""
Bluetooth pairing screen driven by ``bluetoothctl``.

A discovery task keeps the device list fresh for as long as the screen is
open; pair/forget each run as their own task.
"""

import logging
import re
import subprocess
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Dict, List, Optional

from .bridge import AsyncTask, BridgedScreen, Done, Failed, Message, Progress, Sender, spawn_task
from .errors import CommandError
from .monitor import log_event

logger = logging.getLogger(__name__)

_DEVICE_LINE = re.compile(r'^Device\s+([0-9A-Fa-f]{2}(?::[0-9A-Fa-f]{2}){5})\s+(.+)$')
_MAC = re.compile(r'^[0-9A-Fa-f]{2}(?::[0-9A-Fa-f]{2}){5}$')

SCAN_SECONDS = 3
COMMAND_TIMEOUT = 30


class BluetoothPhase(Enum):
    DEVICE_LIST = auto()
    PAIRING = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    ERROR = auto()
    FORGET_CONFIRM = auto()


@dataclass(frozen=True)
class BluetoothDevice:
    mac_address: str
    name: str


def parse_devices(stdout: str) -> List[BluetoothDevice]:
    """Parse ``bluetoothctl devices`` output, dropping unnamed entries, sorted by name."""
    found: Dict[str, BluetoothDevice] = {}
    for line in stdout.splitlines():
        match = _DEVICE_LINE.match(line.strip())
        if not match:
            continue
        mac, name = match.group(1).upper(), match.group(2).strip()
        # bluetoothctl echoes the address as the name for devices without one
        if not name or name.replace('-', ':').upper() == mac:
            continue
        found[mac] = BluetoothDevice(mac_address=mac, name=name)
    return sorted(found.values(), key=lambda d: d.name)


class BluetoothScreen(BridgedScreen):
    """Device list plus pair and forget operations."""

    def __init__(self, runner: Callable = subprocess.run, scan_seconds: int = SCAN_SECONDS):
        super().__init__()
        self.runner = runner
        self.scan_seconds = scan_seconds
        self.phase = BluetoothPhase.DEVICE_LIST
        self.devices: List[BluetoothDevice] = []
        self.selected_index = 0
        self.active_name = ''
        self.forget_target: Optional[BluetoothDevice] = None
        self.error: Optional[str] = None
        self.discovery: Optional[AsyncTask] = None
        self._operation = ''

    # ── Worker side ──────────────────────────────────────────────

    def _ctl(self, *args: str, timeout: int = COMMAND_TIMEOUT):
        cmd = ['bluetoothctl', *args]
        try:
            return self.runner(cmd, capture_output=True, text=True, check=False, timeout=timeout)
        except (OSError, subprocess.SubprocessError) as e:
            raise CommandError(f"Failed to run bluetoothctl: {e}") from e

    def _list_devices(self) -> List[BluetoothDevice]:
        result = self._ctl('devices')
        if result.returncode != 0:
            raise CommandError(f"Polling failed: {(result.stderr or '').strip()}")
        return parse_devices(result.stdout or '')

    def _discover(self, sender: Sender) -> None:
        self._ctl('power', 'on')
        known: Optional[List[BluetoothDevice]] = None
        while not sender.closed:
            # scan blocks for the timeout, which also paces the loop
            self._ctl('--timeout', str(self.scan_seconds), 'scan', 'on',
                      timeout=self.scan_seconds + COMMAND_TIMEOUT)
            devices = self._list_devices()
            if devices != known:
                known = devices
                sender.progress_or_abort(devices)
            elif self.scan_seconds <= 0:
                time.sleep(0.1)

    def _pair(self, device: BluetoothDevice):
        def work(sender: Sender) -> str:
            info = self._ctl('info', device.mac_address)
            if 'Paired: yes' in (info.stdout or ''):
                log_event('bluetooth.pair.repair', device.mac_address)
                removed = self._ctl('remove', device.mac_address)
                if removed.returncode != 0:
                    logger.info("Could not remove %s before re-pairing: %s",
                                device.mac_address, (removed.stderr or '').strip())

            paired = self._ctl('pair', device.mac_address)
            if paired.returncode != 0:
                raise CommandError(f"Pairing Failed: {(paired.stderr or paired.stdout or '').strip()}")
            sender.progress(device.name)
            self._ctl('trust', device.mac_address)

            connected = self._ctl('connect', device.mac_address)
            if connected.returncode != 0:
                raise CommandError(f"Connection Failed: {(connected.stderr or connected.stdout or '').strip()}")
            return device.name
        return work

    def _forget(self, device: BluetoothDevice):
        def work(sender: Sender) -> str:
            result = self._ctl('remove', device.mac_address)
            if result.returncode != 0:
                raise CommandError(f"Failed to remove: {(result.stderr or result.stdout or '').strip()}")
            return device.mac_address
        return work

    # ── Screen actions ───────────────────────────────────────────

    def open(self) -> None:
        self.phase = BluetoothPhase.DEVICE_LIST
        if self.discovery is None:
            self.discovery = spawn_task(self._discover, name='bluetooth-discovery')

    @property
    def selected_device(self) -> Optional[BluetoothDevice]:
        if 0 <= self.selected_index < len(self.devices):
            return self.devices[self.selected_index]
        return None

    def move_selection(self, delta: int) -> None:
        if self.devices:
            self.selected_index = max(0, min(len(self.devices) - 1, self.selected_index + delta))

    def pair_selected(self) -> None:
        device = self.selected_device
        if self.phase is not BluetoothPhase.DEVICE_LIST or device is None:
            return
        self.phase = BluetoothPhase.PAIRING
        self.active_name = device.name
        self._operation = 'pair'
        log_event('bluetooth.pair.start', f'{device.name} ({device.mac_address})')
        self.run_task(self._pair(device), name='bluetooth-pair')

    def request_forget(self) -> None:
        device = self.selected_device
        if self.phase is BluetoothPhase.DEVICE_LIST and device is not None:
            self.forget_target = device
            self.phase = BluetoothPhase.FORGET_CONFIRM

    def confirm_forget(self) -> None:
        device = self.forget_target
        if self.phase is not BluetoothPhase.FORGET_CONFIRM or device is None:
            return
        if not _MAC.match(device.mac_address):
            self.error = f"Invalid MAC: {device.mac_address}"
            self.phase = BluetoothPhase.ERROR
            return
        self._operation = 'forget'
        self.phase = BluetoothPhase.DEVICE_LIST
        self.run_task(self._forget(device), name='bluetooth-forget')

    def cancel(self) -> None:
        """Back out of a confirm/pairing state to the device list."""
        if self.phase is not BluetoothPhase.DEVICE_LIST:
            if self.phase in (BluetoothPhase.PAIRING, BluetoothPhase.CONNECTING) and self.task is not None:
                self.task.close()
                self.task = None
            self.forget_target = None
            self.phase = BluetoothPhase.DEVICE_LIST

    def acknowledge(self) -> None:
        if self.phase in (BluetoothPhase.CONNECTED, BluetoothPhase.ERROR):
            self.phase = BluetoothPhase.DEVICE_LIST
            self.error = None

    def leave(self) -> None:
        super().leave()
        if self.discovery is not None:
            self.discovery.close()
            self.discovery = None

    # ── Folding results ──────────────────────────────────────────

    def _set_devices(self, devices: List[BluetoothDevice]) -> None:
        self.devices = list(devices)
        if self.selected_index >= len(self.devices):
            self.selected_index = max(0, len(self.devices) - 1)

    def after_tick(self) -> None:
        if self.discovery is None:
            return
        message = self.discovery.poll()
        if isinstance(message, Progress):
            self._set_devices(message.payload or [])
        elif isinstance(message, Failed):
            self.discovery = None
            self.error = message.reason
            self.phase = BluetoothPhase.ERROR

    def handle_message(self, message: Message) -> None:
        if isinstance(message, Failed):
            self.error = message.reason
            self.phase = BluetoothPhase.ERROR
            log_event('bluetooth.failed', f'{self._operation}: {message.reason}', logging.WARNING)
        elif isinstance(message, Progress):
            if self._operation == 'pair':
                self.phase = BluetoothPhase.CONNECTING
        elif isinstance(message, Done):
            if self._operation == 'pair':
                self.active_name = message.result
                self.phase = BluetoothPhase.CONNECTED
                log_event('bluetooth.connect.done', str(message.result))
            elif self._operation == 'forget':
                self._set_devices([d for d in self.devices if d.mac_address != message.result])
                self.forget_target = None
                log_event('bluetooth.forget.done', str(message.result))
