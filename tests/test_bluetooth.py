import time
from types import SimpleNamespace

from savemanager.bluetooth import (
    BluetoothDevice, BluetoothPhase, BluetoothScreen, parse_devices,
)

DEVICES_OUTPUT = (
    'Device AA:BB:CC:DD:EE:01 Xbox Wireless Controller\n'
    'Device aa:bb:cc:dd:ee:02 8BitDo Pro 2\n'
    'Device AA:BB:CC:DD:EE:03 AA-BB-CC-DD-EE-03\n'
    'Controller 11:22:33:44:55:66 kazeta [default]\n'
    'garbage line\n'
)


def _ok(stdout=''):
    return SimpleNamespace(returncode=0, stdout=stdout, stderr='')


class FakeCtl:
    """Stands in for subprocess.run; answers by bluetoothctl subcommand."""

    def __init__(self, **overrides):
        self.calls = []
        self.overrides = overrides

    def __call__(self, cmd, **kwargs):
        assert cmd[0] == 'bluetoothctl'
        args = cmd[1:]
        self.calls.append(args)
        verb = args[2] if args[0] == '--timeout' else args[0]
        if verb in self.overrides:
            return self.overrides[verb]
        if verb == 'devices':
            return _ok(DEVICES_OUTPUT)
        if verb == 'info':
            return _ok('Device AA:BB:CC:DD:EE:01\n\tPaired: no\n')
        return _ok()


def _drain(screen, until, timeout=5):
    deadline = time.monotonic() + timeout
    while not until() and time.monotonic() < deadline:
        screen.tick()
        time.sleep(0.005)
    assert until(), f'stuck in {screen.phase}'


def _screen_with_devices(runner):
    screen = BluetoothScreen(runner=runner, scan_seconds=0)
    screen.devices = parse_devices(DEVICES_OUTPUT)
    return screen


def test_parse_devices_drops_unnamed_and_sorts_by_name():
    devices = parse_devices(DEVICES_OUTPUT)
    assert devices == [
        BluetoothDevice('AA:BB:CC:DD:EE:02', '8BitDo Pro 2'),
        BluetoothDevice('AA:BB:CC:DD:EE:01', 'Xbox Wireless Controller'),
    ]


def test_discovery_fills_device_list_until_screen_closes():
    runner = FakeCtl()
    screen = BluetoothScreen(runner=runner, scan_seconds=0)

    screen.open()
    _drain(screen, lambda: len(screen.devices) == 2)

    assert runner.calls[0] == ['power', 'on']
    assert ['--timeout', '0', 'scan', 'on'] in runner.calls

    discovery = screen.discovery
    screen.leave()
    assert screen.discovery is None
    assert discovery.join(timeout=5)


def test_pair_moves_through_connecting_to_connected():
    runner = FakeCtl()
    screen = _screen_with_devices(runner)

    screen.pair_selected()
    assert screen.phase is BluetoothPhase.PAIRING
    _drain(screen, lambda: screen.phase is BluetoothPhase.CONNECTING)
    _drain(screen, lambda: screen.phase is BluetoothPhase.CONNECTED)

    verbs = [args[0] for args in runner.calls]
    assert verbs == ['info', 'pair', 'trust', 'connect']
    assert screen.active_name == '8BitDo Pro 2'


def test_already_paired_device_is_removed_first():
    runner = FakeCtl(info=_ok('\tPaired: yes\n'))
    screen = _screen_with_devices(runner)
    screen.pair_selected()
    _drain(screen, lambda: screen.phase is BluetoothPhase.CONNECTED)
    assert [args[0] for args in runner.calls][:3] == ['info', 'remove', 'pair']


def test_pair_failure_reports_bluetoothctl_output():
    runner = FakeCtl(pair=SimpleNamespace(returncode=1, stdout='', stderr='AuthenticationFailed'))
    screen = _screen_with_devices(runner)
    screen.pair_selected()
    _drain(screen, lambda: screen.phase is BluetoothPhase.ERROR)
    assert screen.error == 'CommandError: Pairing Failed: AuthenticationFailed'

    screen.acknowledge()
    assert screen.phase is BluetoothPhase.DEVICE_LIST
    assert screen.error is None


def test_forget_removes_device_from_list():
    runner = FakeCtl()
    screen = _screen_with_devices(runner)
    screen.move_selection(1)

    screen.request_forget()
    assert screen.phase is BluetoothPhase.FORGET_CONFIRM
    screen.confirm_forget()
    _drain(screen, lambda: len(screen.devices) == 1)

    assert runner.calls == [['remove', 'AA:BB:CC:DD:EE:01']]
    assert screen.devices[0].name == '8BitDo Pro 2'


def test_forget_rejects_malformed_address():
    runner = FakeCtl()
    screen = BluetoothScreen(runner=runner)
    screen.devices = [BluetoothDevice('not-a-mac', 'Weird')]
    screen.request_forget()
    screen.confirm_forget()
    assert screen.phase is BluetoothPhase.ERROR
    assert screen.error == 'Invalid MAC: not-a-mac'
    assert runner.calls == []


def test_cancel_while_pairing_drops_late_result():
    runner = FakeCtl()
    screen = _screen_with_devices(runner)
    screen.pair_selected()
    screen.cancel()
    assert screen.phase is BluetoothPhase.DEVICE_LIST
    assert screen.task is None
    screen.tick()
    assert screen.phase is BluetoothPhase.DEVICE_LIST
