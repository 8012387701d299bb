import os
import tempfile

import pytest

from savemanager.devices import MediaState, StorageDeviceRegistry, find_files_by_extension
from savemanager.errors import NotFoundError, SaveIOError
from savemanager.models import DeviceKind
from savemanager.shared_config import StorageLayout

MB = 1024 * 1024


def _fake_usage(free_by_name):
    def usage(path):
        name = os.path.basename(os.path.normpath(path))
        if free_by_name.get(name) == 'fail':
            raise OSError('stat failed')
        return (0, 0, free_by_name.get(name, 4096) * MB)
    return usage


def _setup(tmp, devices):
    media = os.path.join(tmp, 'media')
    os.makedirs(media)
    for name, with_saves in devices:
        os.makedirs(os.path.join(media, name))
        if with_saves:
            os.makedirs(os.path.join(media, name, 'kazeta', 'saves'))
    data_dir = os.path.join(tmp, 'data')
    os.makedirs(data_dir)
    return StorageLayout(data_dir=data_dir, media_roots=[media], sync_to_disk=False)


def test_internal_listed_first_and_reserved_partition_hidden():
    with tempfile.TemporaryDirectory() as tmp:
        layout = _setup(tmp, [('SD1', True), ('frzr_efi', False), ('USB', False)])
        registry = StorageDeviceRegistry(layout, disk_usage=_fake_usage({'data': 2048, 'SD1': 100}))

        devices = registry.list_devices()

        assert devices[0] == ('internal', 2048)
        ids = [d for d, _free in devices[1:]]
        assert sorted(ids) == ['SD1', 'USB']
        assert 'frzr_efi' not in ids
        assert dict(devices)['SD1'] == 100


def test_device_with_failing_stat_is_skipped():
    with tempfile.TemporaryDirectory() as tmp:
        layout = _setup(tmp, [('SD1', True), ('BAD', True)])
        registry = StorageDeviceRegistry(layout, disk_usage=_fake_usage({'BAD': 'fail'}))
        assert [d for d, _ in registry.list_devices()] == ['internal', 'SD1']


def test_internal_stat_failure_is_fatal():
    with tempfile.TemporaryDirectory() as tmp:
        layout = _setup(tmp, [])
        registry = StorageDeviceRegistry(layout, disk_usage=_fake_usage({'data': 'fail'}))
        with pytest.raises(SaveIOError):
            registry.list_devices()


def test_missing_media_root_yields_only_internal():
    with tempfile.TemporaryDirectory() as tmp:
        layout = StorageLayout(data_dir=tmp, media_roots=[os.path.join(tmp, 'nope')])
        registry = StorageDeviceRegistry(layout, disk_usage=_fake_usage({}))
        devices = registry.devices()
        assert len(devices) == 1
        assert devices[0].kind is DeviceKind.INTERNAL


def test_first_existing_media_root_wins():
    with tempfile.TemporaryDirectory() as tmp:
        layout = _setup(tmp, [('SD1', True)])
        layout.media_roots = [os.path.join(tmp, 'missing'), os.path.join(tmp, 'media')]
        assert layout.media_root() == os.path.join(tmp, 'media')
        assert layout.mount_point('SD1') == os.path.join(tmp, 'media', 'SD1')


def test_media_state_keeps_only_save_capable_non_cart_devices():
    with tempfile.TemporaryDirectory() as tmp:
        layout = _setup(tmp, [('SD1', True), ('CART', True), ('USB', False)])
        with open(os.path.join(tmp, 'media', 'CART', 'game.kzi'), 'w') as f:
            f.write('Id=game\nExec=run\nIcon=icon.png\n')
        registry = StorageDeviceRegistry(layout, disk_usage=_fake_usage({}))
        state = MediaState(registry)

        state.update_media()

        assert sorted(m.id for m in state.all_media) == ['CART', 'SD1', 'USB', 'internal']
        assert [m.id for m in state.media][0] == 'internal'
        assert sorted(m.id for m in state.media) == ['SD1', 'internal']
        assert state.needs_memory_refresh
        assert registry.is_cart_connected()


def test_media_state_keeps_selection_when_devices_change():
    with tempfile.TemporaryDirectory() as tmp:
        layout = _setup(tmp, [('SD1', True)])
        state = MediaState(StorageDeviceRegistry(layout, disk_usage=_fake_usage({})))
        state.update_media()
        state.select(1)
        assert state.selected_device().id == 'SD1'
        state.needs_memory_refresh = False

        os.makedirs(os.path.join(tmp, 'media', 'SD2', 'kazeta', 'saves'))
        state.update_media()

        assert state.selected_device().id == 'SD1'
        assert state.needs_memory_refresh

        state.needs_memory_refresh = False
        state.update_media()
        assert not state.needs_memory_refresh


def test_find_files_by_extension_respects_depth():
    with tempfile.TemporaryDirectory() as tmp:
        os.makedirs(os.path.join(tmp, 'a', 'b'))
        for rel in ('top.kzi', 'a/mid.KZI', 'a/b/deep.kzi', 'a/other.txt'):
            open(os.path.join(tmp, rel), 'w').close()

        shallow = find_files_by_extension(tmp, 'kzi', 0)
        assert [os.path.basename(p) for p in shallow] == ['top.kzi']
        assert len(find_files_by_extension(tmp, 'kzi', 1)) == 2
        assert len(find_files_by_extension(tmp, 'kzi', 2)) == 3
        assert len(find_files_by_extension(tmp, 'kzi', 2, find_first=True)) == 1

        with pytest.raises(NotFoundError):
            find_files_by_extension(os.path.join(tmp, 'missing'), 'kzi', 1)


def test_default_media_roots_are_reevaluated_on_each_scan(monkeypatch):
    with tempfile.TemporaryDirectory() as tmp:
        late_root = os.path.join(tmp, 'media')
        early_root = os.path.join(tmp, 'run-media')
        os.makedirs(os.path.join(early_root, 'SD1'))
        roots = [early_root]
        monkeypatch.setattr('savemanager.shared_config.default_media_roots', lambda: list(roots))

        layout = StorageLayout.from_settings({'storage': {'data_dir': tmp, 'media_roots': []}})
        registry = StorageDeviceRegistry(layout, disk_usage=_fake_usage({}))
        assert layout.media_roots is None
        assert [d for d, _ in registry.list_devices()] == ['internal', 'SD1']

        os.makedirs(os.path.join(late_root, 'USB'))
        roots.insert(0, late_root)

        assert layout.media_root() == late_root
        assert [d for d, _ in registry.list_devices()] == ['internal', 'USB']
        assert layout.mount_point('USB') == os.path.join(late_root, 'USB')
