import errno
import os
import tarfile
import tempfile

import pytest

from savemanager.errors import (
    AlreadyExistsError, ArchiveError, EmptyTransferError, InvalidArgumentError,
    NotFoundError, PermissionDeniedError, SaveIOError,
)
from savemanager.progress import ProgressCell
from savemanager.shared_config import StorageLayout
from savemanager.transfer import TransferEngine


def _write(path, data=b'x'):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'wb') as f:
        f.write(data)


def _setup(tmp, devices=('SD1',)):
    data_dir = os.path.join(tmp, 'data')
    media = os.path.join(tmp, 'media')
    for device in devices:
        os.makedirs(os.path.join(media, device, 'kazeta', 'saves'))
    layout = StorageLayout(data_dir=data_dir, media_roots=[media], sync_to_disk=False)
    return layout, TransferEngine(layout)


def _internal_save(layout, save_id='game1', files=None):
    root = layout.save_path('internal', save_id)
    files = files or {'save.dat': b'A' * 100}
    for rel, data in files.items():
        _write(os.path.join(root, rel), data)
    _write(layout.metadata_path('internal', save_id), b'Name=Game One\n')
    _write(layout.icon_path('internal', save_id), b'\x89PNG')
    return root


class _RecordingCell(ProgressCell):
    def __init__(self):
        super().__init__()
        self.seen = []

    def store(self, value):
        super().store(value)
        self.seen.append(self.load())


def test_copy_internal_to_external_creates_archive_and_sidecars():
    with tempfile.TemporaryDirectory() as tmp:
        layout, engine = _setup(tmp)
        _internal_save(layout, files={
            'save.dat': b'A' * 100,
            '.cache/shader.bin': b'B' * 50,
            '.kazeta/var/playtime.log': b'',
        })
        cell = ProgressCell()

        engine.copy_save('game1', 'internal', 'SD1', cell)

        tar_path = layout.archive_path('SD1', 'game1')
        assert os.path.isfile(tar_path)
        with tarfile.open(tar_path) as archive:
            names = archive.getnames()
        assert sorted(names) == ['.kazeta/var/playtime.log', 'save.dat']
        assert cell.load() == 100

        with open(layout.metadata_path('SD1', 'game1'), 'rb') as f:
            assert f.read() == b'Name=Game One\n'
        assert os.path.isfile(layout.icon_path('SD1', 'game1'))
        # source untouched
        assert os.path.isfile(os.path.join(layout.save_path('internal', 'game1'), 'save.dat'))


def test_copy_rejects_same_device():
    with tempfile.TemporaryDirectory() as tmp:
        layout, engine = _setup(tmp)
        _internal_save(layout)
        with pytest.raises(InvalidArgumentError):
            engine.copy_save('game1', 'internal', 'internal')


def test_copy_missing_save_is_not_found_and_writes_nothing():
    with tempfile.TemporaryDirectory() as tmp:
        layout, engine = _setup(tmp)

        with pytest.raises(NotFoundError):
            engine.copy_save('ghost', 'internal', 'SD1')

        assert not os.path.exists(layout.archive_path('SD1', 'ghost'))
        assert not os.path.exists(layout.entry_cache_dir('SD1', 'ghost'))


def test_copy_to_disconnected_device_is_not_found():
    with tempfile.TemporaryDirectory() as tmp:
        layout, engine = _setup(tmp)
        _internal_save(layout)
        with pytest.raises(NotFoundError):
            engine.copy_save('game1', 'internal', 'SD9')


def test_copy_onto_existing_save_leaves_destination_untouched():
    with tempfile.TemporaryDirectory() as tmp:
        layout, engine = _setup(tmp)
        _internal_save(layout)
        existing = layout.archive_path('SD1', 'game1')
        _write(existing, b'original archive bytes')

        with pytest.raises(AlreadyExistsError):
            engine.copy_save('game1', 'internal', 'SD1')

        with open(existing, 'rb') as f:
            assert f.read() == b'original archive bytes'


def test_round_trip_restores_identical_tree():
    with tempfile.TemporaryDirectory() as tmp:
        layout, engine = _setup(tmp)
        files = {'save.dat': b'slot-1' * 300, 'sub/dir/config.ini': b'[a]\nb=1\n'}
        _internal_save(layout, files=files)

        engine.copy_save('game1', 'internal', 'SD1')
        engine.delete_save('game1', 'internal')
        assert not os.path.exists(layout.save_path('internal', 'game1'))

        engine.copy_save('game1', 'SD1', 'internal')

        root = layout.save_path('internal', 'game1')
        for rel, data in files.items():
            with open(os.path.join(root, rel), 'rb') as f:
                assert f.read() == data
        assert os.path.isfile(layout.metadata_path('internal', 'game1'))


def test_copy_between_external_devices_is_byte_identical():
    with tempfile.TemporaryDirectory() as tmp:
        layout, engine = _setup(tmp, devices=('SD1', 'SD2'))
        _internal_save(layout, files={'save.dat': os.urandom(20000)})
        engine.copy_save('game1', 'internal', 'SD1')

        cell = _RecordingCell()
        engine.copy_save('game1', 'SD1', 'SD2', cell)

        with open(layout.archive_path('SD1', 'game1'), 'rb') as a, \
                open(layout.archive_path('SD2', 'game1'), 'rb') as b:
            assert a.read() == b.read()
        assert cell.seen == sorted(cell.seen)
        assert cell.load() == 100


def test_progress_never_decreases_and_holds_100_for_success():
    with tempfile.TemporaryDirectory() as tmp:
        layout, engine = _setup(tmp)
        _internal_save(layout, files={f'file{i}.bin': b'z' * (i * 500 + 1) for i in range(8)})
        cell = _RecordingCell()

        engine.copy_save('game1', 'internal', 'SD1', cell)

        assert cell.seen == sorted(cell.seen)
        assert cell.seen[-1] == 100
        assert 100 not in cell.seen[:-1]


def test_failure_after_archive_rolls_back_destination(monkeypatch):
    with tempfile.TemporaryDirectory() as tmp:
        layout, engine = _setup(tmp)
        _internal_save(layout)

        def _boom(*_args):
            raise OSError('disk full')

        monkeypatch.setattr(engine, '_copy_sidecars', _boom)

        with pytest.raises(SaveIOError) as excinfo:
            engine.copy_save('game1', 'internal', 'SD1')

        assert isinstance(excinfo.value.__cause__, OSError)
        assert not os.path.exists(layout.archive_path('SD1', 'game1'))
        assert not os.path.exists(layout.entry_cache_dir('SD1', 'game1'))


def test_save_with_only_excluded_files_is_empty_transfer():
    with tempfile.TemporaryDirectory() as tmp:
        layout, engine = _setup(tmp)
        _internal_save(layout, files={'.cache/only.bin': b'cache'})

        with pytest.raises(EmptyTransferError):
            engine.copy_save('game1', 'internal', 'SD1')

        assert not os.path.exists(layout.archive_path('SD1', 'game1'))


def test_archive_escaping_destination_is_rejected():
    with tempfile.TemporaryDirectory() as tmp:
        layout, engine = _setup(tmp)
        tar_path = layout.archive_path('SD1', 'evil')
        payload = os.path.join(tmp, 'payload')
        _write(payload, b'owned')
        with tarfile.open(tar_path, 'w') as archive:
            archive.add(payload, arcname='../../escaped.txt')

        with pytest.raises(ArchiveError):
            engine.copy_save('evil', 'SD1', 'internal')

        assert not os.path.exists(layout.save_path('internal', 'evil'))
        assert not os.path.exists(os.path.join(layout.data_dir, 'saves', 'escaped.txt'))


def test_delete_missing_save_changes_nothing():
    with tempfile.TemporaryDirectory() as tmp:
        layout, engine = _setup(tmp)
        _internal_save(layout)

        with pytest.raises(NotFoundError):
            engine.delete_save('ghost', 'internal')

        assert os.path.isdir(layout.save_path('internal', 'game1'))


def test_delete_removes_archive_and_cache():
    with tempfile.TemporaryDirectory() as tmp:
        layout, engine = _setup(tmp)
        _internal_save(layout)
        engine.copy_save('game1', 'internal', 'SD1')

        engine.delete_save('game1', 'SD1')

        assert not engine.save_exists('game1', 'SD1')
        assert not os.path.exists(layout.entry_cache_dir('SD1', 'game1'))
        assert engine.save_exists('game1', 'internal')


def test_invalid_save_ids_are_rejected_before_any_io():
    with tempfile.TemporaryDirectory() as tmp:
        layout, engine = _setup(tmp)
        _internal_save(layout, 'game1')
        _internal_save(layout, 'game2')

        for bad_id in ('', '.', '..', '../saves', 'game1/sub'):
            with pytest.raises(InvalidArgumentError):
                engine.delete_save(bad_id, 'internal')
            with pytest.raises(InvalidArgumentError):
                engine.copy_save(bad_id, 'internal', 'SD1')

        assert engine.save_exists('game1', 'internal')
        assert engine.save_exists('game2', 'internal')
        assert os.path.isfile(layout.metadata_path('internal', 'game2'))
        assert os.listdir(layout.save_dir('SD1')) == []


def test_write_error_while_archiving_rolls_back(monkeypatch):
    with tempfile.TemporaryDirectory() as tmp:
        layout, engine = _setup(tmp)
        _internal_save(layout, files={'a.dat': b'A' * 4000, 'b.dat': b'B' * 4000})
        real_addfile = tarfile.TarFile.addfile
        added = []

        def flaky_addfile(self, *args, **kwargs):
            added.append(args[0].name)
            if len(added) == 2:
                raise OSError(errno.EIO, 'write failed')
            return real_addfile(self, *args, **kwargs)

        monkeypatch.setattr(tarfile.TarFile, 'addfile', flaky_addfile)
        cell = _RecordingCell()

        with pytest.raises(SaveIOError):
            engine.copy_save('game1', 'internal', 'SD1', cell)

        assert added == ['a.dat', 'b.dat']
        assert cell.load() < 100
        assert not os.path.exists(layout.archive_path('SD1', 'game1'))
        assert not os.path.exists(layout.entry_cache_dir('SD1', 'game1'))
        assert engine.save_exists('game1', 'internal')


def test_truncated_archive_fails_extraction_and_leaves_nothing():
    with tempfile.TemporaryDirectory() as tmp:
        layout, engine = _setup(tmp)
        _internal_save(layout, files={'save.dat': os.urandom(20000)})
        engine.copy_save('game1', 'internal', 'SD1')
        engine.delete_save('game1', 'internal')

        tar_path = layout.archive_path('SD1', 'game1')
        with open(tar_path, 'r+b') as f:
            f.truncate(512 + 5000)

        with pytest.raises(ArchiveError):
            engine.copy_save('game1', 'SD1', 'internal')

        assert not os.path.exists(layout.save_path('internal', 'game1'))
        assert not os.path.exists(layout.entry_cache_dir('internal', 'game1'))
        assert os.path.isfile(tar_path)


def test_write_error_between_external_devices_rolls_back(monkeypatch):
    with tempfile.TemporaryDirectory() as tmp:
        layout, engine = _setup(tmp, devices=('SD1', 'SD2'))
        _internal_save(layout, files={'save.dat': os.urandom(40000)})
        engine.copy_save('game1', 'internal', 'SD1')
        with open(layout.archive_path('SD1', 'game1'), 'rb') as f:
            source_bytes = f.read()

        chunks = []

        def failing_fsync(fh):
            chunks.append(fh.name)
            if len(chunks) == 2:
                raise OSError(errno.ENOSPC, 'No space left on device')

        monkeypatch.setattr(engine, '_fsync', failing_fsync)

        with pytest.raises(SaveIOError) as excinfo:
            engine.copy_save('game1', 'SD1', 'SD2')

        assert excinfo.value.__cause__.errno == errno.ENOSPC
        assert not os.path.exists(layout.archive_path('SD2', 'game1'))
        assert not os.path.exists(layout.entry_cache_dir('SD2', 'game1'))
        with open(layout.archive_path('SD1', 'game1'), 'rb') as f:
            assert f.read() == source_bytes


def test_permission_error_is_reported_as_permission_denied(monkeypatch):
    with tempfile.TemporaryDirectory() as tmp:
        layout, engine = _setup(tmp)
        _internal_save(layout)

        def _denied(*_args):
            raise PermissionError(errno.EACCES, 'Permission denied')

        monkeypatch.setattr(engine, '_copy_sidecars', _denied)

        with pytest.raises(PermissionDeniedError) as excinfo:
            engine.copy_save('game1', 'internal', 'SD1')

        assert str(excinfo.value).startswith('PermissionError:')
        assert not os.path.exists(layout.archive_path('SD1', 'game1'))


def test_symlinked_file_is_archived_with_target_contents():
    with tempfile.TemporaryDirectory() as tmp:
        layout, engine = _setup(tmp)
        root = _internal_save(layout)
        target = os.path.join(tmp, 'shared', 'profile.bin')
        _write(target, b'linked profile')
        os.symlink(target, os.path.join(root, 'profile.bin'))

        engine.copy_save('game1', 'internal', 'SD1')

        with tarfile.open(layout.archive_path('SD1', 'game1')) as archive:
            member = archive.getmember('profile.bin')
            assert member.isfile()
            assert archive.extractfile(member).read() == b'linked profile'
