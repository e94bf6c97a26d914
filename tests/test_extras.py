import os

import pytest

from appdata_backup.extras import backup_flash, backup_vm_meta, backup_extra_files
from appdata_backup.settings import Settings


class FakeCommands:
    def __init__(self, code=0, output=None, on_call=None):
        self.code = code
        self.output = output or []
        self.on_call = on_call
        self.calls = []

    def __call__(self, cmd, timeout=None, cwd=None):
        self.calls.append(list(cmd))
        if self.on_call:
            self.on_call(cmd)
        return self.code, list(self.output)


@pytest.fixture
def destination(tmp_path):
    dest = tmp_path / 'dest'
    dest.mkdir()
    return dest


def test_disabled_steps_do_nothing(monkeypatch, destination, log):
    commands = FakeCommands()
    monkeypatch.setattr('appdata_backup.extras.run_command', commands)
    settings = Settings.from_dict({'flashBackup': 'no', 'backupVMMeta': 'no'})
    assert backup_flash(settings, str(destination), log)
    assert backup_vm_meta(settings, str(destination), log)
    assert backup_extra_files(settings, str(destination), log)
    assert commands.calls == []


def test_flash_backup_copies_and_cleans_up(monkeypatch, tmp_path, destination, log):
    docroot = tmp_path / 'emhttp'
    script = docroot / 'webGui' / 'scripts' / 'flash_backup'
    script.parent.mkdir(parents=True)
    script.write_text('')
    second = tmp_path / 'second'
    second.mkdir()

    real_zip = tmp_path / 'real.zip'

    def create_zip(cmd):
        real_zip.write_text('zip')
        os.symlink(real_zip, docroot / 'tower-flash-backup.zip')

    monkeypatch.setattr('appdata_backup.extras.run_command',
                        FakeCommands(output=['tower-flash-backup.zip'], on_call=create_zip))
    settings = Settings.from_dict({'flashBackupCopy': str(second)})

    assert backup_flash(settings, str(destination), log, docroot=str(docroot))
    assert (destination / 'tower-flash-backup.zip').read_text() == 'zip'
    assert (second / 'tower-flash-backup.zip').exists()
    assert not real_zip.exists()
    assert not os.path.lexists(docroot / 'tower-flash-backup.zip')


def test_flash_backup_without_output_fails(monkeypatch, tmp_path, destination, log):
    script = tmp_path / 'webGui' / 'scripts' / 'flash_backup'
    script.parent.mkdir(parents=True)
    script.write_text('')
    monkeypatch.setattr('appdata_backup.extras.run_command', FakeCommands(output=[]))

    assert backup_flash(Settings(), str(destination), log, docroot=str(tmp_path)) is False
    assert log.messages('ERROR')


def test_vm_meta(monkeypatch, tmp_path, destination, log):
    commands = FakeCommands()
    monkeypatch.setattr('appdata_backup.extras.run_command', commands)
    qemu = tmp_path / 'qemu'
    qemu.mkdir()

    assert backup_vm_meta(Settings.from_dict({'qemuFolder': str(qemu)}), str(destination), log)
    assert commands.calls == [['tar', '-czf', str(destination / 'vm_meta.tgz'), f"{qemu}/"]]

    commands.calls.clear()
    assert backup_vm_meta(Settings.from_dict({'qemuFolder': str(tmp_path / 'none')}), str(destination), log)
    assert commands.calls == []
    assert log.messages('WARNING')


def test_extra_files_archive(monkeypatch, tmp_path, destination, log):
    commands = FakeCommands()
    monkeypatch.setattr('appdata_backup.extras.run_command', commands)
    keep = tmp_path / 'scripts'
    keep.mkdir()
    settings = Settings.from_dict({
        'includeFiles': [str(keep), str(tmp_path / 'missing')],
        'globalExclusions': ['*.bak'],
        'ignoreExclusionCase': 'yes',
        'compression': 'no',
    })

    assert backup_extra_files(settings, str(destination), log)
    assert commands.calls == [['tar', '--exclude=*.bak', '-c', '-P', '--ignore-case',
                               '-f', str(destination / 'extra_files.tar'), str(keep)]]
    assert any('missing' in m for m in log.messages('ERROR'))


def test_extra_files_failure(monkeypatch, tmp_path, destination, log):
    monkeypatch.setattr('appdata_backup.extras.run_command', FakeCommands(code=2, output=['tar: error']))
    settings = Settings.from_dict({'includeFiles': [str(tmp_path)]})
    assert backup_extra_files(settings, str(destination), log) is False
