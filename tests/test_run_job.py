import json
import os

from appdata_backup import run_job
from appdata_backup.state import RunState


def test_abort_without_running_backup(tmp_path):
    assert run_job.main(['--abort', '--temp-folder', str(tmp_path)]) == 0
    assert not RunState(tmp_path).abort.requested


def test_abort_running_backup(tmp_path):
    state = RunState(tmp_path)
    state.marker.write_text(str(os.getpid()))
    assert run_job.main(['--abort', '--temp-folder', str(tmp_path)]) == 0
    assert state.abort.requested


def test_check_cron(tmp_path, capsys):
    config = tmp_path / 'config.json'
    config.write_text(json.dumps({'backupFrequency': 'daily', 'backupFrequencyHour': 4}))
    assert run_job.main(['--check-cron', '--config', str(config)]) == 0
    assert "Schedule '0 4 * * *'" in capsys.readouterr().out

    config.write_text(json.dumps({'backupFrequency': 'custom', 'backupFrequencyCustom': '61 * * * *'}))
    assert run_job.main(['--check-cron', '--config', str(config)]) == 1


def test_check_cron_missing_config(tmp_path):
    assert run_job.main(['--check-cron', '--config', str(tmp_path / 'none.json')]) == 1


def test_backup_run_is_delegated(monkeypatch, tmp_path):
    seen = {}

    class FakeExecutor:
        def __init__(self, **kwargs):
            seen.update(kwargs)

        def run(self):
            return 1

    monkeypatch.setattr(run_job, 'BackupExecutor', FakeExecutor)
    assert run_job.main(['--config', 'c.json', '--temp-folder', str(tmp_path), '--dry-run-retention']) == 1
    assert seen == {'config_path': 'c.json', 'temp_folder': str(tmp_path), 'is_dry_run_retention': True}
