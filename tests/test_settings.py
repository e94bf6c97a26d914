import json
from datetime import datetime

import pytest

from appdata_backup.settings import Settings, ConfigurationError, ContainerSettings


def test_defaults_merge_once_into_container_settings():
    settings = Settings.from_dict({
        'defaults': {'verifyBackup': 'no', 'ignoreBackupErrors': 'yes', 'exclude': '/a/\n\n/b'},
        'containerSettings': {
            'plex': {'skip': 'yes', 'exclude': ['/c/']},
            'db': {'dontStop': 'yes', 'group': ' cloud '},
        },
    })

    assert settings.for_container('unknown') == settings.defaults
    assert settings.defaults.exclude == ('/a', '/b')

    plex = settings.for_container('plex')
    assert plex.skip is True
    assert plex.verify_backup is False
    assert plex.ignore_backup_errors is True
    assert plex.exclude == ('/c',)

    db = settings.for_container('db')
    assert db.dont_stop is True and db.group == 'cloud'
    assert settings.get_container_groups() == {'cloud': ['db']}
    assert settings.get_container_groups('cloud') == ['db']
    assert settings.get_container_groups('none') == []


def test_invalid_methods_fall_back():
    settings = Settings.from_dict({'backupMethod': 'bogus', 'containerHandling': 'parallel', 'compression': 'lz4'})
    assert settings.backup_method == 'timestamp'
    assert settings.container_handling == 'oneAfterTheOther'
    assert settings.compression == 'yes'
    assert not settings.is_incremental
    assert Settings.from_dict({'backupMethod': 'incremental'}).is_incremental


def test_path_lists_and_flags():
    settings = Settings.from_dict({
        'allowedSources': "/mnt/user/appdata/\n/mnt/cache/appdata\n",
        'includeFiles': ['/boot/extra/', ''],
        'ignoreExclusionCase': 'yes',
        'flashBackup': 'no',
        'notification': 'WARNING',
        'notificationUrls': "mailto://a@example.com\n\n",
        'keepMinBackups': '5',
        'deleteBackupsOlderThan': '',
    })
    assert settings.allowed_sources == ['/mnt/user/appdata', '/mnt/cache/appdata']
    assert settings.include_files == ['/boot/extra']
    assert settings.ignore_exclusion_case is True
    assert settings.flash_backup is False
    assert settings.notification == 'warning'
    assert settings.notification_urls == ['mailto://a@example.com']
    assert settings.keep_min_backups == 5
    assert settings.delete_backups_older_than == 0


def test_container_settings_are_immutable():
    cs = ContainerSettings()
    with pytest.raises(Exception):
        cs.skip = True


def test_load_from_file(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({'destination': '/mnt/backup', 'containerOrder': ['a', 'b']}))
    settings = Settings.load(path)
    assert settings.destination == '/mnt/backup'
    assert settings.container_order == ['a', 'b']
    assert settings.config_path == str(path)


def test_load_errors(tmp_path):
    with pytest.raises(ConfigurationError):
        Settings.load(tmp_path / 'missing.json')
    broken = tmp_path / 'broken.json'
    broken.write_text('{not json')
    with pytest.raises(ConfigurationError):
        Settings.load(broken)


def test_remove_obsolete(log):
    settings = Settings.from_dict({'containerSettings': {'gone': {}, 'here': {}}})
    settings.remove_obsolete(['here'], log)
    assert list(settings.container_settings) == ['here']
    assert any('gone' in m for m in log.messages('DEBUG'))


@pytest.mark.parametrize('config, expr', [
    ({'backupFrequency': 'daily', 'backupFrequencyHour': 3, 'backupFrequencyMinute': 15}, '15 3 * * *'),
    ({'backupFrequency': 'weekly', 'backupFrequencyWeekday': 0}, '0 0 * * 0'),
    ({'backupFrequency': 'monthly', 'backupFrequencyDayOfMonth': 12, 'backupFrequencyHour': 1}, '0 1 12 * *'),
    ({'backupFrequency': 'custom', 'backupFrequencyCustom': '*/30 * * * *'}, '*/30 * * * *'),
    ({}, None),
])
def test_cron_expression(config, expr):
    assert Settings.from_dict(config).cron_expression() == expr


def test_check_cron():
    base = datetime(2025, 12, 24, 2, 0)
    code, message = Settings.from_dict({'backupFrequency': 'daily', 'backupFrequencyHour': 3}).check_cron(base)
    assert code == 0 and '2025-12-24 03:00' in message

    code, message = Settings.from_dict({'backupFrequency': 'custom', 'backupFrequencyCustom': 'not a cron'}).check_cron(base)
    assert code == 1

    assert Settings.from_dict({}).check_cron(base)[0] == 0
