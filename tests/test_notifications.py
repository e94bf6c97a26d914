import apprise

from appdata_backup import notifications
from appdata_backup.notifications import Notifier, notify, get_apprise_instance


class FakeApprise:
    instances = []

    def __init__(self):
        self.urls = []
        self.sent = []
        FakeApprise.instances.append(self)

    def add(self, url):
        if url.startswith('bad://'):
            return False
        self.urls.append(url)
        return True

    def notify(self, title, body, notify_type):
        self.sent.append((title, body, notify_type))
        return True


def _patch(monkeypatch):
    FakeApprise.instances = []
    monkeypatch.setattr(notifications.apprise, 'Apprise', FakeApprise)


def test_invalid_urls_are_skipped(monkeypatch):
    _patch(monkeypatch)
    apobj, added = get_apprise_instance(['bad://x', '  ', 'mailto://a@example.com'])
    assert added == 1
    assert apobj.urls == ['mailto://a@example.com']


def test_notify_without_services(monkeypatch):
    _patch(monkeypatch)
    assert notify([], 'Appdata Backup', 'Backup Completed') is False
    assert FakeApprise.instances[0].sent == []


def test_notify_maps_type_and_title(monkeypatch):
    _patch(monkeypatch)
    notifier = Notifier(['json://localhost'])
    assert notifier('Appdata Backup', 'Backup Completed [0h, 4m]', 'done', 'success')
    title, body, notify_type = FakeApprise.instances[0].sent[0]
    assert title == 'Appdata Backup: Backup Completed [0h, 4m]'
    assert body == 'done'
    assert notify_type == apprise.NotifyType.SUCCESS


def test_alert_is_failure(monkeypatch):
    _patch(monkeypatch)
    notify(['json://localhost'], '[AppdataBackup] Error!', 'Please check the backup log!', 'tar failed', 'alert')
    assert FakeApprise.instances[0].sent[0][2] == apprise.NotifyType.FAILURE
