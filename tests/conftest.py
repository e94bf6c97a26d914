import pytest

from appdata_backup.models import Workload
from appdata_backup.runtime import STATUS_OK
from appdata_backup.settings import Settings


class FakeRuntime:
    """In-memory container runtime recording every call in ``events``."""

    def __init__(self, workloads=None):
        self.workloads = list(workloads or [])
        self.events = []
        self.stop_status = {}
        self.start_statuses = {}
        self.force_stop_result = (True, [])
        self.updates_available = set()
        self.on_start = None

    def list_workloads(self):
        self.events.append(('list',))
        return list(self.workloads)

    def stop(self, name):
        self.events.append(('stop', name))
        return self.stop_status.get(name, STATUS_OK)

    def force_stop(self, name, grace=30):
        self.events.append(('force_stop', name, grace))
        return self.force_stop_result

    def start(self, name):
        self.events.append(('start', name))
        if self.on_start:
            self.on_start(name)
        statuses = self.start_statuses.get(name)
        if statuses:
            return statuses.pop(0) if len(statuses) > 1 else statuses[0]
        return STATUS_OK

    def describe(self, name=None):
        return [f"{w.name}: {'running' if w.running else 'exited'}" for w in self.workloads if not name or w.name == name]

    def update_available(self, name):
        return name in self.updates_available

    def update(self, name, script=None):
        self.events.append(('update', name))
        return True, [f"updated {name}"]


class LogRecorder:
    """Collects ``(level, message, ctx)`` tuples like the job log's ``log``."""

    def __init__(self):
        self.lines = []

    def __call__(self, level, message, ctx=None):
        self.lines.append((level, message, ctx))

    def messages(self, level=None):
        return [m for lvl, m, _ in self.lines if level is None or lvl == level]


@pytest.fixture
def log():
    return LogRecorder()


@pytest.fixture
def appdata(tmp_path):
    """An appdata source folder; returns its path."""
    root = tmp_path / 'appdata'
    root.mkdir()
    return root


@pytest.fixture
def make_settings(appdata):
    def _make(**config):
        config.setdefault('allowedSources', [str(appdata)])
        return Settings.from_dict(config)
    return _make


@pytest.fixture
def make_workload(appdata):
    """Create a workload whose volumes are created below the appdata folder."""
    def _make(name, *subdirs, running=True, paused=False, extra_volumes=()):
        volumes = []
        for sub in subdirs or (name,):
            path = appdata / sub
            path.mkdir(parents=True, exist_ok=True)
            volumes.append(f"{path}:/config")
        volumes.extend(extra_volumes)
        return Workload(name=name, running=running, paused=paused, volumes=volumes)
    return _make
