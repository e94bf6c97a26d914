from types import SimpleNamespace

import pytest
from docker.errors import APIError, NotFound

from appdata_backup.runtime import DockerRuntime, workload_from_container, STATUS_OK, STATUS_ALREADY_RUNNING


class FakeContainer:
    def __init__(self, name, status='running', mounts=None, image='nginx:latest', start_error=None):
        self.name = name
        self.status = status
        self.short_id = 'abc123'
        self.start_error = start_error
        self.started = False
        self.stopped = False
        self.attrs = {
            'State': {'Running': status == 'running', 'Paused': status == 'paused'},
            'Mounts': mounts or [],
            'Config': {'Image': image},
        }

    def reload(self):
        pass

    def start(self):
        if self.start_error:
            raise self.start_error
        self.started = True

    def stop(self):
        self.stopped = True


class FakeContainers:
    def __init__(self, containers):
        self.by_name = {c.name: c for c in containers}

    def list(self, all=False):
        return list(self.by_name.values())

    def get(self, name):
        if name not in self.by_name:
            raise NotFound(f"No such container: {name}")
        return self.by_name[name]


class FakeImages:
    def __init__(self, local_digests, remote_digest):
        self.local_digests = local_digests
        self.remote_digest = remote_digest
        self.pulled = []

    def get(self, ref):
        return SimpleNamespace(attrs={'RepoDigests': self.local_digests})

    def get_registry_data(self, ref):
        return SimpleNamespace(id=self.remote_digest)

    def pull(self, repository, tag=None):
        self.pulled.append((repository, tag))


def _runtime(*containers, local=('nginx@sha256:aaa',), remote='sha256:aaa'):
    client = SimpleNamespace(containers=FakeContainers(containers), images=FakeImages(list(local), remote))
    return DockerRuntime(client=client), client


def test_workload_from_container_keeps_bind_mounts():
    container = FakeContainer('web', mounts=[
        {'Type': 'bind', 'Source': '/mnt/user/appdata/web', 'Destination': '/config', 'Mode': 'rw'},
        {'Type': 'volume', 'Source': '/var/lib/docker/volumes/x', 'Destination': '/data'},
        {'Type': 'bind', 'Source': '/mnt/user/media', 'Destination': '/media', 'Mode': ''},
    ])
    workload = workload_from_container(container)
    assert workload.running and not workload.paused
    assert workload.volumes == ['/mnt/user/appdata/web:/config:rw', '/mnt/user/media:/media']
    assert workload.image == 'nginx:latest'


def test_list_workloads_sorted():
    runtime, _ = _runtime(FakeContainer('zeta'), FakeContainer('alpha', status='exited'))
    assert [w.name for w in runtime.list_workloads()] == ['alpha', 'zeta']


def test_start_and_stop():
    web = FakeContainer('web', status='exited')
    runtime, _ = _runtime(web)
    assert runtime.start('web') == STATUS_OK and web.started
    assert runtime.stop('web') == STATUS_OK and web.stopped
    assert 'No such container' in runtime.stop('missing')


def test_start_already_running():
    runtime, _ = _runtime(FakeContainer('web', status='running'))
    assert runtime.start('web') == STATUS_ALREADY_RUNNING


def test_start_error_text():
    web = FakeContainer('web', status='exited', start_error=APIError('port is already allocated'))
    runtime, _ = _runtime(web)
    assert 'port is already allocated' in runtime.start('web')


@pytest.mark.parametrize('local, remote, expected', [
    (['nginx@sha256:aaa'], 'sha256:aaa', False),
    (['nginx@sha256:aaa'], 'sha256:bbb', True),
    ([], 'sha256:bbb', False),
])
def test_update_available(local, remote, expected):
    runtime, _ = _runtime(FakeContainer('web'), local=local, remote=remote)
    assert runtime.update_available('web') is expected
    assert runtime.update_available('missing') is False


def test_update_pulls_image_without_script(tmp_path):
    runtime, client = _runtime(FakeContainer('web', image='lscr.io/linuxserver/nginx:1.25'))
    ok, output = runtime.update('web', script=str(tmp_path / 'no-script'))
    assert ok
    assert client.images.pulled == [('lscr.io/linuxserver/nginx', '1.25')]


def test_update_without_image_reference(tmp_path):
    runtime, client = _runtime(FakeContainer('web', image=None))
    ok, output = runtime.update('web', script=str(tmp_path / 'no-script'))
    assert ok is False
    assert output == ['No image reference for web']
    assert client.images.pulled == []
