"""
Docker runtime access: list, stop, start and update containers.
"""
import os

import docker
from docker.errors import APIError, DockerException, NotFound

from appdata_backup import utils
from appdata_backup.models import Workload
from appdata_backup.utils import setup_logging, get_logger, run_command

setup_logging()
logger = get_logger(__name__)

STATUS_OK = 'ok'
STATUS_ALREADY_RUNNING = 'already-running'


def workload_from_container(container):
    """Build a Workload from a docker SDK container object."""
    attrs = container.attrs or {}
    state = attrs.get('State', {}) or {}
    volumes = []
    for mount in attrs.get('Mounts', []) or []:
        if mount.get('Type') != 'bind':
            continue
        source = mount.get('Source', '')
        destination = mount.get('Destination', '')
        mode = mount.get('Mode', '')
        volumes.append(f"{source}:{destination}" + (f":{mode}" if mode else ''))
    image = (attrs.get('Config', {}) or {}).get('Image')
    return Workload(
        name=container.name,
        running=bool(state.get('Running', container.status == 'running')),
        paused=bool(state.get('Paused', container.status == 'paused')),
        volumes=volumes,
        image=image,
    )


class DockerRuntime:
    """Container runtime backed by the Docker SDK.

    Stop/start return ``STATUS_OK``, ``STATUS_ALREADY_RUNNING`` (start only) or
    an error text, so callers can log what the daemon said.
    """

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def list_workloads(self):
        containers = self.client.containers.list(all=True)
        return [workload_from_container(c) for c in sorted(containers, key=lambda c: c.name)]

    def stop(self, name):
        try:
            self.client.containers.get(name).stop()
            return STATUS_OK
        except (APIError, DockerException) as e:
            return str(e)

    def force_stop(self, name, grace=30):
        """Stop via the docker CLI with a grace period before the container is killed.

        Returns ``(ok, output_lines)``.
        """
        code, output = run_command(['docker', 'stop', name, '-t', str(grace)], timeout=grace + 60)
        return code == 0, output

    def start(self, name):
        try:
            container = self.client.containers.get(name)
            container.reload()
            if container.status == 'running':
                return STATUS_ALREADY_RUNNING
            container.start()
            return STATUS_OK
        except APIError as e:
            if 'already started' in str(e).lower() or getattr(e, 'status_code', None) == 304:
                return STATUS_ALREADY_RUNNING
            return str(e)
        except DockerException as e:
            return str(e)

    def describe(self, name=None):
        """Short state summary of one container (or all) for diagnostics."""
        lines = []
        try:
            for c in self.client.containers.list(all=True):
                if name and c.name != name:
                    continue
                lines.append(f"{c.name}: {c.status} ({c.short_id})")
        except DockerException as e:
            lines.append(f"Could not list containers: {e}")
        return lines

    def update_available(self, name):
        """Return True if the registry has a newer image than the local one."""
        try:
            container = self.client.containers.get(name)
            image_ref = (container.attrs.get('Config', {}) or {}).get('Image')
            if not image_ref:
                return False
            local = self.client.images.get(image_ref)
            remote = self.client.images.get_registry_data(image_ref)
        except NotFound:
            return False
        except DockerException as e:
            logger.warning("Update check for %s failed: %s", name, e)
            return False
        local_digests = [d.split('@', 1)[-1] for d in (local.attrs.get('RepoDigests') or [])]
        if not local_digests:
            # Locally built images have no registry digest to compare with
            return False
        return remote.id not in local_digests

    def update(self, name, script=None):
        """Update a container to its newest image.

        Uses the host's update script when present, otherwise pulls the image
        (the container then picks it up on its next recreate). Returns
        ``(ok, output_lines)``.
        """
        script = script or utils.UPDATE_CONTAINER_SCRIPT
        if script and os.path.exists(script):
            code, output = run_command([script, name])
            return code == 0, output
        try:
            container = self.client.containers.get(name)
            image_ref = (container.attrs.get('Config', {}) or {}).get('Image')
            if not image_ref:
                return False, [f"No image reference for {name}"]
            repository, _, tag = image_ref.rpartition(':') if ':' in image_ref.split('/')[-1] else (image_ref, '', 'latest')
            self.client.images.pull(repository, tag=tag or 'latest')
            return True, [f"Pulled {repository}:{tag or 'latest'}"]
        except DockerException as e:
            return False, [str(e)]
