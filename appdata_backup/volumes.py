"""
Volume resolution: which host paths of a container get backed up.
"""
import os

from appdata_backup.state import MAIN


def _noop_log(level, message, ctx=None):
    pass


def host_path(volume):
    """Return the host side of a ``host:container[:mode]`` mapping without trailing slash."""
    return volume.split(':', 1)[0].rstrip('/')


def is_volume_within_appdata(path, settings):
    """True if ``path`` lies below one of the configured appdata source paths."""
    for source in settings.allowed_sources:
        if path.startswith(source + '/'):
            return True
    return False


def resolve_volumes(workload, settings, skip_exclusion_check=False, log=None, ctx=MAIN):
    """Resolve the host paths to back up for ``workload``.

    Returns the surviving paths sorted by length. A path nested inside an
    appdata volume that is also in the list is dropped because the parent
    copy already covers it.
    """
    log = log or _noop_log
    container_settings = settings.for_container(workload.name)
    volumes = []

    for volume in workload.volumes or []:
        path = host_path(volume)
        if not path:
            log('DEBUG', "Empty volume (rootfs mapped?) ignored.", ctx)
            continue

        if not skip_exclusion_check:
            if path in container_settings.exclude:
                log('DEBUG', f"Ignoring '{path}' (container exclusion).", ctx)
                continue
            if path in settings.global_exclusions:
                log('DEBUG', f"Ignoring '{path}' (global exclusion).", ctx)
                continue

        if not os.path.exists(path):
            log('ERROR', f"'{path}' does not exist! Check mappings.", ctx)
            continue

        if path in settings.allowed_sources:
            log('INFO', f"Removing mapping '{path}' (matches source path).", ctx)
            continue

        if path not in volumes:
            volumes.append(path)

    volumes.sort(key=len)
    log('DEBUG', f"Sorted volumes: {', '.join(volumes)}", ctx)

    result = []
    for path in volumes:
        parent = next((p for p in result if is_volume_within_appdata(p, settings) and path.startswith(p + '/')), None)
        if parent:
            log('INFO', f"'{path}' is within '{parent}'. Ignoring!", ctx)
            continue
        result.append(path)
    return result
