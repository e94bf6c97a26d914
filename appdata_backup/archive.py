"""
Per-container data copy: incremental rsync mirror or (compressed) tar archive.
"""
import os
import shutil
import time

from appdata_backup.models import BackupResult
from appdata_backup.state import MAIN
from appdata_backup.utils import setup_logging, get_logger, run_command, format_duration
from appdata_backup.volumes import resolve_volumes, is_volume_within_appdata, host_path

setup_logging()
logger = get_logger(__name__)

# Runtime hook directory mounted into containers; never part of a backup
ALWAYS_EXCLUDED = '/usr/local/share/docker/tailscale_container_hook'

RSYNC_OPTIONS = ['-a', '--copy-links', '--numeric-ids', '--stats', '--delete']
RSYNC_VERIFY_OPTIONS = ['--dry-run', '--checksum', '-a', '--no-links', '--safe-links']


def archive_suffix(compression):
    return {'yes': '.tar.gz', 'yesMulticore': '.tar.zst'}.get(compression, '.tar')


def compression_options(compression, cpu_limit=0):
    """Return the tar options for the configured compression mode."""
    if compression == 'yes':
        return ['-z']
    if compression == 'yesMulticore':
        return ['-I', f"zstd -T{int(cpu_limit or 0)}"]
    return []


class ArchiveExecutor:
    """Copies the volumes of one container into the run's destination."""

    def __init__(self, settings, log, abort=None, runtime=None):
        self.settings = settings
        self.log = log
        self.abort = abort
        self.runtime = runtime

    def backup(self, workload, destination, incremental=None, include_external=None, ctx=MAIN):
        """Back up ``workload`` into ``destination``. Returns True on success.

        A tolerated failure (``ignoreBackupErrors``) and an abort during the
        backup both count as success; use ``run`` for the detailed result.
        """
        return self.run(workload, destination, incremental, include_external, ctx).success

    def run(self, workload, destination, incremental=None, include_external=None, ctx=MAIN):
        name = workload.name
        if incremental is None:
            incremental = self.settings.is_incremental
        cs = self.settings.for_container(name)
        started = time.monotonic()

        def result(success, **kwargs):
            return BackupResult(name=name, success=success, duration=time.monotonic() - started, **kwargs)

        self.log('DEBUG', f"Backup {name} - Volume info: {', '.join(workload.volumes) or '-'}", ctx)
        volumes = resolve_volumes(workload, self.settings, log=self.log, ctx=ctx)

        if cs.skip_backup:
            self.log('INFO', f"Skipping backup for {name} as configured.", ctx)
            return result(True)

        if include_external is None:
            include_external = cs.backup_ext_volumes
        appdata_volumes = [v for v in volumes if is_volume_within_appdata(v, self.settings)]
        if include_external:
            external_volumes = [v for v in volumes if v not in appdata_volumes]
        else:
            self.log('INFO', f"Excluding external volumes for {name}...", ctx)
            external_volumes = []

        self.log('DEBUG', f"Appdata volumes: {', '.join(appdata_volumes)}", ctx)
        self.log('DEBUG', f"External volumes: {', '.join(external_volumes)}", ctx)

        mapped = {host_path(v) for v in workload.volumes or []}
        excludes = [ALWAYS_EXCLUDED]
        if cs.exclude:
            self.log('DEBUG', f"Container excludes: {', '.join(cs.exclude)}", ctx)
        for exclude in cs.exclude:
            exclude = exclude.rstrip('/')
            if not exclude:
                continue
            if exclude in mapped:
                # An exclusion naming a whole volume drops the volume
                self.log('DEBUG', f"Exclusion '{exclude}' matches a volume - ignoring.", ctx)
                appdata_volumes = [v for v in appdata_volumes if v != exclude]
                external_volumes = [v for v in external_volumes if v != exclude]
                continue
            excludes.append(exclude)
        if self.settings.global_exclusions:
            self.log('DEBUG', f"Global excludes: {', '.join(self.settings.global_exclusions)}", ctx)
            excludes.extend(self.settings.global_exclusions)
        exclude_args = [f"--exclude={e}" for e in excludes]

        selected = appdata_volumes + external_volumes
        if not selected:
            self.log('WARNING', f"No volumes to back up for {name}. Consider ignoring this container.", ctx)
            return result(True)

        self.log('INFO', f"Volumes to back up - Appdata: {', '.join(appdata_volumes)}, External: {', '.join(external_volumes)}", ctx)

        failure_level = 'INFO' if cs.ignore_backup_errors else 'ERROR'
        tolerated = False

        if incremental:
            artifact = os.path.join(destination, name)
            os.makedirs(artifact, exist_ok=True)
            self.log('INFO', f"Backing up {name} using rsync...", ctx)
            failed = False
            for volume in selected:
                volume_dest = self._volume_destination(artifact, volume)
                os.makedirs(os.path.dirname(volume_dest), exist_ok=True)
                cmd = ['rsync', *RSYNC_OPTIONS, *exclude_args, f"{volume}/", volume_dest]
                self.log('DEBUG', f"Executing rsync for volume {volume} to {volume_dest}: {' '.join(cmd)}", ctx)
                code, output = run_command(cmd)
                self.log('DEBUG', f"rsync output: {'; '.join(output)}", ctx)
                if code > 0:
                    self.log(failure_level, f"rsync failed for volume {volume}: {'; '.join(output)}", ctx)
                    self._log_open_files([volume], ctx)
                    failed = True

            if failed:
                if not cs.ignore_backup_errors:
                    shutil.rmtree(artifact, ignore_errors=True)
                    return result(False, error='rsync failed')
                tolerated = True
        else:
            artifact = os.path.join(destination, name + archive_suffix(self.settings.compression))
            tar_options = list(exclude_args)
            verify_options = list(exclude_args)
            tar_options += ['-c', '-P']
            verify_options.append('--diff')
            if self.settings.ignore_exclusion_case:
                tar_options.append('--ignore-case')
                verify_options.append('--ignore-case')
            tar_options += compression_options(self.settings.compression, self.settings.compression_cpu_limit)
            self.log('DEBUG', f"Target archive: {artifact}", ctx)

            cmd = ['tar', *tar_options, '-f', artifact, *selected]
            self.log('DEBUG', f"Generated tar command: {' '.join(cmd)}", ctx)
            self.log('INFO', f"Backing up {name}...", ctx)
            code, output = run_command(cmd)
            self.log('DEBUG', f"tar output: {'; '.join(output)}", ctx)
            if code > 0:
                self.log(failure_level, f"tar creation failed: {'; '.join(output)}", ctx)
                self._log_open_files(selected, ctx)
                return result(cs.ignore_backup_errors, tolerated=cs.ignore_backup_errors,
                              artifact=artifact, error='tar failed')

        self.log('INFO', f"Backup created (took {format_duration(time.monotonic() - started)})", ctx)

        if self.abort is not None and self.abort.requested:
            self.log('WARNING', f"Abort requested, removing {artifact}", ctx)
            self._remove_artifact(artifact)
            return result(True, aborted=True)

        if not cs.verify_backup:
            self.log('WARNING', f"Skipping verification for {name} as configured.", ctx)
            return result(True, tolerated=tolerated, artifact=artifact)

        verify_started = time.monotonic()
        self.log('INFO', "Verifying backup...", ctx)
        verified = True
        if incremental:
            for volume in selected:
                volume_dest = self._volume_destination(artifact, volume)
                cmd = ['rsync', *RSYNC_VERIFY_OPTIONS, *exclude_args, f"{volume}/", volume_dest]
                self.log('DEBUG', f"Verify command for volume {volume}: {' '.join(cmd)}", ctx)
                code, output = run_command(cmd)
                self.log('DEBUG', f"rsync verify output: {'; '.join(output)}", ctx)
                if code > 0 and output:
                    self.log(failure_level, f"Verification failed for volume {volume}: {'; '.join(output)}", ctx)
                    verified = False
        else:
            cmd = ['tar', *verify_options, '-f', artifact, *selected]
            self.log('DEBUG', f"Verify command: {' '.join(cmd)}", ctx)
            code, output = run_command(cmd)
            self.log('DEBUG', f"tar verify output: {'; '.join(output)}", ctx)
            if code > 0:
                self.log(failure_level, f"tar verification failed: {'; '.join(output)}", ctx)
                verified = False

        if verified:
            self.log('INFO', f"Verification completed (took {format_duration(time.monotonic() - verify_started)})", ctx)
            return result(True, tolerated=tolerated, artifact=artifact)

        self._log_open_files(selected, ctx)
        if self.runtime is not None:
            for line in self.runtime.describe(name):
                self.log('DEBUG', f"After verify: {line}", ctx)
        return result(cs.ignore_backup_errors, tolerated=cs.ignore_backup_errors,
                      artifact=artifact, error='verification failed')

    @staticmethod
    def _volume_destination(artifact, volume):
        return os.path.join(artifact, volume.lstrip('/'))

    def _log_open_files(self, volumes, ctx):
        for volume in volumes:
            try:
                _, output = run_command(['lsof', '-nl', '+D', volume], timeout=120)
            except Exception as e:
                output = [f"lsof failed: {e}"]
            self.log('DEBUG', f"lsof({volume}): {'; '.join(output)}", ctx)

    def _remove_artifact(self, artifact):
        try:
            if os.path.isdir(artifact):
                shutil.rmtree(artifact)
            elif os.path.exists(artifact):
                os.remove(artifact)
        except OSError as e:
            self.log('WARNING', f"Could not remove {artifact}: {e}")
