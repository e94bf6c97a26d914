"""
Backup run execution with phased processing.
"""
import glob
import os
import shutil
import time

from appdata_backup import utils
from appdata_backup.archive import ArchiveExecutor
from appdata_backup.extras import backup_flash, backup_vm_meta, backup_extra_files
from appdata_backup.hooks import HookRunner, SKIP_EXIT_CODE
from appdata_backup.joblog import JobLog
from appdata_backup.lifecycle import LifecycleController
from appdata_backup.notifications import Notifier
from appdata_backup.orchestrator import OrchestrationEngine, ABORTED
from appdata_backup.retention import run_retention
from appdata_backup.runtime import DockerRuntime
from appdata_backup.settings import Settings, ConfigurationError
from appdata_backup.state import RunState, BackupAborted, MAIN
from appdata_backup.utils import setup_logging, get_logger

# Configure logging using centralized setup so LOG_LEVEL is respected
setup_logging()
logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1


def read_ini(path):
    """Read a ``key="value"`` file as written by the Unraid web UI."""
    values = {}
    with open(path, encoding='utf-8', errors='replace') as fh:
        for line in fh:
            line = line.strip()
            if not line or line.startswith((';', '#', '[')) or '=' not in line:
                continue
            key, value = line.split('=', 1)
            values[key.strip()] = value.strip().strip('"')
    return values


class BackupExecutor:
    """Runs one complete backup: containers, extras, retention and finalize."""

    def __init__(self, settings=None, config_path=None, temp_folder=None, runtime=None,
                 notifier=None, sleep=None, is_dry_run_retention=False):
        """
        Initialize executor.

        Args:
            settings: Pre-loaded Settings (otherwise loaded from ``config_path``)
            config_path: Settings file; defaults to the plugin config
            temp_folder: Folder for the run marker, abort flag and job logs
            runtime: Container runtime; defaults to the Docker SDK runtime
            notifier: Callable ``(subject, description, message, type)``
            sleep: Sleep function used between container starts
            is_dry_run_retention: Only report what retention would delete
        """
        self.config_path = config_path or (settings.config_path if settings else None) or utils.get_config_path()
        self.settings = settings
        self.state = RunState(temp_folder)
        self.runtime = runtime
        self.notifier = notifier
        self.sleep = sleep
        self.is_dry_run_retention = is_dry_run_retention

        self.destination = None
        self.error_occurred = False
        self.aborted = False
        self.update_list = []
        self.results = []
        self.job_log = None
        self.hooks = None

    def log(self, level, message, ctx=None):
        if self.job_log is not None:
            self.job_log.log(level, message, ctx)
        else:
            logger.info("[%s] %s", level, message)

    def run(self):
        """Execute the backup with all phases. Returns the process exit code."""
        start_time = time.monotonic()
        config_error = None
        if self.settings is None:
            try:
                self.settings = Settings.load(self.config_path)
            except ConfigurationError as e:
                config_error = e
                self.settings = Settings()
        if self.notifier is None:
            self.notifier = Notifier(self.settings.notification_urls)

        other = self.state.running_pid()
        if other is not None or not self.state.acquire():
            logger.warning("Another backup (pid %s) is already running", other)
            self.notifier("Appdata Backup", "Backup Already Running", "Another backup process is currently active.", 'warning')
            return EXIT_FAILED

        self.state.clean_temp_folder()
        self.job_log = JobLog(self.state.temp_folder, self.notifier, self.settings.notification)
        self.hooks = HookRunner(self.log)

        try:
            self._phase_0_init()
            self._phase_1_validate(config_error)
            self._phase_2_pre_run()
            self._phase_3_containers()
            self._phase_4_extras()
            self._phase_5_retention()
        except BackupAborted:
            self.aborted = True
        except ConfigurationError as e:
            self.log('ERROR', f"Fatal error: {e}")
            self.error_occurred = True
        except Exception as e:
            self.log('ERROR', f"Fatal error: {e}")
            logger.exception("Backup run failed")
            self.error_occurred = True
        finally:
            self._phase_6_finalize(start_time)

        return EXIT_FAILED if self.error_occurred else EXIT_OK

    def _check_abort(self):
        self.state.abort.raise_if_requested()

    def _phase_0_init(self):
        self.log('INFO', "Starting Appdata Backup")
        version_file = os.path.join(utils.DOCROOT, 'plugins', utils.APP_NAME, 'version')
        if os.path.exists(version_file):
            with open(version_file, encoding='utf-8', errors='replace') as fh:
                self.log('DEBUG', f"Plugin Version: {fh.read().strip()}")
        if os.path.exists(utils.UNRAID_VERSION_FILE):
            self.log('DEBUG', f"Unraid Version: {read_ini(utils.UNRAID_VERSION_FILE).get('version', 'unknown')}")

    def _phase_1_validate(self, config_error=None):
        """Check the prerequisites and create the destination. Raises ConfigurationError."""
        if config_error is not None:
            raise config_error

        if os.path.exists(utils.EMHTTP_VARS):
            if read_ini(utils.EMHTTP_VARS).get('fsState') != 'Started':
                raise ConfigurationError("Array is not online")
        else:
            self.log('DEBUG', f"{utils.EMHTTP_VARS} not present, skipping array state check")

        if not self.settings.destination:
            raise ConfigurationError("Backup destination not configured")

        parent = self.settings.destination.rstrip('/')
        if not os.path.exists(parent):
            raise ConfigurationError(f"Parent destination directory does not exist: {parent}")
        if not os.access(parent, os.W_OK):
            raise ConfigurationError(f"Parent destination directory is not writable: {parent}")

        if self.settings.backup_method == 'timestamp':
            destination = os.path.join(parent, 'ab_' + utils.filename_timestamp())
        else:
            destination = parent

        if not os.path.exists(destination):
            try:
                os.makedirs(destination, mode=0o775)
            except OSError as e:
                raise ConfigurationError(f"Failed to create destination directory: {destination}") from e
        elif not os.path.isdir(destination):
            raise ConfigurationError(f"Destination path exists but is not a directory: {destination}")
        if not os.access(destination, os.W_OK):
            raise ConfigurationError(f"Destination directory is not writable: {destination}")

        self.destination = destination
        self.log('INFO', f"Source paths: {', '.join(self.settings.allowed_sources)}")
        self.log('INFO', f"Destination: {destination}")

    def _phase_2_pre_run(self):
        self.hooks.run(self.settings.pre_run_script, 'pre-run', self.destination)
        self._check_abort()

    def _phase_3_containers(self):
        """Back up the docker containers."""
        if self.runtime is None:
            self.runtime = DockerRuntime()
        workloads = self.runtime.list_workloads()
        self.log('DEBUG', f"Found containers: {', '.join(w.name for w in workloads)}")
        if not workloads:
            self.log('WARNING', "No Docker containers found to backup")
            return

        names = sorted(w.name for w in workloads if not self.settings.for_container(w.name).skip)
        self.log('INFO', f"Selected containers: {', '.join(names)}")
        self.settings.remove_obsolete([w.name for w in workloads], self.log)

        self._copy_templates()
        self._check_abort()

        self.update_list = self._check_updates(workloads)

        ret = self.hooks.run(self.settings.pre_backup_script, 'pre-backup', self.destination)
        if ret == SKIP_EXIT_CODE:
            self.log('INFO', "Backup skipped by pre-backup script")
            return

        lifecycle = LifecycleController(self.runtime, self.settings, self.log, sleep=self.sleep)
        archive = ArchiveExecutor(self.settings, self.log, abort=self.state.abort, runtime=self.runtime)
        engine = OrchestrationEngine(
            self.runtime, self.settings, self.log, self.destination, archive, lifecycle, self.hooks,
            abort=self.state.abort, update_list=self.update_list, notifier=self.notifier,
            incremental=self.settings.is_incremental,
        )
        outcome = engine.handle(self.settings.container_handling)
        self.results = engine.results
        self._log_summary()
        if engine.error_occurred:
            self.error_occurred = True
        if outcome == ABORTED:
            raise BackupAborted()

    def _log_summary(self):
        """Log one line per container backup of this run."""
        for result in self.results:
            if result.aborted:
                status = 'aborted'
            elif not result.success:
                status = f"FAILED ({result.error})"
            elif result.tolerated:
                status = 'failed, ignored' + (f" ({result.error})" if result.error else '')
            else:
                status = 'ok'
            line = f"Summary {result.name}: {status}, took {utils.format_duration(result.duration)}"
            if result.artifact and not result.aborted:
                line += f", {result.artifact}"
            self.log('INFO', line)

    def _copy_templates(self):
        self.log('INFO', "Saving container XML configurations...")
        for template in glob.glob(os.path.join(self.settings.templates_dir, '*')):
            try:
                shutil.copy(template, os.path.join(self.destination, os.path.basename(template)))
            except OSError as e:
                self.log('WARNING', f"Could not copy {template}: {e}")

    def _check_updates(self, workloads):
        """Return the names of containers that should be updated after their backup."""
        self.log('DEBUG', "Checking for Docker container updates...")
        planned = []
        for workload in workloads:
            self._check_abort()
            cs = self.settings.for_container(workload.name)
            if cs.skip or not cs.update_container:
                continue
            if self.runtime.update_available(workload.name):
                self.log('INFO', f"Scheduling update for {workload.name}")
                planned.append(workload.name)
            else:
                self.log('INFO', f"No update available for {workload.name}")
        self.log('DEBUG', f"Planned updates: {', '.join(planned)}")
        return planned

    def _phase_4_extras(self):
        for step in (backup_flash, backup_vm_meta, backup_extra_files):
            self._check_abort()
            if not step(self.settings, self.destination, self.log):
                self.error_occurred = True

    def _phase_5_retention(self):
        self._check_abort()
        if self.error_occurred:
            self.log('WARNING', "Skipping retention check due to errors")
            return
        try:
            run_retention(self.settings, is_dry_run=self.is_dry_run_retention, log_callback=self.log)
        except Exception as e:
            self.log('ERROR', f"Retention failed: {e}")

    def _phase_6_finalize(self, start_time):
        """Copy logs, mark failures, fix permissions, run the post-run hook and clean up."""
        if self.aborted or self.state.abort.requested:
            self.aborted = True
            self.error_occurred = True
            self.log('WARNING', "Backup cancelled", MAIN)

        try:
            if self.destination and os.path.isdir(self.destination):
                self.job_log.flush()
                self._copy_file(self.job_log.log_path, os.path.join(self.destination, 'backup.log'))
                if self.config_path and os.path.exists(self.config_path):
                    self._copy_file(self.config_path, os.path.join(self.destination, utils.SETTINGS_FILE))

                if self.error_occurred:
                    self._copy_file(self.job_log.debug_log_path, os.path.join(self.destination, 'backup.debug.log'))
                    if self.settings.backup_method == 'timestamp':
                        failed = self.destination + '-failed'
                        os.rename(self.destination, failed)
                        self.destination = failed

                counts = utils.apply_permissions_recursive(
                    self.destination, file_mode=0o640, dir_mode=0o750,
                    owner=self.settings.backup_owner or None, group=self.settings.backup_group or None,
                )
                self.log('DEBUG', f"Permissions set: {counts}")

            self.hooks.run(self.settings.post_run_script, 'post-run', self.destination or '',
                           'false' if self.error_occurred else 'true')

            if not self.error_occurred and self.settings.success_log_wanted:
                hours, rest = divmod(int(time.monotonic() - start_time), 3600)
                duration = f"{hours}h, {rest // 60}m"
                self.notifier("Appdata Backup", f"Backup Completed [{duration}]",
                              f"Backup completed successfully in {duration}", 'success')
        except Exception as e:
            self.error_occurred = True
            self.log('ERROR', f"Finalizing failed: {e}")
            logger.exception("Finalize failed")
        finally:
            self.state.abort.clear()
            self.state.release()
            self.log('INFO', "Backup process completed")
            self.job_log.close()

    def _copy_file(self, src, dst):
        try:
            shutil.copy(src, dst)
        except OSError as e:
            self.log('WARNING', f"Could not copy {src} to {dst}: {e}")
