"""
Backup settings: loading, defaults merge and per-container resolution.

The settings file is the JSON document written by the settings page. Values
are normalised exactly once here (yes/no strings become booleans, path lists
lose empty lines and trailing slashes, container overrides are merged over
the defaults) so the rest of the application only ever sees fully populated
objects.
"""
import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from croniter import croniter

from appdata_backup import utils
from appdata_backup.utils import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)


BACKUP_METHODS = ('timestamp', 'incremental')
CONTAINER_HANDLING_METHODS = ('oneAfterTheOther', 'stopAll')
COMPRESSION_MODES = ('no', 'yes', 'yesMulticore')
NOTIFICATION_LEVELS = ('info', 'warning', 'error', 'disabled')


class ConfigurationError(Exception):
    """Raised when the configuration prevents a backup from starting."""


def _yes(value):
    """Interpret a settings flag ('yes'/'no', bool, 'true'/'false')."""
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('yes', 'true', '1', 'on')


def _path_list(value):
    """Normalise a list of paths given as list or newline separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        value = value.splitlines()
    paths = []
    for path in value:
        path = str(path).strip().rstrip('/')
        if path:
            paths.append(path)
    return paths


def _int(value, default=0):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


# Container setting keys as stored in the config file -> attribute names
_CONTAINER_FLAGS = {
    'skip': 'skip',
    'skipBackup': 'skip_backup',
    'dontStop': 'dont_stop',
    'backupExtVolumes': 'backup_ext_volumes',
    'verifyBackup': 'verify_backup',
    'ignoreBackupErrors': 'ignore_backup_errors',
    'updateContainer': 'update_container',
}


@dataclass(frozen=True)
class ContainerSettings:
    """Fully resolved settings for one container."""
    skip: bool = False
    skip_backup: bool = False
    dont_stop: bool = False
    backup_ext_volumes: bool = False
    verify_backup: bool = True
    ignore_backup_errors: bool = False
    update_container: bool = False
    group: str = ''
    exclude: tuple = ()

    def merged(self, overrides):
        """Return a copy with the raw config ``overrides`` applied."""
        changes = {}
        for key, attr in _CONTAINER_FLAGS.items():
            if key in overrides:
                changes[attr] = _yes(overrides[key])
        if 'group' in overrides:
            changes['group'] = str(overrides.get('group') or '').strip()
        if 'exclude' in overrides:
            changes['exclude'] = tuple(_path_list(overrides.get('exclude')))
        return replace(self, **changes)


@dataclass
class Settings:
    """Resolved backup settings."""
    destination: str = ''
    backup_method: str = 'timestamp'
    container_handling: str = 'oneAfterTheOther'
    delete_backups_older_than: int = 7
    keep_min_backups: int = 3
    allowed_sources: List[str] = field(default_factory=lambda: ['/mnt/user/appdata', '/mnt/cache/appdata'])
    compression: str = 'yes'
    compression_cpu_limit: int = 0
    defaults: ContainerSettings = field(default_factory=ContainerSettings)
    container_settings: Dict[str, ContainerSettings] = field(default_factory=dict)
    container_order: List[str] = field(default_factory=list)
    container_group_order: Dict[str, List[str]] = field(default_factory=dict)
    pre_run_script: str = ''
    pre_backup_script: str = ''
    post_backup_script: str = ''
    post_run_script: str = ''
    pre_container_backup_script: str = ''
    post_container_backup_script: str = ''
    include_files: List[str] = field(default_factory=list)
    global_exclusions: List[str] = field(default_factory=list)
    ignore_exclusion_case: bool = False
    flash_backup: bool = True
    flash_backup_copy: str = ''
    backup_vm_meta: bool = True
    notification: str = 'error'
    notification_urls: List[str] = field(default_factory=list)
    success_log_wanted: bool = False
    update_log_wanted: bool = False
    backup_frequency: str = 'disabled'
    backup_frequency_weekday: int = 1
    backup_frequency_day_of_month: int = 1
    backup_frequency_hour: int = 0
    backup_frequency_minute: int = 0
    backup_frequency_custom: str = ''
    # Host integration
    config_path: Optional[str] = None
    autostart_file: str = utils.AUTOSTART_FILE
    templates_dir: str = utils.TEMPLATES_DIR
    qemu_folder: str = utils.QEMU_FOLDER
    update_script: str = utils.UPDATE_CONTAINER_SCRIPT
    backup_owner: str = 'nobody'
    backup_group: str = 'users'

    @property
    def is_incremental(self):
        return self.backup_method == 'incremental'

    @classmethod
    def load(cls, path=None):
        """Load settings from the JSON config file.

        Raises ConfigurationError if the file is missing or cannot be parsed.
        """
        path = Path(path or utils.get_config_path())
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")
        try:
            config = json.loads(path.read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Failed to parse {path}: {e}") from e
        if not isinstance(config, dict):
            raise ConfigurationError(f"Unexpected configuration format in {path}")

        settings = cls.from_dict(config)
        settings.config_path = str(path)
        logger.debug("Config loaded from %s, backupMethod = %s, destination = %s",
                     path, settings.backup_method, settings.destination)
        return settings

    @classmethod
    def from_dict(cls, config):
        """Build settings from a raw config dict (camelCase keys as stored on disk)."""
        s = cls()

        s.destination = str(config.get('destination', s.destination) or '').strip()

        backup_method = config.get('backupMethod', s.backup_method)
        if backup_method not in BACKUP_METHODS:
            logger.warning("Invalid backupMethod '%s' detected, defaulting to 'timestamp'", backup_method)
            backup_method = 'timestamp'
        s.backup_method = backup_method

        handling = config.get('containerHandling', s.container_handling)
        if handling not in CONTAINER_HANDLING_METHODS:
            logger.warning("Invalid containerHandling '%s' detected, defaulting to 'oneAfterTheOther'", handling)
            handling = 'oneAfterTheOther'
        s.container_handling = handling

        compression = config.get('compression', s.compression)
        if compression not in COMPRESSION_MODES:
            logger.warning("Invalid compression '%s' detected, defaulting to 'yes'", compression)
            compression = 'yes'
        s.compression = compression
        s.compression_cpu_limit = _int(config.get('compressionCpuLimit'), 0)

        s.delete_backups_older_than = _int(config.get('deleteBackupsOlderThan', s.delete_backups_older_than), 0)
        s.keep_min_backups = _int(config.get('keepMinBackups', s.keep_min_backups), 0)

        if 'allowedSources' in config:
            s.allowed_sources = _path_list(config['allowedSources'])
        s.include_files = _path_list(config.get('includeFiles'))
        s.global_exclusions = _path_list(config.get('globalExclusions'))

        # Defaults are merged once; every container override builds on them
        s.defaults = ContainerSettings().merged(config.get('defaults') or {})
        s.container_settings = {}
        for name, overrides in (config.get('containerSettings') or {}).items():
            s.container_settings[name] = s.defaults.merged(overrides or {})

        order = config.get('containerOrder')
        s.container_order = list(order) if isinstance(order, list) else []
        group_order = config.get('containerGroupOrder')
        s.container_group_order = {
            str(k): list(v) for k, v in (group_order or {}).items() if isinstance(v, list)
        } if isinstance(group_order, dict) else {}

        for key, attr in (
            ('preRunScript', 'pre_run_script'),
            ('preBackupScript', 'pre_backup_script'),
            ('postBackupScript', 'post_backup_script'),
            ('postRunScript', 'post_run_script'),
            ('preContainerBackupScript', 'pre_container_backup_script'),
            ('postContainerBackupScript', 'post_container_backup_script'),
            ('flashBackupCopy', 'flash_backup_copy'),
            ('backupFrequencyCustom', 'backup_frequency_custom'),
            ('backupFrequency', 'backup_frequency'),
            ('autostartFile', 'autostart_file'),
            ('templatesDir', 'templates_dir'),
            ('qemuFolder', 'qemu_folder'),
            ('updateScript', 'update_script'),
            ('backupOwner', 'backup_owner'),
            ('backupGroup', 'backup_group'),
        ):
            if key in config and config[key] is not None:
                setattr(s, attr, str(config[key]).strip())

        for key, attr in (
            ('ignoreExclusionCase', 'ignore_exclusion_case'),
            ('flashBackup', 'flash_backup'),
            ('backupVMMeta', 'backup_vm_meta'),
            ('successLogWanted', 'success_log_wanted'),
            ('updateLogWanted', 'update_log_wanted'),
        ):
            if key in config:
                setattr(s, attr, _yes(config[key]))

        for key, attr in (
            ('backupFrequencyWeekday', 'backup_frequency_weekday'),
            ('backupFrequencyDayOfMonth', 'backup_frequency_day_of_month'),
            ('backupFrequencyHour', 'backup_frequency_hour'),
            ('backupFrequencyMinute', 'backup_frequency_minute'),
        ):
            if key in config:
                setattr(s, attr, _int(config[key], getattr(s, attr)))

        notification = str(config.get('notification', s.notification) or '').strip().lower()
        s.notification = notification if notification in NOTIFICATION_LEVELS else 'disabled'
        urls = config.get('notificationUrls')
        s.notification_urls = [u.strip() for u in (urls.splitlines() if isinstance(urls, str) else (urls or [])) if str(u).strip()]

        return s

    def for_container(self, name):
        """Return the resolved settings for a container (defaults if none configured)."""
        return self.container_settings.get(name, self.defaults)

    def get_container_groups(self, group=None):
        """Return ``{group: [members]}``, or the member list of a single group."""
        groups = {}
        for name, cs in self.container_settings.items():
            if cs.group:
                groups.setdefault(cs.group, []).append(name)
        if group is not None:
            return groups.get(group, [])
        return groups

    def group_order(self, group):
        return self.container_group_order.get(group, [])

    def remove_obsolete(self, existing_names, log=None):
        """Drop settings of containers that no longer exist."""
        existing = set(existing_names)
        for name in list(self.container_settings):
            if name not in existing:
                del self.container_settings[name]
                if log:
                    log('DEBUG', f"Removed obsolete container '{name}' from settings")

    def cron_expression(self):
        """Return the cron expression for the configured schedule, or None if disabled."""
        freq = (self.backup_frequency or 'disabled').lower()
        minute, hour = self.backup_frequency_minute, self.backup_frequency_hour
        if freq == 'disabled':
            return None
        if freq == 'daily':
            return f"{minute} {hour} * * *"
        if freq == 'weekly':
            return f"{minute} {hour} * * {self.backup_frequency_weekday}"
        if freq == 'monthly':
            return f"{minute} {hour} {self.backup_frequency_day_of_month} * *"
        if freq == 'custom':
            return self.backup_frequency_custom
        raise ConfigurationError(f"Unknown backup frequency '{self.backup_frequency}'")

    def check_cron(self, base=None):
        """Validate the schedule.

        Returns ``(code, message)``: code 0 and the next run time when valid
        (or a notice when scheduling is disabled), code 1 with the problem
        otherwise.
        """
        try:
            expr = self.cron_expression()
        except ConfigurationError as e:
            return 1, str(e)
        if expr is None:
            return 0, 'Scheduled backups are disabled'
        if not croniter.is_valid(expr):
            return 1, f"Invalid cron expression: '{expr}'"
        base = base or utils.local_now()
        next_run = croniter(expr, base).get_next(datetime)
        return 0, f"Schedule '{expr}', next run: {next_run.strftime('%Y-%m-%d %H:%M')}"
