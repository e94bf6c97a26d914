"""
Utility functions for the application.
"""
import os
import subprocess
from datetime import datetime
from zoneinfo import ZoneInfo
import logging

# Central logging helpers
def setup_logging():
    """Configure root logger from environment.

    - Uses LOG_LEVEL env var (e.g., DEBUG, INFO); defaults to INFO.
    - If no handlers exist, installs a StreamHandler and a TimedRotatingFileHandler
      to write daily log files into the fixed LOG_DIR.

    The per-run backup log (ab.log / ab.debug.log) is handled separately by
    `appdata_backup.joblog.JobLog`; this is the process-level log only.
    """
    level_name = os.environ.get('LOG_LEVEL', 'INFO').upper()
    level = getattr(logging, level_name, logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()

    # Only configure handlers if none are present so tests or other
    # environments can configure logging differently
    if not root.handlers:
        sh = logging.StreamHandler()
        sh.setLevel(level)
        sh.setFormatter(logging.Formatter('[%(levelname)s] %(asctime)s %(name)s: %(message)s'))
        root.addHandler(sh)

        log_dir = get_log_dir()
        try:
            os.makedirs(log_dir, exist_ok=True)
            from logging.handlers import TimedRotatingFileHandler
            fh = TimedRotatingFileHandler(
                filename=os.path.join(log_dir, LOG_FILE_NAME),
                when='midnight',
                backupCount=7,
                encoding='utf-8'
            )
            fh.setLevel(level)
            fh.setFormatter(logging.Formatter('[%(levelname)s] %(asctime)s %(name)s: %(message)s'))
            root.addHandler(fh)
        except Exception as e:
            # If file logging cannot be set up, log a warning to the stream handler
            root.warning("Failed to configure file logging (LOG_DIR=%s): %s", log_dir, e)

    root.setLevel(level)


def get_logger(name=None):
    """Return a logger for the given name (or the module logger if none)."""
    return logging.getLogger(name if name else __name__)


def local_now():
    """Get current datetime in local timezone (for directory names, logs).

    Returns a timezone-aware datetime in the configured display timezone."""
    tz = get_display_timezone()
    from datetime import timezone
    return datetime.now(timezone.utc).astimezone(tz)


def get_display_timezone():
    """Get the configured display timezone."""
    tz_name = os.environ.get('TZ', 'UTC')
    try:
        return ZoneInfo(tz_name)
    except Exception:
        return ZoneInfo('UTC')


def format_duration(seconds):
    """Format a duration as H:MM:SS (e.g. 0:04:12)."""
    if seconds is None:
        return 'N/A'
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}"


# Fixed paths used across the application. These are centralized so they can be
# adjusted in one place if needed; the CLI can override the config and temp
# folder locations for a single run.
APP_NAME = 'appdata.backup'
PLUGIN_DIR = '/boot/config/plugins/appdata.backup'
SETTINGS_FILE = 'config.json'
TEMP_FOLDER = '/tmp/appdata.backup'
LOG_DIR = '/var/log/appdata.backup'
LOG_FILE_NAME = 'app.log'
AUTOSTART_FILE = '/var/lib/docker/unraid-autostart'
QEMU_FOLDER = '/etc/libvirt/qemu'
TEMPLATES_DIR = '/boot/config/plugins/dockerMan/templates-user'
DOCROOT = '/usr/local/emhttp'
UPDATE_CONTAINER_SCRIPT = '/usr/local/emhttp/plugins/dynamix.docker.manager/scripts/update_container'
EMHTTP_VARS = '/var/local/emhttp/var.ini'
UNRAID_VERSION_FILE = '/etc/unraid-version'

# State/log file names inside the temp folder
STATE_FILE_RUNNING = 'running'
STATE_FILE_ABORT = 'abort'
JOB_LOG_FILE = 'ab.log'
JOB_DEBUG_LOG_FILE = 'ab.debug.log'


def get_config_path():
    """Return the default settings file path."""
    return os.path.join(PLUGIN_DIR, SETTINGS_FILE)


def get_log_dir():
    """Return the canonical process log directory."""
    return LOG_DIR


def filename_timestamp(dt=None):
    """Return a timestamp string suitable for filenames using configured local timezone.

    Format: YYYYMMDD_HHMMSS (e.g. 20251225_182530).
    If `dt` is None, uses current local time via `local_now()` helper.
    """
    if dt is None:
        dt = local_now()
    return dt.strftime('%Y%m%d_%H%M%S')


def run_command(cmd, timeout=None, cwd=None):
    """Run an external command synchronously.

    Returns a tuple ``(returncode, output_lines)`` where stdout and stderr are
    merged (like ``cmd 2>&1``). A missing binary is reported as return code 127
    instead of raising, so callers can treat it like any other tool failure.
    """
    try:
        result = subprocess.run(
            [str(c) for c in cmd],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
            cwd=cwd,
        )
    except FileNotFoundError as e:
        return 127, [str(e)]
    output = [line for line in (result.stdout or '').splitlines() if line.strip()]
    return result.returncode, output


def apply_permissions_recursive(base_path, file_mode=0o640, dir_mode=0o750, owner=None, group=None):
    """Recursively apply permissions (and optionally ownership) under base_path.

    Returns a dict with counts: {'files_changed': int, 'dirs_changed': int, 'errors': int}.
    The base directory itself gets ``dir_mode``. This is a best-effort
    operation and will continue on errors.
    """
    import shutil
    from pathlib import Path

    files_changed = 0
    dirs_changed = 0
    errors = 0
    logger = get_logger(__name__)

    base = Path(base_path)
    if not base.exists():
        return {'files_changed': 0, 'dirs_changed': 0, 'errors': 0}

    def _apply(p, mode):
        changed = False
        if (os.stat(p).st_mode & 0o777) != mode:
            os.chmod(p, mode)
            changed = True
        if owner or group:
            shutil.chown(p, user=owner, group=group)
        return changed

    try:
        if _apply(str(base), dir_mode):
            dirs_changed += 1
    except Exception:
        errors += 1

    for root, dirs, files in os.walk(str(base)):
        for d in dirs:
            try:
                if _apply(os.path.join(root, d), dir_mode):
                    dirs_changed += 1
            except Exception:
                errors += 1
        for f in files:
            try:
                if _apply(os.path.join(root, f), file_mode):
                    files_changed += 1
            except Exception:
                errors += 1

    if errors:
        logger.debug("Permission walk for %s finished with %s error(s)", base_path, errors)
    return {'files_changed': files_changed, 'dirs_changed': dirs_changed, 'errors': errors}
