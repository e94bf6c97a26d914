"""
Retention of timestamped backup sets (``ab_YYYYMMDD_HHMMSS`` directories).
"""
import shutil
from datetime import datetime, timedelta
from pathlib import Path

from appdata_backup import utils
from appdata_backup.utils import setup_logging, get_logger

# Configure logging using centralized setup so LOG_LEVEL is respected
setup_logging()
logger = get_logger(__name__)

BACKUP_DIR_PREFIX = 'ab_'
BACKUP_DIR_FORMAT = 'ab_%Y%m%d_%H%M%S'


def parse_backup_time(name):
    """Return the timestamp encoded in a backup directory name, or None."""
    try:
        return datetime.strptime(name, BACKUP_DIR_FORMAT)
    except ValueError:
        return None


def select_for_deletion(names, keep_min, older_than_days, now=None):
    """Split backup directory names into ``(to_keep, to_delete)``.

    The newest ``keep_min`` sets are always kept. With ``older_than_days`` set,
    sets newer than the threshold are kept too, as are names that carry no
    parseable timestamp. Without it everything beyond ``keep_min`` goes.
    """
    backups = sorted(names, reverse=True)
    to_keep = list(backups[:max(keep_min or 0, 0)])

    if older_than_days:
        now = now or utils.local_now().replace(tzinfo=None)
        threshold = now - timedelta(days=older_than_days)
        for name in backups:
            if name in to_keep:
                continue
            ts = parse_backup_time(name)
            if ts is None or ts >= threshold:
                to_keep.append(name)

    to_delete = [name for name in backups if name not in to_keep]
    return to_keep, to_delete


def run_retention(settings, is_dry_run=False, log_callback=None, now=None):
    """
    Delete old backup sets below the destination.

    Args:
        settings: Resolved Settings (destination and retention knobs)
        is_dry_run: Only report what would be deleted
        log_callback: Function to call for logging
        now: Reference time (naive, local); defaults to the current time

    Returns:
        Dict with the kept and deleted directory names
    """
    def log(level, msg):
        if log_callback:
            log_callback(level, msg)
        else:
            if level == 'ERROR':
                logger.error("%s", msg)
            elif level == 'WARNING':
                logger.warning("%s", msg)
            else:
                logger.info("%s", msg)

    result = {'kept': [], 'deleted': []}
    keep_min = settings.keep_min_backups
    older_than = settings.delete_backups_older_than

    if not keep_min and not older_than:
        log('WARNING', "Retention policies disabled")
        return result

    base = Path(settings.destination.rstrip('/'))
    if not base.is_dir():
        log('WARNING', f"Backup destination does not exist: {base}")
        return result

    log('INFO', "Processing retention policy...")
    names = [p.name for p in base.iterdir() if p.is_dir() and p.name.startswith(BACKUP_DIR_PREFIX)]
    if older_than:
        threshold = (now or utils.local_now().replace(tzinfo=None)) - timedelta(days=older_than)
        log('DEBUG', f"Retention threshold: {threshold.strftime('%Y%m%d_%H%M%S')}")

    to_keep, to_delete = select_for_deletion(names, keep_min, older_than, now=now)
    log('DEBUG', f"Retaining: {', '.join(to_keep)}")
    log('DEBUG', f"Deleting: {', '.join(to_delete)}")
    result['kept'] = to_keep

    for name in to_delete:
        path = base / name
        if is_dry_run:
            log('INFO', f"Would remove old backup: {path}")
            result['deleted'].append(name)
            continue
        log('INFO', f"Removing old backup: {path}")
        try:
            shutil.rmtree(path)
            result['deleted'].append(name)
        except OSError as e:
            log('ERROR', f"Failed to delete {path}: {e}")
            logger.exception("[Retention] Failed to delete %s: %s", path, e)

    if not result['deleted']:
        log('INFO', "Retention cleanup finished. No backups needed deletion.")
    else:
        log('INFO', f"Retention cleanup finished. Deleted {len(result['deleted'])} backup(s).")
    return result
