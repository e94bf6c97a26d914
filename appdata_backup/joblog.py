"""
Per-run backup log.

Every run writes two files into the temp folder: ``ab.log`` with INFO and
above (copied to the destination as ``backup.log``) and ``ab.debug.log`` with
everything (copied as ``backup.debug.log`` when the run fails). Lines carry
the log context of the unit being processed, e.g.
``[24.12.2025 03:00:12][INFO][nextcloud] Stopping nextcloud...``.
"""
import logging
import os

from appdata_backup import utils
from appdata_backup.state import MAIN

JOB_LOGGER_NAME = 'appdata_backup.job'
LINE_FORMAT = '[%(asctime)s][%(levelname)s]%(section)s %(message)s'
DATE_FORMAT = '%d.%m.%Y %H:%M:%S'


class _SectionFilter(logging.Filter):
    def filter(self, record):
        if not hasattr(record, 'section'):
            record.section = MAIN.label
        return True


class NotifyHandler(logging.Handler):
    """Forward warnings/errors of the job log as notifications.

    ``target_level`` is the configured notification level: errors are sent for
    'info', 'warning' and 'error'; warnings only for 'warning'.
    """

    def __init__(self, notifier, target_level='error'):
        super().__init__(level=logging.WARNING)
        self.notifier = notifier
        self.target_level = target_level

    def emit(self, record):
        if self.target_level not in ('info', 'warning', 'error'):
            return
        try:
            if record.levelno >= logging.ERROR:
                self.notifier("[AppdataBackup] Error!", "Please check the backup log!", record.getMessage(), 'alert')
            elif record.levelno >= logging.WARNING and self.target_level == 'warning':
                self.notifier("[AppdataBackup] Warning!", "Please check the backup log!", record.getMessage(), 'warning')
        except Exception:
            self.handleError(record)


class JobLog:
    """Backup log for one run; ``log`` is handed to every component."""

    def __init__(self, temp_folder=None, notifier=None, notify_level='error'):
        self.temp_folder = str(temp_folder or utils.TEMP_FOLDER)
        os.makedirs(self.temp_folder, exist_ok=True)
        self.log_path = os.path.join(self.temp_folder, utils.JOB_LOG_FILE)
        self.debug_log_path = os.path.join(self.temp_folder, utils.JOB_DEBUG_LOG_FILE)

        self.logger = logging.getLogger(JOB_LOGGER_NAME)
        self.logger.setLevel(logging.DEBUG)
        # A new run replaces the handlers of a previous one in this process
        for h in list(self.logger.handlers):
            self.logger.removeHandler(h)
            h.close()
        for f in list(self.logger.filters):
            self.logger.removeFilter(f)
        self.logger.addFilter(_SectionFilter())

        formatter = logging.Formatter(LINE_FORMAT, datefmt=DATE_FORMAT)
        for path, level in ((self.log_path, logging.INFO), (self.debug_log_path, logging.DEBUG)):
            fh = logging.FileHandler(path, encoding='utf-8')
            fh.setLevel(level)
            fh.setFormatter(formatter)
            self.logger.addHandler(fh)

        if notifier is not None:
            self.logger.addHandler(NotifyHandler(notifier, notify_level))

    def log(self, level, message, ctx=None):
        """Write a line; ``level`` is a level name such as 'INFO'."""
        levelno = logging.getLevelName(str(level).upper())
        if not isinstance(levelno, int):
            levelno = logging.INFO
        section = (ctx or MAIN).label
        self.logger.log(levelno, message, extra={'section': section})

    __call__ = log

    def flush(self):
        for h in self.logger.handlers:
            try:
                h.flush()
            except Exception:
                pass

    def close(self):
        for h in list(self.logger.handlers):
            self.logger.removeHandler(h)
            try:
                h.close()
            except Exception:
                pass
