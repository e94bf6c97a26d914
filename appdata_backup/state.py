"""
Run state: single-run marker, cooperative abort flag and log context.

The marker and the abort flag are plain files in the temp folder so the
settings page (or the CLI) can see and control a run from another process.
"""
import os
from pathlib import Path

from appdata_backup import utils
from appdata_backup.utils import get_logger

logger = get_logger(__name__)


class BackupAborted(Exception):
    """Raised at a safe point once an abort has been requested."""


def _pid_alive(pid):
    if os.path.isdir('/proc'):
        return os.path.exists(f'/proc/{pid}')
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class AbortToken:
    """Polled cancellation flag backed by the abort state file.

    The flag is only checked at unit and phase boundaries; an external
    command that is already running is never interrupted.
    """

    def __init__(self, path):
        self.path = Path(path)

    @property
    def requested(self):
        return self.path.exists()

    def request(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch()

    def clear(self):
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def raise_if_requested(self):
        if self.requested:
            raise BackupAborted()


class RunState:
    """Process identity marker for the single active run plus its abort token."""

    def __init__(self, temp_folder=None):
        self.temp_folder = Path(temp_folder or utils.TEMP_FOLDER)
        self.marker = self.temp_folder / utils.STATE_FILE_RUNNING
        self.abort = AbortToken(self.temp_folder / utils.STATE_FILE_ABORT)

    def running_pid(self):
        """Return the PID of the live run, clearing a stale marker."""
        try:
            raw = self.marker.read_text()
        except FileNotFoundError:
            return None
        digits = ''.join(ch for ch in raw if ch.isdigit())
        if digits and _pid_alive(int(digits)):
            return int(digits)
        logger.info("Removing stale run marker %s (pid %r)", self.marker, raw.strip())
        try:
            self.marker.unlink()
        except FileNotFoundError:
            pass
        return None

    def is_running(self):
        return self.running_pid() is not None

    def acquire(self, pid=None):
        """Record this process as the active run. Returns False if another run is live."""
        pid = pid or os.getpid()
        self.temp_folder.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(str(self.marker), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                other = self.running_pid()
                if other is not None and other != pid:
                    return False
                if other == pid:
                    return True
                continue
            with os.fdopen(fd, 'w') as fh:
                fh.write(str(pid))
            return True
        return False

    def release(self):
        try:
            self.marker.unlink()
        except FileNotFoundError:
            pass

    def clean_temp_folder(self):
        """Remove a leftover abort flag and the previous run's log files."""
        self.abort.clear()
        if self.temp_folder.exists():
            for log_file in self.temp_folder.glob('*.log'):
                try:
                    log_file.unlink()
                except OSError as e:
                    logger.warning("Could not remove old log %s: %s", log_file, e)


class LogContext(tuple):
    """Immutable "current unit" path used to attribute log lines.

    Passed explicitly down the engine's call chain; entering a unit returns a
    new context and leaving it simply means using the parent again.
    """

    def __new__(cls, parts=()):
        return super().__new__(cls, tuple(parts))

    def enter(self, name):
        return LogContext(self + (name,))

    @property
    def label(self):
        names = [p for p in self if p]
        if not names:
            return '[Main]'
        return '[' + ']['.join(names) + ']'

    def __repr__(self):
        return f"LogContext({self.label})"


MAIN = LogContext()
