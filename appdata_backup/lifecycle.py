"""
Stopping and restarting containers around their backup.
"""
import time
from dataclasses import dataclass
from pathlib import Path

from appdata_backup.runtime import STATUS_OK, STATUS_ALREADY_RUNNING
from appdata_backup.state import MAIN
from appdata_backup.utils import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)

# Grace period for the CLI fallback stop before docker kills the container
FORCE_STOP_GRACE = 30
# Wait after a successful start when no autostart delay is configured
DEFAULT_SETTLE_DELAY = 2


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry: ``max_attempts`` tries, ``delay`` seconds between them."""
    max_attempts: int = 3
    delay: float = 5


def read_autostart_delays(path):
    """Parse the docker autostart file (``<name> [delay]`` per line).

    Returns ``{name: delay_seconds}`` or None if the file is missing.
    """
    p = Path(path)
    if not p.exists():
        return None
    delays = {}
    for line in p.read_text(encoding='utf-8', errors='replace').splitlines():
        parts = line.strip().split()
        if len(parts) < 2:
            continue
        try:
            delays.setdefault(parts[0], int(parts[1]))
        except ValueError:
            continue
    return delays


class LifecycleController:
    """Stops and starts single containers for one backup run.

    Containers that were not running, were paused or must not be stopped are
    remembered during ``stop`` and left alone by ``start``.
    """

    def __init__(self, runtime, settings, log, sleep=None, retry=None, settle_delay=DEFAULT_SETTLE_DELAY):
        self.runtime = runtime
        self.settings = settings
        self.log = log
        self.sleep = sleep or time.sleep
        self.retry = retry or RetryPolicy()
        self.settle_delay = settle_delay
        self.skip_start = set()

    def stop(self, workload, ctx=MAIN):
        """Stop ``workload`` before its backup.

        Always returns True: a container that cannot be stopped is backed up
        while running.
        """
        name = workload.name
        if not workload.running or workload.paused:
            self.skip_start.add(name)
            state = 'Paused!' if workload.paused else 'Not started!'
            self.log('INFO', f"No stopping needed for {name}: {state}", ctx)
            return True

        if self.settings.for_container(name).dont_stop:
            self.skip_start.add(name)
            self.log('INFO', f"NOT stopping {name} because it should be backed up WITHOUT stopping!", ctx)
            return True

        self.log('INFO', f"Stopping {name}...", ctx)
        started = time.monotonic()
        status = self.runtime.stop(name)
        if status == STATUS_OK:
            self.log('INFO', f"Stopping {name} done! (took {int(time.monotonic() - started)} seconds)", ctx)
            return True

        self.log('WARNING', f"Error while stopping container! Code: {status} - trying 'docker stop' method", ctx)
        ok, output = self.runtime.force_stop(name, FORCE_STOP_GRACE)
        if ok:
            self.log('INFO', "That _seemed_ to work.", ctx)
        else:
            self.log('ERROR', f"docker stop variant was unsuccessful! Docker said: {', '.join(output)}", ctx)
        return True

    def startup_delay(self, name, ctx=MAIN):
        delays = read_autostart_delays(self.settings.autostart_file)
        if delays is None:
            self.log('DEBUG', "Docker autostart file is NOT present!", ctx)
            return 0
        return delays.get(name, 0)

    def start(self, workload, ctx=MAIN):
        """Start ``workload`` again after its backup.

        Retries according to the retry policy, then gives up; a failed start
        never stops the run. Returns True if the container runs, False if it
        could not be started and None if it was deliberately left alone.
        """
        name = workload.name
        if name in self.skip_start:
            self.log('INFO', f"Starting {name} is ignored, as it was not started before or should not be started.", ctx)
            return None

        delay = self.startup_delay(name, ctx)
        started = False
        for attempt in range(1, self.retry.max_attempts + 1):
            self.log('INFO', f"Starting {name}... (try #{attempt})", ctx)
            status = self.runtime.start(name)
            if status == STATUS_OK:
                self.log('INFO', f"Starting {name} done!", ctx)
                started = True
                break
            if status == STATUS_ALREADY_RUNNING:
                self.log('WARNING', "Container is already started!", ctx)
                for line in self.runtime.describe(name):
                    self.log('DEBUG', f"After backup container status: {line}", ctx)
                started = True
                break
            self.log('WARNING', f"Container did not start! Code: {status}", ctx)
            if attempt < self.retry.max_attempts:
                self.sleep(self.retry.delay)

        if not started:
            level = 'INFO' if self.settings.for_container(name).ignore_backup_errors else 'ERROR'
            self.log(level, "Container did not start after multiple tries, skipping.", ctx)
            for line in self.runtime.describe():
                self.log('DEBUG', f"docker ps -a: {line}", ctx)
            return False

        if delay:
            self.log('INFO', f"Waiting {delay} seconds due to container delay setting", ctx)
            self.sleep(delay)
        else:
            self.sleep(self.settle_delay)
        return True
