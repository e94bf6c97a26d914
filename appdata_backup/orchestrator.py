"""
Container handling: the stop / backup / start sequence of a backup run.

Two methods are supported:

* ``stopAll``: stop every selected container (stop order), back them all up,
  run the post-backup hook, then start them again (start order).
* ``oneAfterTheOther``: stop, back up and start each container before the
  next one is touched. A group is handled as a complete ``stopAll`` pass over
  its members.

The abort flag is checked between units and between phases; once it is seen
nothing else is stopped, backed up or started.
"""
from appdata_backup.hooks import SKIP_EXIT_CODE
from appdata_backup.ordering import sort_units, resolve_group
from appdata_backup.state import BackupAborted, MAIN
from appdata_backup.utils import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)

STOP_ALL = 'stopAll'
ONE_AFTER_THE_OTHER = 'oneAfterTheOther'

COMPLETED = 'completed'
ABORTED = 'aborted'


class OrchestrationEngine:
    """Drives container handling for one run.

    Per-container results are collected in ``results``; ``error_occurred`` is
    set by any failure that is not tolerated via ``ignoreBackupErrors``.
    """

    def __init__(self, runtime, settings, log, destination, archive, lifecycle, hooks,
                 abort=None, update_list=(), notifier=None, incremental=None):
        self.runtime = runtime
        self.settings = settings
        self.log = log
        self.destination = destination
        self.archive = archive
        self.lifecycle = lifecycle
        self.hooks = hooks
        self.abort = abort
        self.update_list = set(update_list or ())
        self.notifier = notifier
        self.incremental = settings.is_incremental if incremental is None else incremental
        self.results = []
        self.error_occurred = False

    def handle(self, method=None, units_override=None, ctx=MAIN):
        """Run container handling. Returns COMPLETED or ABORTED."""
        method = method or self.settings.container_handling
        try:
            self._check_abort()
            self._pass(method, units_override, ctx)
        except BackupAborted:
            self.log('WARNING', "Abort requested! Container handling stopped.", MAIN)
            return ABORTED
        return COMPLETED

    def _check_abort(self):
        if self.abort is not None:
            self.abort.raise_if_requested()

    def _pass(self, method, units_override, ctx):
        if units_override is None:
            workloads = self.runtime.list_workloads()
            order = self.settings.container_order
            stop_units = sort_units(workloads, order, self.settings, reverse=True, log=self.log, ctx=ctx)
            start_units = sort_units(workloads, order, self.settings, reverse=False, ctx=ctx)
        else:
            workloads = [u.workload for u in units_override if u.workload is not None]
            start_units = list(units_override)
            stop_units = list(reversed(units_override))

        self.log('DEBUG', f"Stop order: {', '.join(u.name for u in stop_units)}", ctx)
        self.log('DEBUG', f"Start order: {', '.join(u.name for u in start_units)}", ctx)

        if method == STOP_ALL:
            self._stop_all(stop_units, start_units, workloads, ctx)
        else:
            self._one_after_the_other(stop_units, workloads, ctx)

    def _members(self, unit, workloads, reverse, ctx):
        """Yield ``(unit, ctx)`` for a container unit or for each member of a group."""
        if not unit.is_group:
            yield unit, ctx.enter(unit.name)
            return
        group_ctx = ctx.enter(unit.name)
        members = resolve_group(unit, workloads, self.settings, reverse=reverse, log=self.log, ctx=group_ctx)
        if not members:
            self.log('DEBUG', f"Group {unit.name} has no containers, skipping.", group_ctx)
            return
        for member in members:
            yield member, group_ctx.enter(member.name)

    def _ignored(self, unit, ctx):
        """True for containers configured with ``skip`` that were not filtered by ordering."""
        if self.settings.for_container(unit.name).skip:
            self.lifecycle.skip_start.add(unit.name)
            self.log('DEBUG', f"Not handling {unit.name}: should be ignored", ctx)
            return True
        return False

    def _pre_container(self, unit, ctx):
        """Run the pre-container hook. Returns False if it asked to skip the container."""
        ret = self.hooks.run(self.settings.pre_container_backup_script, 'pre-container', unit.name, ctx=ctx)
        if ret == SKIP_EXIT_CODE:
            self.log('INFO', "preContainer script skipped backup.", ctx)
            return False
        return True

    def _stop_all(self, stop_units, start_units, workloads, ctx):
        self.log('INFO', "Method: Stop all containers before backup.", ctx)
        skipped = set()

        for unit in stop_units:
            for member, member_ctx in self._members(unit, workloads, True, ctx):
                self._check_abort()
                if self._ignored(member, member_ctx) or not self._pre_container(member, member_ctx):
                    skipped.add(member.name)
                    continue
                self.lifecycle.stop(member.workload, member_ctx)
                self._check_abort()

        self._check_abort()

        self.log('INFO', "Starting container backups", ctx)
        for unit in stop_units:
            for member, member_ctx in self._members(unit, workloads, True, ctx):
                if member.name in skipped:
                    continue
                self._backup(member, member_ctx)
                self.hooks.run(self.settings.post_container_backup_script, 'post-container', member.name, ctx=member_ctx)
                self._check_abort()
                self._update(member, member_ctx)

        self._check_abort()

        self.hooks.run(self.settings.post_backup_script, 'post-backup', self.destination, ctx=ctx)
        self._check_abort()

        self.log('INFO', "Restoring containers to previous state", ctx)
        for unit in start_units:
            for member, member_ctx in self._members(unit, workloads, False, ctx):
                # Containers skipped by the pre-container hook are still started
                self._start(member, member_ctx)
                self._check_abort()

    def _one_after_the_other(self, stop_units, workloads, ctx):
        self.log('INFO', "Method: Stop/Backup/Start", ctx)

        for unit in stop_units:
            self._check_abort()
            if unit.is_group:
                group_ctx = ctx.enter(unit.name)
                members = resolve_group(unit, workloads, self.settings, reverse=False, log=self.log, ctx=group_ctx)
                if members:
                    self._pass(STOP_ALL, members, group_ctx)
                else:
                    self.log('DEBUG', f"Group {unit.name} has no containers, skipping.", group_ctx)
                continue

            unit_ctx = ctx.enter(unit.name)
            if self._ignored(unit, unit_ctx) or not self._pre_container(unit, unit_ctx):
                continue

            self.lifecycle.stop(unit.workload, unit_ctx)
            self._check_abort()

            self._backup(unit, unit_ctx)
            self.hooks.run(self.settings.post_container_backup_script, 'post-container', unit.name, ctx=unit_ctx)
            self._check_abort()

            self._update(unit, unit_ctx)
            self._check_abort()

            self._start(unit, unit_ctx)
            self._check_abort()

        self._check_abort()
        self.hooks.run(self.settings.post_backup_script, 'post-backup', self.destination, ctx=ctx)

    def _backup(self, unit, ctx):
        result = self.archive.run(unit.workload, self.destination, self.incremental, ctx=ctx)
        self.results.append(result)
        if not result.success:
            self.error_occurred = True
        return result

    def _start(self, unit, ctx):
        started = self.lifecycle.start(unit.workload, ctx)
        if started is False and not self.settings.for_container(unit.name).ignore_backup_errors:
            self.error_occurred = True
        return started

    def _update(self, unit, ctx):
        name = unit.name
        if name not in self.update_list:
            return
        self.log('INFO', f"Installing update for {name}...", ctx)
        ok, output = self.runtime.update(name, self.settings.update_script)
        self.log('DEBUG', f"Update output: {'; '.join(output)}", ctx)
        if not ok:
            self.log('WARNING', f"Update of {name} did not succeed!", ctx)
            return
        if self.settings.update_log_wanted and self.notifier is not None:
            self.notifier("Appdata Backup", f"Container '{name}' updated!",
                          f"Container '{name}' was successfully updated!")
