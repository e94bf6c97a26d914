"""
User hook scripts (pre/post run, pre/post backup, pre/post container).
"""
import os

from appdata_backup.utils import run_command

# A hook exiting with this code asks to skip the step it guards
SKIP_EXIT_CODE = 2
# Returned when a configured script cannot be executed at all
NOT_EXECUTED = -1


class HookRunner:
    """Runs configured hook scripts synchronously and reports their exit code."""

    def __init__(self, log, run=None):
        self.log = log
        self._run = run or run_command

    def run(self, script, *args, ctx=None):
        """Execute ``script`` with ``args``.

        Returns 0 when no script is configured, NOT_EXECUTED when the script is
        missing or not executable, otherwise the script's exit code.
        """
        if not script:
            self.log('DEBUG', "Not executing script: Not set!", ctx)
            return 0

        if not os.path.exists(script):
            self.log('ERROR', f"{script} does not exist! Skipping!", ctx)
            return NOT_EXECUTED

        if not os.access(script, os.X_OK):
            self.log('ERROR', f"{script} is not executable! Skipping!", ctx)
            return NOT_EXECUTED

        cmd = [script, *[str(a) for a in args]]
        self.log('INFO', f"Executing script {' '.join(cmd)}...", ctx)
        code, output = self._run(cmd)
        self.log('DEBUG', f"{script} CODE: {code} - {'; '.join(output)}", ctx)
        self.log('INFO', "Script executed!", ctx)

        if code not in (0, SKIP_EXIT_CODE):
            self.log('WARNING', f"Script returned {code} (expected 0 or {SKIP_EXIT_CODE})!", ctx)
        return code
