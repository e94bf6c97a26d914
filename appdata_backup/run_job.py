"""CLI entrypoint to run an appdata backup.

Usage:
  python -m appdata_backup.run_job [--config PATH] [--temp-folder PATH] [--dry-run-retention]
  python -m appdata_backup.run_job --abort
  python -m appdata_backup.run_job --check-cron

A normal invocation runs one complete backup and exits with 0 on success and
1 on failure or abort. ``--abort`` asks a running backup to stop at its next
safe point; ``--check-cron`` validates the configured schedule.
"""
import argparse
import sys

from appdata_backup.executor import BackupExecutor
from appdata_backup.settings import Settings, ConfigurationError
from appdata_backup.state import RunState
from appdata_backup.utils import setup_logging, get_logger

# Configure logging using centralized setup so LOG_LEVEL is respected
setup_logging()
logger = get_logger(__name__)


def parse_args(argv):
    parser = argparse.ArgumentParser(prog='appdata-backup', description='Back up docker container appdata')
    parser.add_argument('--config', type=str, help='Path to the settings file')
    parser.add_argument('--temp-folder', type=str, help='Folder for run state and job logs')
    parser.add_argument('--abort', action='store_true', help='Request the running backup to stop')
    parser.add_argument('--check-cron', action='store_true', help='Validate the configured schedule and exit')
    parser.add_argument('--dry-run-retention', action='store_true', help='Only report what retention would delete')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(sys.argv[1:] if argv is None else argv)

    if args.abort:
        state = RunState(args.temp_folder)
        if not state.is_running():
            logger.info("No backup is running")
            return 0
        state.abort.request()
        logger.info("Abort requested for backup pid %s", state.running_pid())
        return 0

    if args.check_cron:
        try:
            settings = Settings.load(args.config)
        except ConfigurationError as e:
            logger.error("%s", e)
            print(e)
            return 1
        code, message = settings.check_cron()
        print(message)
        return code

    executor = BackupExecutor(
        config_path=args.config,
        temp_folder=args.temp_folder,
        is_dry_run_retention=args.dry_run_retention,
    )
    return executor.run()


if __name__ == '__main__':
    sys.exit(main())
