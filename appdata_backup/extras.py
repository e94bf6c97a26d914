"""
One-shot backups next to the containers: flash drive, VM metadata, extra files.

Each returns False when it was enabled and failed; the caller flags the run.
"""
import os
import shutil

from appdata_backup import utils
from appdata_backup.archive import compression_options, archive_suffix
from appdata_backup.utils import run_command


def backup_flash(settings, destination, log, docroot=None):
    """Create a flash drive backup with the host's script and copy it into the destination."""
    if not settings.flash_backup:
        return True

    log('INFO', "Backing up flash drive...")
    docroot = docroot or utils.DOCROOT
    script = os.path.join(docroot, 'webGui', 'scripts', 'flash_backup')
    if not os.path.exists(script):
        log('ERROR', "Flash backup script not found")
        return False

    code, output = run_command([script])
    log('DEBUG', f"Flash backup output: {', '.join(output)}")
    if not output or not output[0].strip():
        log('ERROR', "Flash backup failed: No output from script")
        return False

    name = output[0].strip()
    created = os.path.join(docroot, name)
    ok = True
    try:
        shutil.copy(created, os.path.join(destination, name))
        log('INFO', "Flash backup completed")
    except OSError as e:
        log('ERROR', f"Failed to copy flash backup to destination: {e}")
        ok = False

    if ok and settings.flash_backup_copy:
        log('INFO', f"Copying flash backup to {settings.flash_backup_copy}...")
        try:
            shutil.copy(created, os.path.join(settings.flash_backup_copy, name))
        except OSError as e:
            log('ERROR', f"Failed to copy flash backup to {settings.flash_backup_copy}: {e}")
            ok = False

    # The script leaves a symlink in the docroot pointing at the real zip
    try:
        if os.path.islink(created):
            target = os.path.realpath(created)
            if os.path.exists(target):
                os.remove(target)
        if os.path.lexists(created):
            os.remove(created)
    except OSError as e:
        log('DEBUG', f"Could not clean up {created}: {e}")
    return ok


def backup_vm_meta(settings, destination, log):
    """Archive the libvirt VM definitions as ``vm_meta.tgz``."""
    if not settings.backup_vm_meta:
        return True

    if not os.path.exists(settings.qemu_folder):
        log('WARNING', "VM metadata backup enabled but VM manager is disabled")
        return True

    log('INFO', "Backing up VM metadata...")
    code, output = run_command(['tar', '-czf', os.path.join(destination, 'vm_meta.tgz'), settings.qemu_folder.rstrip('/') + '/'])
    log('DEBUG', f"Tar command output: {'; '.join(output)}")
    if code != 0:
        log('ERROR', "Failed to backup VM metadata")
        return False
    log('INFO', "VM metadata backup completed")
    return True


def backup_extra_files(settings, destination, log):
    """Archive the configured extra files and folders as ``extra_files.tar[.gz|.zst]``."""
    if not settings.include_files:
        return True

    log('DEBUG', f"Processing extra files: {', '.join(settings.include_files)}")
    valid = []
    for path in settings.include_files:
        if not os.path.exists(path):
            log('ERROR', f"Invalid extra file/folder: {path}")
            continue
        if os.path.islink(path):
            log('WARNING', f"Converting symlink {path} to real path")
            path = os.path.realpath(path)
        valid.append(path)

    if not valid:
        log('WARNING', "No valid extra files to backup")
        return True

    options = [f"--exclude={e}" for e in settings.global_exclusions]
    options += ['-c', '-P']
    if settings.ignore_exclusion_case:
        options.append('--ignore-case')
    options += compression_options(settings.compression, settings.compression_cpu_limit)
    target = os.path.join(destination, 'extra_files' + archive_suffix(settings.compression))

    cmd = ['tar', *options, '-f', target, *valid]
    log('DEBUG', f"Executing tar command: {' '.join(cmd)}")
    code, output = run_command(cmd)
    log('DEBUG', f"Tar output: {'; '.join(output)}")
    if code != 0:
        log('ERROR', f"Failed to create extra files archive: {'; '.join(output)}")
        return False
    log('INFO', "Extra files backup completed")
    return True
