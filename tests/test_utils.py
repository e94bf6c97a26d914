import os
import stat
from datetime import datetime

from appdata_backup import utils


def test_format_duration():
    assert utils.format_duration(None) == 'N/A'
    assert utils.format_duration(252) == '0:04:12'
    assert utils.format_duration(3 * 3600 + 61) == '3:01:01'


def test_filename_timestamp():
    assert utils.filename_timestamp(datetime(2025, 12, 25, 18, 25, 30)) == '20251225_182530'


def test_run_command_merges_output():
    code, output = utils.run_command(['sh', '-c', 'echo out; echo err 1>&2; exit 3'])
    assert code == 3
    assert output == ['out', 'err']


def test_run_command_missing_binary():
    code, output = utils.run_command(['definitely-not-a-real-binary-xyz'])
    assert code == 127
    assert output


def test_apply_permissions_recursive(tmp_path):
    base = tmp_path / 'set'
    (base / 'sub').mkdir(parents=True)
    f = base / 'sub' / 'file.txt'
    f.write_text('x')
    os.chmod(f, 0o666)
    os.chmod(base / 'sub', 0o777)

    counts = utils.apply_permissions_recursive(str(base), file_mode=0o640, dir_mode=0o750)

    assert stat.S_IMODE(os.stat(f).st_mode) == 0o640
    assert stat.S_IMODE(os.stat(base / 'sub').st_mode) == 0o750
    assert stat.S_IMODE(os.stat(base).st_mode) == 0o750
    assert counts['files_changed'] == 1 and counts['errors'] == 0


def test_apply_permissions_missing_path(tmp_path):
    assert utils.apply_permissions_recursive(str(tmp_path / 'missing')) == {
        'files_changed': 0, 'dirs_changed': 0, 'errors': 0}
