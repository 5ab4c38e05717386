"""
Unit tests for the backup executor (hostbackup/backup/executor.py).

Most runs use fake tools: the archiver and sync tools are replaced by
functions writing the files the real tools would produce. Runs marked
requires_tar_and_rsync drive the real binaries end to end.
"""

import os
import shutil
import signal
import tarfile
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pytest
from freezegun import freeze_time

from hostbackup.backup.executor import BackupExecutor, execute_backup
from hostbackup.backup.plugins import APPLICATION, POST_BACKUP, REMOTE
from hostbackup.backup.tools import ToolAvailability, ToolError
from hostbackup.config import UNLIMITED

from conftest import completed, requires_tar_and_rsync, write_plugin


NOW = datetime(2024, 1, 15, 3, 0, 0)

RECORD_TARGET = """
def {name}_exec(target, context):
    with open({record!r}, 'a') as f:
        f.write(target + '\\n')
    return True
"""


def fake_tar(args, **kwargs):
    """Write an empty archive at the path tar was asked to create."""
    Path(args[-2]).write_bytes(b'archive of ' + args[-1].encode())
    return completed(args)


def fake_rsync(args, **kwargs):
    """Copy top-level files, honouring --exclude."""
    excluded = {args[i + 1] for i, arg in enumerate(args) if arg == '--exclude'}
    source, destination = Path(args[-2]), Path(args[-1])
    for path in source.iterdir():
        if path.name not in excluded and path.is_file():
            shutil.copy2(path, destination / path.name)
    return completed(args)


def fake_gpg(args, **kwargs):
    if '--import' in args:
        return completed(args)
    if '--list-public-keys' in args:
        return completed(args, stdout=b'uid:-::::1700000000::H::Ops <ops@example.com>::::::::::0:\n')
    output = Path(args[args.index('--output') + 1])
    output.write_bytes(b'-----BEGIN PGP MESSAGE-----')
    return completed(args)


@pytest.fixture
def fake_pipeline():
    """Patch the archiver, sync and cipher invocations."""
    with patch('hostbackup.backup.compression.run_tool', side_effect=fake_tar) as tar, \
            patch('hostbackup.backup.storage.run_tool', side_effect=fake_rsync) as rsync, \
            patch('hostbackup.backup.keychain.run_tool', side_effect=fake_gpg), \
            patch('hostbackup.backup.encryption.run_tool', side_effect=fake_gpg) as gpg:
        yield {'tar': tar, 'rsync': rsync, 'gpg': gpg}


@pytest.fixture
def key_dir(tmp_path):
    keys = tmp_path / 'pubkey'
    keys.mkdir()
    return keys


def run(config, tools, now=NOW):
    executor = BackupExecutor(config, tools=tools, hostname='web01', now=now)
    return executor, executor.execute()


def generation(config, label='2024-01-15'):
    return Path(config.output_root) / 'web01' / label


class TestBackupRun:
    """Test complete runs with fake tools."""

    def test_successful_run(self, make_config, fake_tools, fake_pipeline, source_dir, tmp_path):
        """Test archives are published and the workspace is removed."""
        config = make_config(source_patterns=(str(source_dir),), date_format='%Y-%m-%d')

        executor, exit_code = run(config, fake_tools)

        assert exit_code == 0
        assert not executor.outcome.failed
        published = sorted(p.name for p in generation(config).iterdir())
        assert published == sorted([
            source_dir.as_posix().lstrip('/').replace('/', '-') + '.tar.gz',
            'hostbackup.log',
        ])
        assert list((tmp_path / 'tmp').iterdir()) == []

    def test_log_relocated_into_generation(self, make_config, fake_tools, fake_pipeline, source_dir):
        config = make_config(source_patterns=(str(source_dir),), date_format='%Y-%m-%d')

        executor, _ = run(config, fake_tools)

        assert not Path(config.log_file).exists()
        assert executor.relocated_log == generation(config) / 'hostbackup.log'
        content = executor.relocated_log.read_text()
        assert 'Backup completed successfully.' in content
        assert 'Backup finished' in content

    def test_missing_sources_are_not_errors(self, make_config, fake_tools, fake_pipeline, tmp_path):
        """Test a host without matching sources still completes cleanly."""
        config = make_config(source_patterns=(str(tmp_path / 'srv' / '*'),), date_format='%Y-%m-%d')

        executor, exit_code = run(config, fake_tools)

        assert exit_code == 0
        assert not executor.outcome.failed
        fake_pipeline['tar'].assert_not_called()

    def test_archive_failure_completes_with_errors(self, make_config, fake_tools, fake_pipeline, source_dir, caplog):
        fake_pipeline['tar'].side_effect = ToolError('tar exited with status 2')
        config = make_config(source_patterns=(str(source_dir),), date_format='%Y-%m-%d')

        executor, exit_code = run(config, fake_tools)

        assert exit_code == 0
        assert executor.outcome.failed
        assert 'Backup completed with errors.' in caplog.text

    def test_publish_failure_completes_with_errors(self, make_config, fake_tools, fake_pipeline, source_dir):
        fake_pipeline['rsync'].side_effect = ToolError('rsync exited with status 23')
        config = make_config(source_patterns=(str(source_dir),), date_format='%Y-%m-%d')

        executor, exit_code = run(config, fake_tools)

        assert exit_code == 0
        assert executor.outcome.failed

    @freeze_time('2024-03-01 02:30:00')
    def test_date_label_defaults_to_now(self, make_config, fake_tools, fake_pipeline, source_dir):
        config = make_config(source_patterns=(str(source_dir),), date_format='+%Y-%m-%d')

        run(config, fake_tools, now=None)

        assert generation(config, '2024-03-01').is_dir()

    def test_execute_backup_locates_tools(self, make_config, fake_tools, fake_pipeline, source_dir):
        config = make_config(source_patterns=(str(source_dir),), date_format='%Y-%m-%d')

        with patch('hostbackup.backup.executor.locate_tools', return_value=fake_tools):
            assert execute_backup(config) == 0


class TestEncryptedRun:
    """Test runs with encryption enabled."""

    def test_published_files_are_ciphertext(self, make_config, fake_tools, fake_pipeline, source_dir, key_dir):
        """Test only ciphertext is published and the keychain stays behind."""
        (key_dir / 'ops.pub').write_text('key')
        config = make_config(
            source_patterns=(str(source_dir),), date_format='%Y-%m-%d',
            encryption=True, key_dir=str(key_dir),
        )

        executor, exit_code = run(config, fake_tools)

        assert exit_code == 0
        names = [p.name for p in generation(config).iterdir() if p.name != 'hostbackup.log']
        assert len(names) == 1
        assert names[0].endswith('.tar.gz.asc')
        assert not (generation(config) / '.keychain').exists()

    def test_no_keys_disables_encryption(self, make_config, fake_tools, fake_pipeline, source_dir, key_dir):
        config = make_config(
            source_patterns=(str(source_dir),), date_format='%Y-%m-%d',
            encryption=True, key_dir=str(key_dir),
        )

        executor, exit_code = run(config, fake_tools)

        assert exit_code == 0
        assert executor.config.encryption is False
        assert config.encryption is True
        fake_pipeline['gpg'].assert_not_called()
        assert any(p.name.endswith('.tar.gz') for p in generation(config).iterdir())

    def test_missing_cipher_disables_encryption(self, make_config, fake_pipeline, source_dir, key_dir):
        (key_dir / 'ops.pub').write_text('key')
        tools = ToolAvailability(archiver='/usr/bin/tar', sync='/usr/bin/rsync')
        config = make_config(
            source_patterns=(str(source_dir),), date_format='%Y-%m-%d',
            encryption=True, key_dir=str(key_dir),
        )

        executor, exit_code = run(config, tools)

        assert exit_code == 0
        assert not executor.outcome.failed
        fake_pipeline['gpg'].assert_not_called()

    def test_ascii_disabled_produces_binary_ciphertext(self, make_config, fake_tools, fake_pipeline,
                                                         source_dir, key_dir):
        (key_dir / 'ops.pub').write_text('key')
        config = make_config(
            source_patterns=(str(source_dir),), date_format='%Y-%m-%d',
            encryption=True, ascii_armor=False, key_dir=str(key_dir),
        )

        run(config, fake_tools)

        assert any(p.name.endswith('.tar.gz.gpg') for p in generation(config).iterdir())


class TestFatalRuns:
    """Test fatal errors abort the run and still clean up."""

    def test_unreadable_key_dir_is_fatal(self, make_config, fake_tools, fake_pipeline, source_dir, tmp_path):
        config = make_config(
            source_patterns=(str(source_dir),), date_format='%Y-%m-%d',
            encryption=True, key_dir=str(tmp_path / 'nope'),
        )

        executor, exit_code = run(config, fake_tools)

        assert exit_code == 1
        fake_pipeline['tar'].assert_not_called()
        assert not Path(config.output_root).exists()
        assert list((tmp_path / 'tmp').iterdir()) == []

    def test_missing_plugin_dir_is_fatal_before_archiving(self, make_config, fake_tools, fake_pipeline,
                                                            source_dir, plugin_dir):
        """Test every enabled category is checked before any archive exists."""
        shutil.rmtree(plugin_dir / POST_BACKUP)
        config = make_config(source_patterns=(str(source_dir),), date_format='%Y-%m-%d')

        executor, exit_code = run(config, fake_tools)

        assert exit_code == 1
        fake_pipeline['tar'].assert_not_called()

    def test_disabled_category_dir_not_required(self, make_config, fake_tools, fake_pipeline,
                                                source_dir, plugin_dir):
        shutil.rmtree(plugin_dir / REMOTE)
        config = make_config(source_patterns=(str(source_dir),), date_format='%Y-%m-%d', remote=False)

        _, exit_code = run(config, fake_tools)

        assert exit_code == 0

    def test_missing_archiver_is_fatal(self, make_config, fake_pipeline, source_dir, caplog):
        config = make_config(source_patterns=(str(source_dir),))

        _, exit_code = run(config, ToolAvailability(sync='/usr/bin/rsync'))

        assert exit_code == 1
        assert 'Required tool for archiver not found' in caplog.text

    def test_unusable_output_root_is_fatal(self, make_config, fake_tools, fake_pipeline, source_dir, tmp_path):
        blocker = tmp_path / 'backups'
        blocker.write_text('not a directory')
        config = make_config(source_patterns=(str(source_dir),), output_root=str(blocker))

        _, exit_code = run(config, fake_tools)

        assert exit_code == 1

    def test_fatal_plugin_stops_run(self, make_config, fake_tools, fake_pipeline, source_dir, plugin_dir, tmp_path):
        """Test a plugin raising FatalError skips the remaining stages."""
        write_plugin(plugin_dir / APPLICATION, 'db.py',
                     "from hostbackup.backup.outcome import FatalError\n\n"
                     "def db_exec(target, context):\n    raise FatalError('database unreachable')\n")
        config = make_config(source_patterns=(str(source_dir),), date_format='%Y-%m-%d')

        executor, exit_code = run(config, fake_tools)

        assert exit_code == 1
        fake_pipeline['rsync'].assert_not_called()
        assert list((tmp_path / 'tmp').iterdir()) == []
        # Nothing was published, so the log stays where it was written
        assert 'database unreachable' in Path(config.log_file).read_text()

    def test_keyboard_interrupt_cleans_up(self, make_config, fake_tools, fake_pipeline, source_dir, tmp_path):
        fake_pipeline['tar'].side_effect = KeyboardInterrupt
        config = make_config(source_patterns=(str(source_dir),))

        _, exit_code = run(config, fake_tools)

        assert exit_code == 1
        assert list((tmp_path / 'tmp').iterdir()) == []

    def test_sigterm_cleans_up_and_restores_handler(self, make_config, fake_tools, fake_pipeline,
                                                   source_dir, tmp_path, caplog):
        """Test an external SIGTERM aborts the run through the cleanup path."""
        def terminated(args, **kwargs):
            os.kill(os.getpid(), signal.SIGTERM)
            return fake_tar(args)

        def previous(signum, frame):
            pass

        fake_pipeline['tar'].side_effect = terminated
        config = make_config(source_patterns=(str(source_dir),), date_format='%Y-%m-%d')
        original = signal.signal(signal.SIGTERM, previous)

        try:
            _, exit_code = run(config, fake_tools)
            restored = signal.getsignal(signal.SIGTERM)
        finally:
            signal.signal(signal.SIGTERM, original)

        assert exit_code == 1
        assert restored is previous
        assert list((tmp_path / 'tmp').iterdir()) == []
        fake_pipeline['rsync'].assert_not_called()
        assert 'Interrupted by signal' in caplog.text


class TestPluginStages:
    """Test the targets handed to each plugin category."""

    def test_plugin_targets(self, make_config, fake_tools, fake_pipeline, source_dir, plugin_dir, tmp_path):
        records = {category: tmp_path / f"{category}.txt" for category in (APPLICATION, REMOTE, POST_BACKUP)}
        for category, record in records.items():
            write_plugin(plugin_dir / category, 'recorder.py', RECORD_TARGET.format(name='recorder', record=str(record)))
        config = make_config(source_patterns=(str(source_dir),), date_format='%Y-%m-%d')

        _, exit_code = run(config, fake_tools)

        assert exit_code == 0
        workspace = records[APPLICATION].read_text().strip()
        assert workspace.startswith(str(tmp_path / 'tmp'))
        assert records[REMOTE].read_text().strip() == config.output_root
        assert records[POST_BACKUP].read_text().strip() == config.log_file

    def test_application_exports_are_published(self, make_config, fake_tools, fake_pipeline, plugin_dir):
        write_plugin(plugin_dir / APPLICATION, 'export.py',
                     "import os\n\ndef export_exec(target, context):\n"
                     "    with open(os.path.join(target, 'app.sql'), 'w') as f:\n"
                     "        f.write('dump')\n")
        config = make_config(date_format='%Y-%m-%d')

        run(config, fake_tools)

        assert (generation(config) / 'app.sql').read_text() == 'dump'

    def test_disabled_categories_skipped(self, make_config, fake_tools, fake_pipeline, plugin_dir, tmp_path):
        record = tmp_path / 'calls.txt'
        for category in (APPLICATION, REMOTE):
            write_plugin(plugin_dir / category, 'recorder.py', RECORD_TARGET.format(name='recorder', record=str(record)))
        config = make_config(date_format='%Y-%m-%d', application=False, remote=False)

        _, exit_code = run(config, fake_tools)

        assert exit_code == 0
        assert not record.exists()

    def test_post_backup_sees_failure(self, make_config, fake_tools, fake_pipeline, plugin_dir, tmp_path):
        """Test post-backup plugins observe earlier recoverable errors."""
        record = tmp_path / 'failed.txt'
        write_plugin(plugin_dir / REMOTE, 'flaky.py', 'def flaky_exec(target, context):\n    return False\n')
        write_plugin(plugin_dir / POST_BACKUP, 'notify.py',
                     f"def notify_exec(target, context):\n"
                     f"    open({str(record)!r}, 'w').write(str(context.outcome.failed))\n")
        config = make_config(date_format='%Y-%m-%d')

        _, exit_code = run(config, fake_tools)

        assert exit_code == 0
        assert record.read_text() == 'True'


class TestRetentionDuringRun:
    """Test retention is applied to the host directory."""

    def test_old_generations_pruned(self, make_config, fake_tools, fake_pipeline, source_dir):
        """Test retention 3 leaves the new generation plus the three newest old ones."""
        config = make_config(source_patterns=(str(source_dir),), date_format='%Y-%m-%d', retention=3)
        host_dir = Path(config.output_root) / 'web01'
        base = datetime(2023, 6, 1).timestamp()
        for index in range(10):
            old = host_dir / f"2023-06-{index + 1:02d}"
            old.mkdir(parents=True)
            os.utime(old, (base + index * 86400, base + index * 86400))

        _, exit_code = run(config, fake_tools)

        assert exit_code == 0
        assert sorted(p.name for p in host_dir.iterdir()) == [
            '2023-06-08', '2023-06-09', '2023-06-10', '2024-01-15'
        ]

    def test_unlimited_retention_keeps_everything(self, make_config, fake_tools, fake_pipeline):
        config = make_config(date_format='%Y-%m-%d', retention=UNLIMITED)
        host_dir = Path(config.output_root) / 'web01'
        for index in range(12):
            (host_dir / f"old-{index}").mkdir(parents=True)

        run(config, fake_tools)

        assert len(list(host_dir.iterdir())) == 13


@requires_tar_and_rsync
class TestRealTools:
    """End-to-end runs with the real archiver and sync tools."""

    def test_end_to_end(self, make_config, source_dir, tmp_path):
        config = make_config(source_patterns=(str(source_dir),), date_format='%Y-%m-%d')
        tools = ToolAvailability(archiver=shutil.which('tar'), sync=shutil.which('rsync'))

        executor, exit_code = run(config, tools)

        assert exit_code == 0
        archives = list(generation(config).glob('*.tar.gz'))
        assert len(archives) == 1
        with tarfile.open(archives[0], 'r:gz') as tar:
            assert any(name.endswith('index.html') for name in tar.getnames())
        assert list((tmp_path / 'tmp').iterdir()) == []
