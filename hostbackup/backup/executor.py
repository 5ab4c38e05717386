"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Create scratch workspace, locate tools, provision keychain, discover plugins
2. Archive sources into the workspace
3. Run application plugins (data exports into the workspace)
4. Encrypt workspace files
5. Publish the workspace into the dated output directory
6. Run remote plugins
7. Enforce retention
8. Run post-backup plugins
9. Cleanup: report status, remove the workspace, relocate the run log

Fatal errors stop the workflow immediately; cleanup runs on every exit path.
"""

import logging
import shutil
import signal
import socket
import sys
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Optional

from hostbackup import OK, configure_logging, shutdown_logging
from hostbackup.config import RunConfiguration
from .compression import Archiver
from .encryption import Encryptor
from .keychain import KeychainProvisioner
from .outcome import FatalError, RunOutcome
from .plugins import APPLICATION, POST_BACKUP, REMOTE, PluginContext, PluginRunner
from .retention import RetentionManager
from .storage import LocalStorage, StorageError
from .tools import ToolAvailability, locate_tools
from .workspace import ScratchWorkspace

log = logging.getLogger(__name__)


def _raise_on_signal(signum, frame):
    raise FatalError(f"Interrupted by signal {signum}")


class BackupExecutor:
    """
    Runs the backup pipeline once.
    """

    def __init__(self, config: RunConfiguration, tools: Optional[ToolAvailability] = None,
                 hostname: Optional[str] = None, now: Optional[datetime] = None):
        """
        Initialize backup executor.

        Args:
            config: Run configuration
            tools: Pre-resolved tools (located on PATH by default)
            hostname: Host name for the output layout (this host by default)
            now: Timestamp used for the date label (current time by default)
        """
        self.config = config
        self.tools = tools
        self.hostname = hostname or socket.gethostname()
        self.now = now
        self.outcome = RunOutcome()
        self.workspace: Optional[ScratchWorkspace] = None
        self.storage: Optional[LocalStorage] = None
        self.plugins: Optional[PluginRunner] = None
        self.log_file = Path(config.log_file)
        self.relocated_log: Optional[Path] = None

    @property
    def generation_dir(self) -> Optional[Path]:
        return self.storage.generation_dir if self.storage else None

    def execute(self) -> int:
        """
        Execute the backup run.

        Returns:
            Process exit code: 0 on completion (even with recoverable errors),
            1 on a fatal error
        """
        handlers = configure_logging(str(self.log_file), color=self.config.color)
        self.outcome.attach()
        previous_handler = signal.signal(signal.SIGTERM, _raise_on_signal)
        exit_code = 0

        try:
            log.info("Backup started: %s", datetime.now().strftime('%c'))
            with ScratchWorkspace(self.config.temp_dir) as workspace:
                self.workspace = workspace
                try:
                    self._execute_workflow()
                except FatalError as e:
                    log.critical("%s", e)
                    exit_code = 1
                except KeyboardInterrupt:
                    log.critical("Interrupted.")
                    exit_code = 1
                self._report()

        except FatalError as e:
            # Workspace creation failed, or a signal arrived during cleanup
            log.critical("%s", e)
            exit_code = 1

        finally:
            signal.signal(signal.SIGTERM, previous_handler)
            log.info("Backup finished: %s", datetime.now().strftime('%c'))
            self.outcome.detach()
            shutdown_logging(handlers)
            self._relocate_log()

        return exit_code

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        self._setup()

        # Archive sources
        archiver = Archiver(
            self.tools.archiver,
            compression=self.config.compression,
            method=self.config.compression_method
        )
        archiver.archive_all(self.config.source_patterns, self.workspace.path)

        # Application exports
        if self.config.application:
            log.info("Application backups enabled.")
            self.plugins.run(APPLICATION, self.workspace.path)

        self._encrypt()

        # Publish locally
        try:
            self.storage.publish(self.workspace.path)
        except StorageError as e:
            log.error("%s", e)

        # Off-host copies
        if self.config.remote:
            log.info("Remote backups enabled.")
            self.plugins.run(REMOTE, self.config.output_root)

        RetentionManager(
            self.storage.host_dir,
            self.config.retention,
            active=self.storage.generation_dir
        ).enforce()

        if self.config.post_backup:
            self.plugins.run(POST_BACKUP, self.log_file)

    def _setup(self):
        """
        Resolve tools, keychain, output layout and plugins.

        Raises:
            FatalError: On missing mandatory tools, an unusable output root,
                an unreadable key directory or a missing plugin directory
        """
        if self.tools is None:
            self.tools = locate_tools()
        self.tools.require('archiver')
        self.tools.require('sync')

        if self.config.encryption:
            self._setup_encryption()

        date_label = (self.now or datetime.now()).strftime(self.config.date_format)
        self.storage = LocalStorage(self.config.output_root, self.hostname, date_label, self.tools.sync)
        self.storage.check_readable()

        context = PluginContext(
            config=self.config,
            outcome=self.outcome,
            log_file=self.log_file,
            tools=self.tools,
        )
        self.plugins = PluginRunner(self.config.plugin_dir, context)
        for category, enabled in ((APPLICATION, self.config.application),
                                  (REMOTE, self.config.remote),
                                  (POST_BACKUP, self.config.post_backup)):
            if enabled:
                self.plugins.discover(category)

    def _setup_encryption(self):
        if not self.tools.cipher:
            log.warning("No encryption method found. Proceeding without encryption.")
            self.config = replace(self.config, encryption=False)
            return

        keychain = KeychainProvisioner(self.config.key_dir, self.workspace.keychain, self.tools.cipher)
        if keychain.provision() == 0:
            self.config = replace(self.config, encryption=False)

    def _encrypt(self):
        if not self.config.encryption:
            return

        encryptor = Encryptor(
            self.tools.cipher,
            self.workspace.keychain,
            ascii_armor=self.config.ascii_armor,
            strict=self.config.strict_encryption
        )
        encryptor.encrypt_files(self.workspace.files())

    def _report(self):
        if self.outcome.failed:
            log.warning("Backup completed with errors.")
        else:
            log.log(OK, "Backup completed successfully.")

    def _relocate_log(self):
        """Move the run log into the generation directory, if it was created."""
        target_dir = self.generation_dir
        if target_dir is None or not target_dir.is_dir() or not self.log_file.exists():
            return

        destination = target_dir / self.log_file.name
        try:
            shutil.move(str(self.log_file), str(destination))
            self.relocated_log = destination
        except OSError as e:
            # Logging is already shut down; report directly on stderr
            print(f"Could not move log {self.log_file} to {target_dir}: {e}", file=sys.stderr)


def execute_backup(config: RunConfiguration) -> int:
    """
    Execute one backup run.

    Args:
        config: Run configuration

    Returns:
        Process exit code
    """
    return BackupExecutor(config).execute()
