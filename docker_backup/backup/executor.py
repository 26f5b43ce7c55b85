"""
Backup executor - orchestrates the complete backup workflow.

Workflow per service:
1. Load the service config (.backup.conf)
2. Run the pre-backup hook
3. Stop containers (stop-start mode)
4. Dump databases into <service>/_dumps
5. Create the compressed archive
6. Restart containers if they were stopped, whatever happened before
7. Run the post-backup hook
8. Encrypt the archive
9. Transfer it to the destination
10. Cleanup staging files and dumps

After every service has been attempted once, GFS retention runs per
service and the run summary is handed to the notifier.
"""

import logging
import os
import shutil
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from ..config import ConfigError, GlobalConfig, load_service_config
from ..models import BackupMode, BackupSummary, PipelineRun, ServiceDefinition, Stage
from ..notify import create_notifier
from ..utils.crypto import AgeCipher, EncryptionError
from ..utils.lock import run_lock
from .compression import CompressionError, archive_descriptor_for, create_archive, get_archive_size
from .database import DatabaseDumper
from .retention import RetentionError, RetentionManager
from .sources import CommandError, SourceError, source_from_config
from .storage import StorageError, create_storage


logger = logging.getLogger(__name__)


class HookError(Exception):
    """Raised when a pre/post backup hook fails."""
    pass


class BackupExecutor:
    """
    Runs the backup pipeline for one service directory.
    """

    def __init__(self, config: GlobalConfig, service_dir: str, source, storage,
                 cipher: Optional[AgeCipher] = None, dumper: Optional[DatabaseDumper] = None,
                 now: Optional[datetime] = None):
        """
        Initialize backup executor.

        Args:
            config: Global configuration
            service_dir: Service directory on the source host
            source: LocalSource or SSHSource
            storage: Destination storage handler
            cipher: age cipher (built from config when omitted)
            dumper: Database dumper (built from config when omitted)
            now: Run time used for the archive name (defaults to now)
        """
        self.config = config
        self.service_dir = service_dir.rstrip('/')
        self.source = source
        self.storage = storage
        self.cipher = cipher or AgeCipher(config.age_recipient, config.age_key_file,
                                          timeout=config.command_timeout)
        self.dumper = dumper or DatabaseDumper(source, config.container_runtime, config.command_timeout)
        self.now = now

        self.run = PipelineRun(service=os.path.basename(self.service_dir))
        self.service: Optional[ServiceDefinition] = None
        self.work_dir = os.path.join(config.staging_dir, f'{self.run.service}.work')
        self.archive_path: Optional[str] = None
        self.encrypted_path: Optional[str] = None

    def execute(self) -> PipelineRun:
        """
        Execute the pipeline for the service.

        Failures are recorded on the returned PipelineRun; they are never
        raised, so the caller can continue with the next service.

        Returns:
            PipelineRun with the outcome of every stage
        """
        self.run.started_at = datetime.now()
        self._log(f"Starting backup: {self.run.service}")

        try:
            if self._configure():
                self._run_pipeline()
        except Exception as e:
            self._fail(f"Unexpected error: {e}")
        finally:
            self._cleanup()
            self.run.completed_at = datetime.now()

        if self.run.failed:
            self.run.stage = Stage.FAILED
            self._log(f"Backup failed: {self.run.service}", logging.ERROR)
        else:
            self._log(f"Backup completed: {self.run.service} in {self.run.duration_seconds:.0f}s")
        return self.run

    def _configure(self) -> bool:
        self._enter(Stage.CONFIGURING)
        try:
            self.service = load_service_config(self.source, self.service_dir)
        except (ConfigError, SourceError) as e:
            self._fail(f"Failed to load service config: {e}")
            return False
        self._log(f"Mode: {self.service.mode.value}, databases: {len(self.service.databases)}")
        return True

    def _run_pipeline(self):
        """Stages 2 to 9; cleanup happens in execute()."""
        service = self.service

        if service.pre_hook:
            self._enter(Stage.PRE_HOOK)
            try:
                self._hook(service.pre_hook, 'pre-backup')
            except HookError as e:
                self._warn(str(e))

        stopped = False
        archived = False
        try:
            if service.mode is BackupMode.STOP_START:
                self._enter(Stage.STOPPING)
                try:
                    self._compose('stop')
                except CommandError as e:
                    self._warn(f"Failed to stop containers: {e}")
                # Restart is attempted even if the stop command failed half way
                stopped = True
                self.run.containers_stopped = True

            if service.databases:
                self._enter(Stage.DUMPING)
                self._dump()

            self._enter(Stage.ARCHIVING)
            archived = self._archive()
        finally:
            if stopped:
                self._enter(Stage.RESTARTING)
                try:
                    self._compose('start')
                except CommandError as e:
                    self._fail(f"Failed to restart containers: {e}")

        if not archived:
            return

        if service.post_hook:
            self._enter(Stage.POST_HOOK)
            try:
                self._hook(service.post_hook, 'post-backup')
            except HookError as e:
                self._warn(str(e))

        self._enter(Stage.ENCRYPTING)
        if not self._encrypt():
            return

        self._enter(Stage.TRANSFERRING)
        self._transfer()

    def _hook(self, command: str, label: str):
        """
        Run a hook through the shell in the service directory.

        Raises:
            HookError: If the hook exits non-zero or times out
        """
        self._log(f"Running {label} hook")
        try:
            self.source.run(['sh', '-c', command], cwd=self.service_dir)
        except CommandError as e:
            raise HookError(f"{label} hook failed: {e}")

    def _compose(self, action: str):
        self._log(f"{self.config.container_runtime} compose {action} in {self.service_dir}")
        self.source.run([self.config.container_runtime, 'compose', action], cwd=self.service_dir)

    def _dump(self):
        dump_dir = self.service.dump_dir
        try:
            # Leftovers from an interrupted run must not end up in this archive
            self.source.remove(dump_dir)
        except SourceError as e:
            self._warn(f"Could not clear stale dumps: {e}")

        report = self.dumper.dump_all(self.service.databases, dump_dir)
        self.run.outcomes['dumps'] = str(len(report.outputs))
        for error in report.errors:
            self.run.errors.append(error)
            self._log(error, logging.ERROR)
        if report.failed:
            self.run.outcomes.setdefault('failed_stage', Stage.DUMPING.value)
        self._log(f"Dumped {len(report.outputs)} database(s), {len(report.errors)} error(s)")

    def _archive(self) -> bool:
        descriptor = archive_descriptor_for(self.run.service, self.now, self.config.archive_timestamp)
        self.run.archive = descriptor
        stem = descriptor.filename[:-len('.age')]
        try:
            os.makedirs(self.config.staging_dir, exist_ok=True)
            local_dir = self.source.acquire(self.service_dir, self.work_dir, self.service.exclude)
            self._log(f"Creating archive: {stem} (zstd level {self.config.compression_level})")
            self.archive_path = create_archive(
                local_dir,
                os.path.join(self.config.staging_dir, stem),
                level=self.config.compression_level,
                exclude_patterns=self.service.exclude,
            )
            self._log(f"  Archive created: {get_archive_size(self.archive_path)} bytes")
            return True
        except (CompressionError, SourceError, OSError) as e:
            self._fail(f"Archive failed: {e}")
            return False

    def _encrypt(self) -> bool:
        self.encrypted_path = os.path.join(self.config.staging_dir, self.run.archive.filename)
        try:
            self.cipher.encrypt_file(self.archive_path, self.encrypted_path)
        except EncryptionError as e:
            self._fail(str(e))
            self.encrypted_path = None
            return False
        self.run.size_bytes = get_archive_size(self.encrypted_path)
        return True

    def _transfer(self) -> bool:
        self._log(f"Transferring {self.run.archive.filename} to {self.storage.description}")
        try:
            self.storage.store(self.encrypted_path)
        except StorageError as e:
            self._fail(f"Transfer failed: {e}")
            self._log(f"Encrypted archive kept in staging: {self.encrypted_path}", logging.WARNING)
            return False
        self.encrypted_path = None
        self.run.outcomes['transferred'] = self.run.archive.filename
        return True

    def _cleanup(self):
        """Remove work files; runs whatever the outcome."""
        self._enter(Stage.CLEANUP)
        if os.path.exists(self.work_dir):
            shutil.rmtree(self.work_dir, ignore_errors=True)
        if self.archive_path and os.path.exists(self.archive_path):
            try:
                os.remove(self.archive_path)
            except OSError as e:
                self._warn(f"Failed to remove staged archive: {e}")
        if self.service and self.service.databases:
            try:
                self.source.remove(self.service.dump_dir)
                self._log(f"Cleaned up dumps: {self.service.dump_dir}")
            except SourceError as e:
                self._warn(f"Failed to cleanup dumps: {e}")

    def _enter(self, stage: Stage):
        self.run.stage = stage
        self.run.outcomes[stage.value] = 'started'

    def _fail(self, message: str):
        self.run.errors.append(message)
        self.run.outcomes.setdefault('failed_stage', self.run.stage.value)
        self._log(message, logging.ERROR)

    def _warn(self, message: str):
        self.run.warnings.append(message)
        self._log(message, logging.WARNING)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: logging level for the module logger
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.run.logs.append(f"[{timestamp}] {message}")
        logger.log(level, f"[{self.run.service}] {message}")


def run_backup(config: GlobalConfig, services: Optional[Iterable[str]] = None,
               notifier: Optional[Callable[[BackupSummary], None]] = None,
               source=None, storage=None, cipher: Optional[AgeCipher] = None,
               now: Optional[datetime] = None) -> BackupSummary:
    """
    Back up every discovered service (or the named ones) once, then prune.

    Args:
        config: Global configuration
        services: Service names to limit the run to
        notifier: Called with the finished summary (defaults to the configured webhook or the log)
        source: Source handler (built from config when omitted)
        storage: Storage handler (built from config when omitted)
        cipher: age cipher (built from config when omitted)
        now: Run time used for archive names

    Returns:
        BackupSummary; summary.failed tells whether any error occurred

    Raises:
        LockError: If another run is in progress
    """
    notifier = notifier or create_notifier(config)
    source = source or source_from_config(config)
    storage = storage or create_storage(config)
    summary = BackupSummary()

    with run_lock(config.effective_lock_file):
        try:
            service_dirs = _select_services(source, config.source_dir, services, summary)
            for service_dir in service_dirs:
                executor = BackupExecutor(config, service_dir, source, storage, cipher=cipher, now=now)
                summary.runs.append(executor.execute())

            _apply_retention(config, storage, summary, services)
        finally:
            source.cleanup()
            storage.close()

    summary.finalize()
    notifier(summary)
    return summary


def _select_services(source, source_dir: str, names: Optional[Iterable[str]], summary: BackupSummary) -> List[str]:
    try:
        discovered = source.discover_services(source_dir)
    except SourceError as e:
        summary.run_errors.append(f"Service discovery failed: {e}")
        logger.error(summary.run_errors[-1])
        return []

    if not names:
        logger.info(f"Discovered {len(discovered)} service(s) in {source_dir}")
        return discovered

    by_name = {os.path.basename(d): d for d in discovered}
    selected = []
    for name in names:
        if name in by_name:
            selected.append(by_name[name])
        else:
            summary.run_errors.append(f"Service not found: {name}")
            logger.error(summary.run_errors[-1])
    return selected


def _apply_retention(config: GlobalConfig, storage, summary: BackupSummary, names: Optional[Iterable[str]] = None):
    """
    Prune the attempted services and every other service with archives at
    the destination. A run limited to named services prunes only those.

    Failures are counted, never raised.
    """
    manager = RetentionManager(storage, config.retain_daily, config.retain_weekly, config.retain_monthly)
    services = [run.service for run in summary.runs]
    if not names:
        try:
            services += [s for s in manager.discover_services() if s not in services]
        except RetentionError as e:
            summary.retention_errors.append(str(e))
            logger.warning(str(e))

    result = manager.enforce_all(services)
    summary.pruned.update(result['deleted'])
    summary.retention_errors.extend(result['errors'])

    for run in summary.runs:
        if not run.failed and run.service in result['deleted']:
            run.stage = Stage.PRUNED
    for run in summary.runs:
        if run.stage is Stage.PRUNED:
            run.stage = Stage.DONE
