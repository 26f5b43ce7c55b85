"""
Restore of encrypted service archives.

restore_archive() downloads, decrypts and extracts an archive; when the
extracted service holds database dumps, RestoreResolver maps each dump
file back to a container, database and engine and asks for confirmation
before loading it.
"""

import logging
import os
import shutil
import tempfile
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..config import SERVICE_CONFIG_NAME, GlobalConfig, decode_service_config, parse_values
from ..models import ArchiveDescriptor, DbType, RestoreCandidate, RestoreReport, ServiceDefinition
from ..utils.crypto import AgeCipher, EncryptionError
from .compression import CompressionError, extract_archive, parse_archive_filename, strip_archive_extension
from .database import (ContainerNotRunningError, DatabaseDumper, RestoreCommandError, UnknownDatabaseTypeError,
                       parse_db_type)
from .sources import LocalSource
from .storage import StorageError, create_storage


logger = logging.getLogger(__name__)

EXTENSION_TYPES = {
    'pgfc': 'postgres',
    'sql': 'mysql',
}

ACCEPT = 'accept'
SKIP = 'skip'
EDIT = 'edit'


class RestoreError(Exception):
    """Raised when an archive cannot be restored."""
    pass


class RestoreDecryptError(RestoreError):
    """Raised when the archive cannot be decrypted."""
    pass


class RestoreExtractError(RestoreError):
    """Raised when the decrypted archive cannot be extracted."""
    pass


class Decision:
    """Operator answer for one restore candidate."""

    def __init__(self, kind: str, container: Optional[str] = None, db_type: Optional[str] = None,
                 database: Optional[str] = None):
        if kind not in (ACCEPT, SKIP, EDIT):
            raise ValueError(f"Invalid decision: {kind}")
        self.kind = kind
        self.container = container
        self.db_type = db_type
        self.database = database

    @classmethod
    def accept(cls) -> 'Decision':
        return cls(ACCEPT)

    @classmethod
    def skip(cls) -> 'Decision':
        return cls(SKIP)

    @classmethod
    def edit(cls, container: Optional[str] = None, db_type: Optional[str] = None,
             database: Optional[str] = None) -> 'Decision':
        return cls(EDIT, container, db_type, database)

    def __repr__(self):
        return f'<Decision {self.kind}>'


class DecisionProvider:
    """Asks whether a resolved candidate should be restored."""

    def decide(self, candidate: RestoreCandidate) -> Decision:
        raise NotImplementedError


class AcceptAllDecisionProvider(DecisionProvider):
    """Accepts every candidate as resolved (non-interactive restores)."""

    def decide(self, candidate: RestoreCandidate) -> Decision:
        return Decision.accept()


class ScriptedDecisionProvider(DecisionProvider):
    """Replays a fixed list of decisions, skipping once it runs out."""

    def __init__(self, decisions: Sequence[Decision]):
        self.decisions = list(decisions)
        self.seen: List[Tuple[str, str, str]] = []

    def decide(self, candidate: RestoreCandidate) -> Decision:
        self.seen.append((candidate.container, candidate.db_type, candidate.database))
        if not self.decisions:
            return Decision.skip()
        return self.decisions.pop(0)


class TerminalDecisionProvider(DecisionProvider):
    """Prompts the operator on the terminal."""

    def __init__(self, input_func: Callable[[str], str] = input, output: Callable[[str], None] = print):
        self.input = input_func
        self.output = output

    def decide(self, candidate: RestoreCandidate) -> Decision:
        self.output('')
        self.output(f'  Dump:      {os.path.basename(candidate.path)}')
        self.output(f'  Container: {candidate.container}')
        self.output(f'  Database:  {candidate.database}')
        self.output(f'  Type:      {candidate.db_type} (from {candidate.resolved_from})')

        while True:
            answer = self.input('  Restore? [a]ccept / [s]kip / [e]dit: ').strip().lower()
            if answer in ('a', 'accept', 'y', 'yes'):
                return Decision.accept()
            if answer in ('s', 'skip', 'n', 'no', ''):
                return Decision.skip()
            if answer in ('e', 'edit'):
                return Decision.edit(
                    container=self.input(f'  Container [{candidate.container}]: ').strip() or None,
                    db_type=self.input(f'  Type [{candidate.db_type}]: ').strip() or None,
                    database=self.input(f'  Database [{candidate.database}]: ').strip() or None,
                )
            self.output('  Please answer a, s or e')


class RestoreResolver:
    """
    Maps dump files back to their container, database and engine.

    Config-derived triples win over names parsed from the dump filename.
    """

    def __init__(self, dumper: DatabaseDumper, service: Optional[ServiceDefinition] = None,
                 decisions: Optional[DecisionProvider] = None):
        """
        Args:
            dumper: DatabaseDumper running restores on the target host
            service: Service definition read from the extracted backup (optional)
            decisions: Decision provider (defaults to terminal prompts)
        """
        self.dumper = dumper
        self.service = service
        self.decisions = decisions or TerminalDecisionProvider()
        self.lookup = self.build_lookup()

    def build_lookup(self) -> Dict[str, Tuple[str, str, str]]:
        """
        Build "<container>_<database>" -> (container, type, database).

        Definitions using "all" have no names to expand and fall back to
        filename parsing.
        """
        lookup: Dict[str, Tuple[str, str, str]] = {}
        if not self.service:
            return lookup
        for definition in self.service.databases:
            for database in definition.names:
                lookup[f'{definition.container}_{database}'] = (definition.container, definition.db_type, database)
        return lookup

    def resolve(self, path: str) -> Optional[RestoreCandidate]:
        """
        Resolve one dump file.

        Returns:
            RestoreCandidate, or None if the file is not a dump
        """
        filename = os.path.basename(path)
        if '.' not in filename:
            return None
        stem, ext = filename.rsplit('.', 1)
        inferred = EXTENSION_TYPES.get(ext)
        if inferred is None:
            return None

        if stem in self.lookup:
            container, db_type, database = self.lookup[stem]
            return RestoreCandidate(path, container, db_type, database, resolved_from='config')

        if '_' in stem:
            container, database = stem.split('_', 1)
        else:
            container, database = stem, stem
        return RestoreCandidate(path, container, inferred, database, resolved_from='filename')

    def confirm(self, candidate: RestoreCandidate) -> bool:
        """Ask until the operator accepts or skips; edits update the candidate."""
        while True:
            decision = self.decisions.decide(candidate)
            if decision.kind == EDIT:
                candidate.container = decision.container or candidate.container
                candidate.db_type = decision.db_type or candidate.db_type
                candidate.database = decision.database or candidate.database
                candidate.resolved_from = 'edited'
                continue
            candidate.decision = decision.kind
            return decision.kind == ACCEPT

    def run(self, dump_dir: str) -> RestoreReport:
        """
        Resolve, confirm and restore every dump file in dump_dir.

        Returns:
            RestoreReport with restored/skipped counts and errors
        """
        report = RestoreReport()
        for filename in sorted(os.listdir(dump_dir)):
            candidate = self.resolve(os.path.join(dump_dir, filename))
            if candidate is None:
                logger.debug(f"Ignoring non-dump file {filename}")
                continue

            if not self.confirm(candidate):
                report.skipped += 1
                logger.info(f"Skipped {filename}")
                continue

            self._restore(candidate, report)

        logger.info(f"Database restore: {report.restored} restored, {report.skipped} skipped, "
                    f"{len(report.errors)} error(s)")
        return report

    def _restore(self, candidate: RestoreCandidate, report: RestoreReport):
        filename = os.path.basename(candidate.path)
        try:
            db_type = parse_db_type(candidate.db_type)
        except UnknownDatabaseTypeError as e:
            report.errors.append(f"{filename}: {e}")
            logger.error(report.errors[-1])
            return

        try:
            self.dumper.restore(db_type, candidate.container, candidate.database, candidate.path)
            report.restored += 1
        except ContainerNotRunningError as e:
            report.errors.append(str(e))
            logger.error(str(e))
        except RestoreCommandError as e:
            if db_type is DbType.POSTGRES:
                # pg_restore exits non-zero on harmless "already exists" notices
                report.warnings.append(str(e))
                report.restored += 1
                logger.warning(f"pg_restore reported warnings (often non-fatal): {e}")
            else:
                report.errors.append(str(e))
                logger.error(str(e))


def list_archives(storage, service: Optional[str] = None) -> List[ArchiveDescriptor]:
    """
    List archives at the destination, oldest first per service.

    Raises:
        StorageError: If the destination cannot be listed
    """
    descriptors = []
    for f in storage.list_files(service):
        descriptor = parse_archive_filename(f['name'])
        if descriptor is None or (service and descriptor.service != service):
            continue
        descriptors.append(descriptor)
    return sorted(descriptors, key=lambda d: (d.service, d.date, d.time is not None, d.time))


def restore_archive(config: GlobalConfig, filename: str, target_dir: str,
                    decisions: Optional[DecisionProvider] = None, storage=None,
                    cipher: Optional[AgeCipher] = None, dumper: Optional[DatabaseDumper] = None) -> RestoreReport:
    """
    Restore one archive into target_dir, then offer its database dumps.

    Args:
        config: Global configuration (destination and AGE_KEY_FILE)
        filename: Archive filename at the destination
        target_dir: Directory the service directory is extracted into
        decisions: Decision provider for database restores
        storage: Storage handler (built from config when omitted)
        cipher: age cipher (built from config when omitted)
        dumper: Dumper used for database restores (local docker by default)

    Returns:
        RestoreReport; report.target is the restored service directory

    Raises:
        RestoreError: If the archive cannot be fetched
        RestoreDecryptError: If decryption fails
        RestoreExtractError: If extraction fails
    """
    descriptor = parse_archive_filename(filename)
    if descriptor is None:
        raise RestoreError(f"Not a backup archive: {filename}")

    storage = storage or create_storage(config)
    cipher = cipher or AgeCipher(config.age_recipient, config.age_key_file, timeout=config.command_timeout)
    dumper = dumper or DatabaseDumper(LocalSource(config.command_timeout), config.container_runtime,
                                      config.command_timeout)

    os.makedirs(config.staging_dir, exist_ok=True)
    work_dir = tempfile.mkdtemp(prefix='restore-', dir=config.staging_dir)
    try:
        encrypted = os.path.join(work_dir, filename)
        decrypted = os.path.join(work_dir, f'{strip_archive_extension(filename)}.tar.zst')

        logger.info(f"Step 1/3: Fetching and decrypting {filename}")
        try:
            storage.download(filename, encrypted)
        except StorageError as e:
            raise RestoreError(f"Failed to fetch {filename}: {e}")
        try:
            cipher.decrypt_file(encrypted, decrypted)
        except EncryptionError as e:
            raise RestoreDecryptError(str(e))
        os.remove(encrypted)

        logger.info(f"Step 2/3: Extracting into {target_dir}")
        try:
            extract_archive(decrypted, target_dir)
        except CompressionError as e:
            raise RestoreExtractError(str(e))
        os.remove(decrypted)

        service_path = os.path.join(target_dir, descriptor.service)
        dump_dir = os.path.join(service_path, '_dumps')

        logger.info("Step 3/3: Checking for database dumps")
        if os.path.isdir(dump_dir) and os.listdir(dump_dir):
            service = _read_extracted_config(descriptor.service, service_path)
            resolver = RestoreResolver(dumper, service, decisions)
            report = resolver.run(dump_dir)
        else:
            logger.info("No database dumps found")
            report = RestoreReport()

        report.target = service_path
        logger.info(f"Restore complete: {service_path}")
        return report
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)


def _read_extracted_config(name: str, service_path: str) -> Optional[ServiceDefinition]:
    config_path = os.path.join(service_path, SERVICE_CONFIG_NAME)
    if not os.path.isfile(config_path):
        return None
    with open(config_path, 'r') as f:
        return decode_service_config(name, service_path, parse_values(f.read()))
