"""
Database dump and restore via the container runtime.

Dumps are taken with the engine's own administrative client running inside
the database container (docker exec), so no database client is needed on
the host. Output files are named <container>_<database>.<ext>, which the
restore resolver relies on when no service config is available.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from ..models import DatabaseDefinition, DbType
from .sources import CommandError, SourceError


logger = logging.getLogger(__name__)

MYSQL_SYSTEM_DATABASES = frozenset({'information_schema', 'performance_schema', 'mysql', 'sys'})
POSTGRES_SYSTEM_DATABASES = frozenset({'postgres', 'template0', 'template1'})

POSTGRES_LIST_QUERY = "SELECT datname FROM pg_database WHERE datistemplate = false AND datname != 'postgres';"

# The root password is read inside the container, it never crosses the command line
MYSQL_ENV = 'MYSQL_PWD="$MYSQL_ROOT_PASSWORD"'

TYPE_ALIASES = {
    'postgres': DbType.POSTGRES,
    'postgresql': DbType.POSTGRES,
    'mysql': DbType.MYSQL,
    'mariadb': DbType.MYSQL,
}


class DatabaseError(Exception):
    """Base error for dump and restore operations."""
    pass


class ContainerNotRunningError(DatabaseError):
    """Raised when the database container is not running."""
    pass


class UnknownDatabaseTypeError(DatabaseError):
    """Raised for a database type other than postgres/mysql and their aliases."""
    pass


class DumpError(DatabaseError):
    """Raised when listing or dumping databases fails."""
    pass


class RestoreCommandError(DatabaseError):
    """Raised when the engine restore client exits with an error."""
    pass


def parse_db_type(raw: str) -> DbType:
    """
    Map a configured database type onto a supported engine family.

    Raises:
        UnknownDatabaseTypeError: If the type is not supported
    """
    try:
        return TYPE_ALIASES[(raw or '').strip().lower()]
    except KeyError:
        raise UnknownDatabaseTypeError(f"Unknown database type: {raw}")


def dump_filename(container: str, database: str, db_type: DbType) -> str:
    return f'{container}_{database}.{db_type.dump_extension}'


@dataclass
class DumpReport:
    """Files written and errors recorded by one dump pass"""
    outputs: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.errors)


class DatabaseDumper:
    """
    Dumps and restores databases running in containers on a source host.
    """

    def __init__(self, source, runtime: str = 'docker', timeout: Optional[float] = None):
        """
        Args:
            source: LocalSource or SSHSource the containers run on
            runtime: Container runtime binary (docker or podman)
            timeout: Timeout in seconds for each dump/restore command
        """
        self.source = source
        self.runtime = runtime
        self.timeout = timeout

    def _exec(self, container: str, *args: str, interactive: bool = False) -> List[str]:
        command = [self.runtime, 'exec']
        if interactive:
            command.append('-i')
        return command + [container] + list(args)

    def is_running(self, container: str) -> bool:
        """Check whether a container is running."""
        try:
            result = self.source.run(
                [self.runtime, 'inspect', '-f', '{{.State.Running}}', container],
                check=False,
            )
        except CommandError as e:
            logger.debug(f"Could not inspect {container}: {e}")
            return False
        return result.ok and result.stdout.strip() == 'true'

    def mysql_clients(self, container: str):
        """
        Detect which MySQL family client binaries the container provides.

        Returns:
            Tuple of (dump binary, client binary)
        """
        try:
            result = self.source.run(
                self._exec(container, 'sh', '-c', 'command -v mariadb-dump'),
                check=False,
            )
            if result.ok and result.stdout.strip():
                return 'mariadb-dump', 'mariadb'
        except CommandError as e:
            logger.debug(f"mariadb-dump detection failed on {container}: {e}")
        return 'mysqldump', 'mysql'

    def list_databases(self, container: str, db_type: DbType) -> List[str]:
        """
        Query the engine for user databases, excluding system databases.

        Raises:
            DumpError: If the query fails
        """
        if db_type is DbType.POSTGRES:
            command = self._exec(container, 'psql', '-U', 'postgres', '-At', '-c', POSTGRES_LIST_QUERY)
            denylist = POSTGRES_SYSTEM_DATABASES
        else:
            _, client = self.mysql_clients(container)
            command = self._exec(container, 'sh', '-c', f'{MYSQL_ENV} {client} -u root -N -e "SHOW DATABASES;"')
            denylist = MYSQL_SYSTEM_DATABASES

        try:
            result = self.source.run(command, timeout=self.timeout)
        except CommandError as e:
            raise DumpError(f"Failed to list databases from {container}: {e}")

        names = [line.strip() for line in result.stdout.splitlines()]
        return [name for name in names if name and name not in denylist]

    def dump_database(self, container: str, db_type: DbType, database: str, dump_dir: str) -> str:
        """
        Dump one database to <dump_dir>/<container>_<database>.<ext>.

        A partial output file is removed on failure.

        Returns:
            Path of the dump file

        Raises:
            DumpError: If the dump command fails
        """
        dump_path = f"{dump_dir.rstrip('/')}/{dump_filename(container, database, db_type)}"

        if db_type is DbType.POSTGRES:
            command = self._exec(container, 'pg_dump', '-U', 'postgres', '-Fc', database)
            tool = 'pg_dump'
        else:
            tool, _ = self.mysql_clients(container)
            # Database name passed as $1 so the inner shell never interprets it
            command = self._exec(
                container, 'sh', '-c',
                f'{MYSQL_ENV} {tool} -u root --single-transaction "$1"', 'sh', database,
            )

        logger.info(f"Dumping {db_type.value}: {container}/{database} -> {os.path.basename(dump_path)} (via {tool})")
        try:
            self.source.run(command, stdout_path=dump_path, timeout=self.timeout)
        except CommandError as e:
            try:
                self.source.remove(dump_path)
            except SourceError as cleanup_error:
                logger.warning(f"Failed to remove partial dump {dump_path}: {cleanup_error}")
            raise DumpError(f"{tool} failed for {container}/{database}: {e}")

        logger.info(f"  Dump complete: {self.source.file_size(dump_path)} bytes")
        return dump_path

    def dump_definition(self, definition: DatabaseDefinition, dump_dir: str, report: DumpReport):
        """
        Dump every database of one definition into report.

        Errors are recorded per database name; siblings are still dumped.
        """
        try:
            db_type = parse_db_type(definition.db_type)
        except UnknownDatabaseTypeError as e:
            report.errors.append(f"{e} for container {definition.container}")
            logger.error(report.errors[-1])
            return

        if not self.is_running(definition.container):
            error = ContainerNotRunningError(f"Container {definition.container} is not running, cannot dump")
            report.errors.append(str(error))
            logger.error(str(error))
            return

        if definition.all_databases:
            logger.info(f"Dumping all {db_type.value} databases from {definition.container}")
            try:
                names: Sequence[str] = self.list_databases(definition.container, db_type)
            except DumpError as e:
                report.errors.append(str(e))
                logger.error(str(e))
                return
        else:
            names = definition.names

        for database in names:
            try:
                report.outputs.append(self.dump_database(definition.container, db_type, database, dump_dir))
            except DumpError as e:
                report.errors.append(str(e))
                logger.error(f"  {e}")

    def dump_all(self, definitions: Sequence[DatabaseDefinition], dump_dir: str) -> DumpReport:
        """
        Dump all configured databases of a service into dump_dir.

        Args:
            definitions: Database definitions in configured order
            dump_dir: Directory on the source host for dump files

        Returns:
            DumpReport listing written files and recorded errors
        """
        report = DumpReport()
        if not definitions:
            return report

        try:
            self.source.run(['mkdir', '-p', dump_dir])
        except CommandError as e:
            report.errors.append(f"Failed to create dump directory {dump_dir}: {e}")
            logger.error(report.errors[-1])
            return report

        for definition in definitions:
            self.dump_definition(definition, dump_dir, report)

        return report

    def restore(self, db_type: DbType, container: str, database: str, dump_path: str):
        """
        Restore one dump file into a database.

        Raises:
            ContainerNotRunningError: If the container is not running
            RestoreCommandError: If the restore client fails
        """
        if not self.is_running(container):
            raise ContainerNotRunningError(f"Container {container} is not running, cannot restore")

        if db_type is DbType.POSTGRES:
            command = self._exec(
                container, 'pg_restore', '-U', 'postgres', '-d', database, '--clean', '--if-exists',
                interactive=True,
            )
        else:
            _, client = self.mysql_clients(container)
            command = self._exec(
                container, 'sh', '-c', f'{MYSQL_ENV} {client} -u root "$1"', 'sh', database,
                interactive=True,
            )

        logger.info(f"Restoring {db_type.value} dump to {container}/{database}")
        try:
            self.source.run(command, stdin_path=dump_path, timeout=self.timeout)
        except CommandError as e:
            raise RestoreCommandError(f"Restore of {os.path.basename(dump_path)} into {container}/{database} failed: {e}")
        logger.info(f"  {db_type.value} restore complete")
