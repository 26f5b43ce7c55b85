from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple


ARCHIVE_SUFFIX = '.tar.zst.age'


class BackupMode(str, Enum):
    """How a service is treated while its files are archived"""
    HOT = 'hot'
    STOP_START = 'stop-start'


class DbType(str, Enum):
    """Database engine families supported for dump and restore"""
    POSTGRES = 'postgres'
    MYSQL = 'mysql'

    @property
    def dump_extension(self) -> str:
        return 'pgfc' if self is DbType.POSTGRES else 'sql'


class Stage(str, Enum):
    """Pipeline stages of a single service run"""
    PENDING = 'pending'
    CONFIGURING = 'configuring'
    PRE_HOOK = 'pre_hook'
    STOPPING = 'stopping'
    DUMPING = 'dumping'
    ARCHIVING = 'archiving'
    RESTARTING = 'restarting'
    POST_HOOK = 'post_hook'
    ENCRYPTING = 'encrypting'
    TRANSFERRING = 'transferring'
    CLEANUP = 'cleanup'
    PRUNED = 'pruned'
    DONE = 'done'
    FAILED = 'failed'


@dataclass(frozen=True)
class DatabaseDefinition:
    """One DB_<index>_* block of a service config"""
    index: int
    container: str
    db_type: str
    names: Tuple[str, ...] = ()
    all_databases: bool = False

    def __repr__(self):
        names = 'all' if self.all_databases else ','.join(self.names)
        return f'<DatabaseDefinition {self.index} {self.container} type={self.db_type} names={names}>'


@dataclass(frozen=True)
class ServiceDefinition:
    """Resolved per-service backup configuration"""
    name: str
    location: str
    mode: BackupMode = BackupMode.HOT
    exclude: Tuple[str, ...] = ()
    pre_hook: Optional[str] = None
    post_hook: Optional[str] = None
    databases: Tuple[DatabaseDefinition, ...] = ()

    @property
    def dump_dir(self) -> str:
        return f"{self.location.rstrip('/')}/_dumps"

    def __repr__(self):
        return f'<ServiceDefinition {self.name} mode={self.mode.value} databases={len(self.databases)}>'


@dataclass(frozen=True)
class ArchiveDescriptor:
    """Identifies one encrypted service archive"""
    service: str
    date: date
    time: Optional[time] = None

    @property
    def filename(self) -> str:
        stamp = self.date.isoformat()
        if self.time is not None:
            stamp += '_' + self.time.strftime('%H%M%S')
        return f'{self.service}-{stamp}{ARCHIVE_SUFFIX}'


@dataclass
class PipelineRun:
    """State and outcome of one service within one invocation"""
    service: str
    stage: Stage = Stage.PENDING
    outcomes: Dict[str, str] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    archive: Optional[ArchiveDescriptor] = None
    size_bytes: int = 0
    containers_stopped: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    logs: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.errors)

    @property
    def duration_seconds(self) -> float:
        if not self.started_at or not self.completed_at:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    def status_line(self) -> str:
        if self.failed:
            return f'{self.service}: FAILED at {self.outcomes.get("failed_stage", self.stage.value)} ({len(self.errors)} error(s))'
        return f'{self.service}: OK {format_size(self.size_bytes)} in {self.duration_seconds:.0f}s'


@dataclass
class RetentionDecision:
    """Dates kept per GFS tier and the files to delete for one service"""
    service: str
    keep: Dict[date, Set[str]] = field(default_factory=dict)
    kept: List[str] = field(default_factory=list)
    delete: List[str] = field(default_factory=list)

    def tier_dates(self, tier: str) -> List[date]:
        return sorted((d for d, tags in self.keep.items() if tier in tags), reverse=True)


@dataclass
class BackupSummary:
    """Aggregate of one pipeline invocation, handed to the notifier"""
    runs: List[PipelineRun] = field(default_factory=list)
    run_errors: List[str] = field(default_factory=list)
    retention_errors: List[str] = field(default_factory=list)
    pruned: Dict[str, int] = field(default_factory=dict)
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    @property
    def total_services(self) -> int:
        return len(self.runs)

    @property
    def errors(self) -> List[str]:
        errors = [f'{run.service}: {error}' for run in self.runs for error in run.errors]
        return list(self.run_errors) + errors + list(self.retention_errors)

    @property
    def warnings(self) -> List[str]:
        return [f'{run.service}: {warning}' for run in self.runs for warning in run.warnings]

    @property
    def total_errors(self) -> int:
        return len(self.errors)

    @property
    def total_size(self) -> int:
        return sum(run.size_bytes for run in self.runs)

    @property
    def duration_seconds(self) -> float:
        end = self.completed_at or datetime.now()
        return (end - self.started_at).total_seconds()

    @property
    def failed(self) -> bool:
        return self.total_errors > 0

    @property
    def status(self) -> str:
        return 'failure' if self.failed else 'success'

    def status_lines(self) -> List[str]:
        return [run.status_line() for run in self.runs]

    def finalize(self):
        self.completed_at = datetime.now()

    def headline(self) -> str:
        line = (
            f'Backed up {self.total_services} service(s) in {self.duration_seconds:.0f}s, '
            f'total size: {format_size(self.total_size)}'
        )
        if self.failed:
            line += f', {self.total_errors} error(s)'
        return line

    def details(self) -> str:
        lines = ['Services:']
        lines.extend(f'  {line}' for line in self.status_lines())
        if any(self.pruned.values()):
            lines.append('')
            lines.append(f'Pruned {sum(self.pruned.values())} archive(s)')
        if self.warnings:
            lines.append('')
            lines.append('Warnings:')
            lines.extend(f'  {warning}' for warning in self.warnings)
        if self.failed:
            lines.append('')
            lines.append('Errors:')
            lines.extend(f'  {error}' for error in self.errors)
        return '\n'.join(lines)


@dataclass
class RestoreCandidate:
    """A dump file paired with where it should be restored"""
    path: str
    container: str
    db_type: str
    database: str
    resolved_from: str = 'filename'
    decision: Optional[str] = None

    @property
    def stem(self) -> str:
        name = self.path.rsplit('/', 1)[-1]
        return name.rsplit('.', 1)[0]


@dataclass
class RestoreReport:
    """Counts produced by one restore resolver pass"""
    target: Optional[str] = None
    restored: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.errors)


def format_size(num_bytes: float) -> str:
    """Format bytes as a human readable string."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if num_bytes < 1024.0:
            return f'{num_bytes:.1f} {unit}'
        num_bytes /= 1024.0
    return f'{num_bytes:.1f} PB'
