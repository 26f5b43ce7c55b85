"""
GFS (Grandfather-Father-Son) retention for backup archives.

For each service the distinct archive dates are scanned newest first:
- daily: the most recent RETAIN_DAILY dates
- weekly: the most recent RETAIN_WEEKLY Sundays
- monthly: the most recent RETAIN_MONTHLY first-of-month dates, one per month

A date kept by any tier keeps every archive of that date; all other
archives of the service are deleted.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..models import RetentionDecision
from .compression import parse_archive_filename
from .storage import StorageError


logger = logging.getLogger(__name__)

# Sakamoto month offsets, indexed by month - 1
_MONTH_OFFSETS = (0, 3, 2, 5, 0, 3, 5, 1, 4, 6, 2, 4)

SUNDAY = 7


class RetentionError(Exception):
    """Raised when archives of a service cannot be listed."""
    pass


def day_of_week(year: int, month: int, day: int) -> int:
    """
    ISO day of week (1=Monday .. 7=Sunday) using Sakamoto's method.

    Pure integer arithmetic, valid for any proleptic Gregorian date.
    """
    if month < 3:
        year -= 1
    dow = (year + year // 4 - year // 100 + year // 400 + _MONTH_OFFSETS[month - 1] + day) % 7
    # 0 is Sunday in Sakamoto's numbering
    return SUNDAY if dow == 0 else dow


def select_dates(dates: Iterable[date], daily: int, weekly: int, monthly: int) -> Dict[date, Set[str]]:
    """
    Select the dates to keep and tag each with the tiers that chose it.

    Each tier has its own counter; a date picked by several tiers counts
    once against each of them.

    Returns:
        Dict of kept date -> set of tier names ('daily', 'weekly', 'monthly')
    """
    ordered = sorted(set(dates), reverse=True)
    keep: Dict[date, Set[str]] = {}

    for d in ordered[:daily]:
        keep.setdefault(d, set()).add('daily')

    weekly_count = 0
    for d in ordered:
        if weekly_count >= weekly:
            break
        if day_of_week(d.year, d.month, d.day) == SUNDAY:
            keep.setdefault(d, set()).add('weekly')
            weekly_count += 1

    seen_months: Set[Tuple[int, int]] = set()
    for d in ordered:
        if len(seen_months) >= monthly:
            break
        if d.day == 1 and (d.year, d.month) not in seen_months:
            keep.setdefault(d, set()).add('monthly')
            seen_months.add((d.year, d.month))

    return keep


def compute_retention(filenames: Iterable[str], service: str, daily: int, weekly: int, monthly: int) -> RetentionDecision:
    """
    Decide which archives of a service to keep and which to delete.

    Names that do not parse as archives of this service are left alone.

    Args:
        filenames: Archive filenames at the destination
        service: Service name
        daily: Number of daily dates to keep
        weekly: Number of Sundays to keep
        monthly: Number of first-of-month dates to keep

    Returns:
        RetentionDecision
    """
    by_date: Dict[date, List[str]] = {}
    for filename in filenames:
        descriptor = parse_archive_filename(filename)
        if descriptor is None or descriptor.service != service:
            continue
        by_date.setdefault(descriptor.date, []).append(filename)

    decision = RetentionDecision(service=service)
    decision.keep = select_dates(by_date.keys(), daily, weekly, monthly)

    for archive_date in sorted(by_date, reverse=True):
        target = decision.kept if archive_date in decision.keep else decision.delete
        target.extend(sorted(by_date[archive_date], reverse=True))

    return decision


def describe_tags(tags: Set[str]) -> str:
    """Render tier tags the way they are logged, e.g. "daily+weekly"."""
    return '+'.join(tier for tier in ('daily', 'weekly', 'monthly') if tier in tags)


class RetentionManager:
    """
    Applies GFS retention to the archives of a storage destination.
    """

    def __init__(self, storage, daily: int = 7, weekly: int = 4, monthly: int = 3):
        """
        Args:
            storage: LocalStorage, S3Storage or SFTPStorage
            daily: RETAIN_DAILY
            weekly: RETAIN_WEEKLY
            monthly: RETAIN_MONTHLY
        """
        self.storage = storage
        self.daily = daily
        self.weekly = weekly
        self.monthly = monthly
        self.logs: List[str] = []
        self.errors: List[str] = []

    def enforce_service(self, service: str) -> int:
        """
        Apply retention to one service.

        Deletions are independent: a failed delete is logged and recorded
        and the remaining files are still processed.

        Returns:
            Number of archives deleted

        Raises:
            RetentionError: If the archives cannot be listed
        """
        try:
            files = self.storage.list_files(service)
        except StorageError as e:
            raise RetentionError(f"Failed to list archives for {service}: {e}")

        decision = compute_retention(
            [f['name'] for f in files], service, self.daily, self.weekly, self.monthly
        )

        for kept_date in sorted(decision.keep, reverse=True):
            logger.debug(f"{service}: keeping {kept_date.isoformat()} ({describe_tags(decision.keep[kept_date])})")

        if not decision.delete:
            return 0

        self._log(f"Pruning {service}: removing {len(decision.delete)} old backup(s)")
        deleted = 0
        for filename in decision.delete:
            try:
                self.storage.delete(filename)
                deleted += 1
                self._log(f"  Removed: {filename}")
            except StorageError as e:
                error_msg = f"Failed to delete {filename}: {e}"
                self._log(error_msg, level=logging.WARNING)
                self.errors.append(error_msg)

        return deleted

    def enforce_all(self, services: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """
        Apply retention to several services.

        Args:
            services: Service names; defaults to every service with archives

        Returns:
            Dict with summary of cleanup operations:
            {
                'services_processed': int,
                'deleted': Dict[str, int],
                'errors': List[str],
                'logs': List[str]
            }
        """
        self._log(
            f"Applying GFS retention policy "
            f"(daily={self.daily}, weekly={self.weekly}, monthly={self.monthly})"
        )

        if services is None:
            services = self.discover_services()

        summary: Dict[str, Any] = {
            'services_processed': 0,
            'deleted': {},
            'errors': []
        }
        errors_before = len(self.errors)

        for service in services:
            try:
                summary['deleted'][service] = self.enforce_service(service)
                summary['services_processed'] += 1
            except RetentionError as e:
                self._log(str(e), level=logging.WARNING)
                self.errors.append(str(e))

        summary['errors'] = self.errors[errors_before:]
        self._log(
            f"Retention complete: pruned {sum(summary['deleted'].values())} backup(s), "
            f"errors: {len(summary['errors'])}"
        )
        summary['logs'] = self.logs
        return summary

    def discover_services(self) -> List[str]:
        """Service names that have at least one archive at the destination."""
        try:
            files = self.storage.list_files()
        except StorageError as e:
            raise RetentionError(f"Failed to list archives: {e}")
        services = set()
        for f in files:
            descriptor = parse_archive_filename(f['name'])
            if descriptor is not None:
                services.add(descriptor.service)
        return sorted(services)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
