# deploy_engine/backup/retention.py
"""
Retention for scheduled backups.

A scheduled backup is bucketed by when it ran: a midnight run on the 1st
is monthly, a midnight run on a Sunday is weekly, any other midnight run
is daily. Each bucket expires against its own window. Runs at other
hours fall back to the daily window. Manual and auto backups are never
pruned.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from deploy_engine.backup.models import Backup, BackupStatus, BackupType, RetentionPolicy
from deploy_engine.core.models import utcnow

logger = logging.getLogger(__name__)


DAILY = "daily"
WEEKLY = "weekly"
MONTHLY = "monthly"

SUNDAY = 6
DAYS_PER_MONTH = 30


def classify_bucket(created_at: datetime) -> Optional[str]:
    if created_at.hour != 0:
        return None
    if created_at.day == 1:
        return MONTHLY
    if created_at.weekday() == SUNDAY:
        return WEEKLY
    return DAILY


def retention_window(bucket: Optional[str], policy: RetentionPolicy) -> timedelta:
    if bucket == MONTHLY:
        return timedelta(days=policy.monthly_months * DAYS_PER_MONTH)
    if bucket == WEEKLY:
        return timedelta(weeks=policy.weekly_weeks)
    return timedelta(days=policy.daily_days)


def select_expired(
    backups: Iterable[Backup],
    policy: RetentionPolicy,
    now: Optional[datetime] = None,
) -> List[Backup]:
    now = now or utcnow()
    expired = []
    for backup in backups:
        if backup.backup_type != BackupType.SCHEDULED:
            continue
        # Never race an in-flight capture
        if backup.status == BackupStatus.CREATING:
            continue
        window = retention_window(classify_bucket(backup.created_at), policy)
        if now - backup.created_at > window:
            expired.append(backup)
    return expired


def apply_retention(engine, policy: RetentionPolicy, now: Optional[datetime] = None) -> List[str]:
    """Delete expired scheduled backups through `engine`. Returns the deleted IDs."""
    expired = select_expired(engine.list_backups(BackupType.SCHEDULED), policy, now)

    deleted = []
    for backup in expired:
        engine.delete_backup(backup.backup_id)
        deleted.append(backup.backup_id)

    if deleted:
        logger.info(f"[backup] retention removed {len(deleted)} scheduled backup(s)")
    return deleted
