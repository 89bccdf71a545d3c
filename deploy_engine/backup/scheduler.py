# deploy_engine/backup/scheduler.py
"""Cron-driven scheduled backups."""

import logging
import threading
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from croniter import croniter

from deploy_engine.backup.manager import BackupEngine
from deploy_engine.backup.models import (
    Backup,
    BackupOptions,
    BackupSchedule,
    BackupSelection,
    BackupType,
    RetentionPolicy,
)
from deploy_engine.backup.retention import apply_retention
from deploy_engine.core.errors import NoDeploymentsSelected, NotFound, ValidationError
from deploy_engine.core.models import utcnow
from deploy_engine.core.repository import BackupScheduleRepository

logger = logging.getLogger(__name__)


def next_run_after(cron_expression: str, base: datetime) -> datetime:
    return croniter(cron_expression, base).get_next(datetime)


class BackupScheduler:
    """
    Polls enabled schedules and runs the ones that are due.

    A run backs up every running deployment as a `scheduled` backup, then
    applies the retention policy.
    """

    def __init__(
        self,
        schedules: BackupScheduleRepository,
        engine: BackupEngine,
        retention: Optional[RetentionPolicy] = None,
        poll_seconds: float = 30.0,
    ):
        self._schedules = schedules
        self._engine = engine
        self._retention = retention or RetentionPolicy()
        self._poll_seconds = poll_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -------------------------
    # SCHEDULES
    # -------------------------

    def add_schedule(
        self,
        name: str,
        cron_expression: str,
        include_volumes: bool = False,
        encrypt: bool = False,
        enabled: bool = True,
    ) -> BackupSchedule:
        if not croniter.is_valid(cron_expression):
            raise ValidationError(f"Invalid cron expression: {cron_expression}")

        now = utcnow()
        schedule = BackupSchedule(
            schedule_id=str(uuid4()),
            name=name,
            cron_expression=cron_expression,
            include_volumes=include_volumes,
            encrypt=encrypt,
            enabled=enabled,
            next_run=next_run_after(cron_expression, now),
            created_at=now,
        )
        self._schedules.create(schedule)
        logger.info(f"[scheduler] added schedule {schedule.name} ({cron_expression})")
        return schedule

    def remove_schedule(self, schedule_id: str) -> None:
        if not self._schedules.delete(schedule_id):
            raise NotFound(f"Schedule {schedule_id} not found")

    # -------------------------
    # RUNS
    # -------------------------

    def run_pending(self, now: Optional[datetime] = None) -> List[Backup]:
        now = now or utcnow()
        created = []
        for schedule in self._schedules.list_enabled():
            if schedule.next_run is None:
                schedule.next_run = next_run_after(schedule.cron_expression, now)
                self._schedules.update(schedule)
                continue
            if schedule.next_run <= now:
                backup = self.run_schedule(schedule, now)
                if backup is not None:
                    created.append(backup)
        return created

    def run_schedule(self, schedule: BackupSchedule, now: Optional[datetime] = None) -> Optional[Backup]:
        now = now or utcnow()
        logger.info(f"[scheduler] running schedule {schedule.name}")

        backup = None
        try:
            backup = self._engine.create_backup(
                BackupSelection(all_deployments=True),
                BackupOptions(
                    name=f"{schedule.name}-{now:%Y%m%d-%H%M%S}",
                    backup_type=BackupType.SCHEDULED,
                    include_volumes=schedule.include_volumes,
                    encrypted=schedule.encrypt,
                ),
            )
        except NoDeploymentsSelected:
            logger.info(f"[scheduler] schedule {schedule.name}: no running deployments, skipped")

        schedule.last_run = now
        schedule.next_run = next_run_after(schedule.cron_expression, now)
        self._schedules.update(schedule)

        apply_retention(self._engine, self._retention, now)
        return backup

    # -------------------------
    # THREAD
    # -------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="backup-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"[scheduler] started (poll every {self._poll_seconds}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("[scheduler] stopped")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_pending()
            except Exception as e:
                logger.error(f"[scheduler] error while running schedules: {e}", exc_info=True)
            self._stop_event.wait(self._poll_seconds)
