#deploy_engine\container.py

"""Dependency injection container - wires all services together."""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from deploy_engine.backup.encryption import KeyStore
from deploy_engine.backup.manager import BackupEngine
from deploy_engine.backup.scheduler import BackupScheduler
from deploy_engine.backup.storage import create_storage
from deploy_engine.config import EngineSettings, get_settings
from deploy_engine.core.service import DeploymentLifecycle
from deploy_engine.executor.config import BackgroundTaskConfig
from deploy_engine.executor.tasks import BackgroundTasks
from deploy_engine.infrastructure.sql.database import create_db_engine, get_session_factory, init_db
from deploy_engine.infrastructure.sql.repository import (
    SqlBackupRepository,
    SqlBackupScheduleRepository,
    SqlDeploymentLogRepository,
    SqlDeploymentRepository,
)
from deploy_engine.orchestrator.compose_executor import DockerComposeExecutor
from deploy_engine.orchestrator.volumes import DockerVolumeInspector
from deploy_engine.templates.source import (
    BuiltinTemplateSource,
    ChainTemplateSource,
    DirectoryTemplateSource,
)

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: EngineSettings
    tasks: BackgroundTasks
    lifecycle: DeploymentLifecycle
    backup_engine: BackupEngine
    scheduler: BackupScheduler

    def shutdown(self) -> None:
        self.scheduler.stop()
        self.tasks.shutdown()


def build_container(settings: Optional[EngineSettings] = None) -> Container:
    settings = settings or get_settings()

    # ============================================
    # REPOSITORIES
    # ============================================

    engine = create_db_engine(settings.database_url)
    init_db(engine)
    session_factory = get_session_factory(engine)

    deployment_repository = SqlDeploymentRepository(session_factory)
    log_repository = SqlDeploymentLogRepository(session_factory)
    backup_repository = SqlBackupRepository(session_factory)
    schedule_repository = SqlBackupScheduleRepository(session_factory)

    # ============================================
    # COLLABORATORS
    # ============================================

    tasks = BackgroundTasks(BackgroundTaskConfig(max_workers=settings.max_background_workers))

    executor = DockerComposeExecutor(
        settings.compose_work_dir,
        binary=settings.compose_binary,
        timeout_seconds=settings.compose_timeout_seconds,
        pull_images=settings.compose_pull,
    )

    templates = ChainTemplateSource([
        DirectoryTemplateSource(settings.templates_dir),
        BuiltinTemplateSource(),
    ])

    # ============================================
    # SERVICES
    # ============================================

    lifecycle = DeploymentLifecycle(
        repository=deployment_repository,
        log_repository=log_repository,
        executor=executor,
        template_source=templates,
        tasks=tasks,
        tunnel_domain=settings.tunnel_domain,
        tunnel_image=settings.tunnel_image,
        tunnel_log_level=settings.tunnel_log_level,
    )

    backup_engine = BackupEngine(
        repository=backup_repository,
        deployments=deployment_repository,
        lifecycle=lifecycle,
        storage=create_storage(settings),
        key_store=KeyStore(settings.backup_key_path),
        tasks=tasks,
        staging_dir=settings.backup_staging_path,
        volume_inspector=DockerVolumeInspector(),
    )

    scheduler = BackupScheduler(
        schedules=schedule_repository,
        engine=backup_engine,
        retention=settings.retention_policy,
        poll_seconds=settings.scheduler_poll_seconds,
    )

    logger.info(f"[container] wired services (storage={settings.backup_storage_type})")
    return Container(
        settings=settings,
        tasks=tasks,
        lifecycle=lifecycle,
        backup_engine=backup_engine,
        scheduler=scheduler,
    )


@lru_cache()
def get_container() -> Container:
    """Process-wide container, built on first use."""
    return build_container()
