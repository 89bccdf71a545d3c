#deploy_engine\api\container.py
from deploy_engine.backup.manager import BackupEngine
from deploy_engine.config import EngineSettings
from deploy_engine.container import get_container
from deploy_engine.core.service import DeploymentLifecycle


def get_lifecycle() -> DeploymentLifecycle:
    return get_container().lifecycle


def get_backup_engine() -> BackupEngine:
    return get_container().backup_engine


def get_engine_settings() -> EngineSettings:
    return get_container().settings
