#tests\conftest.py

"""Pytest configuration and fixtures."""

import threading
from typing import Dict, List, Optional

import pytest

from deploy_engine.backup.encryption import KeyStore
from deploy_engine.backup.manager import BackupEngine
from deploy_engine.backup.storage import LocalStorage
from deploy_engine.core.events import RecordingEventEmitter
from deploy_engine.core.models import TunnelConfig
from deploy_engine.core.service import DeploymentLifecycle
from deploy_engine.executor.config import BackgroundTaskConfig
from deploy_engine.executor.tasks import BackgroundTasks
from deploy_engine.infrastructure.memory.repository import (
    InMemoryBackupRepository,
    InMemoryBackupScheduleRepository,
    InMemoryDeploymentLogRepository,
    InMemoryDeploymentRepository,
)
from deploy_engine.infrastructure.sql.database import create_db_engine, get_session_factory, init_db
from deploy_engine.orchestrator.executor import OrchestrationExecutor, ServiceState
from deploy_engine.orchestrator.volumes import VolumeInfo, VolumeInspector
from deploy_engine.templates import NGINX_TEMPLATE
from deploy_engine.templates.models import ComposeTemplate
from deploy_engine.templates.source import BuiltinTemplateSource
from deploy_engine.core.errors import OrchestrationFailure


SINGLE_SERVICE_COMPOSE = """\
services:
  web:
    image: nginx:alpine
    ports:
      - "8080:80"
"""

SINGLE_TEMPLATE = ComposeTemplate(
    template_id="single",
    name="Single service",
    description="One service, no networks",
    version="1.0",
    category="test",
    compose_source=SINGLE_SERVICE_COMPOSE,
)

BROKEN_TEMPLATE = ComposeTemplate(
    template_id="broken",
    name="Broken",
    description="Not YAML",
    version="1.0",
    category="test",
    compose_source="services: [unclosed",
)


# ============================================
# FAKES
# ============================================

class FakeExecutor(OrchestrationExecutor):
    """Records calls; individual operations can be made to fail or block."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.fail_on: Dict[str, Exception] = {}
        self.gate: Optional[threading.Event] = None
        self.states: Dict[str, Dict[str, ServiceState]] = {}
        self._lock = threading.Lock()

    def _record(self, op: str, *args):
        with self._lock:
            self.calls.append((op, *args))
        if self.gate is not None:
            self.gate.wait(timeout=5)
        error = self.fail_on.get(op)
        if error is not None:
            raise error

    def ops(self) -> List[str]:
        with self._lock:
            return [call[0] for call in self.calls]

    def deploy(self, compose_source, stack_name, env):
        self._record("deploy", stack_name, compose_source, dict(env))

    def stop(self, stack_name):
        self._record("stop", stack_name)

    def start(self, stack_name):
        self._record("start", stack_name)

    def restart(self, stack_name):
        self._record("restart", stack_name)

    def status(self, stack_name):
        self._record("status", stack_name)
        return self.states.get(stack_name, {})

    def remove(self, stack_name, remove_volumes=False):
        self._record("remove", stack_name, remove_volumes)


class FakeVolumeInspector(VolumeInspector):
    def __init__(self, volumes: Optional[Dict[str, List[VolumeInfo]]] = None):
        self.volumes = volumes or {}
        self.ensured: List[str] = []

    def list_stack_volumes(self, stack_name):
        return list(self.volumes.get(stack_name, []))

    def ensure_volume(self, volume):
        self.ensured.append(volume.name)
        return True


# ============================================
# FIXTURES
# ============================================

@pytest.fixture
def tunnel_config():
    return TunnelConfig(
        endpoint="https://pangolin.example.com",
        agent_id="agent-1",
        secret="s3cret",
    )


@pytest.fixture
def tunnel_options():
    return {
        "endpoint": "https://pangolin.example.com",
        "agent_id": "agent-1",
        "secret": "s3cret",
    }


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def failing_executor():
    executor = FakeExecutor()
    executor.fail_on["deploy"] = OrchestrationFailure("compose up failed", returncode=1)
    return executor


@pytest.fixture
def tasks():
    tasks = BackgroundTasks(BackgroundTaskConfig(max_workers=2))
    yield tasks
    tasks.shutdown()


@pytest.fixture
def deployment_repo():
    return InMemoryDeploymentRepository()


@pytest.fixture
def log_repo():
    return InMemoryDeploymentLogRepository()


@pytest.fixture
def recorder():
    return RecordingEventEmitter()


@pytest.fixture
def template_source():
    return BuiltinTemplateSource([SINGLE_TEMPLATE, BROKEN_TEMPLATE, NGINX_TEMPLATE])


@pytest.fixture
def lifecycle(deployment_repo, log_repo, executor, template_source, tasks, recorder):
    return DeploymentLifecycle(
        repository=deployment_repo,
        log_repository=log_repo,
        executor=executor,
        template_source=template_source,
        tasks=tasks,
        event_emitters=[recorder],
        tunnel_domain="tunnel.example.com",
    )


@pytest.fixture
def volume_inspector():
    return FakeVolumeInspector()


@pytest.fixture
def backup_repo():
    return InMemoryBackupRepository()


@pytest.fixture
def schedule_repo():
    return InMemoryBackupScheduleRepository()


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(tmp_path / "archives")


@pytest.fixture
def key_store(tmp_path):
    return KeyStore(tmp_path / "secrets")


@pytest.fixture
def backup_engine(backup_repo, deployment_repo, lifecycle, storage, key_store, tasks,
                  tmp_path, volume_inspector):
    return BackupEngine(
        repository=backup_repo,
        deployments=deployment_repo,
        lifecycle=lifecycle,
        storage=storage,
        key_store=key_store,
        tasks=tasks,
        staging_dir=tmp_path / "staging",
        volume_inspector=volume_inspector,
    )


@pytest.fixture
def running_deployment(lifecycle):
    """A deployment that has reached `running`."""
    deployment = lifecycle.create_deployment("single", "demo-1")
    assert lifecycle.wait(deployment.deployment_id, timeout=5)
    return lifecycle.get_deployment(deployment.deployment_id)


# ============================================
# SQL
# ============================================

@pytest.fixture
def sql_engine(tmp_path):
    """File-backed SQLite database per test."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def test_session_factory(sql_engine):
    """Create session factory for tests."""
    return get_session_factory(sql_engine)
