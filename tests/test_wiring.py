"""Test background tasks, event fan-out and container wiring."""

import threading

import pytest

from deploy_engine.backup.storage import LocalStorage
from deploy_engine.config import EngineSettings
from deploy_engine.container import build_container
from deploy_engine.core.events import DeploymentEventHub, MultiEventEmitter, RecordingEventEmitter
from deploy_engine.core.events_model import DeploymentEvent
from deploy_engine.core.models import DeploymentStatus
from deploy_engine.core.state_machine import DeploymentOperation
from deploy_engine.executor.config import BackgroundTaskConfig
from deploy_engine.executor.tasks import BackgroundTasks
from deploy_engine.infrastructure.sql.repository import SqlDeploymentRepository


def status_event(deployment_id):
    return DeploymentEvent.status_changed(
        deployment_id, DeploymentStatus.PENDING, DeploymentStatus.DEPLOYING, DeploymentOperation.DEPLOY
    )


class TestBackgroundTasks:
    """Futures retained by owning entity."""

    def test_wait_for_key(self, tasks):
        """Test that wait returns once the key's tasks finish."""
        future = tasks.submit("d-1", lambda: 42)

        assert tasks.wait("d-1", timeout=5)
        assert future.result() == 42

    def test_wait_times_out(self, tasks):
        """Test that wait reports an unfinished task."""
        gate = threading.Event()
        tasks.submit("d-1", gate.wait, 5)

        assert tasks.wait("d-1", timeout=0.05) is False
        gate.set()
        assert tasks.wait("d-1", timeout=5)

    def test_failed_task_keeps_exception(self, tasks):
        """Test that a task's exception is available on its future."""
        def boom():
            raise RuntimeError("boom")

        future = tasks.submit("d-1", boom)

        with pytest.raises(RuntimeError):
            future.result(timeout=5)

    def test_cancel_queued(self):
        """Test that queued tasks can be cancelled before they start."""
        tasks = BackgroundTasks(BackgroundTaskConfig(max_workers=1))
        gate = threading.Event()
        try:
            tasks.submit("busy", gate.wait, 5)
            queued = tasks.submit("d-1", lambda: None)

            assert tasks.cancel("d-1") == 1
            assert queued.cancelled()
        finally:
            gate.set()
            tasks.shutdown()


class TestEvents:
    """Emitters and per-deployment channels."""

    def test_hub_delivers_only_to_subscribed_deployment(self):
        """Test channel isolation."""
        hub = DeploymentEventHub()
        first, second = [], []
        hub.subscribe("d-1", first.append)
        hub.subscribe("d-2", second.append)

        hub.emit([status_event("d-1")])

        assert len(first) == 1
        assert second == []

    def test_subscription_context_manager(self):
        """Test that leaving the with-block unsubscribes."""
        hub = DeploymentEventHub()
        received = []
        with hub.subscribe("d-1", received.append) as subscription:
            hub.emit([status_event("d-1")])

        hub.emit([status_event("d-1")])
        assert subscription.closed
        assert len(received) == 1

    def test_multi_emitter_fans_out(self):
        """Test that every emitter receives the batch."""
        a, b = RecordingEventEmitter(), RecordingEventEmitter()
        MultiEventEmitter([a, b]).emit([status_event("d-1")])

        assert len(a.events) == len(b.events) == 1

    def test_unknown_event_type_rejected(self):
        """Test event validation."""
        event = status_event("d-1")
        event.event_type = "deployment.exploded"

        with pytest.raises(ValueError):
            RecordingEventEmitter().emit([event])


class TestContainer:
    """Service wiring from settings."""

    def test_build_container(self, tmp_path):
        """Test that the container wires SQL repositories and local storage."""
        settings = EngineSettings(
            database_url=f"sqlite:///{tmp_path / 'engine.db'}",
            backup_storage_path=str(tmp_path / "archives"),
            backup_staging_path=str(tmp_path / "staging"),
            backup_key_path=str(tmp_path / "secrets"),
            templates_dir=str(tmp_path / "templates"),
            compose_work_dir=str(tmp_path / "stacks"),
        )
        container = build_container(settings)
        try:
            assert isinstance(container.lifecycle._repo, SqlDeploymentRepository)
            assert isinstance(container.backup_engine._storage, LocalStorage)
            assert container.lifecycle.list_templates() == ["nginx", "wordpress"]
            assert container.lifecycle.list_deployments() == []
        finally:
            container.shutdown()
