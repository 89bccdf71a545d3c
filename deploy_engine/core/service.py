"""Deployment lifecycle - business logic layer."""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from uuid import uuid4

from deploy_engine.compose.document import parse_compose
from deploy_engine.compose.injector import DEFAULT_TUNNEL_IMAGE, TunnelInjector
from deploy_engine.core.errors import (
    InvalidTransition,
    NotFound,
    StackNameConflict,
    ValidationError,
)
from deploy_engine.core.events import (
    DeploymentEventHub,
    EventEmitter,
    MultiEventEmitter,
    Subscription,
)
from deploy_engine.core.events_model import DeploymentEvent
from deploy_engine.core.models import (
    Deployment,
    DeploymentConfig,
    DeploymentLog,
    DeploymentStatus,
    LogLevel,
    utcnow,
)
from deploy_engine.core.repository import DeploymentLogRepository, DeploymentRepository
from deploy_engine.core.state_machine import (
    USER_OPERATIONS,
    DeploymentOperation,
    DeploymentStateMachine,
)
from deploy_engine.core.validation import (
    build_deployment_config,
    validate_new_deployment,
    validate_stack_name,
)
from deploy_engine.executor.tasks import BackgroundTasks
from deploy_engine.orchestrator.executor import OrchestrationExecutor, ServiceState
from deploy_engine.templates.source import TemplateSource

logger = logging.getLogger(__name__)


DELETABLE = frozenset({DeploymentStatus.STOPPED, DeploymentStatus.FAILED})
ONE_MICROSECOND = timedelta(microseconds=1)


# -------------------------
# LOG STREAM
# -------------------------

class DeploymentLogWriter:
    """
    Appends to the deployment log stream.

    Appends for one deployment are serialized and get strictly increasing
    timestamps, so readers see them in write order.
    """

    def __init__(self, repository: DeploymentLogRepository, emitter: EventEmitter):
        self._repo = repository
        self._emitter = emitter
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._last: Dict[str, datetime] = {}

    def append(self, deployment_id: str, level: LogLevel, message: str) -> DeploymentLog:
        with self._lock_for(deployment_id):
            timestamp = utcnow()
            last = self._last_timestamp(deployment_id)
            if last is not None and timestamp <= last:
                timestamp = last + ONE_MICROSECOND

            entry = DeploymentLog(
                deployment_id=deployment_id,
                level=level,
                message=message,
                timestamp=timestamp,
            )
            self._repo.append(entry)
            self._last[deployment_id] = timestamp

            # Inside the lock so subscribers see entries in order
            self._emitter.emit([DeploymentEvent.log_appended(entry)])
            return entry

    def info(self, deployment_id: str, message: str) -> DeploymentLog:
        return self.append(deployment_id, LogLevel.INFO, message)

    def warning(self, deployment_id: str, message: str) -> DeploymentLog:
        return self.append(deployment_id, LogLevel.WARNING, message)

    def error(self, deployment_id: str, message: str) -> DeploymentLog:
        return self.append(deployment_id, LogLevel.ERROR, message)

    def forget(self, deployment_id: str) -> None:
        with self._registry_lock:
            self._locks.pop(deployment_id, None)
            self._last.pop(deployment_id, None)

    def _last_timestamp(self, deployment_id: str) -> Optional[datetime]:
        last = self._last.get(deployment_id)
        if last is None:
            # Entries written by an earlier process
            previous = self._repo.list_for(deployment_id, limit=1)
            if previous:
                last = previous[-1].timestamp
        return last

    def _lock_for(self, deployment_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(deployment_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[deployment_id] = lock
            return lock


# -------------------------
# LIFECYCLE
# -------------------------

class DeploymentLifecycle:
    """
    Owns the Deployment state machine.

    Every status write is a compare-and-swap on the expected prior status.
    Orchestration runs in background tasks keyed by deployment ID; calls
    for the same stack are serialized by a per-stack lock.
    """

    def __init__(
        self,
        repository: DeploymentRepository,
        log_repository: DeploymentLogRepository,
        executor: OrchestrationExecutor,
        template_source: TemplateSource,
        tasks: BackgroundTasks,
        *,
        event_hub: Optional[DeploymentEventHub] = None,
        event_emitters: Iterable[EventEmitter] = (),
        tunnel_domain: str = "",
        tunnel_image: str = DEFAULT_TUNNEL_IMAGE,
        tunnel_log_level: str = "INFO",
    ):
        self._repo = repository
        self._executor = executor
        self._templates = template_source
        self._tasks = tasks

        self._hub = event_hub or DeploymentEventHub()
        self._emitter = MultiEventEmitter([self._hub, *event_emitters])
        self._log = DeploymentLogWriter(log_repository, self._emitter)
        self._log_repo = log_repository

        self.tunnel_domain = tunnel_domain
        self.tunnel_image = tunnel_image
        self.tunnel_log_level = tunnel_log_level

        self._locks_guard = threading.Lock()
        self._stack_locks: Dict[str, threading.Lock] = {}
        self._deployment_locks: Dict[str, threading.Lock] = {}

    # -------------------------
    # CREATE
    # -------------------------

    def create_deployment(
        self,
        template_ref: str,
        stack_name: str,
        environment: Optional[Dict[str, Any]] = None,
        tunnel_options: Optional[Any] = None,
        auto_start: bool = True,
        deployment_id: Optional[str] = None,
    ) -> Deployment:
        """
        Create a deployment in `pending`.

        The Compose source is fetched and tunnel-injected before anything
        is written, so a malformed template leaves no record behind.
        With `auto_start` the deploy runs in the background.
        """
        validate_stack_name(stack_name)
        if isinstance(tunnel_options, dict) and not tunnel_options.get("log_level"):
            tunnel_options = {**tunnel_options, "log_level": self.tunnel_log_level}
        config = build_deployment_config(environment, tunnel_options, auto_start)

        if self._repo.get_by_stack_name(stack_name) is not None:
            raise StackNameConflict(f"Stack name {stack_name!r} is already in use")

        raw_source = self._templates.fetch_compose_source(template_ref)
        defaults = self._templates.default_environment(template_ref)
        if defaults:
            config.environment = {**defaults, **config.environment}
        compose_source = self.prepare_compose_source(raw_source, config)

        deployment = Deployment(
            deployment_id=deployment_id or str(uuid4()),
            template_ref=template_ref,
            stack_name=stack_name,
            config=config,
            compose_source=compose_source,
        )
        self._register(deployment, f"Deployment created from template {template_ref}")

        if config.auto_start:
            self._tasks.submit(deployment.deployment_id, self._run_auto_start, deployment.deployment_id)

        return deployment

    def prepare_compose_source(self, source: Union[bytes, str], config: DeploymentConfig) -> str:
        """
        Parse and, when a tunnel is configured, inject the tunnel agent.

        Raises ComposeParseError for unparseable input and ValidationError
        when the document cannot be deployed (no services).
        """
        doc = parse_compose(source)

        if config.tunnel is not None:
            injector = TunnelInjector(config.tunnel, default_image=self.tunnel_image)
            corrected, report = injector.inject(doc)
            if not report.valid:
                raise ValidationError("; ".join(report.issues))
            return corrected.to_yaml()

        report = TunnelInjector(default_image=self.tunnel_image).validate(doc)
        if not report.valid:
            raise ValidationError("; ".join(report.issues))

        if isinstance(source, bytes):
            return source.decode("utf-8")
        return source

    # -------------------------
    # RESTORE (used by the backup engine)
    # -------------------------

    def restore_deployment(
        self,
        deployment_id: str,
        template_ref: str,
        stack_name: str,
        config: DeploymentConfig,
        compose_source: str,
        overwrite_existing: bool = False,
    ) -> Deployment:
        """
        Recreate a deployment from captured state and begin deploying it.

        Raises StackNameConflict when the ID or stack name is taken and
        `overwrite_existing` is False. Overwriting requires the existing
        deployment to be deletable.
        """
        validate_stack_name(stack_name)
        config = build_deployment_config(config.environment, config.tunnel, config.auto_start)

        existing: Dict[str, Deployment] = {}
        for candidate in (self._repo.get(deployment_id), self._repo.get_by_stack_name(stack_name)):
            if candidate is not None:
                existing[candidate.deployment_id] = candidate

        if existing and not overwrite_existing:
            current = next(iter(existing.values()))
            raise StackNameConflict(
                f"Deployment {current.deployment_id} ({current.stack_name}) already exists"
            )

        for current in existing.values():
            self.delete_deployment(current.deployment_id, wait=True)

        compose_source = self.prepare_compose_source(compose_source, config)

        deployment = Deployment(
            deployment_id=deployment_id,
            template_ref=template_ref,
            stack_name=stack_name,
            config=config,
            compose_source=compose_source,
        )
        self._register(deployment, "Deployment restored from backup")
        return self.transition_deployment(deployment.deployment_id, DeploymentOperation.DEPLOY)

    # -------------------------
    # TRANSITIONS
    # -------------------------

    def transition_deployment(
        self,
        deployment_id: str,
        operation: Union[DeploymentOperation, str],
    ) -> Deployment:
        """
        Apply a user operation: deploy, start, stop or restart.

        The status change is written synchronously; the orchestration call
        runs in the background and drives the deployment to its outcome.
        """
        operation = _as_operation(operation)
        if operation not in USER_OPERATIONS:
            raise ValidationError(f"Unsupported operation: {operation.value}")

        with self._deployment_lock(deployment_id):
            deployment = self._require(deployment_id)
            transition = DeploymentStateMachine.check(deployment.status, operation)
            previous = deployment.status
            target = transition.target or previous

            # Only a stop may cut into a deploy that is still running
            interrupts_deploy = (
                operation == DeploymentOperation.STOP and previous == DeploymentStatus.DEPLOYING
            )
            if self._busy(deployment_id) and not interrupts_deploy:
                raise InvalidTransition(
                    previous,
                    operation,
                    f"Cannot {operation.value} deployment {deployment_id}: "
                    "a previous operation is still in progress",
                )

            changes: Dict[str, Any] = {}
            if target != DeploymentStatus.RUNNING and previous == DeploymentStatus.RUNNING:
                # The URL stays as last-known location
                changes["tunnel_active"] = False
            if target == DeploymentStatus.DEPLOYING:
                changes["error_message"] = None

            self._swap(deployment_id, previous, target, operation, changes)
            self._log.info(deployment_id, _describe(operation, previous, target))
            updated = self._require(deployment_id)

            if operation in (DeploymentOperation.DEPLOY, DeploymentOperation.START):
                resume = operation == DeploymentOperation.START and previous == DeploymentStatus.STOPPED
                self._tasks.submit(deployment_id, self._run_deploy, deployment_id, resume)
            elif operation == DeploymentOperation.STOP:
                self._tasks.submit(deployment_id, self._run_stop, deployment_id)
            elif operation == DeploymentOperation.RESTART:
                self._tasks.submit(deployment_id, self._run_restart, deployment_id, previous)

        return updated

    # -------------------------
    # DELETE
    # -------------------------

    def delete_deployment(
        self,
        deployment_id: str,
        remove_volumes: bool = False,
        wait: bool = False,
    ) -> None:
        """
        Hard-delete a stopped or failed deployment and tear its stack down.

        The record and its log stream are removed immediately; stack removal
        runs in the background unless `wait` is set.
        """
        with self._deployment_lock(deployment_id):
            deployment = self._require(deployment_id)
            DeploymentStateMachine.check(deployment.status, DeploymentOperation.DELETE)
            if self._busy(deployment_id):
                raise InvalidTransition(
                    deployment.status,
                    DeploymentOperation.DELETE,
                    f"Cannot delete deployment {deployment_id}: "
                    "a previous operation is still in progress",
                )

            if not self._repo.delete_if_status(deployment_id, DELETABLE):
                current = self._require(deployment_id)
                raise InvalidTransition(current.status, DeploymentOperation.DELETE)

        logger.info(f"[lifecycle] deleted deployment {deployment_id} ({deployment.stack_name})")
        self._emitter.emit([
            DeploymentEvent.deployment_deleted(deployment_id, deployment.stack_name)
        ])
        self._log_repo.delete_for(deployment_id)
        self._log.forget(deployment_id)
        self._hub.drop(deployment_id)

        if wait:
            self._remove_stack(deployment.stack_name, remove_volumes)
        else:
            self._tasks.submit(
                deployment_id, self._remove_stack, deployment.stack_name, remove_volumes
            )

    # -------------------------
    # QUERIES
    # -------------------------

    def get_deployment(self, deployment_id: str) -> Deployment:
        return self._require(deployment_id)

    def list_deployments(
        self,
        status: Optional[DeploymentStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Deployment]:
        if status is not None:
            return self._repo.list_by_status(status)[offset:offset + limit]
        return self._repo.list_all(limit=limit, offset=offset)

    def get_logs(self, deployment_id: str, limit: int = 100) -> List[DeploymentLog]:
        self._require(deployment_id)
        return self._log_repo.list_for(deployment_id, limit=limit)

    def service_status(self, deployment_id: str) -> Dict[str, ServiceState]:
        deployment = self._require(deployment_id)
        return self._executor.status(deployment.stack_name)

    def subscribe(
        self,
        deployment_id: str,
        callback: Callable[[DeploymentEvent], None],
    ) -> Subscription:
        """Register for one deployment's events. Close the handle to unregister."""
        return self._hub.subscribe(deployment_id, callback)

    def wait(self, deployment_id: str, timeout: Optional[float] = None) -> bool:
        return self._tasks.wait(deployment_id, timeout=timeout)

    def list_templates(self) -> List[str]:
        return self._templates.list_refs()

    def tunnel_url_for(self, deployment: Deployment) -> str:
        if deployment.config.tunnel is None or not self.tunnel_domain:
            return ""
        return f"https://{deployment.stack_name}.{self.tunnel_domain}"

    # -------------------------
    # BACKGROUND WORK
    # -------------------------

    def _run_auto_start(self, deployment_id: str) -> None:
        if not self._try_swap(
            deployment_id,
            DeploymentStatus.PENDING,
            DeploymentStatus.DEPLOYING,
            DeploymentOperation.DEPLOY,
        ):
            logger.info(f"[lifecycle] auto-start of {deployment_id} skipped: no longer pending")
            return
        self._log.info(
            deployment_id,
            _describe(DeploymentOperation.DEPLOY, DeploymentStatus.PENDING, DeploymentStatus.DEPLOYING),
        )
        self._run_deploy(deployment_id, resume=False)

    def _run_deploy(self, deployment_id: str, resume: bool) -> None:
        deployment = self._repo.get(deployment_id)
        if deployment is None:
            return

        with self._stack_lock(deployment.stack_name):
            deployment = self._repo.get(deployment_id)
            if deployment is None or deployment.status != DeploymentStatus.DEPLOYING:
                logger.info(f"[lifecycle] deploy of {deployment_id} skipped: no longer deploying")
                return

            try:
                if resume:
                    self._executor.start(deployment.stack_name)
                else:
                    self._executor.deploy(
                        deployment.compose_source,
                        deployment.stack_name,
                        deployment.config.environment,
                    )
            except Exception as e:
                logger.error(f"[lifecycle] deploy of {deployment_id} failed: {e}", exc_info=True)
                self._fail(deployment_id, DeploymentStatus.DEPLOYING, DeploymentOperation.DEPLOY_FAILED, e)
                return

            changes: Dict[str, Any] = {}
            if deployment.config.include_tunnel:
                changes["tunnel_active"] = True
                changes["tunnel_url"] = self.tunnel_url_for(deployment)

            if self._try_swap(
                deployment_id,
                DeploymentStatus.DEPLOYING,
                DeploymentStatus.RUNNING,
                DeploymentOperation.DEPLOY_SUCCEEDED,
                changes,
            ):
                self._log.info(deployment_id, "Deployment is running")
                if changes.get("tunnel_url"):
                    self._log.info(deployment_id, f"Tunnel available at {changes['tunnel_url']}")
            else:
                self._log.warning(deployment_id, "Deployment changed state while deploying")

    def _run_stop(self, deployment_id: str) -> None:
        deployment = self._repo.get(deployment_id)
        if deployment is None:
            return

        with self._stack_lock(deployment.stack_name):
            try:
                self._executor.stop(deployment.stack_name)
            except Exception as e:
                logger.error(f"[lifecycle] stop of {deployment_id} failed: {e}", exc_info=True)
                self._fail(deployment_id, DeploymentStatus.STOPPED, DeploymentOperation.FAIL, e)
                return
            self._log.info(deployment_id, "Deployment stopped")

    def _run_restart(self, deployment_id: str, expected: DeploymentStatus) -> None:
        deployment = self._repo.get(deployment_id)
        if deployment is None:
            return

        with self._stack_lock(deployment.stack_name):
            try:
                self._executor.restart(deployment.stack_name)
            except Exception as e:
                logger.error(f"[lifecycle] restart of {deployment_id} failed: {e}", exc_info=True)
                self._fail(deployment_id, expected, DeploymentOperation.FAIL, e)
                return
            self._log.info(deployment_id, "Deployment restarted")

    def _remove_stack(self, stack_name: str, remove_volumes: bool) -> None:
        with self._stack_lock(stack_name):
            try:
                self._executor.remove(stack_name, remove_volumes=remove_volumes)
            except Exception as e:
                # The record is already gone; only the process log remains
                logger.error(f"[lifecycle] removing stack {stack_name} failed: {e}", exc_info=True)
                return
        logger.info(f"[lifecycle] removed stack {stack_name}")

    def _fail(
        self,
        deployment_id: str,
        expected: DeploymentStatus,
        operation: DeploymentOperation,
        error: Exception,
    ) -> None:
        message = str(error) or error.__class__.__name__
        changes = {"error_message": message, "tunnel_active": False}
        if self._try_swap(deployment_id, expected, DeploymentStatus.FAILED, operation, changes):
            self._log.error(deployment_id, f"Orchestration failed: {message}")
        else:
            self._log.warning(
                deployment_id,
                f"Orchestration failed after the deployment left {expected.value}: {message}",
            )

    # -------------------------
    # INTERNAL
    # -------------------------

    def _register(self, deployment: Deployment, message: str) -> None:
        validate_new_deployment(deployment)
        self._repo.create(deployment)
        logger.info(
            f"[lifecycle] created deployment {deployment.deployment_id} ({deployment.stack_name})"
        )
        self._emitter.emit([DeploymentEvent.deployment_created(deployment)])
        self._log.info(deployment.deployment_id, message)

    def _swap(
        self,
        deployment_id: str,
        expected: DeploymentStatus,
        new: DeploymentStatus,
        operation: DeploymentOperation,
        changes: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Compare-and-swap or raise InvalidTransition for the loser."""
        if not self._try_swap(deployment_id, expected, new, operation, changes):
            current = self._require(deployment_id)
            raise InvalidTransition(current.status, operation)

    def _try_swap(
        self,
        deployment_id: str,
        expected: DeploymentStatus,
        new: DeploymentStatus,
        operation: DeploymentOperation,
        changes: Optional[Dict[str, Any]] = None,
    ) -> bool:
        if not self._repo.update_status(deployment_id, expected, new, changes):
            return False
        if new != expected:
            self._emitter.emit([
                DeploymentEvent.status_changed(deployment_id, expected, new, operation)
            ])
        return True

    def _require(self, deployment_id: str) -> Deployment:
        deployment = self._repo.get(deployment_id)
        if deployment is None:
            raise NotFound(f"Deployment {deployment_id} not found")
        return deployment

    def _busy(self, deployment_id: str) -> bool:
        """True while background work for the deployment has not finished."""
        return any(not future.done() for future in self._tasks.pending(deployment_id))

    def _stack_lock(self, stack_name: str) -> threading.Lock:
        return self._named_lock(self._stack_locks, stack_name)

    def _deployment_lock(self, deployment_id: str) -> threading.Lock:
        return self._named_lock(self._deployment_locks, deployment_id)

    def _named_lock(self, locks: Dict[str, threading.Lock], name: str) -> threading.Lock:
        with self._locks_guard:
            lock = locks.get(name)
            if lock is None:
                lock = threading.Lock()
                locks[name] = lock
            return lock


def _as_operation(operation: Union[DeploymentOperation, str]) -> DeploymentOperation:
    if isinstance(operation, DeploymentOperation):
        return operation
    try:
        return DeploymentOperation(operation)
    except ValueError as e:
        raise ValidationError(f"Unknown operation: {operation}") from e


def _describe(operation: DeploymentOperation, previous: DeploymentStatus, target: DeploymentStatus) -> str:
    if previous == target:
        return f"{operation.value.capitalize()} requested"
    return f"{operation.value.capitalize()} requested ({previous.value} -> {target.value})"
