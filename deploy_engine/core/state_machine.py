#deploy_engine\core\state_machine.py

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional

from deploy_engine.core.errors import InvalidTransition
from deploy_engine.core.models import Deployment, DeploymentStatus


class DeploymentOperation(Enum):
    # Requested by callers
    DEPLOY = "deploy"
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    DELETE = "delete"

    # Driven by the orchestration outcome
    DEPLOY_SUCCEEDED = "deploy_succeeded"
    DEPLOY_FAILED = "deploy_failed"
    FAIL = "fail"


USER_OPERATIONS = frozenset({
    DeploymentOperation.DEPLOY,
    DeploymentOperation.START,
    DeploymentOperation.STOP,
    DeploymentOperation.RESTART,
})


@dataclass(frozen=True)
class Transition:
    sources: FrozenSet[DeploymentStatus]
    # None keeps the current status (restart) or removes the record (delete)
    target: Optional[DeploymentStatus]


TRANSITIONS = {
    DeploymentOperation.DEPLOY: Transition(
        frozenset({DeploymentStatus.PENDING}),
        DeploymentStatus.DEPLOYING,
    ),
    DeploymentOperation.DEPLOY_SUCCEEDED: Transition(
        frozenset({DeploymentStatus.DEPLOYING}),
        DeploymentStatus.RUNNING,
    ),
    DeploymentOperation.DEPLOY_FAILED: Transition(
        frozenset({DeploymentStatus.DEPLOYING}),
        DeploymentStatus.FAILED,
    ),
    DeploymentOperation.START: Transition(
        frozenset({DeploymentStatus.STOPPED, DeploymentStatus.FAILED}),
        DeploymentStatus.DEPLOYING,
    ),
    DeploymentOperation.STOP: Transition(
        frozenset({DeploymentStatus.RUNNING, DeploymentStatus.DEPLOYING}),
        DeploymentStatus.STOPPED,
    ),
    DeploymentOperation.RESTART: Transition(
        frozenset({DeploymentStatus.RUNNING, DeploymentStatus.STOPPED}),
        None,
    ),
    DeploymentOperation.DELETE: Transition(
        frozenset({DeploymentStatus.STOPPED, DeploymentStatus.FAILED}),
        None,
    ),
    DeploymentOperation.FAIL: Transition(
        frozenset({
            DeploymentStatus.DEPLOYING,
            DeploymentStatus.RUNNING,
            DeploymentStatus.STOPPED,
        }),
        DeploymentStatus.FAILED,
    ),
}


# Status graph implied by the table above
ALLOWED_TRANSITIONS = {
    DeploymentStatus.PENDING: {DeploymentStatus.DEPLOYING},
    DeploymentStatus.DEPLOYING: {
        DeploymentStatus.RUNNING,
        DeploymentStatus.FAILED,
        DeploymentStatus.STOPPED,
    },
    DeploymentStatus.RUNNING: {DeploymentStatus.STOPPED, DeploymentStatus.FAILED},
    DeploymentStatus.STOPPED: {DeploymentStatus.DEPLOYING, DeploymentStatus.FAILED},
    DeploymentStatus.FAILED: {DeploymentStatus.DEPLOYING},
}


class DeploymentStateMachine:
    @staticmethod
    def check(
        current: DeploymentStatus,
        operation: DeploymentOperation,
    ) -> Transition:
        """Return the transition for `operation` or raise InvalidTransition."""
        transition = TRANSITIONS[operation]
        if current not in transition.sources:
            raise InvalidTransition(current, operation)
        return transition

    @staticmethod
    def target_status(
        current: DeploymentStatus,
        operation: DeploymentOperation,
    ) -> DeploymentStatus:
        transition = DeploymentStateMachine.check(current, operation)
        return transition.target or current

    @staticmethod
    def can(deployment: Deployment, operation: DeploymentOperation) -> bool:
        return deployment.status in TRANSITIONS[operation].sources

    @staticmethod
    def is_allowed(current: DeploymentStatus, new: DeploymentStatus) -> bool:
        if current == new:
            return True
        return new in ALLOWED_TRANSITIONS.get(current, set())
