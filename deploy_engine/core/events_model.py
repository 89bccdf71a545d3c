"""Event models for deployment lifecycle."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict

from deploy_engine.core.models import utcnow


@dataclass
class DeploymentEvent:
    """Base deployment event."""

    event_type: str
    deployment_id: str
    timestamp: datetime
    metadata: Dict[str, Any]

    @staticmethod
    def deployment_created(deployment):
        """Deployment created event."""
        return DeploymentEvent(
            event_type="deployment.created",
            deployment_id=deployment.deployment_id,
            timestamp=utcnow(),
            metadata={
                "stack_name": deployment.stack_name,
                "template_ref": deployment.template_ref,
                "include_tunnel": deployment.config.include_tunnel,
            }
        )

    @staticmethod
    def status_changed(deployment_id, previous, current, operation):
        """Deployment status transition event."""
        return DeploymentEvent(
            event_type="deployment.status_changed",
            deployment_id=deployment_id,
            timestamp=utcnow(),
            metadata={
                "previous": previous.value,
                "current": current.value,
                "operation": operation.value,
            }
        )

    @staticmethod
    def log_appended(entry):
        """Log entry appended event."""
        return DeploymentEvent(
            event_type="deployment.log",
            deployment_id=entry.deployment_id,
            timestamp=entry.timestamp,
            metadata={
                "level": entry.level.value,
                "message": entry.message,
            }
        )

    @staticmethod
    def deployment_deleted(deployment_id, stack_name):
        """Deployment deleted event."""
        return DeploymentEvent(
            event_type="deployment.deleted",
            deployment_id=deployment_id,
            timestamp=utcnow(),
            metadata={
                "stack_name": stack_name,
            }
        )
