"""Core domain models for deployments."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentStatus(Enum):
    """Deployment state machine."""

    PENDING = "pending"
    DEPLOYING = "deploying"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


class LogLevel(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# -------------------------
# CONFIGURATION
# -------------------------

@dataclass
class TunnelConfig:
    """Tunnel-agent connection settings injected into the stack."""

    endpoint: str
    agent_id: str
    secret: str
    image: Optional[str] = None
    log_level: str = "INFO"
    health_file: str = "/tmp/healthy"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "agent_id": self.agent_id,
            "secret": self.secret,
            "image": self.image,
            "log_level": self.log_level,
            "health_file": self.health_file,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TunnelConfig":
        return cls(
            endpoint=data.get("endpoint", ""),
            agent_id=data.get("agent_id", ""),
            secret=data.get("secret", ""),
            image=data.get("image"),
            log_level=data.get("log_level") or "INFO",
            health_file=data.get("health_file") or "/tmp/healthy",
        )


@dataclass
class DeploymentConfig:
    """
    Validated deployment configuration.

    Replaces the free-form config map: readers get typed fields and the
    blob is validated once at the boundary.
    """

    environment: Dict[str, str] = field(default_factory=dict)
    tunnel: Optional[TunnelConfig] = None
    auto_start: bool = True

    @property
    def include_tunnel(self) -> bool:
        return self.tunnel is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environment": dict(self.environment),
            "tunnel": self.tunnel.to_dict() if self.tunnel else None,
            "auto_start": self.auto_start,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DeploymentConfig":
        data = data or {}
        tunnel = data.get("tunnel")
        return cls(
            environment={str(k): str(v) for k, v in (data.get("environment") or {}).items()},
            tunnel=TunnelConfig.from_dict(tunnel) if tunnel else None,
            auto_start=bool(data.get("auto_start", True)),
        )


# -------------------------
# DEPLOYMENT
# -------------------------

@dataclass
class Deployment:
    """A Compose stack deployed from a template."""

    # Identity
    deployment_id: str
    template_ref: str
    stack_name: str

    # State
    status: DeploymentStatus = DeploymentStatus.PENDING

    # Configuration
    config: DeploymentConfig = field(default_factory=DeploymentConfig)
    compose_source: str = ""

    # Tunnel
    tunnel_active: bool = False
    tunnel_url: str = ""

    error_message: Optional[str] = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_running(self) -> bool:
        return self.status == DeploymentStatus.RUNNING

    def can_start(self) -> bool:
        return self.status in (DeploymentStatus.STOPPED, DeploymentStatus.FAILED)

    def can_stop(self) -> bool:
        return self.status in (DeploymentStatus.RUNNING, DeploymentStatus.DEPLOYING)

    def can_restart(self) -> bool:
        return self.status in (DeploymentStatus.RUNNING, DeploymentStatus.STOPPED)

    def can_delete(self) -> bool:
        return self.status in (DeploymentStatus.STOPPED, DeploymentStatus.FAILED)


@dataclass
class DeploymentLog:
    """Append-only log entry for a deployment."""

    deployment_id: str
    level: LogLevel
    message: str
    timestamp: datetime = field(default_factory=utcnow)
    log_id: Optional[int] = None
