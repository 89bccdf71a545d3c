# deploy_engine/orchestrator/volumes.py
"""Named-volume metadata for backups, read through the Docker SDK."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import docker
from docker.errors import DockerException, NotFound

from deploy_engine.core.errors import OrchestrationFailure

logger = logging.getLogger(__name__)


COMPOSE_PROJECT_LABEL = "com.docker.compose.project"


@dataclass
class VolumeInfo:
    name: str
    driver: str = "local"
    labels: Dict[str, str] = field(default_factory=dict)
    options: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "driver": self.driver,
            "labels": dict(self.labels),
            "options": dict(self.options),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VolumeInfo":
        return cls(
            name=data["name"],
            driver=data.get("driver") or "local",
            labels=dict(data.get("labels") or {}),
            options=dict(data.get("options") or {}),
        )


class VolumeInspector(ABC):

    @abstractmethod
    def list_stack_volumes(self, stack_name: str) -> List[VolumeInfo]:
        raise NotImplementedError

    @abstractmethod
    def ensure_volume(self, volume: VolumeInfo) -> bool:
        """Create the volume if missing. Returns True if it was created."""
        raise NotImplementedError


class DockerVolumeInspector(VolumeInspector):
    """Connects to the local Docker daemon on first use."""

    def __init__(self, client: Optional[docker.DockerClient] = None):
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
                logger.info("[volumes] Connected to Docker daemon")
            except DockerException as e:
                raise OrchestrationFailure(f"failed to connect to Docker: {e}") from e
        return self._client

    def list_stack_volumes(self, stack_name: str) -> List[VolumeInfo]:
        try:
            volumes = self.client.volumes.list(
                filters={"label": f"{COMPOSE_PROJECT_LABEL}={stack_name}"}
            )
        except DockerException as e:
            raise OrchestrationFailure(f"failed to list volumes for {stack_name}: {e}") from e

        result = []
        for volume in volumes:
            attrs = volume.attrs or {}
            result.append(VolumeInfo(
                name=volume.name,
                driver=attrs.get("Driver") or "local",
                labels=dict(attrs.get("Labels") or {}),
                options=dict(attrs.get("Options") or {}),
            ))
        return result

    def ensure_volume(self, volume: VolumeInfo) -> bool:
        try:
            self.client.volumes.get(volume.name)
            return False
        except NotFound:
            pass
        except DockerException as e:
            raise OrchestrationFailure(f"failed to inspect volume {volume.name}: {e}") from e

        try:
            self.client.volumes.create(
                name=volume.name,
                driver=volume.driver,
                driver_opts=volume.options or None,
                labels=volume.labels or None,
            )
        except DockerException as e:
            raise OrchestrationFailure(f"failed to create volume {volume.name}: {e}") from e

        logger.info(f"[volumes] Created volume {volume.name}")
        return True
