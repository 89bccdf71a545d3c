# deploy_engine/orchestrator/executor.py
"""Orchestration executor contract."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass
class ServiceState:
    state: str
    health: Optional[str] = None

    def is_running(self) -> bool:
        return self.state == "running"


class OrchestrationExecutor(ABC):
    """
    Runs Compose stacks.

    Every method raises OrchestrationFailure (or OrchestrationTimeout)
    when the underlying invocation fails.
    """

    @abstractmethod
    def deploy(self, compose_source: str, stack_name: str, env: Dict[str, str]) -> None:
        raise NotImplementedError

    @abstractmethod
    def stop(self, stack_name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def start(self, stack_name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def restart(self, stack_name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def status(self, stack_name: str) -> Dict[str, ServiceState]:
        """Service name -> state/health."""
        raise NotImplementedError

    @abstractmethod
    def remove(self, stack_name: str, remove_volumes: bool = False) -> None:
        raise NotImplementedError
