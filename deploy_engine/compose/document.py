# deploy_engine/compose/document.py
"""In-memory Compose document with YAML (de)serialization."""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import yaml

from deploy_engine.core.errors import ComposeParseError


# ============================================
# Specs
# ============================================

@dataclass
class HealthCheckSpec:
    test: Union[List[str], str] = field(default_factory=list)
    interval: Optional[str] = None
    timeout: Optional[str] = None
    retries: Optional[int] = None
    start_period: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.test:
            data["test"] = copy.deepcopy(self.test)
        for key in ("interval", "timeout", "retries", "start_period"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        data.update(copy.deepcopy(self.extra))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthCheckSpec":
        data = dict(data)
        return cls(
            test=data.pop("test", []) or [],
            interval=data.pop("interval", None),
            timeout=data.pop("timeout", None),
            retries=data.pop("retries", None),
            start_period=data.pop("start_period", None),
            extra=data,
        )


@dataclass
class ServiceSpec:
    """One service of a Compose document."""

    image: str = ""
    container_name: Optional[str] = None
    restart: Optional[str] = None
    command: Any = None
    entrypoint: Any = None
    # Always "KEY=VALUE" (or bare "KEY") entries
    environment: List[str] = field(default_factory=list)
    ports: List[Any] = field(default_factory=list)
    volumes: List[Any] = field(default_factory=list)
    # name -> per-service network options (None for plain membership)
    networks: Dict[str, Optional[Dict[str, Any]]] = field(default_factory=dict)
    depends_on: Any = None
    healthcheck: Optional[HealthCheckSpec] = None
    labels: Dict[str, str] = field(default_factory=dict)
    # Keys this model does not interpret (build, deploy, x-*, ...)
    extra: Dict[str, Any] = field(default_factory=dict)

    def env_value(self, name: str) -> Optional[str]:
        for entry in self.environment:
            key, sep, value = entry.partition("=")
            if key == name:
                return value if sep else None
        return None

    def add_network(self, name: str) -> bool:
        """Add a membership. Returns False if already a member."""
        if name in self.networks:
            return False
        self.networks[name] = None
        return True

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.image:
            data["image"] = self.image
        if self.container_name:
            data["container_name"] = self.container_name
        if self.restart:
            data["restart"] = self.restart
        if self.command is not None:
            data["command"] = copy.deepcopy(self.command)
        if self.entrypoint is not None:
            data["entrypoint"] = copy.deepcopy(self.entrypoint)
        if self.environment:
            data["environment"] = list(self.environment)
        if self.ports:
            data["ports"] = copy.deepcopy(self.ports)
        if self.volumes:
            data["volumes"] = copy.deepcopy(self.volumes)
        if self.networks:
            if all(options is None for options in self.networks.values()):
                data["networks"] = list(self.networks)
            else:
                data["networks"] = copy.deepcopy(self.networks)
        if self.depends_on is not None:
            data["depends_on"] = copy.deepcopy(self.depends_on)
        if self.healthcheck is not None:
            data["healthcheck"] = self.healthcheck.to_dict()
        if self.labels:
            data["labels"] = dict(self.labels)
        data.update(copy.deepcopy(self.extra))
        return data

    @classmethod
    def from_dict(cls, name: str, data: Any) -> "ServiceSpec":
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ComposeParseError(f"service {name!r} must be a mapping")

        data = dict(data)
        healthcheck = data.pop("healthcheck", None)
        if healthcheck is not None and not isinstance(healthcheck, dict):
            raise ComposeParseError(f"service {name!r} healthcheck must be a mapping")

        return cls(
            image=str(data.pop("image", "") or ""),
            container_name=data.pop("container_name", None),
            restart=data.pop("restart", None),
            command=data.pop("command", None),
            entrypoint=data.pop("entrypoint", None),
            environment=_parse_environment(name, data.pop("environment", None)),
            ports=_parse_list(name, "ports", data.pop("ports", None)),
            volumes=_parse_list(name, "volumes", data.pop("volumes", None)),
            networks=_parse_service_networks(name, data.pop("networks", None)),
            depends_on=data.pop("depends_on", None),
            healthcheck=HealthCheckSpec.from_dict(healthcheck) if healthcheck is not None else None,
            labels=_parse_labels(name, data.pop("labels", None)),
            extra=data,
        )


@dataclass
class NetworkSpec:
    driver: Optional[str] = None
    external: Any = None
    labels: Dict[str, str] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.driver:
            data["driver"] = self.driver
        if self.external is not None:
            data["external"] = copy.deepcopy(self.external)
        if self.labels:
            data["labels"] = dict(self.labels)
        data.update(copy.deepcopy(self.extra))
        return data

    @classmethod
    def from_dict(cls, name: str, data: Any) -> "NetworkSpec":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ComposeParseError(f"network {name!r} must be a mapping")
        data = dict(data)
        return cls(
            driver=data.pop("driver", None),
            external=data.pop("external", None),
            labels=_parse_labels(name, data.pop("labels", None)),
            extra=data,
        )


@dataclass
class VolumeSpec:
    driver: Optional[str] = None
    external: Any = None
    labels: Dict[str, str] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.driver:
            data["driver"] = self.driver
        if self.external is not None:
            data["external"] = copy.deepcopy(self.external)
        if self.labels:
            data["labels"] = dict(self.labels)
        data.update(copy.deepcopy(self.extra))
        return data

    @classmethod
    def from_dict(cls, name: str, data: Any) -> "VolumeSpec":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ComposeParseError(f"volume {name!r} must be a mapping")
        data = dict(data)
        return cls(
            driver=data.pop("driver", None),
            external=data.pop("external", None),
            labels=_parse_labels(name, data.pop("labels", None)),
            extra=data,
        )


# ============================================
# Document
# ============================================

@dataclass
class ComposeDocument:
    """
    A parsed Compose file.

    Owned by the operation that parsed it; never shared across
    concurrent operations. Use `copy()` before handing it elsewhere.
    """

    version: Optional[str] = None
    services: Dict[str, ServiceSpec] = field(default_factory=dict)
    networks: Dict[str, NetworkSpec] = field(default_factory=dict)
    volumes: Dict[str, VolumeSpec] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    def copy(self) -> "ComposeDocument":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.version:
            data["version"] = self.version
        data.update(copy.deepcopy(self.extra))
        data["services"] = {name: svc.to_dict() for name, svc in self.services.items()}
        if self.networks:
            data["networks"] = {name: net.to_dict() for name, net in self.networks.items()}
        if self.volumes:
            data["volumes"] = {name: vol.to_dict() for name, vol in self.volumes.items()}
        return data

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ComposeDocument":
        data = dict(data)
        version = data.pop("version", None)

        services = data.pop("services", None) or {}
        if not isinstance(services, dict):
            raise ComposeParseError("'services' must be a mapping")

        networks = data.pop("networks", None) or {}
        if not isinstance(networks, dict):
            raise ComposeParseError("'networks' must be a mapping")

        volumes = data.pop("volumes", None) or {}
        if not isinstance(volumes, dict):
            raise ComposeParseError("'volumes' must be a mapping")

        return cls(
            version=str(version) if version is not None else None,
            services={str(n): ServiceSpec.from_dict(str(n), s) for n, s in services.items()},
            networks={str(n): NetworkSpec.from_dict(str(n), s) for n, s in networks.items()},
            volumes={str(n): VolumeSpec.from_dict(str(n), s) for n, s in volumes.items()},
            extra=data,
        )


def parse_compose(source: Union[bytes, str]) -> ComposeDocument:
    """Parse Compose source. Raises ComposeParseError on malformed input."""
    if isinstance(source, bytes):
        try:
            source = source.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ComposeParseError(f"compose source is not valid UTF-8: {e}") from e

    try:
        data = yaml.safe_load(source)
    except yaml.YAMLError as e:
        raise ComposeParseError(f"failed to parse docker-compose: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ComposeParseError("compose document root must be a mapping")

    return ComposeDocument.from_dict(data)


def dump_compose(document: ComposeDocument) -> bytes:
    return document.to_yaml().encode("utf-8")


# ============================================
# Field normalization
# ============================================

def _parse_environment(service: str, value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, dict):
        entries = []
        for key, val in value.items():
            if val is None:
                entries.append(str(key))
            elif isinstance(val, bool):
                entries.append(f"{key}={'true' if val else 'false'}")
            else:
                entries.append(f"{key}={val}")
        return entries
    if isinstance(value, list):
        return [str(entry) for entry in value]
    raise ComposeParseError(f"service {service!r} environment must be a list or mapping")


def _parse_labels(owner: str, value: Any) -> Dict[str, str]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): "" if v is None else str(v) for k, v in value.items()}
    if isinstance(value, list):
        labels = {}
        for entry in value:
            key, _, val = str(entry).partition("=")
            labels[key] = val
        return labels
    raise ComposeParseError(f"{owner!r} labels must be a list or mapping")


def _parse_list(service: str, key: str, value: Any) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ComposeParseError(f"service {service!r} {key} must be a list")
    return list(value)


def _parse_service_networks(service: str, value: Any) -> Dict[str, Optional[Dict[str, Any]]]:
    if value is None:
        return {}
    if isinstance(value, list):
        return {str(name): None for name in value}
    if isinstance(value, dict):
        networks: Dict[str, Optional[Dict[str, Any]]] = {}
        for name, options in value.items():
            if options is not None and not isinstance(options, dict):
                raise ComposeParseError(
                    f"service {service!r} network {name!r} options must be a mapping"
                )
            networks[str(name)] = dict(options) if options else None
        return networks
    raise ComposeParseError(f"service {service!r} networks must be a list or mapping")
