# deploy_engine/compose/injector.py
"""
Tunnel-agent injection for Compose documents.

The injector guarantees that a document carries a correctly configured
tunnel-agent service and that every service joins the default network.
It never edits a malformed agent service in place: a non-compliant one
is replaced by the synthesized definition.

Running `inject` on its own output produces no further changes.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from deploy_engine.compose.document import (
    ComposeDocument,
    HealthCheckSpec,
    NetworkSpec,
    ServiceSpec,
    dump_compose,
    parse_compose,
)
from deploy_engine.core.models import TunnelConfig

logger = logging.getLogger(__name__)


TUNNEL_SERVICE_NAME = "newt"
TUNNEL_IMAGE_MARKER = "newt"
DEFAULT_TUNNEL_IMAGE = "fosrl/newt:latest"
DEFAULT_NETWORK = "app_network"

ENDPOINT_VAR = "PANGOLIN_ENDPOINT"
AGENT_ID_VAR = "NEWT_ID"
SECRET_VAR = "NEWT_SECRET"
REQUIRED_ENV = (ENDPOINT_VAR, AGENT_ID_VAR, SECRET_VAR)

DOCKER_SOCKET = "/var/run/docker.sock"
DOCKER_SOCKET_MOUNT = f"{DOCKER_SOCKET}:{DOCKER_SOCKET}:ro"


# -------------------------
# REPORTS
# -------------------------

@dataclass
class ValidationReport:
    valid: bool = True
    has_tunnel: bool = False
    network_ok: bool = True
    issues: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    # Filled by inject(): what was applied to produce the document
    changes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "has_tunnel": self.has_tunnel,
            "network_ok": self.network_ok,
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "suggestions": list(self.suggestions),
            "changes": list(self.changes),
        }


@dataclass
class ChangeSummary:
    """Dry-run result of inject()."""

    has_tunnel_service: bool = False
    will_add_tunnel: bool = False
    will_replace_tunnel: bool = False
    will_add_network: bool = False
    services_needing_network: List[str] = field(default_factory=list)
    changes: List[str] = field(default_factory=list)
    # Problems that trigger a replacement
    tunnel_problems: List[str] = field(default_factory=list)
    tunnel_service: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_tunnel_service": self.has_tunnel_service,
            "will_add_tunnel": self.will_add_tunnel,
            "will_replace_tunnel": self.will_replace_tunnel,
            "will_add_network": self.will_add_network,
            "services_needing_network": list(self.services_needing_network),
            "changes": list(self.changes),
            "tunnel_service": dict(self.tunnel_service),
        }


# -------------------------
# INJECTOR
# -------------------------

class TunnelInjector:

    def __init__(
        self,
        tunnel: Optional[TunnelConfig] = None,
        default_image: str = DEFAULT_TUNNEL_IMAGE,
        network_name: str = DEFAULT_NETWORK,
    ):
        self.tunnel = tunnel
        self.default_image = default_image
        self.network_name = network_name

    @property
    def image(self) -> str:
        if self.tunnel is not None and self.tunnel.image:
            return self.tunnel.image
        return self.default_image

    # -------------------------
    # VALIDATE
    # -------------------------

    def validate(self, doc: ComposeDocument) -> ValidationReport:
        """Read-only structural check. Never raises for structural problems."""
        report = ValidationReport()

        if not doc.services:
            report.issues.append("No services defined in docker-compose file")
            report.valid = False
            return report

        agent = doc.services.get(TUNNEL_SERVICE_NAME)
        if agent is not None:
            report.has_tunnel = True
            for problem in self.tunnel_service_problems(agent):
                report.issues.append(f"Tunnel service configuration error: {problem}")
        else:
            report.suggestions.append("Add tunnel service for remote access")

        if not doc.networks:
            report.network_ok = False
            report.warnings.append("No networks defined - services may not be able to communicate")
            report.suggestions.append("Define custom networks for better service isolation")

        detached = [
            name for name, svc in doc.services.items()
            if not svc.networks and not _has_network_mode(svc)
        ]
        if detached:
            report.network_ok = False
            report.warnings.append(
                f"Services without network configuration: {', '.join(detached)}"
            )

        for binding, services in _port_collisions(doc).items():
            report.warnings.append(
                f"Port {binding} is used by multiple services: {', '.join(services)}"
            )

        report.valid = not report.issues
        return report

    def tunnel_service_problems(self, service: ServiceSpec) -> List[str]:
        problems = []

        if not service.image:
            problems.append("tunnel service missing image")
        elif TUNNEL_IMAGE_MARKER not in service.image and service.image != self.image:
            problems.append(f"tunnel service using incorrect image: {service.image}")

        declared = set()
        for entry in service.environment:
            key, sep, _ = entry.partition("=")
            if sep:
                declared.add(key)
        missing = [name for name in REQUIRED_ENV if name not in declared]
        if missing:
            problems.append(f"missing required environment variables: {', '.join(missing)}")

        if not any(_is_readonly_socket_mount(volume) for volume in service.volumes):
            problems.append("tunnel service missing read-only Docker socket mount")

        return problems

    # -------------------------
    # SYNTHESIS
    # -------------------------

    def environment(self) -> List[str]:
        tunnel = self.tunnel or TunnelConfig(endpoint="", agent_id="", secret="")
        return [
            f"{ENDPOINT_VAR}={tunnel.endpoint}",
            f"{AGENT_ID_VAR}={tunnel.agent_id}",
            f"{SECRET_VAR}={tunnel.secret}",
            f"LOG_LEVEL={tunnel.log_level}",
            f"HEALTH_FILE={tunnel.health_file}",
        ]

    def build_tunnel_service(self) -> ServiceSpec:
        health_file = self.tunnel.health_file if self.tunnel else "/tmp/healthy"
        return ServiceSpec(
            image=self.image,
            container_name=TUNNEL_SERVICE_NAME,
            restart="unless-stopped",
            environment=self.environment(),
            volumes=[DOCKER_SOCKET_MOUNT],
            networks={self.network_name: None},
            healthcheck=HealthCheckSpec(
                test=["CMD", "test", "-f", health_file],
                interval="30s",
                timeout="10s",
                retries=3,
                start_period="60s",
            ),
            labels={
                "app.type": "tunnel",
                "app.name": TUNNEL_SERVICE_NAME,
                "app.managed": "true",
                "traefik.enable": "false",
            },
        )

    def build_default_network(self) -> NetworkSpec:
        return NetworkSpec(driver="bridge", labels={"app.managed": "true"})

    # -------------------------
    # PREVIEW / INJECT
    # -------------------------

    def preview(self, doc: ComposeDocument) -> ChangeSummary:
        """Report what inject() would do, without touching `doc`."""
        summary = ChangeSummary(tunnel_service=self.build_tunnel_service().to_dict())

        if not doc.services:
            return summary

        agent = doc.services.get(TUNNEL_SERVICE_NAME)
        if agent is None:
            summary.will_add_tunnel = True
            summary.changes.append("Add tunnel service")
        else:
            summary.has_tunnel_service = True
            summary.tunnel_problems = self.tunnel_service_problems(agent)
            if summary.tunnel_problems:
                summary.will_replace_tunnel = True
                summary.changes.append("Replace tunnel service with a compliant definition")

        if self.network_name not in doc.networks:
            summary.will_add_network = True
            summary.changes.append(f"Add {self.network_name}")

        for name, svc in doc.services.items():
            if name == TUNNEL_SERVICE_NAME and (summary.will_replace_tunnel or summary.will_add_tunnel):
                continue
            if _has_network_mode(svc):
                continue
            if self.network_name not in svc.networks:
                summary.services_needing_network.append(name)

        if summary.services_needing_network:
            summary.changes.append(
                "Add network configuration to services: "
                + ", ".join(summary.services_needing_network)
            )

        return summary

    def inject(self, doc: ComposeDocument) -> Tuple[ComposeDocument, ValidationReport]:
        """
        Return a corrected copy of `doc` and the report for that copy.

        The input document is not modified.
        """
        before = self.validate(doc)
        corrected = doc.copy()

        if not doc.services:
            return corrected, before

        plan = self.preview(doc)

        if plan.will_add_tunnel or plan.will_replace_tunnel:
            # Wholesale replacement keeps the agent at its original position
            corrected.services[TUNNEL_SERVICE_NAME] = self.build_tunnel_service()

        if plan.will_add_network:
            corrected.networks[self.network_name] = self.build_default_network()

        for name in plan.services_needing_network:
            corrected.services[name].add_network(self.network_name)

        report = self.validate(corrected)
        report.changes = list(plan.changes)

        if plan.will_add_tunnel:
            report.suggestions.append("Added tunnel service for tunnel connectivity")
        if plan.will_replace_tunnel:
            for problem in plan.tunnel_problems:
                report.suggestions.append(f"Replaced tunnel service: {problem}")

        if plan.changes:
            logger.info(f"[compose] injected tunnel: {'; '.join(plan.changes)}")

        return corrected, report

    def process(self, source: Union[bytes, str]) -> Tuple[bytes, ValidationReport]:
        """
        Parse, inject and serialize.

        Raises ComposeParseError when `source` is not a Compose document.
        """
        doc = parse_compose(source)
        corrected, report = self.inject(doc)
        return dump_compose(corrected), report


# -------------------------
# HELPERS
# -------------------------

def _has_network_mode(service: ServiceSpec) -> bool:
    return "network_mode" in service.extra


def _is_readonly_socket_mount(volume: Any) -> bool:
    if isinstance(volume, str):
        parts = volume.split(":")
        if len(parts) < 2 or parts[0] != DOCKER_SOCKET:
            return False
        options = parts[2].split(",") if len(parts) > 2 else []
        return "ro" in options
    if isinstance(volume, dict):
        return (
            volume.get("source") == DOCKER_SOCKET
            and bool(volume.get("read_only"))
        )
    return False


def _host_binding(port: Any) -> Optional[str]:
    """Host side of a port mapping, or None when only a container port is given."""
    if isinstance(port, dict):
        published = port.get("published")
        if published is None:
            return None
        protocol = port.get("protocol") or "tcp"
        host_ip = port.get("host_ip") or "0.0.0.0"
        return f"{host_ip}:{published}/{protocol}"

    text = str(port)
    spec, _, protocol = text.partition("/")
    protocol = protocol or "tcp"

    # IPv6 host addresses are bracketed: [::1]:8080:80
    host_ip = "0.0.0.0"
    if spec.startswith("["):
        end = spec.find("]")
        if end == -1:
            return None
        host_ip = spec[1:end]
        spec = spec[end + 2:]
        parts = spec.split(":")
        if len(parts) < 2:
            return None
        return f"{host_ip}:{parts[0]}/{protocol}"

    parts = spec.split(":")
    if len(parts) == 1:
        return None
    if len(parts) == 2:
        return f"{host_ip}:{parts[0]}/{protocol}"
    host_ip = parts[0] or host_ip
    return f"{host_ip}:{parts[1]}/{protocol}"


def _port_collisions(doc: ComposeDocument) -> Dict[str, List[str]]:
    used: Dict[str, List[str]] = {}
    for name, svc in doc.services.items():
        for port in svc.ports:
            binding = _host_binding(port)
            if binding is None:
                continue
            owners = used.setdefault(binding, [])
            if name not in owners:
                owners.append(name)
    return {binding: owners for binding, owners in used.items() if len(owners) > 1}
