"""Test tunnel-agent validation and injection."""

import pytest
import yaml

from deploy_engine.compose.document import parse_compose
from deploy_engine.compose.injector import (
    DEFAULT_NETWORK,
    DOCKER_SOCKET_MOUNT,
    TUNNEL_SERVICE_NAME,
    TunnelInjector,
)
from deploy_engine.core.errors import ComposeParseError


ONE_SERVICE = """\
services:
  web:
    image: nginx:alpine
    ports:
      - "8080:80"
"""

BROKEN_AGENT = """\
services:
  web:
    image: nginx:alpine
    networks: [app_network]
  newt:
    image: fosrl/newt:latest
    environment:
      - PANGOLIN_ENDPOINT=https://old.example.com
      - NEWT_ID=old
    volumes:
      - /var/run/docker.sock:/var/run/docker.sock:ro
    networks: [app_network]
networks:
  app_network:
    driver: bridge
"""


@pytest.fixture
def injector(tunnel_config):
    return TunnelInjector(tunnel_config)


class TestValidate:
    """validate() reports problems without changing anything."""

    def test_document_without_services_is_invalid(self, injector):
        """Test that an empty document is rejected."""
        report = injector.validate(parse_compose("services: {}"))

        assert report.valid is False
        assert report.issues == ["No services defined in docker-compose file"]

    def test_missing_tunnel_is_only_a_suggestion(self, injector):
        """Test that a document without the agent is still valid."""
        report = injector.validate(parse_compose(ONE_SERVICE))

        assert report.valid is True
        assert report.has_tunnel is False
        assert "Add tunnel service for remote access" in report.suggestions

    def test_missing_networks_are_warnings(self, injector):
        """Test that detached services only produce warnings."""
        report = injector.validate(parse_compose(ONE_SERVICE))

        assert report.network_ok is False
        assert "Services without network configuration: web" in report.warnings

    def test_missing_env_var_is_named_in_issues(self, injector):
        """Test that an agent missing a required variable makes the report invalid."""
        report = injector.validate(parse_compose(BROKEN_AGENT))

        assert report.valid is False
        assert report.has_tunnel is True
        assert any("NEWT_SECRET" in issue for issue in report.issues)
        assert all(issue.startswith("Tunnel service configuration error: ") for issue in report.issues)

    def test_wrong_image_and_writable_socket_are_issues(self, injector):
        """Test the image and socket-mount checks."""
        doc = parse_compose("""\
services:
  newt:
    image: alpine:3
    environment:
      PANGOLIN_ENDPOINT: a
      NEWT_ID: b
      NEWT_SECRET: c
    volumes:
      - /var/run/docker.sock:/var/run/docker.sock
""")
        report = injector.validate(doc)

        assert report.valid is False
        assert any("incorrect image: alpine:3" in issue for issue in report.issues)
        assert any("read-only Docker socket" in issue for issue in report.issues)

    def test_long_syntax_socket_mount_is_accepted(self, injector):
        """Test that a read_only long-syntax mount satisfies the socket check."""
        doc = parse_compose("""\
services:
  newt:
    image: fosrl/newt:1.2
    environment: [PANGOLIN_ENDPOINT=a, NEWT_ID=b, NEWT_SECRET=c]
    volumes:
      - type: bind
        source: /var/run/docker.sock
        target: /var/run/docker.sock
        read_only: true
""")
        assert injector.tunnel_service_problems(doc.services["newt"]) == []

    def test_port_collisions_are_warnings(self, injector):
        """Test that two services publishing the same host port are reported."""
        doc = parse_compose("""\
services:
  a:
    image: nginx
    ports: ["8080:80"]
  b:
    image: nginx
    ports: ["0.0.0.0:8080:8080"]
  c:
    image: nginx
    ports: ["127.0.0.1:8080:80", "9090"]
""")
        report = injector.validate(doc)

        assert report.valid is True
        assert "Port 0.0.0.0:8080/tcp is used by multiple services: a, b" in report.warnings
        assert not any("127.0.0.1" in w for w in report.warnings)


class TestInject:
    """inject() returns a corrected copy."""

    def test_adds_agent_and_network(self, injector):
        """Test that a one-service document gains the agent on the default network."""
        doc = parse_compose(ONE_SERVICE)
        corrected, report = injector.inject(doc)

        assert report.valid is True
        assert report.has_tunnel is True
        assert report.network_ok is True
        assert TUNNEL_SERVICE_NAME in corrected.services
        assert DEFAULT_NETWORK in corrected.networks
        assert DEFAULT_NETWORK in corrected.services["web"].networks
        assert DEFAULT_NETWORK in corrected.services[TUNNEL_SERVICE_NAME].networks
        assert report.changes == [
            "Add tunnel service",
            f"Add {DEFAULT_NETWORK}",
            "Add network configuration to services: web",
        ]

    def test_input_document_is_not_modified(self, injector):
        """Test that inject works on a copy."""
        doc = parse_compose(ONE_SERVICE)
        injector.inject(doc)

        assert TUNNEL_SERVICE_NAME not in doc.services
        assert doc.networks == {}

    def test_agent_contract(self, injector, tunnel_config):
        """Test the synthesized agent service definition."""
        corrected, _ = injector.inject(parse_compose(ONE_SERVICE))
        agent = corrected.services[TUNNEL_SERVICE_NAME].to_dict()

        assert agent["image"] == "fosrl/newt:latest"
        assert agent["restart"] == "unless-stopped"
        assert f"PANGOLIN_ENDPOINT={tunnel_config.endpoint}" in agent["environment"]
        assert f"NEWT_ID={tunnel_config.agent_id}" in agent["environment"]
        assert f"NEWT_SECRET={tunnel_config.secret}" in agent["environment"]
        assert agent["volumes"] == [DOCKER_SOCKET_MOUNT]
        assert agent["healthcheck"] == {
            "test": ["CMD", "test", "-f", "/tmp/healthy"],
            "interval": "30s",
            "timeout": "10s",
            "retries": 3,
            "start_period": "60s",
        }
        assert agent["labels"]["app.managed"] == "true"
        assert agent["labels"]["traefik.enable"] == "false"
        assert corrected.networks[DEFAULT_NETWORK].to_dict() == {
            "driver": "bridge",
            "labels": {"app.managed": "true"},
        }

    def test_broken_agent_is_replaced_entirely(self, injector, tunnel_config):
        """Test that a non-compliant agent is replaced, not patched."""
        corrected, report = injector.inject(parse_compose(BROKEN_AGENT))
        agent = corrected.services[TUNNEL_SERVICE_NAME]

        assert report.valid is True
        assert agent.env_value("NEWT_ID") == tunnel_config.agent_id
        assert agent.env_value("PANGOLIN_ENDPOINT") == tunnel_config.endpoint
        assert "Replace tunnel service with a compliant definition" in report.changes
        assert any("NEWT_SECRET" in s for s in report.suggestions)

    def test_compliant_agent_is_kept(self, injector):
        """Test that a valid agent definition is left alone."""
        source = BROKEN_AGENT.replace(
            "      - NEWT_ID=old\n",
            "      - NEWT_ID=old\n      - NEWT_SECRET=keep\n",
        )
        corrected, report = injector.inject(parse_compose(source))

        assert report.changes == []
        assert corrected.services[TUNNEL_SERVICE_NAME].env_value("NEWT_SECRET") == "keep"

    def test_network_mode_services_are_not_attached(self, injector):
        """Test that services using network_mode keep their networking."""
        doc = parse_compose("""\
services:
  web:
    image: nginx
  sidecar:
    image: busybox
    network_mode: "service:web"
""")
        corrected, _ = injector.inject(doc)

        assert corrected.services["sidecar"].networks == {}
        assert DEFAULT_NETWORK in corrected.services["web"].networks

    def test_inject_is_idempotent(self, injector):
        """Test that a second pass makes no changes."""
        once, _ = injector.inject(parse_compose(ONE_SERVICE))
        twice, report = injector.inject(once)

        assert report.changes == []
        assert twice.to_dict() == once.to_dict()

    def test_inject_without_services_changes_nothing(self, injector):
        """Test that an empty document is returned unchanged with an invalid report."""
        corrected, report = injector.inject(parse_compose("services: {}"))

        assert report.valid is False
        assert corrected.services == {}

    def test_preview_matches_inject(self, injector):
        """Test that the dry run lists the same changes inject applies."""
        doc = parse_compose(ONE_SERVICE)
        summary = injector.preview(doc)
        _, report = injector.inject(doc)

        assert summary.will_add_tunnel is True
        assert summary.will_add_network is True
        assert summary.services_needing_network == ["web"]
        assert summary.changes == report.changes

    def test_process_round_trips_bytes(self, injector):
        """Test the parse-inject-serialize pipeline."""
        output, report = injector.process(ONE_SERVICE.encode("utf-8"))
        data = yaml.safe_load(output)

        assert report.valid is True
        assert set(data["services"]) == {"web", TUNNEL_SERVICE_NAME}
        assert data["services"]["web"]["networks"] == [DEFAULT_NETWORK]

    def test_process_rejects_malformed_source(self, injector):
        """Test that unparseable input raises."""
        with pytest.raises(ComposeParseError):
            injector.process("services: [")
