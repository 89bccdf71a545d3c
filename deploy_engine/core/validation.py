#deploy_engine\core\validation.py
import re
from typing import Any, Dict, Optional

from deploy_engine.core.errors import InvalidStackName, ValidationError
from deploy_engine.core.models import (
    Deployment,
    DeploymentConfig,
    DeploymentStatus,
    TunnelConfig,
)


STACK_NAME_MAX_LENGTH = 63
STACK_NAME_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9_-]*")
ENV_KEY_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def is_valid_stack_name(name: str) -> bool:
    if not name or len(name) > STACK_NAME_MAX_LENGTH:
        return False
    return STACK_NAME_PATTERN.fullmatch(name) is not None


def validate_stack_name(name: str) -> None:
    if not name or not name.strip():
        raise InvalidStackName("stack name is required")

    if len(name) > STACK_NAME_MAX_LENGTH:
        raise InvalidStackName(
            f"stack name must be at most {STACK_NAME_MAX_LENGTH} characters"
        )

    if not STACK_NAME_PATTERN.fullmatch(name):
        raise InvalidStackName(
            "stack name must start with a letter or digit and contain only "
            "letters, digits, '-' and '_'"
        )


def validate_tunnel_config(tunnel: TunnelConfig) -> None:
    if not tunnel.endpoint or not tunnel.endpoint.strip():
        raise ValidationError("tunnel endpoint is required")

    if not tunnel.agent_id or not tunnel.agent_id.strip():
        raise ValidationError("tunnel agent id is required")

    if not tunnel.secret or not tunnel.secret.strip():
        raise ValidationError("tunnel secret is required")


def build_deployment_config(
    environment: Optional[Dict[str, Any]],
    tunnel_options: Optional[Dict[str, Any]],
    auto_start: bool = True,
) -> DeploymentConfig:
    """Validate raw request input into a DeploymentConfig."""
    env = {}
    for key, value in (environment or {}).items():
        if not isinstance(key, str) or not ENV_KEY_PATTERN.fullmatch(key):
            raise ValidationError(
                f"environment key {key!r} must start with a letter or '_' and contain "
                f"only letters, digits and '_'"
            )
        text = "" if value is None else str(value)
        if "\n" in text or "\r" in text:
            raise ValidationError(f"environment value for {key!r} must be a single line")
        env[key] = text

    tunnel = None
    if tunnel_options is not None:
        if isinstance(tunnel_options, TunnelConfig):
            tunnel = tunnel_options
        elif isinstance(tunnel_options, dict):
            tunnel = TunnelConfig.from_dict(tunnel_options)
        else:
            raise ValidationError("tunnel options must be a mapping")
        validate_tunnel_config(tunnel)

    return DeploymentConfig(environment=env, tunnel=tunnel, auto_start=auto_start)


def validate_new_deployment(deployment: Deployment) -> None:
    # -------------------------
    # Identity
    # -------------------------
    if not deployment.deployment_id:
        raise ValidationError("deployment_id is required")

    if not deployment.template_ref or not deployment.template_ref.strip():
        raise ValidationError("template reference is required")

    validate_stack_name(deployment.stack_name)

    # -------------------------
    # Lifecycle invariants
    # -------------------------
    if deployment.status != DeploymentStatus.PENDING:
        raise ValidationError("new deployment must start in pending state")

    if deployment.tunnel_url or deployment.tunnel_active:
        raise ValidationError("tunnel must not be active at creation")

    if deployment.config.tunnel is not None:
        validate_tunnel_config(deployment.config.tunnel)
