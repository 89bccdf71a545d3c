# deploy_engine/templates/models.py
"""Bundled Compose template model."""

from dataclasses import dataclass, field
from typing import Dict


@dataclass(frozen=True)
class ComposeTemplate:
    template_id: str
    name: str
    description: str
    version: str
    category: str

    compose_source: str

    # Values referenced by ${VAR} interpolation in compose_source
    default_environment: Dict[str, str] = field(default_factory=dict)
