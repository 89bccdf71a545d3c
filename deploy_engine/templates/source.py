# deploy_engine/templates/source.py
"""Where Compose sources come from."""

import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from deploy_engine.core.errors import TemplateNotFound, ValidationError
from deploy_engine.templates import NGINX_TEMPLATE, WORDPRESS_TEMPLATE
from deploy_engine.templates.models import ComposeTemplate

logger = logging.getLogger(__name__)


TEMPLATE_REF_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")
COMPOSE_FILENAMES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")


def validate_template_ref(template_ref: str) -> None:
    if not template_ref or not TEMPLATE_REF_PATTERN.fullmatch(template_ref):
        raise ValidationError(f"invalid template reference: {template_ref!r}")


class TemplateSource(ABC):

    @abstractmethod
    def fetch_compose_source(self, template_ref: str) -> bytes:
        """Raise TemplateNotFound for unknown references."""
        raise NotImplementedError

    def list_refs(self) -> List[str]:
        return []

    def default_environment(self, template_ref: str) -> Dict[str, str]:
        """Values for the template's ${VAR} references."""
        return {}


class BuiltinTemplateSource(TemplateSource):
    """Serves the templates bundled with the package."""

    def __init__(self, templates: Optional[Iterable[ComposeTemplate]] = None):
        if templates is None:
            templates = (NGINX_TEMPLATE, WORDPRESS_TEMPLATE)
        self._templates: Dict[str, ComposeTemplate] = {t.template_id: t for t in templates}

    def get(self, template_ref: str) -> ComposeTemplate:
        template = self._templates.get(template_ref)
        if template is None:
            raise TemplateNotFound(f"template {template_ref!r} not found")
        return template

    def fetch_compose_source(self, template_ref: str) -> bytes:
        return self.get(template_ref).compose_source.encode("utf-8")

    def list_refs(self) -> List[str]:
        return sorted(self._templates)

    def default_environment(self, template_ref: str) -> Dict[str, str]:
        template = self._templates.get(template_ref)
        return dict(template.default_environment) if template else {}


class DirectoryTemplateSource(TemplateSource):
    """Reads `<root>/<ref>/docker-compose.yml` (or a compose.y[a]ml variant)."""

    def __init__(self, root: str):
        self.root = Path(root)

    def fetch_compose_source(self, template_ref: str) -> bytes:
        validate_template_ref(template_ref)
        template_dir = self.root / template_ref

        for filename in COMPOSE_FILENAMES:
            path = template_dir / filename
            if path.is_file():
                logger.debug(f"[templates] loading {path}")
                return path.read_bytes()

        raise TemplateNotFound(f"template {template_ref!r} not found in {self.root}")

    def list_refs(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            entry.name for entry in self.root.iterdir()
            if entry.is_dir() and any((entry / f).is_file() for f in COMPOSE_FILENAMES)
        )


class ChainTemplateSource(TemplateSource):
    """Tries each source in order; the first hit wins."""

    def __init__(self, sources: Iterable[TemplateSource]):
        self.sources = list(sources)

    def fetch_compose_source(self, template_ref: str) -> bytes:
        for source in self.sources:
            try:
                return source.fetch_compose_source(template_ref)
            except TemplateNotFound:
                continue
        raise TemplateNotFound(f"template {template_ref!r} not found")

    def list_refs(self) -> List[str]:
        refs = set()
        for source in self.sources:
            refs.update(source.list_refs())
        return sorted(refs)

    def default_environment(self, template_ref: str) -> Dict[str, str]:
        for source in self.sources:
            env = source.default_environment(template_ref)
            if env:
                return env
        return {}
