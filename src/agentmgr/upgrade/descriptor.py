"""
Component descriptors.

A component tree may ship a ``SKILL.md`` whose YAML front matter describes
how the component is run::

    ---
    name: web-console
    version: 1.4.0
    lifecycle:
      service:
        name: agentmgr-web-console
        entry: src/server.js
        type: pm2
      preserve:
        - data
    http_routes:
      - path: /console/*
        type: reverse_proxy
        target: localhost:3456
        strip_prefix: /console
    health_url: http://localhost:3456/health
    ---

A missing file or unparseable front matter yields an empty descriptor; the
upgrade then simply has nothing to start, preserve or route.
"""

from __future__ import annotations

import json
import re
import tomllib
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from agentmgr.logging import get_logger

logger = get_logger(__name__)

DESCRIPTOR_FILE = "SKILL.md"

_FRONT_MATTER = re.compile(r"\A---\r?\n(.*?)\r?\n---", re.DOTALL)


class ServiceSpec(BaseModel):
    """
    Declared service.

    Attributes:
        name: Supervisor service name; defaults to the prefixed component name.
        entry: Entry point relative to the component directory.
        type: Supervisor kind the component was written for.
    """

    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    entry: str | None = None
    type: str = "pm2"


class LifecycleSpec(BaseModel):
    """
    Lifecycle section.

    Attributes:
        service: Declared service, if any.
        preserve: Top-level names never touched by upgrades or restores.
    """

    model_config = ConfigDict(extra="ignore")

    service: ServiceSpec | None = None
    preserve: list[str] = Field(default_factory=list)

    @field_validator("preserve")
    @classmethod
    def validate_preserve(cls, v: list[str]) -> list[str]:
        """Keep only plain top-level names."""
        cleaned = []
        for entry in v:
            name = str(entry).strip().strip("/")
            if name and "/" not in name and name not in (".", ".."):
                cleaned.append(name)
        return cleaned


class HttpRoute(BaseModel):
    """
    One reverse-proxy route.

    Attributes:
        path: Request path matcher.
        type: Route kind; only ``reverse_proxy`` is generated.
        target: Upstream address.
        strip_prefix: Prefix removed before proxying.
    """

    model_config = ConfigDict(extra="ignore")

    path: str
    type: str = "reverse_proxy"
    target: str
    strip_prefix: str | None = None


class ComponentDescriptor(BaseModel):
    """Parsed SKILL.md front matter."""

    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    version: str | None = None
    lifecycle: LifecycleSpec = Field(default_factory=LifecycleSpec)
    http_routes: list[HttpRoute] = Field(default_factory=list)
    health_url: str | None = None

    @field_validator("version", mode="before")
    @classmethod
    def coerce_version(cls, v: object) -> str | None:
        """YAML reads ``1.0`` as a float; keep versions as text."""
        if v is None:
            return None
        return str(v)

    @property
    def service(self) -> ServiceSpec | None:
        return self.lifecycle.service

    @property
    def preserve(self) -> list[str]:
        return self.lifecycle.preserve

    def service_name(self, component: str, prefix: str) -> str:
        """Return the declared service name or ``<prefix><component>``."""
        if self.service and self.service.name:
            return self.service.name
        return f"{prefix}{component}"


def load_descriptor(directory: Path) -> ComponentDescriptor:
    """
    Parse ``SKILL.md`` in ``directory``.

    Returns:
        The descriptor; empty when the file is missing or malformed.
    """
    path = directory / DESCRIPTOR_FILE
    if not path.is_file():
        return ComponentDescriptor()

    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Cannot read descriptor", extra={"path": str(path), "error": str(e)})
        return ComponentDescriptor()

    match = _FRONT_MATTER.match(content)
    if not match:
        return ComponentDescriptor()

    try:
        data = yaml.safe_load(match.group(1)) or {}
        if not isinstance(data, dict):
            raise ValueError("front matter is not a mapping")
        return ComponentDescriptor.model_validate(data)
    except (yaml.YAMLError, ValueError, ValidationError) as e:
        logger.warning(
            "Failed to parse descriptor front matter",
            extra={"path": str(path), "error": str(e)},
        )
        return ComponentDescriptor()


def read_version(directory: Path) -> str | None:
    """
    Return the version of the tree in ``directory``.

    The descriptor is consulted first, then ``package.json`` and finally
    ``pyproject.toml``.
    """
    descriptor = load_descriptor(directory)
    if descriptor.version:
        return descriptor.version

    package_json = directory / "package.json"
    if package_json.is_file():
        try:
            version = json.loads(package_json.read_text(encoding="utf-8")).get("version")
            if version:
                return str(version)
        except (OSError, ValueError, AttributeError):
            pass

    pyproject = directory / "pyproject.toml"
    if pyproject.is_file():
        try:
            with open(pyproject, "rb") as f:
                version = tomllib.load(f).get("project", {}).get("version")
            if version:
                return str(version)
        except (OSError, tomllib.TOMLDecodeError):
            pass

    return None
