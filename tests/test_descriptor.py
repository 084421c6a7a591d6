"""
Tests for component descriptors.

Tests cover:
- Parsing SKILL.md front matter (service, preserve, routes, health URL)
- Empty descriptors for missing or malformed files
- Preserve list cleaning and version coercion
- Version lookup fallbacks (SKILL.md, package.json, pyproject.toml)
"""

from __future__ import annotations

from pathlib import Path

from conftest import write_tree

from agentmgr.upgrade.descriptor import (
    ComponentDescriptor,
    LifecycleSpec,
    load_descriptor,
    read_version,
)

FULL_DESCRIPTOR = """---
name: web-console
version: 1.4.0
lifecycle:
  service:
    name: console-svc
    entry: src/server.js
  preserve:
    - data
    - /logs/
http_routes:
  - path: /console/*
    target: localhost:3456
    strip_prefix: /console
health_url: http://localhost:3456/health
unknown_key: ignored
---

# Web console
"""


# =============================================================================
# Parsing
# =============================================================================


class TestLoadDescriptor:
    """Tests for load_descriptor."""

    def test_full_descriptor(self, tmp_path: Path) -> None:
        """Test that every section is parsed."""
        write_tree(tmp_path, {"SKILL.md": FULL_DESCRIPTOR})

        descriptor = load_descriptor(tmp_path)

        assert descriptor.name == "web-console"
        assert descriptor.version == "1.4.0"
        assert descriptor.service is not None
        assert descriptor.service.entry == "src/server.js"
        assert descriptor.service.type == "pm2"
        assert descriptor.preserve == ["data", "logs"]
        [route] = descriptor.http_routes
        assert route.path == "/console/*"
        assert route.type == "reverse_proxy"
        assert route.strip_prefix == "/console"
        assert descriptor.health_url == "http://localhost:3456/health"

    def test_service_name(self, tmp_path: Path) -> None:
        """Test declared and default service names."""
        write_tree(tmp_path, {"SKILL.md": FULL_DESCRIPTOR})

        assert load_descriptor(tmp_path).service_name("web-console", "agentmgr-") == "console-svc"
        assert ComponentDescriptor().service_name("web-console", "agentmgr-") == (
            "agentmgr-web-console"
        )

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that a tree without SKILL.md gives an empty descriptor."""
        descriptor = load_descriptor(tmp_path)

        assert descriptor == ComponentDescriptor()
        assert descriptor.service is None
        assert descriptor.preserve == []

    def test_no_front_matter(self, tmp_path: Path) -> None:
        """Test that plain markdown gives an empty descriptor."""
        write_tree(tmp_path, {"SKILL.md": "# Just docs\n"})

        assert load_descriptor(tmp_path) == ComponentDescriptor()

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test that broken YAML gives an empty descriptor."""
        write_tree(tmp_path, {"SKILL.md": "---\nname: [unclosed\n---\n"})

        assert load_descriptor(tmp_path) == ComponentDescriptor()

    def test_front_matter_not_a_mapping(self, tmp_path: Path) -> None:
        """Test that a YAML list gives an empty descriptor."""
        write_tree(tmp_path, {"SKILL.md": "---\n- a\n- b\n---\n"})

        assert load_descriptor(tmp_path) == ComponentDescriptor()

    def test_invalid_route(self, tmp_path: Path) -> None:
        """Test that a route without a target invalidates the descriptor."""
        write_tree(tmp_path, {"SKILL.md": "---\nhttp_routes:\n  - path: /x\n---\n"})

        assert load_descriptor(tmp_path).http_routes == []

    def test_numeric_version_is_text(self, tmp_path: Path) -> None:
        """Test that a YAML float version is kept as a string."""
        write_tree(tmp_path, {"SKILL.md": "---\nversion: 2.0\n---\n"})

        assert load_descriptor(tmp_path).version == "2.0"


class TestPreserveValidation:
    """Tests for the preserve list validator."""

    def test_nested_and_special_names_are_dropped(self) -> None:
        """Test that only plain top-level names survive."""
        lifecycle = LifecycleSpec(preserve=["data", "a/b", ".", "..", "", "  cache/ "])

        assert lifecycle.preserve == ["data", "cache"]


# =============================================================================
# Version lookup
# =============================================================================


class TestReadVersion:
    """Tests for read_version."""

    def test_descriptor_wins(self, tmp_path: Path) -> None:
        """Test that SKILL.md takes precedence over package.json."""
        write_tree(
            tmp_path,
            {"SKILL.md": "---\nversion: 1.0.0\n---\n", "package.json": '{"version": "9.9.9"}'},
        )

        assert read_version(tmp_path) == "1.0.0"

    def test_package_json(self, tmp_path: Path) -> None:
        """Test the package.json fallback."""
        write_tree(tmp_path, {"package.json": '{"name": "x", "version": "3.1.0"}'})

        assert read_version(tmp_path) == "3.1.0"

    def test_pyproject(self, tmp_path: Path) -> None:
        """Test the pyproject.toml fallback."""
        write_tree(tmp_path, {"pyproject.toml": '[project]\nname = "x"\nversion = "0.4.2"\n'})

        assert read_version(tmp_path) == "0.4.2"

    def test_broken_package_json_falls_through(self, tmp_path: Path) -> None:
        """Test that unreadable manifests are skipped."""
        write_tree(
            tmp_path,
            {"package.json": "{not json", "pyproject.toml": '[project]\nversion = "1.2.3"\n'},
        )

        assert read_version(tmp_path) == "1.2.3"

    def test_no_version(self, tmp_path: Path) -> None:
        """Test that None is returned when nothing declares a version."""
        write_tree(tmp_path, {"README.md": "hi\n"})

        assert read_version(tmp_path) is None
