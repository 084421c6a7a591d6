"""
Hook migration for the agent settings file.

The settings file maps hook events to groups of command hooks::

    {
      "hooks": {
        "SessionStart": [
          {"matcher": "startup",
           "hooks": [{"type": "command",
                      "command": "node ~/agent/skills/memory/scripts/init.js",
                      "timeout": 10}]}
        ]
      },
      "statusLine": {"type": "command", "command": "..."}
    }

Hooks are identified by the script they run (the last path-like token of the
command, with ``~/`` expanded), so cosmetic changes such as an added
environment-sourcing prefix do not make a hook look new. Migration adds
template hooks that are missing, updates changed command or timeout, and
removes installed hooks the template dropped, but only when they belong to a
core skill shipped by the template. Hooks added by users or third-party
components are left alone.
"""

from __future__ import annotations

import copy
import json
import os
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from agentmgr.errors import FailedPreconditionError
from agentmgr.logging import get_logger

logger = get_logger(__name__)

_SKILL_NAME = re.compile(r"skills/([^/]+)/")
_HAS_EXTENSION = re.compile(r"\.\w+$")


class HookMigrationReport(BaseModel):
    """
    Changes made (or, for a dry run, proposed) to the settings file.

    Entries are ``"<event>: <command>"`` strings.
    """

    added: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    status_line_changed: bool = False
    dry_run: bool = False
    template_found: bool = True

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.removed or self.status_line_changed)

    def summary(self) -> str:
        if not self.template_found:
            return "no settings template"
        if not self.changed:
            return "hooks up to date"
        parts = [
            f"{len(self.added)} added",
            f"{len(self.updated)} updated",
            f"{len(self.removed)} removed",
        ]
        if self.status_line_changed:
            parts.append("statusLine updated")
        return ", ".join(parts)


def extract_script_path(command: Any, home: Path) -> str:
    """
    Return the script a hook command runs.

    The last whitespace-separated token that contains ``/`` and ends in a
    file extension wins; surrounding quotes are dropped and a leading ``~/``
    is expanded against ``home``. Commands without such a token are their
    own key.

    Example:
        >>> extract_script_path("source ~/.nvm/nvm.sh && node ~/a/skills/x/run.js", Path("/home/u"))
        '/home/u/a/skills/x/run.js'
    """
    if not isinstance(command, str):
        return ""

    result = None
    for raw in command.split():
        token = raw.strip("\"'")
        if "/" in token and _HAS_EXTENSION.search(token):
            result = token

    if result is None:
        return command
    if result.startswith("~/"):
        return str(home / result[2:])
    return result


def extract_skill_name(command: Any) -> str | None:
    """Return the skill a hook command belongs to (``skills/<name>/``)."""
    if not isinstance(command, str):
        return None
    match = _SKILL_NAME.search(command)
    return match.group(1) if match else None


def command_hooks(group: Any) -> list[dict[str, Any]]:
    """Return the command hooks of a matcher group, ignoring malformed entries."""
    if not isinstance(group, dict) or not isinstance(group.get("hooks"), list):
        return []
    return [h for h in group["hooks"] if isinstance(h, dict) and h.get("type") == "command"]


def _groups(hooks: dict[str, Any], event: str) -> list[Any]:
    groups = hooks.get(event)
    return groups if isinstance(groups, list) else []


def migrate_hooks(
    installed: dict[str, Any],
    template: dict[str, Any],
    home: Path,
    *,
    dry_run: bool = False,
) -> tuple[dict[str, Any], HookMigrationReport]:
    """
    Migrate the hooks of ``installed`` settings towards ``template``.

    ``installed`` is not mutated.

    Returns:
        The migrated settings and the report. For a dry run the returned
        settings equal the input.
    """
    report = HookMigrationReport(dry_run=dry_run)
    settings = copy.deepcopy(installed)
    template_hooks = template.get("hooks") if isinstance(template.get("hooks"), dict) else {}

    core_skills: set[str] = set()
    for event in template_hooks:
        for group in _groups(template_hooks, event):
            for hook in command_hooks(group):
                name = extract_skill_name(hook.get("command"))
                if name:
                    core_skills.add(name)

    if not isinstance(settings.get("hooks"), dict):
        settings["hooks"] = {}
    hooks: dict[str, Any] = settings["hooks"]

    # Forward pass: add missing, update modified.
    for event in template_hooks:
        if not isinstance(template_hooks[event], list):
            continue
        if not isinstance(hooks.get(event), list):
            hooks[event] = []
        installed_groups = hooks[event]

        for template_group in template_hooks[event]:
            for template_hook in command_hooks(template_group):
                key = extract_script_path(template_hook.get("command"), home)

                matched = None
                for group in installed_groups:
                    matched = next(
                        (
                            h
                            for h in command_hooks(group)
                            if extract_script_path(h.get("command"), home) == key
                        ),
                        None,
                    )
                    if matched is not None:
                        break

                entry = f"{event}: {template_hook.get('command')}"
                if matched is None:
                    matcher = template_group.get("matcher")
                    target = None
                    if matcher is not None:
                        target = next(
                            (
                                g
                                for g in installed_groups
                                if isinstance(g, dict) and g.get("matcher") == matcher
                                and isinstance(g.get("hooks"), list)
                            ),
                            None,
                        )
                    if target is None:
                        target = {"hooks": []}
                        if matcher is not None:
                            target["matcher"] = matcher
                        installed_groups.append(target)
                    target["hooks"].append(dict(template_hook))
                    report.added.append(entry)
                elif (
                    matched.get("command") != template_hook.get("command")
                    or matched.get("timeout") != template_hook.get("timeout")
                ):
                    matched["command"] = template_hook.get("command")
                    if "timeout" in template_hook:
                        matched["timeout"] = template_hook["timeout"]
                    report.updated.append(entry)

    # Reverse pass: remove obsolete hooks of core skills.
    for event in list(hooks):
        groups = hooks[event]
        if not isinstance(groups, list):
            continue
        template_keys = {
            extract_script_path(h.get("command"), home)
            for g in _groups(template_hooks, event)
            for h in command_hooks(g)
        }

        for group in list(groups):
            if not isinstance(group, dict) or not isinstance(group.get("hooks"), list):
                continue
            for hook in list(group["hooks"]):
                if not isinstance(hook, dict) or hook.get("type") != "command":
                    continue
                skill = extract_skill_name(hook.get("command"))
                if skill is None or skill not in core_skills:
                    continue
                if extract_script_path(hook.get("command"), home) in template_keys:
                    continue
                group["hooks"].remove(hook)
                report.removed.append(f"{event}: {hook.get('command')}")
            if not group["hooks"]:
                groups.remove(group)

        if not groups:
            del hooks[event]

    # Top-level statusLine follows the template.
    if template.get("statusLine"):
        if settings.get("statusLine") != template["statusLine"]:
            settings["statusLine"] = copy.deepcopy(template["statusLine"])
            report.status_line_changed = True
    elif "statusLine" in settings:
        del settings["statusLine"]
        report.status_line_changed = True

    if dry_run:
        return installed, report
    return settings, report


def _load_json(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise FailedPreconditionError(
            f"Cannot parse settings file {path}: {e}",
            details={"path": str(path)},
        ) from e
    if not isinstance(data, dict):
        raise FailedPreconditionError(
            f"Settings file {path} is not a JSON object",
            details={"path": str(path)},
        )
    return data


def migrate_settings_file(
    installed_path: Path,
    template_path: Path,
    home: Path,
    *,
    dry_run: bool = False,
) -> HookMigrationReport:
    """
    Migrate the settings file at ``installed_path`` from ``template_path``.

    A missing template means there is nothing to migrate. A missing
    installed file is treated as empty settings.

    Raises:
        FailedPreconditionError: If either file exists but is not valid JSON.
    """
    if not template_path.is_file():
        return HookMigrationReport(dry_run=dry_run, template_found=False)

    template = _load_json(template_path)
    installed = _load_json(installed_path) if installed_path.exists() else {}

    migrated, report = migrate_hooks(installed, template, home, dry_run=dry_run)

    if report.changed and not dry_run:
        installed_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = installed_path.with_suffix(installed_path.suffix + ".tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(migrated, f, indent=2)
            f.write("\n")
        os.replace(temp_path, installed_path)

    logger.info(
        "Settings hooks migrated",
        extra={"path": str(installed_path), "summary": report.summary(), "dry_run": dry_run},
    )
    return report
