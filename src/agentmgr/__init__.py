"""
agentmgr - upgrade engine for an agent-infrastructure manager.

This package installs, updates and rolls back self-contained component
packages and the manager's own core files on a live host, preserving user
customizations through manifest-driven three-way merging.
"""

__version__ = "0.1.0"
