"""Versioned, atomically activated installation of agent bundles."""

from agent_installer.installer import AgentInstaller, InstallRequest
from agent_installer.store import InstalledAgent, VersionStore

__all__ = ["AgentInstaller", "InstallRequest", "InstalledAgent", "VersionStore"]
