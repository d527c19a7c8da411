"""Installer orchestrator: source -> staging -> manifest -> version -> current."""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from agent_installer.config import Settings, get_settings
from agent_installer.digest import sha256_file
from agent_installer.errors import MissingFieldError, UnsupportedSourceError
from agent_installer.locks import KeyedLock
from agent_installer.logging import log_context
from agent_installer.manifest import validate_agent_directory
from agent_installer.provision import EnvironmentProvisioner
from agent_installer.sources import StagedSource
from agent_installer.sources.archive import extract_dir_for, stage_archive
from agent_installer.sources.git import clone_dir_for, stage_git
from agent_installer.store import InstalledAgent, VersionStore

logger = logging.getLogger(__name__)

_STAGING_LOCKS = KeyedLock()


class InstallRequest(BaseModel):
    """Install payload as sent by the front end."""

    model_config = ConfigDict(extra="ignore")

    source_type: str
    path: str | None = None
    url: str | None = None
    revision: str | None = None
    sub_path: str | None = None


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


class AgentInstaller:
    """Install agent bundles from zip archives or git repositories.

    Each install runs as one sequential pipeline on a worker thread. Installs
    of different agents proceed concurrently; installs that share a staging
    directory or a version slot serialize on keyed locks.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: VersionStore | None = None,
        provisioner: EnvironmentProvisioner | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store or VersionStore(
            self.settings.base_dir,
            keep_failed_builds=int(self.settings.keep_failed_builds) == 1,
        )
        self.provisioner = provisioner or EnvironmentProvisioner(
            self.settings.uv_path,
            timeout_s=int(self.settings.provision_timeout_seconds),
        )

    @property
    def tmp_dir(self) -> Path:
        return self.store.tmp_dir

    async def install(self, request: InstallRequest) -> str:
        source_type = request.source_type.strip()
        if source_type == "local":
            path = _blank_to_none(request.path)
            if path is None:
                raise MissingFieldError("Missing 'path' for local installation")
            return await self.install_from_zip(Path(path))
        if source_type == "git":
            url = _blank_to_none(request.url)
            if url is None:
                raise MissingFieldError("Missing 'url' for git installation")
            return await self.install_from_git(
                url,
                revision=_blank_to_none(request.revision),
                sub_path=_blank_to_none(request.sub_path),
            )
        raise UnsupportedSourceError(f"Unsupported source type: {request.source_type}")

    async def install_from_zip(self, zip_path: Path) -> str:
        return await asyncio.to_thread(self.install_from_zip_sync, zip_path)

    async def install_from_git(
        self,
        url: str,
        revision: str | None = None,
        sub_path: str | None = None,
    ) -> str:
        return await asyncio.to_thread(self.install_from_git_sync, url, revision, sub_path)

    def install_from_zip_sync(self, zip_path: Path) -> str:
        with log_context(source="local", archive=str(zip_path)):
            content_hash = sha256_file(zip_path)
            staging_dir = extract_dir_for(self.tmp_dir, content_hash)
            with _STAGING_LOCKS.hold(str(staging_dir.absolute())):
                try:
                    staged = stage_archive(
                        zip_path,
                        self.tmp_dir,
                        max_bytes=int(self.settings.archive_max_bytes),
                        content_hash=content_hash,
                    )
                    return self._install_staged(staged)
                finally:
                    self._cleanup_staging(staging_dir)

    def install_from_git_sync(
        self,
        url: str,
        revision: str | None = None,
        sub_path: str | None = None,
    ) -> str:
        with log_context(source="git", url=url, revision=revision or "", sub_path=sub_path or ""):
            staging_dir = clone_dir_for(self.tmp_dir, url)
            with _STAGING_LOCKS.hold(str(staging_dir.absolute())):
                try:
                    staged = stage_git(
                        url,
                        self.tmp_dir,
                        revision=revision,
                        sub_path=sub_path,
                        git_binary=self.settings.git_binary,
                        timeout_s=int(self.settings.git_timeout_seconds),
                    )
                    return self._install_staged(staged)
                finally:
                    self._cleanup_staging(staging_dir)

    def _install_staged(self, staged: StagedSource) -> str:
        manifest = validate_agent_directory(staged.path)
        agent_id = manifest.id
        with log_context(agent_id=agent_id, version_ref=staged.version_ref):
            with self.store.locked(agent_id, staged.version_ref):
                version_dir = self.store.place(
                    agent_id,
                    staged.version_ref,
                    staged.path,
                    provision=lambda build_dir: self.provisioner.provision(build_dir, manifest),
                )
                self.store.activate(agent_id, version_dir)
            logger.info("Installed agent %s at version %s", agent_id, staged.version_ref)
        return agent_id

    def _cleanup_staging(self, staging_dir: Path) -> None:
        if not staging_dir.exists():
            return
        try:
            shutil.rmtree(staging_dir)
        except OSError:
            logger.warning("Failed to remove staging directory %s", staging_dir, exc_info=True)

    def list_installed(self) -> list[InstalledAgent]:
        return self.store.list_installed()

    def current_version(self, agent_id: str) -> str | None:
        return self.store.current_version(agent_id)

    def prune(self, min_age_seconds: float = 0) -> list[Path]:
        return self.store.prune(min_age_seconds)
