"""On-disk version store for installed agents.

Layout, relative to the application base directory::

    agents/<agent_id>/<version_ref>/    one directory per installed version
    agents/<agent_id>/current           symlink naming the active version
    tmp/                                staging owned by in-flight installs

A version is copied and provisioned under a sibling build directory
and renamed into its final path only once it is complete, so the final path
never holds a half-written tree. ``current`` is swapped by renaming a freshly
created link over it, so readers see either the old or the new target.
"""

from __future__ import annotations

import logging
import os
import shutil
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_installer.errors import ActivationError, InstallIOError, InstallerError
from agent_installer.locks import KeyedLock
from agent_installer.manifest import AgentManifest, validate_agent_directory

logger = logging.getLogger(__name__)

CURRENT_LINK = "current"
BUILD_MARKER = ".staging-"
TRASH_MARKER = ".trash-"
LINK_MARKER = ".current-"
# Acquisition artifacts that are never part of an agent payload.
SKIPPED_ENTRIES = (".git", ".hg", ".svn", ".venv")

_VERSION_LOCKS = KeyedLock()

ProvisionHook = Callable[[Path], object]


@dataclass(slots=True)
class InstalledAgent:
    manifest: AgentManifest
    version_ref: str
    path: Path

    def to_dict(self) -> dict[str, object]:
        return {
            "manifest": self.manifest.model_dump(),
            "version_ref": self.version_ref,
            "path": str(self.path),
        }


def _sibling_name(base: str, marker: str) -> str:
    return f"{base}{marker}{uuid.uuid4().hex[:12]}"


def _is_transient(name: str) -> bool:
    return any(marker in name for marker in (BUILD_MARKER, TRASH_MARKER, LINK_MARKER))


def _older_than(path: Path, cutoff: float | None) -> bool:
    if cutoff is None:
        return True
    try:
        return path.lstat().st_mtime <= cutoff
    except FileNotFoundError:
        return False


class VersionStore:
    """Map ``(agent_id, version_ref)`` pairs to directories under ``base_dir``."""

    def __init__(self, base_dir: Path, *, keep_failed_builds: bool = False) -> None:
        self.base_dir = base_dir
        self.keep_failed_builds = keep_failed_builds

    @property
    def agents_dir(self) -> Path:
        return self.base_dir / "agents"

    @property
    def tmp_dir(self) -> Path:
        return self.base_dir / "tmp"

    def agent_root(self, agent_id: str) -> Path:
        return self.agents_dir / agent_id

    def version_dir(self, agent_id: str, version_ref: str) -> Path:
        return self.agent_root(agent_id) / version_ref

    def current_link(self, agent_id: str) -> Path:
        return self.agent_root(agent_id) / CURRENT_LINK

    @contextmanager
    def locked(self, agent_id: str, version_ref: str) -> Iterator[None]:
        """Serialize work on one ``(agent_id, version_ref)`` slot.

        Re-entrant, so callers may hold it across :meth:`place` and
        :meth:`activate`, which take it themselves.
        """
        key = str(self.version_dir(agent_id, version_ref).absolute())
        with _VERSION_LOCKS.hold(key):
            yield

    def place(
        self,
        agent_id: str,
        version_ref: str,
        source_dir: Path,
        provision: ProvisionHook | None = None,
    ) -> Path:
        """Build ``source_dir`` into the version slot and return its final path.

        Any previous directory in the slot is replaced wholesale; nothing is
        merged. If ``provision`` raises, the slot is left untouched and the
        error propagates.
        """
        with self.locked(agent_id, version_ref):
            target = self.version_dir(agent_id, version_ref)
            build_dir = target.with_name(_sibling_name(version_ref, BUILD_MARKER))
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copytree(
                    source_dir,
                    build_dir,
                    symlinks=True,
                    ignore=shutil.ignore_patterns(*SKIPPED_ENTRIES),
                )
            except OSError as exc:
                shutil.rmtree(build_dir, ignore_errors=True)
                raise InstallIOError(
                    f"failed to copy {source_dir} into {build_dir}: {exc}"
                ) from exc

            if provision is not None:
                try:
                    provision(build_dir)
                except Exception:
                    self._discard_failed_build(build_dir)
                    raise

            self._swap_into_place(build_dir, target)
            logger.info("Placed %s/%s at %s", agent_id, version_ref, target)
            return target

    def _discard_failed_build(self, build_dir: Path) -> None:
        if self.keep_failed_builds:
            logger.warning("Keeping failed build for inspection: %s", build_dir)
            return
        shutil.rmtree(build_dir, ignore_errors=True)

    def _swap_into_place(self, build_dir: Path, target: Path) -> None:
        trash: Path | None = None
        try:
            if target.exists() or target.is_symlink():
                trash = target.with_name(_sibling_name(target.name, TRASH_MARKER))
                os.replace(target, trash)
            os.replace(build_dir, target)
        except OSError as exc:
            if trash is not None and not target.exists():
                try:
                    os.replace(trash, target)
                    trash = None
                except OSError:
                    logger.error("Failed to restore previous build %s", trash)
            shutil.rmtree(build_dir, ignore_errors=True)
            raise InstallIOError(f"failed to move build into {target}: {exc}") from exc
        if trash is not None:
            try:
                shutil.rmtree(trash)
            except OSError:
                logger.warning("Failed to remove replaced build %s", trash, exc_info=True)

    def activate(self, agent_id: str, version_dir: Path) -> Path:
        """Point ``current`` at ``version_dir`` with a single atomic rename."""
        version_ref = version_dir.name
        link = self.current_link(agent_id)
        with self.locked(agent_id, version_ref):
            if version_dir.absolute() != self.version_dir(agent_id, version_ref).absolute():
                raise ActivationError(
                    f"cannot activate {agent_id}: {version_dir} is not a version of this agent"
                )
            if not version_dir.is_dir():
                raise ActivationError(
                    f"cannot activate {agent_id}: version directory {version_dir} is missing"
                )
            temp_link = link.with_name(_sibling_name(CURRENT_LINK, LINK_MARKER))
            try:
                os.symlink(version_ref, temp_link, target_is_directory=True)
                os.replace(temp_link, link)
            except OSError as exc:
                try:
                    temp_link.unlink()
                except FileNotFoundError:
                    pass
                except OSError:
                    logger.warning("Failed to remove temporary link %s", temp_link)
                raise ActivationError(
                    f"Failed to create 'current' symlink for {agent_id} at {link}: {exc}"
                ) from exc
        logger.info("Activated %s -> %s", agent_id, version_ref)
        return link

    def current_version(self, agent_id: str) -> str | None:
        """Version reference ``current`` names, or None when not activated."""
        link = self.current_link(agent_id)
        try:
            target = os.readlink(link)
        except OSError:
            return None
        version_ref = Path(target).name
        if not (link.parent / version_ref).is_dir():
            return None
        return version_ref

    def resolve_current(self, agent_id: str) -> Path | None:
        version_ref = self.current_version(agent_id)
        if version_ref is None:
            return None
        return self.version_dir(agent_id, version_ref)

    def list_versions(self, agent_id: str) -> list[str]:
        root = self.agent_root(agent_id)
        if not root.is_dir():
            return []
        return sorted(
            child.name
            for child in root.iterdir()
            if child.name != CURRENT_LINK
            and not child.is_symlink()
            and child.is_dir()
            and not _is_transient(child.name)
        )

    def list_installed(self) -> list[InstalledAgent]:
        """Agents with an active version, read through their ``current`` pointer."""
        if not self.agents_dir.is_dir():
            return []
        installed: list[InstalledAgent] = []
        for agent_root in sorted(self.agents_dir.iterdir()):
            if not agent_root.is_dir():
                continue
            path = self.resolve_current(agent_root.name)
            if path is None:
                continue
            try:
                manifest = validate_agent_directory(path)
            except InstallerError:
                logger.warning("Skipping %s: active version has an invalid manifest", path)
                continue
            installed.append(
                InstalledAgent(manifest=manifest, version_ref=path.name, path=path)
            )
        return installed

    def prune(self, min_age_seconds: float = 0) -> list[Path]:
        """Remove leftovers of interrupted installs and return what was removed.

        Covers build and trash siblings, stray temporary links, and everything
        under ``tmp/``. Entries modified within the last ``min_age_seconds``
        are kept, since they may belong to an install still in flight in
        another process.
        """
        cutoff = time.time() - min_age_seconds if min_age_seconds > 0 else None
        removed: list[Path] = []
        if self.agents_dir.is_dir():
            for agent_root in self.agents_dir.iterdir():
                if not agent_root.is_dir() or agent_root.is_symlink():
                    continue
                for child in agent_root.iterdir():
                    if not _is_transient(child.name) or not _older_than(child, cutoff):
                        continue
                    if child.is_symlink() or child.is_file():
                        child.unlink(missing_ok=True)
                    else:
                        shutil.rmtree(child, ignore_errors=True)
                    removed.append(child)
        if self.tmp_dir.is_dir():
            for child in self.tmp_dir.iterdir():
                if not _older_than(child, cutoff):
                    continue
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child, ignore_errors=True)
                else:
                    child.unlink(missing_ok=True)
                removed.append(child)
        for path in removed:
            logger.info("Pruned %s", path)
        return removed
