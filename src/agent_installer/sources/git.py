"""Git acquisition: clone a repository into staging and resolve its commit."""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from pathlib import Path, PurePosixPath

from agent_installer.errors import CloneError, InstallIOError, SubpathNotFoundError
from agent_installer.sources import StagedSource

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_COMMIT_RE = re.compile(r"^[0-9a-f]{40}([0-9a-f]{24})?$")


def repo_name_from_url(url: str) -> str:
    """Filesystem-safe staging name: URL basename without a trailing ``.git``."""
    tail = url.strip().rstrip("/").replace("\\", "/")
    name = tail.rsplit("/", 1)[-1]
    # scp-style remotes: git@host:owner/repo.git
    name = name.rsplit(":", 1)[-1]
    name = name.removesuffix(".git")
    name = _UNSAFE_NAME_CHARS.sub("_", name)
    if name in {"", ".", ".."}:
        return "repo"
    return name


def clone_dir_for(tmp_dir: Path, url: str) -> Path:
    return tmp_dir / "git" / repo_name_from_url(url)


def _git_env() -> dict[str, str]:
    env = dict(os.environ)
    env["GIT_TERMINAL_PROMPT"] = "0"
    return env


def _run_git(
    args: list[str],
    *,
    git_binary: str,
    timeout_s: int,
    action: str,
    url: str,
) -> subprocess.CompletedProcess[str]:
    try:
        proc = subprocess.run(
            [git_binary, *args],
            capture_output=True,
            text=True,
            timeout=timeout_s,
            check=False,
            env=_git_env(),
        )
    except FileNotFoundError:
        raise CloneError(
            f"git executable not found: {git_binary}", retryable=False
        ) from None
    except subprocess.TimeoutExpired:
        raise CloneError(f"git {action} timed out after {timeout_s}s for {url}") from None
    if proc.returncode != 0:
        stderr = proc.stderr.strip() or f"git {action} failed"
        raise CloneError(f"git {action} failed for {url}: {stderr}")
    return proc


def git_clone(
    url: str,
    revision: str | None,
    dest_dir: Path,
    *,
    git_binary: str = "git",
    timeout_s: int = 300,
) -> str:
    """Clone ``url`` into ``dest_dir`` at ``revision`` and return the commit hash."""
    if revision and revision.startswith("-"):
        raise CloneError(f"invalid revision {revision!r} for {url}", retryable=False)
    if dest_dir.exists():
        try:
            shutil.rmtree(dest_dir)
        except OSError as exc:
            raise InstallIOError(f"failed to clear stale clone {dest_dir}: {exc}") from exc
    dest_dir.parent.mkdir(parents=True, exist_ok=True)

    logger.info("Cloning %s into %s", url, dest_dir)
    _run_git(
        ["clone", "--quiet", "--", url, str(dest_dir)],
        git_binary=git_binary,
        timeout_s=timeout_s,
        action="clone",
        url=url,
    )
    if revision:
        _run_git(
            ["-C", str(dest_dir), "checkout", "--quiet", revision],
            git_binary=git_binary,
            timeout_s=timeout_s,
            action=f"checkout {revision}",
            url=url,
        )
    proc = _run_git(
        ["-C", str(dest_dir), "rev-parse", "HEAD"],
        git_binary=git_binary,
        timeout_s=timeout_s,
        action="rev-parse",
        url=url,
    )
    commit = proc.stdout.strip().lower()
    if not _COMMIT_RE.match(commit):
        raise CloneError(f"could not resolve commit for {url}: {commit!r}", retryable=False)
    return commit


def resolve_sub_path(clone_dir: Path, sub_path: str | None) -> Path:
    if not sub_path:
        return clone_dir
    relative = PurePosixPath(sub_path.strip().replace("\\", "/").strip("/"))
    root = clone_dir.resolve()
    target = (root / relative).resolve()
    if ".." in relative.parts or (target != root and root not in target.parents):
        raise SubpathNotFoundError(f"Subpath '{sub_path}' not found in repository")
    if not target.is_dir():
        raise SubpathNotFoundError(f"Subpath '{sub_path}' not found in repository")
    return target


def stage_git(
    url: str,
    tmp_dir: Path,
    *,
    revision: str | None = None,
    sub_path: str | None = None,
    git_binary: str = "git",
    timeout_s: int = 300,
) -> StagedSource:
    clone_dir = clone_dir_for(tmp_dir, url)
    try:
        commit = git_clone(
            url, revision, clone_dir, git_binary=git_binary, timeout_s=timeout_s
        )
        bundle_root = resolve_sub_path(clone_dir, sub_path)
    except Exception:
        shutil.rmtree(clone_dir, ignore_errors=True)
        raise
    return StagedSource(path=bundle_root, version_ref=commit, staging_dir=clone_dir)
