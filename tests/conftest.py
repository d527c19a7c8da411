import json
import os
import subprocess
import zipfile
from collections.abc import Callable
from pathlib import Path

import pytest

from agent_installer.config import get_settings


@pytest.fixture(autouse=True)
def test_env(tmp_path: Path):
    base = tmp_path / "base"
    os.environ["AGENT_BASE_DIR"] = str(base)
    os.environ["APP_ENV"] = "dev"
    os.environ["KEEP_FAILED_BUILDS"] = "0"
    os.environ["UV_PATH"] = ""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def base_dir(tmp_path: Path) -> Path:
    return tmp_path / "base"


def write_bundle(
    root: Path,
    agent_id: str = "demo-agent",
    *,
    extra_files: dict[str, str] | None = None,
    manifest: dict[str, object] | None = None,
) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    payload: dict[str, object] = {
        "schema_version": 1,
        "id": agent_id,
        "name": agent_id.replace("-", " ").title(),
        "description": "Test agent",
        "author": "tests",
    }
    if manifest:
        payload.update(manifest)
    (root / "manifest.json").write_text(json.dumps(payload), encoding="utf-8")
    (root / "main.py").write_text("print('hello')\n", encoding="utf-8")
    for rel, content in (extra_files or {}).items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return root


def zip_directory(source: Path, archive: Path, *, prefix: str = "") -> Path:
    archive.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(archive, "w") as zf:
        for path in sorted(source.rglob("*")):
            if path.is_file():
                zf.write(path, prefix + path.relative_to(source).as_posix())
    return archive


def _git(repo: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", "-C", str(repo), *args],
        check=True,
        capture_output=True,
        text=True,
    )
    return proc.stdout.strip()


def init_repo(repo: Path) -> Path:
    repo.mkdir(parents=True, exist_ok=True)
    _git(repo, "init")
    _git(repo, "config", "user.email", "test@example.com")
    _git(repo, "config", "user.name", "Test User")
    _git(repo, "config", "commit.gpgsign", "false")
    return repo


def commit_all(repo: Path, message: str) -> str:
    _git(repo, "add", "-A")
    _git(repo, "commit", "-m", message)
    return _git(repo, "rev-parse", "HEAD")


@pytest.fixture
def bundle_factory(tmp_path: Path) -> Callable[..., Path]:
    counter = {"n": 0}

    def _make(agent_id: str = "demo-agent", **kwargs: object) -> Path:
        counter["n"] += 1
        root = tmp_path / f"bundle{counter['n']}"
        return write_bundle(root, agent_id, **kwargs)  # type: ignore[arg-type]

    return _make


@pytest.fixture
def zip_factory(tmp_path: Path) -> Callable[..., Path]:
    counter = {"n": 0}

    def _make(agent_id: str = "demo-agent", *, prefix: str = "", **kwargs: object) -> Path:
        counter["n"] += 1
        root = tmp_path / f"zipsrc{counter['n']}"
        source = write_bundle(root, agent_id, **kwargs)  # type: ignore[arg-type]
        return zip_directory(source, tmp_path / f"{agent_id}-{counter['n']}.zip", prefix=prefix)

    return _make


@pytest.fixture
def git_repo(tmp_path: Path) -> tuple[Path, dict[str, str]]:
    """Repo with a root bundle (v1 tag) and a nested bundle on a later commit."""
    repo = init_repo(tmp_path / "remote" / "demo-repo")
    write_bundle(repo, "git-agent", extra_files={"README.md": "v1\n"})
    first = commit_all(repo, "v1")
    _git(repo, "tag", "v1.2.0")
    write_bundle(repo / "agents" / "foo", "nested-agent")
    (repo / "README.md").write_text("v2\n", encoding="utf-8")
    second = commit_all(repo, "v2")
    return repo, {"v1": first, "head": second}
