import subprocess
from pathlib import Path

import pytest

from agent_installer.errors import CloneError, SubpathNotFoundError
from agent_installer.sources import git as git_source
from agent_installer.sources.git import (
    clone_dir_for,
    git_clone,
    repo_name_from_url,
    resolve_sub_path,
    stage_git,
)


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://github.com/acme/weather-agent.git", "weather-agent"),
        ("https://github.com/acme/weather-agent", "weather-agent"),
        ("https://github.com/acme/weather-agent/", "weather-agent"),
        ("git@github.com:acme/weather-agent.git", "weather-agent"),
        ("git@host:repo.git", "repo"),
        ("/srv/repos/my agent", "my_agent"),
        ("https://example.com/", "example.com"),
        ("..", "repo"),
    ],
)
def test_repo_name_from_url(url: str, expected: str) -> None:
    assert repo_name_from_url(url) == expected


def test_clone_dir_for(tmp_path: Path) -> None:
    assert clone_dir_for(tmp_path, "https://x/y/agent.git") == tmp_path / "git" / "agent"


def test_clone_default_branch_resolves_head(
    tmp_path: Path, git_repo: tuple[Path, dict[str, str]]
) -> None:
    repo, commits = git_repo
    dest = tmp_path / "clone"
    commit = git_clone(str(repo), None, dest)
    assert commit == commits["head"]
    assert (dest / "agents" / "foo" / "manifest.json").is_file()


def test_clone_tag_resolves_to_commit(
    tmp_path: Path, git_repo: tuple[Path, dict[str, str]]
) -> None:
    repo, commits = git_repo
    dest = tmp_path / "clone"
    commit = git_clone(str(repo), "v1.2.0", dest)
    assert commit == commits["v1"]
    assert commit != "v1.2.0"
    assert (dest / "README.md").read_text(encoding="utf-8") == "v1\n"


def test_clone_replaces_stale_directory(
    tmp_path: Path, git_repo: tuple[Path, dict[str, str]]
) -> None:
    repo, _ = git_repo
    dest = tmp_path / "clone"
    dest.mkdir()
    (dest / "stale.txt").write_text("old", encoding="utf-8")
    git_clone(str(repo), None, dest)
    assert not (dest / "stale.txt").exists()


def test_unknown_revision_raises_clone_error(
    tmp_path: Path, git_repo: tuple[Path, dict[str, str]]
) -> None:
    repo, _ = git_repo
    with pytest.raises(CloneError, match="checkout no-such-branch"):
        git_clone(str(repo), "no-such-branch", tmp_path / "clone")


def test_unreachable_repo_raises_clone_error(tmp_path: Path) -> None:
    with pytest.raises(CloneError, match="git clone failed") as exc:
        git_clone(str(tmp_path / "does-not-exist"), None, tmp_path / "clone")
    assert exc.value.retryable is True


def test_missing_git_binary_not_retryable(tmp_path: Path) -> None:
    with pytest.raises(CloneError, match="git executable not found") as exc:
        git_clone("https://x/y.git", None, tmp_path / "clone", git_binary="no-such-git-binary")
    assert exc.value.retryable is False


def test_clone_timeout_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(*args, **kwargs):
        raise subprocess.TimeoutExpired(cmd=args[0], timeout=kwargs["timeout"])

    monkeypatch.setattr(git_source.subprocess, "run", fake_run)
    with pytest.raises(CloneError, match="timed out after 5s"):
        git_clone("https://x/y.git", None, tmp_path / "clone", timeout_s=5)


def test_resolve_sub_path(tmp_path: Path) -> None:
    (tmp_path / "agents" / "foo").mkdir(parents=True)
    assert resolve_sub_path(tmp_path, None) == tmp_path
    assert resolve_sub_path(tmp_path, "agents/foo") == (tmp_path / "agents" / "foo").resolve()
    assert resolve_sub_path(tmp_path, "/agents/foo/") == (tmp_path / "agents" / "foo").resolve()


@pytest.mark.parametrize("sub_path", ["nope", "../outside", "agents/../../outside"])
def test_resolve_sub_path_rejects_missing_or_escaping(tmp_path: Path, sub_path: str) -> None:
    (tmp_path / "repo" / "agents").mkdir(parents=True)
    (tmp_path / "outside").mkdir()
    with pytest.raises(SubpathNotFoundError) as exc:
        resolve_sub_path(tmp_path / "repo", sub_path)
    assert str(exc.value) == f"Subpath '{sub_path}' not found in repository"


def test_resolve_sub_path_rejects_file(tmp_path: Path) -> None:
    (tmp_path / "README.md").write_text("x", encoding="utf-8")
    with pytest.raises(SubpathNotFoundError):
        resolve_sub_path(tmp_path, "README.md")


def test_stage_git_with_sub_path(tmp_path: Path, git_repo: tuple[Path, dict[str, str]]) -> None:
    repo, commits = git_repo
    staged = stage_git(str(repo), tmp_path / "tmp", sub_path="agents/foo")
    assert staged.version_ref == commits["head"]
    assert staged.staging_dir == tmp_path / "tmp" / "git" / "demo-repo"
    assert staged.path == (staged.staging_dir / "agents" / "foo").resolve()


def test_stage_git_missing_sub_path_removes_clone(
    tmp_path: Path, git_repo: tuple[Path, dict[str, str]]
) -> None:
    repo, _ = git_repo
    with pytest.raises(SubpathNotFoundError):
        stage_git(str(repo), tmp_path / "tmp", revision="v1.2.0", sub_path="agents/foo")
    assert not (tmp_path / "tmp" / "git" / "demo-repo").exists()


def test_option_like_revision_rejected(
    tmp_path: Path, git_repo: tuple[Path, dict[str, str]]
) -> None:
    repo, _ = git_repo
    dest = tmp_path / "clone"
    with pytest.raises(CloneError, match="invalid revision") as exc:
        git_clone(str(repo), "--orphan=evil", dest)
    assert exc.value.retryable is False
    assert not dest.exists()


def test_option_like_url_treated_as_repository(tmp_path: Path) -> None:
    marker = tmp_path / "pwned"
    with pytest.raises(CloneError, match="git clone failed"):
        git_clone(f"--upload-pack=touch {marker}", None, tmp_path / "clone")
    assert not marker.exists()
