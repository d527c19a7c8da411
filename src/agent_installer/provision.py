"""Per-version runtime environment provisioning with uv."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from agent_installer.errors import ProvisioningError
from agent_installer.manifest import AgentManifest

logger = logging.getLogger(__name__)

VENV_DIRNAME = ".venv"
DEFAULT_REQUIREMENTS = ("requirements.txt", "pyproject.toml")


@dataclass(slots=True)
class ProvisionPlan:
    requirements: Path
    python_version: str | None = None


def plan_environment(version_dir: Path, manifest: AgentManifest) -> ProvisionPlan | None:
    """Decide what the bundle needs; None means nothing to provision."""
    runtime = manifest.python
    python_version = runtime.version if runtime is not None else None
    if runtime is not None and runtime.requirements:
        return ProvisionPlan(
            requirements=version_dir / runtime.requirements,
            python_version=python_version,
        )
    for name in DEFAULT_REQUIREMENTS:
        candidate = version_dir / name
        if candidate.is_file():
            return ProvisionPlan(requirements=candidate, python_version=python_version)
    return None


class EnvironmentProvisioner:
    """Create an isolated, relocatable virtualenv inside a version directory.

    The environment is built inside the store's build directory and moved to
    its final path afterwards, hence ``uv venv --relocatable``.
    """

    def __init__(self, uv_path: str = "", *, timeout_s: int = 900) -> None:
        self.uv_path = uv_path
        self.timeout_s = timeout_s

    def resolve_toolchain(self) -> str:
        configured = self.uv_path.strip()
        if configured:
            if Path(configured).expanduser().is_file():
                return str(Path(configured).expanduser())
            found = shutil.which(configured)
        else:
            found = shutil.which("uv")
        if found is None:
            raise ProvisioningError(
                f"provisioning toolchain not found: {configured or 'uv'}"
            )
        return found

    def _run(self, command: list[str], *, cwd: Path, action: str) -> None:
        try:
            proc = subprocess.run(
                command,
                cwd=str(cwd),
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
                check=False,
            )
        except subprocess.TimeoutExpired:
            raise ProvisioningError(
                f"{action} timed out after {self.timeout_s}s in {cwd}"
            ) from None
        except OSError as exc:
            raise ProvisioningError(f"{action} could not start in {cwd}: {exc}") from exc
        if proc.returncode != 0:
            stderr = proc.stderr.strip() or proc.stdout.strip() or f"exit code {proc.returncode}"
            raise ProvisioningError(f"{action} failed in {cwd}: {stderr}")

    def provision(self, version_dir: Path, manifest: AgentManifest) -> Path | None:
        """Set up the environment the bundle declares; return the venv path if any."""
        plan = plan_environment(version_dir, manifest)
        if plan is None:
            logger.info("No runtime environment required for %s", manifest.id)
            return None
        if not plan.requirements.is_file():
            raise ProvisioningError(f"requirements file not found: {plan.requirements}")

        uv = self.resolve_toolchain()
        venv_dir = version_dir / VENV_DIRNAME
        venv_cmd = [uv, "venv", "--relocatable", "--quiet"]
        if plan.python_version:
            venv_cmd.extend(["--python", plan.python_version])
        venv_cmd.append(str(venv_dir))
        self._run(venv_cmd, cwd=version_dir, action="uv venv")

        self._run(
            [
                uv,
                "pip",
                "install",
                "--quiet",
                "--python",
                str(venv_dir),
                "-r",
                str(plan.requirements),
            ],
            cwd=version_dir,
            action="uv pip install",
        )
        logger.info("Provisioned %s from %s", venv_dir, plan.requirements.name)
        return venv_dir
