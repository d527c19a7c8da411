"""Agent bundle manifest parsing and validation.

The manifest is the only authority for an agent's identity: names derived
from the install source (repository basename, archive filename) are never
used in its place.
"""

from __future__ import annotations

import json
import re
from pathlib import Path, PurePosixPath

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from agent_installer.errors import ManifestError

MANIFEST_FILENAME = "manifest.json"
SUPPORTED_SCHEMA_VERSIONS = frozenset({1})

_AGENT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
RESERVED_AGENT_IDS = frozenset({"current"})
RESERVED_MARKERS = (".staging", ".trash", ".current")


def _check_relative(value: str, field_name: str) -> str:
    candidate = value.strip()
    if not candidate:
        raise ValueError(f"{field_name} must not be empty")
    path = PurePosixPath(candidate.replace("\\", "/"))
    if path.is_absolute() or ".." in path.parts or re.match(r"^[A-Za-z]:", candidate):
        raise ValueError(f"{field_name} must be a relative path inside the bundle")
    return candidate


class PythonRuntime(BaseModel):
    model_config = ConfigDict(extra="ignore")

    requirements: str | None = None
    version: str | None = None

    @field_validator("requirements")
    @classmethod
    def _relative_requirements(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _check_relative(value, "requirements")


class AgentManifest(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    schema_version: int
    id: str
    name: str = Field(min_length=1)
    description: str = ""
    author: str = ""
    version: str | None = None
    entrypoint: str | None = None
    python: PythonRuntime | None = None

    @field_validator("schema_version")
    @classmethod
    def _supported_schema(cls, value: int) -> int:
        if value not in SUPPORTED_SCHEMA_VERSIONS:
            supported = ", ".join(str(v) for v in sorted(SUPPORTED_SCHEMA_VERSIONS))
            raise ValueError(f"unsupported schema_version {value} (supported: {supported})")
        return value

    @field_validator("id")
    @classmethod
    def _safe_id(cls, value: str) -> str:
        if not _AGENT_ID_RE.fullmatch(value):
            raise ValueError(
                "id must start with a letter or digit and contain only "
                "letters, digits, '.', '_' or '-' (max 128 chars)"
            )
        lowered = value.lower()
        if lowered in RESERVED_AGENT_IDS or any(m in lowered for m in RESERVED_MARKERS):
            raise ValueError(f"id {value!r} is reserved")
        return value

    @field_validator("name")
    @classmethod
    def _non_blank_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name must not be blank")
        return value.strip()

    @field_validator("entrypoint")
    @classmethod
    def _relative_entrypoint(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _check_relative(value, "entrypoint")


def _format_problems(exc: ValidationError) -> list[str]:
    problems: list[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "manifest"
        if error.get("type") == "missing":
            problems.append(f"{location}: missing required field")
        else:
            message = str(error.get("msg", "invalid value"))
            message = message.removeprefix("Value error, ")
            problems.append(f"{location}: {message}")
    return problems


def parse_manifest(raw: str, *, source: str = MANIFEST_FILENAME) -> AgentManifest:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ManifestError(
            f"{source} is not valid JSON: {exc.msg} (line {exc.lineno})",
            problems=["manifest: invalid JSON"],
        ) from None
    if not isinstance(payload, dict):
        raise ManifestError(
            f"{source} must contain a JSON object", problems=["manifest: not an object"]
        )
    try:
        return AgentManifest.model_validate(payload)
    except ValidationError as exc:
        problems = _format_problems(exc)
        raise ManifestError(
            f"invalid manifest {source}: {'; '.join(problems)}", problems=problems
        ) from None


def validate_agent_directory(directory: Path) -> AgentManifest:
    """Read and validate the manifest of a staged bundle directory."""
    manifest_path = directory / MANIFEST_FILENAME
    if not manifest_path.is_file():
        raise ManifestError(
            f"{MANIFEST_FILENAME} not found in {directory}",
            problems=[f"{MANIFEST_FILENAME}: missing"],
        )
    try:
        raw = manifest_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ManifestError(
            f"failed to read {manifest_path}: {exc}",
            problems=[f"{MANIFEST_FILENAME}: unreadable"],
        ) from exc

    manifest = parse_manifest(raw, source=str(manifest_path))

    if manifest.entrypoint is not None and not (directory / manifest.entrypoint).is_file():
        raise ManifestError(
            f"invalid manifest {manifest_path}: entrypoint: file "
            f"{manifest.entrypoint!r} not found in bundle",
            problems=["entrypoint: file not found"],
        )
    runtime = manifest.python
    if runtime is not None and runtime.requirements is not None:
        if not (directory / runtime.requirements).is_file():
            raise ManifestError(
                f"invalid manifest {manifest_path}: python.requirements: file "
                f"{runtime.requirements!r} not found in bundle",
                problems=["python.requirements: file not found"],
            )
    return manifest


def has_manifest(directory: Path) -> bool:
    return (directory / MANIFEST_FILENAME).is_file()
