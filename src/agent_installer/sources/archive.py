"""Archive acquisition: hash a zip bundle and extract it into staging."""

from __future__ import annotations

import logging
import shutil
import zipfile
from pathlib import Path, PurePosixPath

from agent_installer.digest import sha256_file
from agent_installer.errors import ExtractionError, InstallIOError
from agent_installer.manifest import has_manifest
from agent_installer.sources import StagedSource

logger = logging.getLogger(__name__)

# Folders some archivers add next to the real payload.
IGNORED_TOP_LEVEL = frozenset({"__MACOSX"})


def extract_dir_for(tmp_dir: Path, content_hash: str) -> Path:
    return tmp_dir / f"{content_hash}_extracted"


def _unsafe_reason(name: str, destination: Path) -> str | None:
    normalized = name.replace("\\", "/")
    if not normalized:
        return "empty entry name"
    if normalized.startswith("/") or (
        len(normalized) > 1 and normalized[0].isalpha() and normalized[1] == ":"
    ):
        return "absolute path"
    if ".." in PurePosixPath(normalized).parts:
        return "parent directory reference"
    target = (destination / normalized).resolve()
    if target != destination and destination not in target.parents:
        return "resolves outside destination"
    return None


def check_members(archive: zipfile.ZipFile, destination: Path, *, max_bytes: int) -> None:
    """Reject the archive if any entry is unsafe or the payload is too large.

    Runs before anything is written so a rejected archive leaves no files
    behind, inside or outside the destination.
    """
    resolved = destination.resolve()
    total = 0
    for info in archive.infolist():
        reason = _unsafe_reason(info.filename, resolved)
        if reason is not None:
            raise ExtractionError(f"unsafe archive entry {info.filename!r}: {reason}")
        total += info.file_size
        if total > max_bytes:
            raise ExtractionError(
                f"archive expands beyond the {max_bytes} byte limit"
            )


def extract_zip(archive_path: Path, destination: Path, *, max_bytes: int) -> None:
    try:
        archive = zipfile.ZipFile(archive_path)
    except zipfile.BadZipFile as exc:
        raise ExtractionError(f"corrupt archive {archive_path}: {exc}") from exc
    except OSError as exc:
        raise InstallIOError(f"failed to open archive {archive_path}: {exc}") from exc

    with archive:
        check_members(archive, destination, max_bytes=max_bytes)
        if destination.exists():
            shutil.rmtree(destination)
        destination.mkdir(parents=True)
        try:
            archive.extractall(destination)
        except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError) as exc:
            raise ExtractionError(f"failed to extract {archive_path}: {exc}") from exc
        except OSError as exc:
            raise InstallIOError(
                f"failed to write extracted files to {destination}: {exc}"
            ) from exc


def resolve_bundle_root(extracted: Path) -> Path:
    """Return the directory holding the manifest.

    Archives produced by "download as zip" wrap the bundle in one top-level
    folder; unwrap it when the manifest is not at the archive root.
    """
    if has_manifest(extracted):
        return extracted
    children = [
        child for child in extracted.iterdir() if child.name not in IGNORED_TOP_LEVEL
    ]
    if len(children) == 1 and children[0].is_dir() and has_manifest(children[0]):
        return children[0]
    return extracted


def stage_archive(
    archive_path: Path,
    tmp_dir: Path,
    *,
    max_bytes: int,
    content_hash: str | None = None,
) -> StagedSource:
    if not archive_path.is_file():
        raise InstallIOError(f"archive not found: {archive_path}")
    if content_hash is None:
        content_hash = sha256_file(archive_path)
    destination = extract_dir_for(tmp_dir, content_hash)
    logger.info("Extracting %s into %s", archive_path, destination)
    try:
        extract_zip(archive_path, destination, max_bytes=max_bytes)
    except Exception:
        # Partial extraction never outlives the call.
        shutil.rmtree(destination, ignore_errors=True)
        raise
    return StagedSource(
        path=resolve_bundle_root(destination),
        version_ref=content_hash,
        staging_dir=destination,
    )
