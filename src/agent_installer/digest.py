"""Content identifiers for install sources."""

import hashlib
from pathlib import Path

from agent_installer.errors import DigestError, InstallIOError

CHUNK_SIZE = 1024 * 1024


def sha256_file(path: Path) -> str:
    """Return the lowercase hex SHA-256 of a file, streamed in fixed chunks."""
    try:
        handle = path.open("rb")
    except OSError as exc:
        raise InstallIOError(f"failed to open archive {path}: {exc}") from exc
    hasher = hashlib.sha256()
    with handle:
        try:
            while chunk := handle.read(CHUNK_SIZE):
                hasher.update(chunk)
        except OSError as exc:
            raise DigestError(f"failed to read archive {path} for hashing: {exc}") from exc
    return hasher.hexdigest()
