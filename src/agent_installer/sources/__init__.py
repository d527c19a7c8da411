"""Install source acquisition: materialize a source into a local directory."""

from dataclasses import dataclass
from pathlib import Path


@dataclass(slots=True, frozen=True)
class StagedSource:
    """A source materialized under the staging area.

    ``path`` is the bundle root handed to validation; ``staging_dir`` is the
    directory owned by the install call and removed once it finishes.
    """

    path: Path
    version_ref: str
    staging_dir: Path
