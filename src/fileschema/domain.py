from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Hashable

from core.settings import FILENAME_ROW_FIELD_NAME
from fileschema.schema import Field, Row, Schema

FilePattern = str

# Opaque, comparable value grouping rows into output files. "" is the default destination.
DestinationKey = Hashable

FILENAME_ROW_SCHEMA = Schema.of(Field(FILENAME_ROW_FIELD_NAME, "string"))


@dataclass(frozen=True)
class MatchedFile:
    """
    A concrete file resolved from a pattern.

    identity:
      Absolute resolved path. Used for first-seen de-duplication within a
      polling session, so a file overwritten in place is not read again.
    """
    path: Path
    identity: str
    size_bytes: int
    mtime_utc: datetime


@dataclass(frozen=True)
class ShardAssignment:
    """One output file of one destination, planned before anything is written."""
    destination: Any
    shard_index: int
    num_shards: int
    final_path: Path
    schema: Schema
    records: list[Any] = field(default_factory=list, compare=False)


@dataclass(frozen=True)
class WriteResult:
    """Committed output files grouped by destination key."""
    files_by_destination: dict[Any, tuple[Path, ...]]
    rows_written_total: int

    @property
    def filenames(self) -> list[str]:
        return sorted(str(p) for paths in self.files_by_destination.values() for p in paths)

    def as_rows(self) -> list[Row]:
        return [Row(FILENAME_ROW_SCHEMA, (name,)) for name in self.filenames]
