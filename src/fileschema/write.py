from __future__ import annotations

import logging
import re
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol, runtime_checkable

from core.settings import DEFAULT_MAX_PARALLEL_WRITES, DEFAULT_SHARD_NAME_TEMPLATE
from fileschema.codecs.base_codec import Codec
from fileschema.config import WriteConfiguration
from fileschema.domain import DestinationKey, ShardAssignment, WriteResult
from fileschema.errors import DestinationResolutionError, FilenameCollisionError, RowValidationError
from fileschema.registry import DEFAULT_REGISTRY, FormatRegistry, resolve_schema
from fileschema.schema import Row, Schema
from fileschema.staging import StagingLayout

logger = logging.getLogger(__name__)

DEFAULT_DESTINATION: DestinationKey = ""

_SHARD_TEMPLATE_RUN = re.compile(r"S+|N+")


@dataclass(frozen=True)
class FilenamePolicy:
    """
    Names the shard files of one destination.

    Runs of "S" in the template become the zero-padded shard index and runs of
    "N" the shard count: prefix "test_1", template "-SSSSS-of-NNNNN" and suffix
    ".avro" give "test_1-00000-of-00003.avro".
    """
    directory: Path
    prefix: str
    shard_template: str = DEFAULT_SHARD_NAME_TEMPLATE
    suffix: str = ""

    def filename(self, shard_index: int, num_shards: int) -> Path:
        if num_shards < 1 or not 0 <= shard_index < num_shards:
            raise ValueError(f"Invalid shard {shard_index} of {num_shards}")

        def expand(match: re.Match[str]) -> str:
            run = match.group(0)
            value = shard_index if run[0] == "S" else num_shards
            return str(value).zfill(len(run))

        shard_part = _SHARD_TEMPLATE_RUN.sub(expand, self.shard_template)
        return Path(self.directory) / f"{self.prefix}{shard_part}{self.suffix}"


@runtime_checkable
class DestinationStrategy(Protocol):
    """
    Routes each row to a destination and names the destination's files.

    Implementations must be pure: the writer may call them from several
    threads and in any order.
    """

    def key(self, row: Row) -> DestinationKey:
        ...

    def filename_policy(self, key: DestinationKey) -> FilenamePolicy:
        ...

    def schema(self, key: DestinationKey) -> Schema:
        ...

    def default_destination(self) -> DestinationKey:
        ...


class PrefixDestinations:
    """
    One schema for every destination; destination k is written as
    <directory>/<prefix>_<k><shard template><suffix>, the default destination
    as <directory>/<prefix><shard template><suffix>.
    """

    def __init__(
        self,
        *,
        directory: Path,
        prefix: str,
        schema: Schema,
        key_fn: Callable[[Row], DestinationKey],
        shard_template: str = DEFAULT_SHARD_NAME_TEMPLATE,
        suffix: str = "",
    ):
        self.directory = Path(directory)
        self.prefix = prefix
        self._schema = schema
        self._key_fn = key_fn
        self.shard_template = shard_template
        self.suffix = suffix

    @classmethod
    def from_configuration(
        cls,
        config: WriteConfiguration,
        *,
        schema: Schema,
        key_fn: Callable[[Row], DestinationKey],
        suffix: str,
    ) -> PrefixDestinations:
        return cls(
            directory=Path(config.output_directory),
            prefix=config.filename_prefix,
            schema=schema,
            key_fn=key_fn,
            shard_template=config.shard_name_template,
            suffix=suffix,
        )

    def key(self, row: Row) -> DestinationKey:
        return self._key_fn(row)

    def filename_policy(self, key: DestinationKey) -> FilenamePolicy:
        if key == DEFAULT_DESTINATION:
            prefix = self.prefix
        else:
            prefix = f"{self.prefix}_{key}" if self.prefix else str(key)
        return FilenamePolicy(self.directory, prefix, self.shard_template, self.suffix)

    def schema(self, key: DestinationKey) -> Schema:
        return self._schema

    def default_destination(self) -> DestinationKey:
        return DEFAULT_DESTINATION


class DynamicDestinationWriter:
    """
    Coordinates: route -> encode -> stage -> commit.

    Every shard file is written under a hidden temp directory first. Files are
    renamed to their final names only once every shard of the bundle has been
    written, so a failed bundle leaves nothing under a final name.
    """

    def __init__(
        self,
        codec: Codec,
        *,
        temp_directory: Path | None = None,
        max_parallel_writes: int = DEFAULT_MAX_PARALLEL_WRITES,
    ):
        if max_parallel_writes < 1:
            raise ValueError(f"max_parallel_writes must be >= 1, got {max_parallel_writes}")
        self.codec = codec
        self.temp_directory = temp_directory
        self.max_parallel_writes = max_parallel_writes

    def write(
        self,
        rows: Iterable[Row],
        strategy: DestinationStrategy,
        num_shards: int | None = None,
    ) -> WriteResult:
        num_shards = 1 if num_shards is None else num_shards
        if num_shards < 1:
            raise ValueError(f"num_shards must be >= 1, got {num_shards}")

        shards_by_destination: dict[Any, list[ShardAssignment]] = {}
        next_shard: dict[Any, int] = {}
        rows_total = 0

        # 1) Route + encode
        for row in rows:
            key = self._resolve_destination(strategy, row)

            shards = shards_by_destination.get(key)
            if shards is None:
                shards = self._plan_destination(strategy, key, num_shards)
                shards_by_destination[key] = shards
                next_shard[key] = 0

            destination_schema = shards[0].schema
            if row.schema != destination_schema:
                raise RowValidationError(
                    f"Row schema {row.schema.field_names} does not match the schema of destination {key!r}: "
                    f"{destination_schema.field_names}"
                )

            shard = shards[next_shard[key]]
            next_shard[key] = (next_shard[key] + 1) % num_shards
            shard.records.append(self.codec.encode(row))
            rows_total += 1

        if not shards_by_destination:
            default_key = strategy.default_destination()
            shards_by_destination[default_key] = self._plan_destination(strategy, default_key, num_shards)

        all_shards = [shard for shards in shards_by_destination.values() for shard in shards]

        # 2) Every final name must be unique before anything is written
        self._check_collisions(all_shards)

        # 3) Stage, then commit
        temp_root = self.temp_directory or strategy.filename_policy(strategy.default_destination()).directory
        staging = StagingLayout(temp_root=Path(temp_root))
        run_id = uuid.uuid4().hex

        try:
            staged = self._stage_shards(staging, run_id, all_shards)
            self._commit(staging, staged)
        finally:
            staging.cleanup_run(run_id)

        files_by_destination = {
            key: tuple(shard.final_path for shard in shards) for key, shards in shards_by_destination.items()
        }
        logger.info(
            "Committed %s rows to %s files across %s destinations.",
            rows_total,
            len(all_shards),
            len(files_by_destination),
        )
        return WriteResult(files_by_destination=files_by_destination, rows_written_total=rows_total)

    # ----------------------------
    # Routing
    # ----------------------------
    @staticmethod
    def _resolve_destination(strategy: DestinationStrategy, row: Row) -> DestinationKey:
        try:
            key = strategy.key(row)
        except Exception as e:
            raise DestinationResolutionError(f"Destination function failed for row {row!r}: {e}") from e
        if key is None:
            return strategy.default_destination()
        return key

    @staticmethod
    def _plan_destination(strategy: DestinationStrategy, key: DestinationKey, num_shards: int) -> list[ShardAssignment]:
        try:
            policy = strategy.filename_policy(key)
            schema = strategy.schema(key)
        except Exception as e:
            raise DestinationResolutionError(f"Cannot resolve filename policy for destination {key!r}: {e}") from e

        return [
            ShardAssignment(
                destination=key,
                shard_index=shard_index,
                num_shards=num_shards,
                final_path=policy.filename(shard_index, num_shards),
                schema=schema,
            )
            for shard_index in range(num_shards)
        ]

    @staticmethod
    def _check_collisions(shards: list[ShardAssignment]) -> None:
        owners: dict[Path, ShardAssignment] = {}
        for shard in shards:
            final_path = shard.final_path.absolute()
            other = owners.get(final_path)
            if other is not None:
                raise FilenameCollisionError(
                    f"Destinations {other.destination!r} (shard {other.shard_index}) and {shard.destination!r} "
                    f"(shard {shard.shard_index}) both map to {final_path}"
                )
            owners[final_path] = shard

    # ----------------------------
    # Staging
    # ----------------------------
    def _stage_shards(
        self, staging: StagingLayout, run_id: str, shards: list[ShardAssignment]
    ) -> list[tuple[ShardAssignment, Path]]:
        with ThreadPoolExecutor(max_workers=self.max_parallel_writes) as executor:
            futures: list[tuple[ShardAssignment, Future[Path]]] = [
                (shard, executor.submit(self._write_shard, staging, run_id, shard)) for shard in shards
            ]
            return [(shard, fut.result()) for shard, fut in futures]

    @staticmethod
    def _commit(staging: StagingLayout, staged: list[tuple[ShardAssignment, Path]]) -> None:
        """Promotes every staged shard; if one fails, the shards already promoted are removed again."""
        promoted: list[Path] = []
        try:
            for shard, temp_path in staged:
                staging.promote(temp_path=temp_path, final_path=shard.final_path)
                promoted.append(shard.final_path)
        except Exception:
            logger.error("Commit failed after %s of %s shards; retracting them.", len(promoted), len(staged))
            staging.retract(promoted)
            raise

    def _write_shard(self, staging: StagingLayout, run_id: str, shard: ShardAssignment) -> Path:
        temp_path = staging.new_temp_file(run_id)
        with open(temp_path, "wb") as stream:
            self.codec.write_records(stream, shard.schema, shard.records)
        logger.debug(
            "Staged %s records for destination %r shard %s/%s at %s",
            len(shard.records),
            shard.destination,
            shard.shard_index,
            shard.num_shards,
            temp_path,
        )
        return temp_path


class WriteTransform:
    """Resolves format and schema from a WriteConfiguration and writes rows to per-key destinations."""

    def __init__(self, config: WriteConfiguration, *, registry: FormatRegistry | None = None):
        self.config = config
        self.codec = (registry or DEFAULT_REGISTRY).lookup(config.format)
        self.schema = resolve_schema(config.schema_text, self.codec)
        self.suffix = config.filename_suffix if config.filename_suffix is not None else self.codec.suffix

    def destinations(self, key_fn: Callable[[Row], DestinationKey]) -> PrefixDestinations:
        return PrefixDestinations.from_configuration(self.config, schema=self.schema, key_fn=key_fn, suffix=self.suffix)

    def write(
        self,
        rows: Iterable[Row],
        key_fn: Callable[[Row], DestinationKey] | None = None,
        *,
        strategy: DestinationStrategy | None = None,
    ) -> WriteResult:
        if strategy is None:
            strategy = self.destinations(key_fn or (lambda row: DEFAULT_DESTINATION))
        elif key_fn is not None:
            raise ValueError("Pass either key_fn or strategy, not both")

        writer = DynamicDestinationWriter(self.codec, max_parallel_writes=self.config.max_parallel_writes)
        return writer.write(rows, strategy, num_shards=self.config.num_shards)
