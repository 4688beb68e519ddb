# Dynamic-destination writes: routing, shard naming, staging and commit,
# collision detection and failure cleanup.
from __future__ import annotations

import dataclasses
import json
from collections import Counter
from pathlib import Path

import pytest

from conftest import SIMPLE_SCHEMA, simple_rows
from core.settings import FILENAME_ROW_FIELD_NAME, TEMP_DIRECTORY_PREFIX
from fileschema.codecs.avro_codec import AVRO_CODEC, schema_to_avro
from fileschema.codecs.base_codec import decode_stream
from fileschema.codecs.json_codec import schema_to_json_schema
from fileschema.codecs.parquet_codec import PARQUET_CODEC
from fileschema.config import ReadConfiguration, WriteConfiguration
from fileschema.errors import DestinationResolutionError, FilenameCollisionError, RowValidationError
from fileschema.read import read
from fileschema.schema import Field, Row, Schema
from fileschema.staging import StagingLayout
from fileschema.write import (
    DEFAULT_DESTINATION,
    DestinationStrategy,
    DynamicDestinationWriter,
    FilenamePolicy,
    PrefixDestinations,
    WriteTransform,
)


def _destinations(directory: Path, key_fn, prefix: str = "test") -> PrefixDestinations:
    return PrefixDestinations(directory=directory, prefix=prefix, schema=SIMPLE_SCHEMA, key_fn=key_fn, suffix=".avro")


def _read_file(path: Path, codec=AVRO_CODEC, schema: Schema = SIMPLE_SCHEMA) -> list[Row]:
    with open(path, "rb") as stream:
        return list(decode_stream(codec, stream, schema, path=str(path)))


def _visible_files(directory: Path) -> list[str]:
    return sorted(p.name for p in directory.iterdir() if not p.name.startswith("."))


def _temp_dirs(directory: Path) -> list[Path]:
    return [p for p in directory.iterdir() if p.name.startswith(TEMP_DIRECTORY_PREFIX)]


def test_filename_policy_zero_pads_index_and_count(tmp_path: Path):
    policy = FilenamePolicy(tmp_path, "test_1", "-SSSSS-of-NNNNN", ".avro")
    assert policy.filename(0, 3) == tmp_path / "test_1-00000-of-00003.avro"
    assert policy.filename(2, 3).name == "test_1-00002-of-00003.avro"
    assert FilenamePolicy(tmp_path, "p", "_S_of_N").filename(11, 12).name == "p_11_of_12"

    with pytest.raises(ValueError):
        policy.filename(3, 3)


def test_prefix_destinations_satisfy_the_strategy_protocol(tmp_path: Path):
    strategy = _destinations(tmp_path, lambda row: row["anInteger"])
    assert isinstance(strategy, DestinationStrategy)
    assert strategy.default_destination() == DEFAULT_DESTINATION
    assert strategy.filename_policy(DEFAULT_DESTINATION).prefix == "test"
    assert strategy.filename_policy(2).prefix == "test_2"


def test_rows_are_partitioned_by_destination_key(tmp_path: Path):
    rows = simple_rows(1000)
    writer = DynamicDestinationWriter(AVRO_CODEC)

    result = writer.write(rows, _destinations(tmp_path, lambda row: row["anInteger"]))

    assert _visible_files(tmp_path) == [
        "test_1-00000-of-00001.avro",
        "test_2-00000-of-00001.avro",
        "test_3-00000-of-00001.avro",
    ]
    assert result.rows_written_total == 1000
    assert set(result.files_by_destination) == {1, 2, 3}

    read_back: list[Row] = []
    for key in (1, 2, 3):
        (path,) = result.files_by_destination[key]
        contents = _read_file(path)
        assert {row["anInteger"] for row in contents} == {key}
        read_back.extend(contents)

    assert Counter(read_back) == Counter(rows)
    assert _temp_dirs(tmp_path) == []


def test_num_shards_spreads_each_destination_over_that_many_files(tmp_path: Path):
    rows = simple_rows(30)
    writer = DynamicDestinationWriter(AVRO_CODEC, max_parallel_writes=2)

    result = writer.write(rows, _destinations(tmp_path, lambda row: row["anInteger"]), num_shards=2)

    assert len(result.filenames) == 6
    assert "test_3-00001-of-00002.avro" in _visible_files(tmp_path)
    shard_sizes = [len(_read_file(path)) for path in result.files_by_destination[1]]
    assert shard_sizes == [5, 5]


def test_more_shards_than_rows_still_writes_every_shard(tmp_path: Path):
    writer = DynamicDestinationWriter(AVRO_CODEC)

    result = writer.write(simple_rows(1), _destinations(tmp_path, lambda row: DEFAULT_DESTINATION), num_shards=3)

    assert _visible_files(tmp_path) == [
        "test-00000-of-00003.avro",
        "test-00001-of-00003.avro",
        "test-00002-of-00003.avro",
    ]
    assert sum(len(_read_file(p)) for p in result.files_by_destination[DEFAULT_DESTINATION]) == 1


def test_none_key_goes_to_the_default_destination(tmp_path: Path):
    writer = DynamicDestinationWriter(AVRO_CODEC)

    result = writer.write(simple_rows(6), _destinations(tmp_path, lambda row: None if row["anInteger"] == 1 else "x"))

    assert _visible_files(tmp_path) == ["test-00000-of-00001.avro", "test_x-00000-of-00001.avro"]
    assert result.rows_written_total == 6


def test_empty_input_writes_the_default_destination(tmp_path: Path):
    writer = DynamicDestinationWriter(AVRO_CODEC)

    result = writer.write([], _destinations(tmp_path, lambda row: row["anInteger"]))

    assert _visible_files(tmp_path) == ["test-00000-of-00001.avro"]
    assert result.rows_written_total == 0
    assert _read_file(tmp_path / "test-00000-of-00001.avro") == []


def test_failing_destination_function_writes_nothing(tmp_path: Path):
    def key_fn(row: Row):
        if row["aString"] == "value-7":
            raise RuntimeError("boom")
        return row["anInteger"]

    writer = DynamicDestinationWriter(AVRO_CODEC)

    with pytest.raises(DestinationResolutionError, match="boom"):
        writer.write(simple_rows(20), _destinations(tmp_path, key_fn))

    assert list(tmp_path.iterdir()) == []


def test_colliding_destinations_are_rejected_before_writing(tmp_path: Path):
    rows = [Row(SIMPLE_SCHEMA, (1, "int key")), Row(SIMPLE_SCHEMA, (2, "str key"))]
    writer = DynamicDestinationWriter(AVRO_CODEC)

    with pytest.raises(FilenameCollisionError, match="test_1-00000-of-00001.avro"):
        writer.write(rows, _destinations(tmp_path, lambda row: 1 if row["anInteger"] == 1 else "1"))

    assert list(tmp_path.iterdir()) == []


def test_rows_must_match_the_destination_schema(tmp_path: Path):
    other_schema = Schema.of(Field("aString", "string"))
    rows = [Row(SIMPLE_SCHEMA, (1, "a")), Row(other_schema, ("b",))]
    writer = DynamicDestinationWriter(AVRO_CODEC)

    with pytest.raises(RowValidationError):
        writer.write(rows, _destinations(tmp_path, lambda row: DEFAULT_DESTINATION))

    assert _visible_files(tmp_path) == []


def test_failed_staging_leaves_no_final_or_temp_files(tmp_path: Path):
    calls = {"n": 0}

    def flaky_write(stream, schema, records):
        calls["n"] += 1
        if calls["n"] == 2:
            raise OSError("disk full")
        AVRO_CODEC.write_records(stream, schema, records)

    codec = dataclasses.replace(AVRO_CODEC, write_records=flaky_write)
    writer = DynamicDestinationWriter(codec, max_parallel_writes=1)

    with pytest.raises(OSError, match="disk full"):
        writer.write(simple_rows(9), _destinations(tmp_path, lambda row: row["anInteger"]))

    assert list(tmp_path.iterdir()) == []


def test_write_result_as_filename_rows(tmp_path: Path):
    writer = DynamicDestinationWriter(AVRO_CODEC)

    result = writer.write(simple_rows(3), _destinations(tmp_path, lambda row: row["anInteger"]))
    rows = result.as_rows()

    assert [row.schema.field_names for row in rows] == [[FILENAME_ROW_FIELD_NAME]] * 3
    assert [row[FILENAME_ROW_FIELD_NAME] for row in rows] == result.filenames
    assert result.filenames == sorted(str(tmp_path / f"test_{k}-00000-of-00001.avro") for k in (1, 2, 3))


def test_temp_files_go_under_a_separate_directory_when_given(tmp_path: Path):
    out, scratch = tmp_path / "out", tmp_path / "scratch"
    writer = DynamicDestinationWriter(AVRO_CODEC, temp_directory=scratch)

    writer.write(simple_rows(3), _destinations(out, lambda row: DEFAULT_DESTINATION))

    assert _visible_files(out) == ["test-00000-of-00001.avro"]
    assert _temp_dirs(scratch) == []


def test_writer_rejects_invalid_parallelism_and_shards(tmp_path: Path):
    with pytest.raises(ValueError):
        DynamicDestinationWriter(AVRO_CODEC, max_parallel_writes=0)
    with pytest.raises(ValueError):
        DynamicDestinationWriter(AVRO_CODEC).write([], _destinations(tmp_path, lambda row: None), num_shards=0)


def _write_config(tmp_path: Path, **overrides) -> WriteConfiguration:
    values = {
        "format": "parquet",
        "schema": json.dumps(schema_to_avro(SIMPLE_SCHEMA)),
        "output_directory": str(tmp_path / "out"),
        "filename_prefix": "users",
    } | overrides
    return WriteConfiguration(**values)


def test_write_transform_uses_format_suffix_and_configured_shards(tmp_path: Path):
    transform = WriteTransform(_write_config(tmp_path, num_shards=2))

    result = transform.write(simple_rows(12), lambda row: row["anInteger"])

    assert _visible_files(tmp_path / "out") == sorted(
        f"users_{k}-0000{i}-of-00002.parquet" for k in (1, 2, 3) for i in (0, 1)
    )
    assert Counter(
        row for path in result.filenames for row in _read_file(Path(path), PARQUET_CODEC)
    ) == Counter(simple_rows(12))


def test_write_transform_suffix_override_and_single_destination(tmp_path: Path):
    transform = WriteTransform(_write_config(tmp_path, format="avro", filename_suffix=".data"))

    result = transform.write(simple_rows(4))

    assert _visible_files(tmp_path / "out") == ["users-00000-of-00001.data"]
    assert result.rows_written_total == 4


def test_write_transform_accepts_a_custom_strategy(tmp_path: Path):
    transform = WriteTransform(_write_config(tmp_path))
    strategy = PrefixDestinations(
        directory=tmp_path / "custom", prefix="k", schema=SIMPLE_SCHEMA, key_fn=lambda row: row["anInteger"]
    )

    transform.write(simple_rows(3), strategy=strategy)

    assert _visible_files(tmp_path / "custom") == [f"k_{k}-00000-of-00001" for k in (1, 2, 3)]
    with pytest.raises(ValueError):
        transform.write([], lambda row: None, strategy=strategy)


def test_written_files_can_be_read_back_by_pattern(tmp_path: Path):
    transform = WriteTransform(_write_config(tmp_path, format="avro"))
    rows = simple_rows(50)
    transform.write(rows, lambda row: row["anInteger"])

    config = ReadConfiguration(
        format="avro",
        schema=json.dumps(schema_to_avro(SIMPLE_SCHEMA)),
        filepattern=str(tmp_path / "out" / "users_*"),
    )

    assert Counter(read(config)) == Counter(rows)


def test_json_output_is_newline_delimited(tmp_path: Path):
    transform = WriteTransform(
        _write_config(tmp_path, format="json", schema=json.dumps(schema_to_json_schema(SIMPLE_SCHEMA)))
    )
    result = transform.write(simple_rows(3))

    (path,) = result.filenames
    lines = Path(path).read_text().splitlines()
    assert [json.loads(line) for line in lines] == [row.as_dict() for row in simple_rows(3)]


def test_failed_commit_retracts_shards_already_promoted(tmp_path: Path, monkeypatch):
    real_promote = StagingLayout.promote
    promoted: list[Path] = []

    def promote_then_fail(self, *, temp_path: Path, final_path: Path) -> None:
        if len(promoted) == 2:
            raise PermissionError("locked")
        real_promote(self, temp_path=temp_path, final_path=final_path)
        promoted.append(final_path)

    monkeypatch.setattr(StagingLayout, "promote", promote_then_fail)
    writer = DynamicDestinationWriter(AVRO_CODEC)

    with pytest.raises(PermissionError, match="locked"):
        writer.write(simple_rows(9), _destinations(tmp_path, lambda row: row["anInteger"]))

    assert len(promoted) == 2
    assert list(tmp_path.iterdir()) == []
