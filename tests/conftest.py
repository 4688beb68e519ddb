from __future__ import annotations

import json
from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from fileschema.codecs.avro_codec import AVRO_CODEC, schema_to_avro
from fileschema.codecs.base_codec import Codec
from fileschema.schema import Field, Row, Schema

SIMPLE_SCHEMA = Schema.of(
    Field("anInteger", "int32"),
    Field("aString", "string"),
)

ADDRESS_SCHEMA = Schema.of(
    Field("street", "string"),
    Field("zip", "string", nullable=True),
)

ALL_TYPES_SCHEMA = Schema.of(
    Field("aBoolean", "boolean"),
    Field("anInteger", "int32"),
    Field("aLong", "int64"),
    Field("aFloat", "float"),
    Field("aDouble", "double"),
    Field("aString", "string"),
    Field("someBytes", "bytes"),
    Field("aDate", "date"),
    Field("aTimestamp", "timestamp"),
    Field("maybeString", "string", nullable=True),
    Field("address", "row", fields=ADDRESS_SCHEMA),
    Field("tags", "array", item=Field("item", "string")),
)


def simple_rows(count: int) -> list[Row]:
    return [Row(SIMPLE_SCHEMA, (i % 3 + 1, f"value-{i}")) for i in range(count)]


def all_types_rows() -> list[Row]:
    return [
        Row.from_dict(
            ALL_TYPES_SCHEMA,
            {
                "aBoolean": i % 2 == 0,
                "anInteger": i,
                "aLong": 2**40 + i,
                "aFloat": 0.1 + i,
                "aDouble": 0.2 + 0.1 * i,
                "aString": f"row {i}",
                "someBytes": bytes([i, i + 1]),
                "aDate": date(2024, 1, 1 + i),
                "aTimestamp": datetime(2024, 1, 1, 12, 30, i, 125000, tzinfo=timezone.utc),
                "maybeString": None if i % 2 else f"maybe {i}",
                "address": {"street": f"{i} Main St", "zip": None if i == 1 else "12345"},
                "tags": [f"t{j}" for j in range(i)],
            },
        )
        for i in range(4)
    ]


def write_records_file(path: Path, codec: Codec, schema: Schema, rows: list[Row]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as stream:
        codec.write_records(stream, schema, [codec.encode(row) for row in rows])
    return path


@pytest.fixture
def simple_schema() -> Schema:
    return SIMPLE_SCHEMA


@pytest.fixture
def all_types_schema() -> Schema:
    return ALL_TYPES_SCHEMA


@pytest.fixture
def simple_avro_schema_text() -> str:
    return json.dumps(schema_to_avro(SIMPLE_SCHEMA))


@pytest.fixture
def avro_file_factory(tmp_path: Path):
    """Writes Avro container files of SIMPLE_SCHEMA rows under tmp_path."""

    def _write(name: str, rows: list[Row]) -> Path:
        return write_records_file(tmp_path / name, AVRO_CODEC, SIMPLE_SCHEMA, rows)

    return _write
