import json
import logging
from typing import Any, BinaryIO, Iterable, Iterator

import fastavro

from fileschema.codecs.base_codec import Codec, decode_mapping
from fileschema.errors import SchemaResolutionError
from fileschema.schema import Field, Row, Schema

logger = logging.getLogger(__name__)

TOP_LEVEL_RECORD_NAME = "topLevelRecord"

AVRO_PRIMITIVE_TO_FIELD_TYPE: dict[str, str] = {
    "boolean": "boolean",
    "int": "int32",
    "long": "int64",
    "float": "float",
    "double": "double",
    "string": "string",
    "bytes": "bytes",
}

FIELD_TYPE_TO_AVRO_TYPE: dict[str, Any] = {
    "boolean": "boolean",
    "int32": "int",
    "int64": "long",
    "float": "float",
    "double": "double",
    "string": "string",
    "bytes": "bytes",
    "date": {"type": "int", "logicalType": "date"},
    "timestamp": {"type": "long", "logicalType": "timestamp-millis"},
}


# ----------------------------
# Avro schema -> Schema
# ----------------------------
def parse_avro_schema(schema_text: str) -> Schema:
    """Parses an Avro JSON schema whose top level is a record."""
    try:
        raw = json.loads(schema_text)
    except json.JSONDecodeError as e:
        raise SchemaResolutionError(f"Avro schema is not valid JSON: {e}") from e

    try:
        fastavro.parse_schema(raw)
    except Exception as e:
        raise SchemaResolutionError(f"Invalid Avro schema: {e}") from e

    if not isinstance(raw, dict) or raw.get("type") != "record":
        raise SchemaResolutionError("Avro schema must be a record at the top level")

    return _schema_from_record(raw)


def _schema_from_record(record: dict[str, Any]) -> Schema:
    try:
        return Schema(fields=tuple(_field_from_avro(f["name"], f["type"]) for f in record.get("fields", [])))
    except ValueError as e:
        raise SchemaResolutionError(f"Unsupported Avro record '{record.get('name')}': {e}") from e


def _field_from_avro(name: str, avro_type: Any, nullable: bool = False) -> Field:
    if isinstance(avro_type, list):
        members = [t for t in avro_type if t != "null"]
        if len(members) != 1 or len(members) == len(avro_type):
            raise SchemaResolutionError(
                f"Field '{name}': only unions of 'null' and one other type are supported, got {avro_type}"
            )
        return _field_from_avro(name, members[0], nullable=True)

    if isinstance(avro_type, str):
        if avro_type not in AVRO_PRIMITIVE_TO_FIELD_TYPE:
            raise SchemaResolutionError(f"Field '{name}': unsupported Avro type '{avro_type}'")
        return Field(name, AVRO_PRIMITIVE_TO_FIELD_TYPE[avro_type], nullable=nullable)

    if isinstance(avro_type, dict):
        logical_type = avro_type.get("logicalType")
        base_type = avro_type.get("type")

        if logical_type == "date" and base_type == "int":
            return Field(name, "date", nullable=nullable)
        if logical_type in ("timestamp-millis", "timestamp-micros") and base_type == "long":
            return Field(name, "timestamp", nullable=nullable)
        if base_type == "record":
            return Field(name, "row", nullable=nullable, fields=_schema_from_record(avro_type))
        if base_type == "array":
            return Field(name, "array", nullable=nullable, item=_field_from_avro("item", avro_type["items"]))
        if isinstance(base_type, str) and base_type in AVRO_PRIMITIVE_TO_FIELD_TYPE:
            return _field_from_avro(name, base_type, nullable=nullable)

    raise SchemaResolutionError(f"Field '{name}': unsupported Avro type {avro_type!r}")


# ----------------------------
# Schema -> Avro schema
# ----------------------------
def schema_to_avro(schema: Schema, name: str = TOP_LEVEL_RECORD_NAME) -> dict[str, Any]:
    fields: list[dict[str, Any]] = []
    for f in schema.fields:
        avro_field: dict[str, Any] = {"name": f.name, "type": _avro_type(f, record_name=f"{name}_{f.name}")}
        if f.nullable:
            avro_field["default"] = None
        fields.append(avro_field)
    return {"type": "record", "name": name, "fields": fields}


def _avro_type(f: Field, record_name: str) -> Any:
    if f.type == "row":
        avro_type: Any = schema_to_avro(f.fields, name=record_name)
    elif f.type == "array":
        avro_type = {"type": "array", "items": _avro_type(f.item, record_name=f"{record_name}_item")}
    else:
        avro_type = FIELD_TYPE_TO_AVRO_TYPE[f.type]
    return ["null", avro_type] if f.nullable else avro_type


def schema_to_avro_text(schema: Schema) -> str:
    return json.dumps(schema_to_avro(schema))


# ----------------------------
# Records
# ----------------------------
def encode_row(row: Row) -> dict[str, Any]:
    return row.as_dict()


def read_avro_records(stream: BinaryIO) -> Iterator[dict[str, Any]]:
    reader = fastavro.reader(stream)
    logger.debug("Reading Avro container with writer schema %s", reader.writer_schema.get("name"))
    yield from reader


def write_avro_records(stream: BinaryIO, schema: Schema, records: Iterable[dict[str, Any]]) -> None:
    parsed_schema = fastavro.parse_schema(schema_to_avro(schema))
    fastavro.writer(stream, parsed_schema, records)


AVRO_CODEC = Codec(
    identifier="avro",
    suffix=".avro",
    parse_schema=parse_avro_schema,
    schema_to_external=schema_to_avro_text,
    encode=encode_row,
    decode=decode_mapping,
    read_records=read_avro_records,
    write_records=write_avro_records,
)
