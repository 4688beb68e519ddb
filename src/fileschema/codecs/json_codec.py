import base64
import json
from datetime import date, datetime
from typing import Any, BinaryIO, Iterable, Iterator, Mapping

from fileschema.codecs.base_codec import Codec, project_record
from fileschema.errors import SchemaResolutionError
from fileschema.schema import Field, Row, Schema

# (JSON Schema type, format) -> field type. A format of None is the fallback for the type.
JSON_SCHEMA_TO_FIELD_TYPE: dict[tuple[str, str | None], str] = {
    ("boolean", None): "boolean",
    ("integer", "int32"): "int32",
    ("integer", None): "int64",
    ("number", "float"): "float",
    ("number", None): "double",
    ("string", "date"): "date",
    ("string", "date-time"): "timestamp",
    ("string", "byte"): "bytes",
    ("string", None): "string",
}

FIELD_TYPE_TO_JSON_SCHEMA: dict[str, dict[str, str]] = {
    "boolean": {"type": "boolean"},
    "int32": {"type": "integer", "format": "int32"},
    "int64": {"type": "integer"},
    "float": {"type": "number", "format": "float"},
    "double": {"type": "number"},
    "string": {"type": "string"},
    "bytes": {"type": "string", "format": "byte"},
    "date": {"type": "string", "format": "date"},
    "timestamp": {"type": "string", "format": "date-time"},
}


# ----------------------------
# JSON Schema <-> Schema
# ----------------------------
def parse_json_schema(schema_text: str) -> Schema:
    """
    Parses a JSON Schema object. Property order is field order; properties not
    listed in "required" (or whose type includes "null") are nullable.
    """
    try:
        raw = json.loads(schema_text)
    except json.JSONDecodeError as e:
        raise SchemaResolutionError(f"JSON schema is not valid JSON: {e}") from e

    if not isinstance(raw, dict) or raw.get("type") != "object" or not isinstance(raw.get("properties"), dict):
        raise SchemaResolutionError("JSON schema must be an object with 'properties' at the top level")

    try:
        return _schema_from_object(raw)
    except (ValueError, TypeError) as e:
        raise SchemaResolutionError(f"Invalid JSON schema: {e}") from e


def _schema_from_object(obj: dict[str, Any]) -> Schema:
    required = set(obj.get("required", []))
    properties: dict[str, Any] = obj.get("properties", {})
    return Schema(
        fields=tuple(
            _field_from_json_schema(name, prop, nullable=name not in required)
            for name, prop in properties.items()
        )
    )


def _field_from_json_schema(name: str, prop: Any, nullable: bool) -> Field:
    if not isinstance(prop, dict):
        raise SchemaResolutionError(f"Property '{name}' must be an object, got {prop!r}")

    json_type = prop.get("type")
    if isinstance(json_type, list):
        non_null = [t for t in json_type if t != "null"]
        if len(non_null) != 1:
            raise SchemaResolutionError(f"Property '{name}': unsupported type union {json_type}")
        nullable = nullable or "null" in json_type
        json_type = non_null[0]

    if json_type == "object":
        if not isinstance(prop.get("properties"), dict):
            raise SchemaResolutionError(f"Property '{name}': nested objects must declare 'properties'")
        return Field(name, "row", nullable=nullable, fields=_schema_from_object(prop))

    if json_type == "array":
        if "items" not in prop:
            raise SchemaResolutionError(f"Property '{name}': arrays must declare 'items'")
        item = _field_from_json_schema("item", prop["items"], nullable=False)
        return Field(name, "array", nullable=nullable, item=item)

    field_type = JSON_SCHEMA_TO_FIELD_TYPE.get((json_type, prop.get("format")))
    if field_type is None:
        field_type = JSON_SCHEMA_TO_FIELD_TYPE.get((json_type, None))
    if field_type is None:
        raise SchemaResolutionError(f"Property '{name}': unsupported JSON schema type {json_type!r}")
    return Field(name, field_type, nullable=nullable)


def schema_to_json_schema(schema: Schema) -> dict[str, Any]:
    properties: dict[str, Any] = {}
    required: list[str] = []
    for f in schema.fields:
        properties[f.name] = _json_schema_property(f)
        if not f.nullable:
            required.append(f.name)
    return {"type": "object", "properties": properties, "required": required}


def _json_schema_property(f: Field) -> dict[str, Any]:
    if f.type == "row":
        prop = schema_to_json_schema(f.fields)
    elif f.type == "array":
        prop = {"type": "array", "items": _json_schema_property(f.item)}
    else:
        prop = dict(FIELD_TYPE_TO_JSON_SCHEMA[f.type])
    if f.nullable:
        prop["type"] = [prop["type"], "null"]
    return prop


def schema_to_json_schema_text(schema: Schema) -> str:
    return json.dumps(schema_to_json_schema(schema))


# ----------------------------
# Records
# ----------------------------
def _to_json_value(f: Field, value: Any) -> Any:
    if value is None:
        return None
    if f.type == "row":
        return encode_json_row(value)
    if f.type == "array":
        return [_to_json_value(f.item, element) for element in value]
    if f.type == "bytes":
        return base64.b64encode(value).decode("ascii")
    if f.type == "timestamp":
        return value.isoformat(timespec="milliseconds")
    if f.type == "date":
        return value.isoformat()
    return value


def encode_json_row(row: Row) -> dict[str, Any]:
    return {f.name: _to_json_value(f, v) for f, v in zip(row.schema.fields, row.values)}


def _from_json_value(f: Field, value: Any) -> Any:
    if value is None:
        return None
    if f.type == "row":
        if not isinstance(value, Mapping):
            raise TypeError(f"Field '{f.name}' expects an object, got {value!r}")
        return _from_json_mapping(f.fields, value)
    if f.type == "array":
        if not isinstance(value, list):
            raise TypeError(f"Field '{f.name}' expects an array, got {value!r}")
        return [_from_json_value(f.item, element) for element in value]
    if f.type == "bytes":
        return base64.b64decode(value, validate=True)
    if f.type == "timestamp":
        return datetime.fromisoformat(value)
    if f.type == "date":
        return date.fromisoformat(value)
    return value


def _from_json_mapping(schema: Schema, mapping: Mapping[str, Any]) -> dict[str, Any]:
    projected = project_record(schema, mapping)
    return {f.name: _from_json_value(f, projected[f.name]) for f in schema.fields if f.name in projected}


def decode_json_record(record: Any, schema: Schema) -> Row:
    if not isinstance(record, Mapping):
        raise TypeError(f"Expected a JSON object per line, got {type(record).__name__}")
    return Row.from_dict(schema, _from_json_mapping(schema, record))


def read_json_records(stream: BinaryIO) -> Iterator[Any]:
    for line in stream:
        line = line.strip()
        if not line:
            continue
        yield json.loads(line)


def write_json_records(stream: BinaryIO, schema: Schema, records: Iterable[dict[str, Any]]) -> None:
    for record in records:
        stream.write(json.dumps(record, separators=(",", ":")).encode("utf-8") + b"\n")


JSON_CODEC = Codec(
    identifier="json",
    suffix=".json",
    parse_schema=parse_json_schema,
    schema_to_external=schema_to_json_schema_text,
    encode=encode_json_row,
    decode=decode_json_record,
    read_records=read_json_records,
    write_records=write_json_records,
)
