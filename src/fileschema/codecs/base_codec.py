from __future__ import annotations

from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Iterable, Iterator, Mapping

from fileschema.errors import RecordDecodeError
from fileschema.schema import Row, Schema


@dataclass(frozen=True)
class Codec:
    """
    Converts between Rows and one external record format.

    A codec is a value: a named set of functions. Formats do not subclass
    anything, so each one can be built and tested on its own.
    """
    identifier: str
    suffix: str
    parse_schema: Callable[[str], Schema]
    schema_to_external: Callable[[Schema], str]
    encode: Callable[[Row], Any]
    decode: Callable[[Any, Schema], Row]
    read_records: Callable[[BinaryIO], Iterator[Any]]
    write_records: Callable[[BinaryIO, Schema, Iterable[Any]], None]


def project_record(schema: Schema, record: Mapping[str, Any]) -> dict[str, Any]:
    """
    Keeps only the fields the schema declares, recursing into nested rows and
    arrays of rows. Fields the file carries beyond the schema are ignored.
    """
    projected: dict[str, Any] = {}
    for f in schema.fields:
        if f.name not in record:
            continue
        projected[f.name] = _project_value(f, record[f.name])
    return projected


def _project_value(f: Any, value: Any) -> Any:
    if value is None:
        return None
    if f.type == "row" and isinstance(value, Mapping):
        return project_record(f.fields, value)
    if f.type == "array" and isinstance(value, (list, tuple)):
        return [_project_value(f.item, element) for element in value]
    return value


def decode_mapping(record: Any, schema: Schema) -> Row:
    if not isinstance(record, Mapping):
        raise TypeError(f"Expected a mapping record, got {type(record).__name__}")
    return Row.from_dict(schema, project_record(schema, record))


def decode_stream(codec: Codec, stream: BinaryIO, schema: Schema, *, path: str) -> Iterator[Row]:
    """
    Decodes every record of an open file, in file order.

    Any failure, on the container or on a single record, raises RecordDecodeError
    and ends the stream. There is no skip-and-continue mode.
    """
    decoded = 0
    try:
        for record in codec.read_records(stream):
            yield codec.decode(record, schema)
            decoded += 1
    except RecordDecodeError:
        raise
    except Exception as e:
        # fastavro and pyarrow raise their own exception types
        raise RecordDecodeError(
            f"Failed to decode {codec.identifier} record: {e}", path=path, record_index=decoded
        ) from e
