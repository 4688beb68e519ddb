from __future__ import annotations

import re
import struct
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Iterator, Mapping, Sequence

import pyarrow as pa

from fileschema.errors import RowValidationError

PRIMITIVE_TYPES = ("boolean", "int32", "int64", "float", "double", "string", "bytes", "date", "timestamp")
FIELD_TYPES = PRIMITIVE_TYPES + ("row", "array")

INT32_MIN, INT32_MAX = -(2**31), 2**31 - 1
INT64_MIN, INT64_MAX = -(2**63), 2**63 - 1

_FIELD_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


FIELD_TYPE_TO_ARROW_TYPE: dict[str, pa.DataType] = {
    "boolean": pa.bool_(),
    "int32": pa.int32(),
    "int64": pa.int64(),
    "float": pa.float32(),
    "double": pa.float64(),
    "string": pa.string(),
    "bytes": pa.binary(),
    "date": pa.date32(),
    "timestamp": pa.timestamp("ms", tz="UTC"),
}


@dataclass(frozen=True)
class Field:
    """
    One named, typed column of a Schema.

    fields:
      Nested Schema, only for type "row".
    item:
      Element type, only for type "array". Its name is informational.
    """
    name: str
    type: str
    nullable: bool = False
    fields: Schema | None = None
    item: Field | None = None

    def __post_init__(self) -> None:
        if self.type not in FIELD_TYPES:
            raise ValueError(f"Unsupported field type '{self.type}' for field '{self.name}'")
        if (self.type == "row") != (self.fields is not None):
            raise ValueError(f"Field '{self.name}': nested fields are required for, and only allowed on, type 'row'")
        if (self.type == "array") != (self.item is not None):
            raise ValueError(f"Field '{self.name}': an item field is required for, and only allowed on, type 'array'")


@dataclass(frozen=True)
class Schema:
    """Ordered, immutable sequence of named, typed fields."""
    fields: tuple[Field, ...]
    _index: dict[str, int] = field(init=False, repr=False, compare=False, hash=False)

    def __post_init__(self) -> None:
        fields = tuple(self.fields)
        object.__setattr__(self, "fields", fields)

        index: dict[str, int] = {}
        for position, f in enumerate(fields):
            if not _FIELD_NAME_RE.match(f.name):
                raise ValueError(f"Invalid field name '{f.name}'. Must start with a letter or underscore, "
                                 "followed by letters, digits, or underscores.")
            if f.name in index:
                raise ValueError(f"Duplicate field name '{f.name}' in schema")
            index[f.name] = position
        object.__setattr__(self, "_index", index)

    @classmethod
    def of(cls, *fields: Field) -> Schema:
        return cls(fields=tuple(fields))

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def index_of(self, name: str) -> int:
        try:
            return self._index[name]
        except KeyError:
            raise KeyError(f"Schema has no field named '{name}'. Fields: {self.field_names}") from None

    def get_field(self, key: int | str) -> Field:
        if isinstance(key, str):
            return self.fields[self.index_of(key)]
        return self.fields[key]

    def __len__(self) -> int:
        return len(self.fields)

    def __iter__(self) -> Iterator[Field]:
        return iter(self.fields)


# ----------------------------
# Value validation
# ----------------------------
def _check_value(f: Field, value: Any, path: str) -> Any:
    """Validates one value against its field and returns the normalized value."""
    if value is None:
        if not f.nullable:
            raise RowValidationError(f"Field '{path}' is not nullable but got None")
        return None

    t = f.type
    if t == "boolean":
        ok = isinstance(value, bool)
    elif t in ("int32", "int64"):
        low, high = (INT32_MIN, INT32_MAX) if t == "int32" else (INT64_MIN, INT64_MAX)
        ok = isinstance(value, int) and not isinstance(value, bool) and low <= value <= high
    elif t in ("float", "double"):
        ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        if ok:
            value = float(value)
            if t == "float":
                try:
                    value = to_float32(value)
                except OverflowError:
                    ok = False
    elif t == "string":
        ok = isinstance(value, str)
    elif t == "bytes":
        ok = isinstance(value, (bytes, bytearray))
        if ok:
            value = bytes(value)
    elif t == "date":
        ok = isinstance(value, date) and not isinstance(value, datetime)
    elif t == "timestamp":
        ok = isinstance(value, datetime)
        if ok:
            value = normalize_timestamp(value)
    elif t == "row":
        assert f.fields is not None
        if isinstance(value, Row):
            if value.schema != f.fields:
                raise RowValidationError(f"Field '{path}': nested row has a different schema")
            return value
        if isinstance(value, Mapping):
            return Row.from_dict(f.fields, value, _path=path)
        ok = False
    else:  # "array"
        assert f.item is not None
        if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
            ok = False
        else:
            return tuple(_check_value(f.item, element, f"{path}[{i}]") for i, element in enumerate(value))

    if not ok:
        raise RowValidationError(f"Field '{path}' of type '{t}' cannot hold value {value!r}")
    return value


def to_float32(value: float) -> float:
    """Rounds to the nearest single-precision value, the precision "float" fields are stored with."""
    return struct.unpack("f", struct.pack("f", value))[0]


def normalize_timestamp(value: datetime) -> datetime:
    """Timestamps are UTC-aware with millisecond precision. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


@dataclass(frozen=True)
class Row:
    """
    Immutable structured value conforming to exactly one Schema.

    Access by field name or by position: row["aString"], row[1].
    """
    schema: Schema
    values: tuple[Any, ...]

    def __post_init__(self) -> None:
        self._validate("")

    def _validate(self, prefix: str) -> None:
        values = tuple(self.values)
        if len(values) != len(self.schema):
            raise RowValidationError(
                f"Row has {len(values)} values but schema has {len(self.schema)} fields: {self.schema.field_names}"
            )
        normalized = tuple(
            _check_value(f, v, f"{prefix}{f.name}") for f, v in zip(self.schema.fields, values)
        )
        object.__setattr__(self, "values", normalized)

    @classmethod
    def from_dict(cls, schema: Schema, mapping: Mapping[str, Any], *, _path: str = "") -> Row:
        unknown = set(mapping) - set(schema.field_names)
        if unknown:
            raise RowValidationError(f"Unknown fields {sorted(unknown)} for schema {schema.field_names}")

        values: list[Any] = []
        for f in schema.fields:
            if f.name not in mapping and not f.nullable:
                raise RowValidationError(f"Missing required field '{_path + '.' if _path else ''}{f.name}'")
            values.append(mapping.get(f.name))

        row = cls.__new__(cls)
        object.__setattr__(row, "schema", schema)
        object.__setattr__(row, "values", tuple(values))
        row._validate(f"{_path}." if _path else "")
        return row

    def __getitem__(self, key: int | str) -> Any:
        if isinstance(key, str):
            return self.values[self.schema.index_of(key)]
        return self.values[key]

    def get(self, name: str, default: Any = None) -> Any:
        if name not in self.schema.field_names:
            return default
        return self[name]

    def as_dict(self) -> dict[str, Any]:
        return {f.name: _plain(v) for f, v in zip(self.schema.fields, self.values)}


def _plain(value: Any) -> Any:
    if isinstance(value, Row):
        return value.as_dict()
    if isinstance(value, tuple):
        return [_plain(v) for v in value]
    return value


# ----------------------------
# Arrow translation
# ----------------------------
def _arrow_type(f: Field) -> pa.DataType:
    if f.type == "row":
        assert f.fields is not None
        return pa.struct([_arrow_field(nested) for nested in f.fields])
    if f.type == "array":
        assert f.item is not None
        return pa.list_(_arrow_field(f.item))
    return FIELD_TYPE_TO_ARROW_TYPE[f.type]


def _arrow_field(f: Field) -> pa.Field:
    return pa.field(f.name, _arrow_type(f), nullable=f.nullable)


def to_arrow_schema(schema: Schema) -> pa.Schema:
    return pa.schema([_arrow_field(f) for f in schema.fields])
