import logging
import threading
from pathlib import Path

from fileschema.codecs.avro_codec import AVRO_CODEC
from fileschema.codecs.base_codec import Codec
from fileschema.codecs.json_codec import JSON_CODEC
from fileschema.codecs.parquet_codec import PARQUET_CODEC
from fileschema.errors import DuplicateFormat, SchemaResolutionError, UnknownFormat
from fileschema.schema import Schema

logger = logging.getLogger(__name__)

BUILTIN_CODECS: tuple[Codec, ...] = (AVRO_CODEC, PARQUET_CODEC, JSON_CODEC)


class FormatRegistry:
    """
    Maps format identifiers to codecs.

    Re-registration policy:
      - the same codec object again under its identifier is a no-op
      - a different codec under an already registered identifier raises DuplicateFormat
    """

    def __init__(self, codecs: tuple[Codec, ...] = ()):
        self._codecs: dict[str, Codec] = {}
        self._lock = threading.Lock()
        for codec in codecs:
            self.register(codec)

    def register(self, codec: Codec) -> None:
        if not codec.identifier:
            raise ValueError("Codec identifier must be a non-empty string")

        with self._lock:
            existing = self._codecs.get(codec.identifier)
            if existing is codec:
                return
            if existing is not None:
                raise DuplicateFormat(f"Format '{codec.identifier}' is already registered with a different codec")
            self._codecs[codec.identifier] = codec

        logger.debug("Registered format '%s' (suffix %s)", codec.identifier, codec.suffix)

    def lookup(self, identifier: str) -> Codec:
        with self._lock:
            codec = self._codecs.get(identifier)
            if codec is None:
                raise UnknownFormat(identifier, list(self._codecs))
            return codec

    def identifiers(self) -> list[str]:
        with self._lock:
            return sorted(self._codecs)

    def __contains__(self, identifier: object) -> bool:
        with self._lock:
            return identifier in self._codecs


def default_registry() -> FormatRegistry:
    """A fresh registry holding the built-in formats."""
    return FormatRegistry(BUILTIN_CODECS)


DEFAULT_REGISTRY = default_registry()


def _is_inline_schema(schema_text: str) -> bool:
    return schema_text.lstrip()[:1] in ("{", "[", '"')


def resolve_schema(schema_text: str, codec: Codec) -> Schema:
    """
    Parses inline schema text, or reads and parses the schema file it points to.

    Inline text starts with "{", "[" or a quote; anything else is a path.
    """
    if _is_inline_schema(schema_text):
        text = schema_text
    else:
        schema_path = Path(schema_text.strip()).expanduser()
        try:
            text = schema_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise SchemaResolutionError(f"Cannot read schema file {schema_path}: {e}") from e
        logger.info("Loaded %s schema from %s", codec.identifier, schema_path)

    try:
        return codec.parse_schema(text)
    except SchemaResolutionError:
        raise
    except (ValueError, TypeError, KeyError) as e:
        raise SchemaResolutionError(f"Invalid {codec.identifier} schema: {e}") from e
