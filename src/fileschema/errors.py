class FileSchemaError(Exception):
    pass


class InvalidPattern(FileSchemaError):
    """A file pattern whose glob syntax cannot be evaluated."""


class UnknownFormat(FileSchemaError):
    """No codec is registered under the requested format identifier."""

    def __init__(self, identifier: str, known: list[str] | None = None):
        self.identifier = identifier
        self.known = sorted(known or [])
        super().__init__(f"Unknown format '{identifier}'. Registered formats: {self.known}")


class DuplicateFormat(FileSchemaError, ValueError):
    pass


class SchemaResolutionError(FileSchemaError):
    """Schema text or schema file could not be read or parsed."""


class RowValidationError(FileSchemaError, ValueError):
    pass


class RecordDecodeError(FileSchemaError):
    """
    A record inside a matched file could not be decoded.

    Aborts the read of that file and of the whole read operation.
    """

    def __init__(self, message: str, *, path: str | None = None, record_index: int | None = None):
        self.path = path
        self.record_index = record_index
        location = ""
        if path is not None:
            location = f" [file={path}" + (f", record={record_index}" if record_index is not None else "") + "]"
        super().__init__(f"{message}{location}")


class DestinationResolutionError(FileSchemaError):
    """The destination function failed for a row; the whole bundle is failed."""


class FilenameCollisionError(FileSchemaError):
    pass
