from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Iterable, Iterator, Mapping

from core.settings import FILEPATTERN_ROW_FIELD_NAME, INPUT_TAG, OUTPUT_TAG
from fileschema.codecs.base_codec import decode_stream
from fileschema.config import ReadConfiguration
from fileschema.discovery import FileDiscoveryEngine, validate_pattern
from fileschema.domain import FilePattern, MatchedFile
from fileschema.registry import DEFAULT_REGISTRY, FormatRegistry, resolve_schema
from fileschema.schema import Field, Row, Schema

logger = logging.getLogger(__name__)

FILEPATTERN_ROW_SCHEMA = Schema.of(Field(FILEPATTERN_ROW_FIELD_NAME, "string"))


def filepattern_row(pattern: FilePattern) -> Row:
    return Row(FILEPATTERN_ROW_SCHEMA, (pattern,))


def extract_pattern(row: Row) -> FilePattern:
    if not isinstance(row, Row) or FILEPATTERN_ROW_FIELD_NAME not in row.schema.field_names:
        raise ValueError(f"Pattern input rows must carry a '{FILEPATTERN_ROW_FIELD_NAME}' field, got {row!r}")
    pattern = row[FILEPATTERN_ROW_FIELD_NAME]
    validate_pattern(pattern)
    return pattern


class PatternFeed:
    """
    Collects patterns from an input row stream on a background thread.

    The row stream may block between rows. snapshot() returns every distinct
    pattern received so far, and re-raises a failure of the row stream.
    """

    def __init__(self, rows: Iterable[Row], *, cancel_event: threading.Event):
        self._rows = rows
        self._cancel_event = cancel_event
        self._patterns: list[FilePattern] = []
        self._error: Exception | None = None
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._consume, name="pattern-feed", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _consume(self) -> None:
        try:
            for row in self._rows:
                if self._cancel_event.is_set():
                    return
                pattern = extract_pattern(row)
                with self._lock:
                    if pattern in self._patterns:
                        continue
                    self._patterns.append(pattern)
                logger.info("Watching file pattern %s", pattern)
        except Exception as e:
            with self._lock:
                self._error = e

    def snapshot(self) -> list[FilePattern]:
        with self._lock:
            if self._error is not None:
                raise self._error
            return list(self._patterns)


class ReadTransform:
    """
    Coordinates: discover -> decode -> emit.

    Format and schema are resolved when the transform is built, so configuration
    errors surface before any file is touched. Each expand() is one session with
    its own discovery engine; sessions never share seen-file state.
    """

    def __init__(
        self,
        config: ReadConfiguration,
        *,
        registry: FormatRegistry | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.config = config
        self.codec = (registry or DEFAULT_REGISTRY).lookup(config.format)
        self.schema = resolve_schema(config.schema_text, self.codec)
        self.cancel_event = cancel_event or threading.Event()

        for pattern in config.patterns:
            validate_pattern(pattern)

    def cancel(self) -> None:
        self.cancel_event.set()

    def expand(self, inputs: Mapping[str, Iterable[Row]] | None = None) -> dict[str, Iterator[Row]]:
        inputs = inputs or {}
        unknown_tags = set(inputs) - {INPUT_TAG}
        if unknown_tags:
            raise ValueError(f"Unexpected input tags {sorted(unknown_tags)}; only '{INPUT_TAG}' is accepted")

        pattern_rows = inputs.get(INPUT_TAG)
        if pattern_rows is not None and self.config.filepattern is not None:
            raise ValueError(
                f"Both a static filepattern and an '{INPUT_TAG}' stream of patterns were given; use exactly one"
            )
        if pattern_rows is None and self.config.filepattern is None:
            raise ValueError(f"No filepattern configured and no '{INPUT_TAG}' stream of patterns given")

        engine = FileDiscoveryEngine()
        if pattern_rows is None:
            batches = self._discover(engine, self.config.patterns)
        else:
            batches = self._discover_from_rows(engine, pattern_rows)

        return {OUTPUT_TAG: self._read_batches(batches)}

    # ----------------------------
    # Discovery
    # ----------------------------
    def _discover(self, engine: FileDiscoveryEngine, patterns: list[FilePattern]) -> Iterator[list[MatchedFile]]:
        if not self.config.is_streaming:
            files = engine.discover_new(patterns)
            logger.info("Discovery found %s files for %s", len(files), patterns)
            if files:
                yield files
            return

        assert self.config.poll_interval_millis is not None
        yield from engine.poll(
            patterns,
            poll_interval_seconds=self.config.poll_interval_millis / 1000.0,
            terminate_after_seconds=self.config.terminate_after_seconds_since_new_output,
            cancel_event=self.cancel_event,
        )

    def _discover_from_rows(self, engine: FileDiscoveryEngine, rows: Iterable[Row]) -> Iterator[list[MatchedFile]]:
        if not self.config.is_streaming:
            for row in rows:
                if self.cancel_event.is_set():
                    return
                yield from self._discover(engine, [extract_pattern(row)])
            return

        # One poll loop watches every pattern received so far.
        feed = PatternFeed(rows, cancel_event=self.cancel_event)
        feed.start()
        assert self.config.poll_interval_millis is not None
        yield from engine.poll(
            feed.snapshot,
            poll_interval_seconds=self.config.poll_interval_millis / 1000.0,
            terminate_after_seconds=self.config.terminate_after_seconds_since_new_output,
            cancel_event=self.cancel_event,
        )

    # ----------------------------
    # Decoding
    # ----------------------------
    def _read_batches(self, batches: Iterator[list[MatchedFile]]) -> Iterator[Row]:
        files_read = 0
        rows_emitted = 0

        with ThreadPoolExecutor(max_workers=self.config.max_parallel_reads) as executor:
            for files in batches:
                if self.cancel_event.is_set():
                    break

                in_flight: dict[Future[list[Row]], MatchedFile] = {
                    executor.submit(self._read_file, matched): matched for matched in files
                }
                try:
                    while in_flight:
                        done, _ = wait(in_flight.keys(), return_when=FIRST_COMPLETED)
                        for fut in done:
                            in_flight.pop(fut)
                            rows = fut.result()
                            files_read += 1
                            rows_emitted += len(rows)
                            yield from rows
                finally:
                    for fut in in_flight:
                        fut.cancel()

        logger.info("Read session complete: %s files, %s rows.", files_read, rows_emitted)

    def _read_file(self, matched: MatchedFile) -> list[Row]:
        try:
            stream = open(matched.path, "rb")
        except FileNotFoundError:
            logger.warning("Matched file disappeared before it could be opened, skipping: %s", matched.path)
            return []

        with stream:
            rows = list(decode_stream(self.codec, stream, self.schema, path=str(matched.path)))

        logger.debug("Decoded %s rows from %s", len(rows), matched.path)
        return rows


def read(
    config: ReadConfiguration,
    patterns: Iterable[Row] | None = None,
    *,
    registry: FormatRegistry | None = None,
    cancel_event: threading.Event | None = None,
) -> Iterator[Row]:
    """Builds a ReadTransform and returns its output rows."""
    transform = ReadTransform(config, registry=registry, cancel_event=cancel_event)
    inputs = {} if patterns is None else {INPUT_TAG: patterns}
    return transform.expand(inputs)[OUTPUT_TAG]
