from __future__ import annotations

import glob
import logging
import os
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Iterator

from core.settings import DEFAULT_POLL_INTERVAL_MILLIS
from fileschema.domain import FilePattern, MatchedFile
from fileschema.errors import InvalidPattern

logger = logging.getLogger(__name__)


def validate_pattern(pattern: FilePattern) -> None:
    """Rejects patterns glob cannot evaluate meaningfully. Matching nothing is fine."""
    if not isinstance(pattern, str) or not pattern.strip():
        raise InvalidPattern(f"File pattern must be a non-empty string, got {pattern!r}")

    if "\x00" in pattern:
        raise InvalidPattern(f"File pattern contains a NUL byte: {pattern!r}")

    depth = 0
    class_start: int | None = None
    for i, ch in enumerate(pattern):
        if class_start is not None:
            # "]" as the first member of a class ("[]..." or "[!]...") is literal
            first_member = class_start + (2 if pattern[class_start + 1:class_start + 2] == "!" else 1)
            if ch == "]" and i > first_member:
                class_start = None
            continue
        if ch == "[":
            class_start = i
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth < 0:
                raise InvalidPattern(f"Unbalanced '}}' in file pattern: {pattern!r}")

    if class_start is not None:
        raise InvalidPattern(f"Unclosed '[' in file pattern: {pattern!r}")
    if depth != 0:
        raise InvalidPattern(f"Unbalanced '{{' in file pattern: {pattern!r}")


class FileDiscoveryEngine:
    """
    Resolves file patterns to MatchedFiles.

    One engine is one session: it owns the set of identities it has already
    handed out. Batch callers use match(); streaming callers use
    discover_new() or poll(), which never return the same identity twice,
    even when passes run concurrently.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic):
        self._seen: set[str] = set()
        self._lock = threading.Lock()
        self._clock = clock

    # ----------------------------
    # Matching
    # ----------------------------
    def match(self, patterns: Iterable[FilePattern]) -> list[MatchedFile]:
        patterns = list(patterns)
        for pattern in patterns:
            validate_pattern(pattern)

        matched: dict[str, MatchedFile] = {}
        for pattern in patterns:
            hits = 0
            for candidate in glob.glob(os.path.expanduser(pattern), recursive=True):
                matched_file = self._stat(candidate)
                if matched_file is None:
                    continue
                hits += 1
                matched.setdefault(matched_file.identity, matched_file)
            logger.debug("Pattern %s matched %s files", pattern, hits)

        return sorted(matched.values(), key=lambda m: m.identity)

    @staticmethod
    def _stat(candidate: str) -> MatchedFile | None:
        path = Path(candidate).absolute()
        try:
            stat = path.stat()
        except FileNotFoundError:
            # Listed, then deleted before we looked at it.
            logger.debug("File vanished before stat: %s", path)
            return None
        if not path.is_file():
            return None

        return MatchedFile(
            path=path,
            identity=str(path.resolve()),
            size_bytes=stat.st_size,
            mtime_utc=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )

    # ----------------------------
    # Session state
    # ----------------------------
    def claim(self, matched_file: MatchedFile) -> bool:
        """Marks the file as seen. True only for the first caller to claim its identity."""
        with self._lock:
            if matched_file.identity in self._seen:
                return False
            self._seen.add(matched_file.identity)
            return True

    @property
    def seen_count(self) -> int:
        with self._lock:
            return len(self._seen)

    def reset(self) -> None:
        """Forget every identity. Only for a session restart."""
        with self._lock:
            self._seen.clear()

    def discover_new(self, patterns: Iterable[FilePattern]) -> list[MatchedFile]:
        """One discovery pass: files matching now that this session has not returned before."""
        return [m for m in self.match(patterns) if self.claim(m)]

    # ----------------------------
    # Streaming
    # ----------------------------
    def poll(
        self,
        patterns: Iterable[FilePattern] | Callable[[], list[FilePattern]],
        *,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_MILLIS / 1000.0,
        terminate_after_seconds: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[list[MatchedFile]]:
        """
        Re-scans the patterns every poll interval and yields each non-empty batch of new files.

        patterns may be a callable returning the patterns to watch; it is called
        on every pass, so the watched set can grow while polling. A pattern
        joining the set restarts the quiescence window.

        Ends when cancel_event is set, or when no new file has appeared for
        terminate_after_seconds (counted from the start of the poll, the last
        new pattern or the last new file). Without terminate_after_seconds it
        only ends on cancellation.
        """
        if callable(patterns):
            current_patterns = patterns
        else:
            static_patterns = list(patterns)
            for pattern in static_patterns:
                validate_pattern(pattern)
            current_patterns = lambda: static_patterns

        if poll_interval_seconds <= 0:
            raise ValueError(f"poll_interval_seconds must be positive, got {poll_interval_seconds}")

        cancel_event = cancel_event or threading.Event()
        last_new_output = self._clock()
        watched = 0
        passes = 0

        while not cancel_event.is_set():
            passes += 1
            patterns = current_patterns()
            if len(patterns) > watched:
                watched = len(patterns)
                last_new_output = self._clock()

            new_files = self.discover_new(patterns)
            now = self._clock()

            if new_files:
                last_new_output = now
                logger.info("Poll pass %s found %s new files", passes, len(new_files))
                yield new_files
            elif terminate_after_seconds is not None and now - last_new_output >= terminate_after_seconds:
                logger.info(
                    "No new files for %.1fs after %s poll passes; ending watch of %s",
                    now - last_new_output,
                    passes,
                    patterns,
                )
                return

            if cancel_event.wait(poll_interval_seconds):
                break

        logger.info("Polling cancelled after %s passes", passes)
