from __future__ import annotations

import codecs
import re
from dataclasses import dataclass
from enum import Enum
from typing import Protocol


class EventKind(str, Enum):
    QUESTION = "question"
    COMPLETION = "completion"
    FILE_OP = "file_op"
    ERROR = "error"
    PROGRESS = "progress"


class FileOpKind(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class OutputEvent:
    kind: EventKind
    text: str
    percent: int | None = None
    operation: FileOpKind | None = None
    path: str | None = None


ANSI_PATTERN = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"  # CSI
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC
    r"|\x1b[@-Z\\-_]"
)
CONTROL_PATTERN = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
SPINNER_PATTERN = re.compile(r"^\s*[⠀-⣿◐-◓◴-◷✢✳✶✻✽]+\s*")
LINE_SPLIT_PATTERN = re.compile(r"\r?\n")
PERCENT_PATTERN = re.compile(r"(\d{1,3})%")

_PATH = r"[`'\"]?(?P<path>[^\s`'\"]+)[`'\"]?(?:\s+\(.*\))?\s*$"


def _compile(*patterns: str, flags: int = 0) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern, flags) for pattern in patterns)


@dataclass(frozen=True, slots=True)
class LinePatterns:
    """Ordered pattern tables for one harness, checked by fixed precedence.

    A question pattern may capture the question text in group 1; file
    operation patterns capture the path in the ``path`` group.
    """

    question: tuple[re.Pattern[str], ...] = ()
    completion: tuple[re.Pattern[str], ...] = ()
    file_ops: tuple[tuple[re.Pattern[str], FileOpKind], ...] = ()
    error: tuple[re.Pattern[str], ...] = ()
    progress: tuple[re.Pattern[str], ...] = ()

    def extend(
        self,
        *,
        question: tuple[re.Pattern[str], ...] = (),
        completion: tuple[re.Pattern[str], ...] = (),
        file_ops: tuple[tuple[re.Pattern[str], FileOpKind], ...] = (),
        error: tuple[re.Pattern[str], ...] = (),
        progress: tuple[re.Pattern[str], ...] = (),
    ) -> LinePatterns:
        """Return a copy with harness-specific patterns checked before the shared ones."""
        return LinePatterns(
            question=question + self.question,
            completion=completion + self.completion,
            file_ops=file_ops + self.file_ops,
            error=error + self.error,
            progress=progress + self.progress,
        )

    def classify_line(self, line: str) -> EventKind | None:
        if any(pattern.search(line) for pattern in self.question):
            return EventKind.QUESTION
        if any(pattern.search(line) for pattern in self.completion):
            return EventKind.COMPLETION
        if self.match_file_operation(line) is not None:
            return EventKind.FILE_OP
        if any(pattern.search(line) for pattern in self.error):
            return EventKind.ERROR
        if any(pattern.search(line) for pattern in self.progress):
            return EventKind.PROGRESS
        return None

    def detect_question(self, line: str) -> str | None:
        for pattern in self.question:
            match = pattern.search(line)
            if match is None:
                continue
            if match.groups() and match.group(1):
                return match.group(1).strip()
            return line.strip()
        return None

    def match_file_operation(self, line: str) -> tuple[FileOpKind, str] | None:
        for pattern, operation in self.file_ops:
            match = pattern.search(line)
            if match is not None:
                return operation, match.group("path")
        return None


DEFAULT_PATTERNS = LinePatterns(
    question=_compile(
        r"^\s*\?\s+(.+)$",
        r"\[y/n\]",
        r"\(yes/no\)",
        r"press enter to continue",
        r"\b(?:continue|proceed|confirm)\?\s*$",
        r"^(.+\?)\s*$",
        flags=re.IGNORECASE,
    ),
    completion=_compile(
        r"^Done\.?$",
        r"^Completed\.?$",
        r"^Finished\.?$",
        r"^Task completed\b",
        r"^All done\b",
        r"^Successfully\b",
        flags=re.IGNORECASE,
    ),
    file_ops=(
        (re.compile(r"^(?:Created?|Wrote)\s+(?:file\s+)?" + _PATH), FileOpKind.CREATE),
        (re.compile(r"^(?:Edited?|Modified|Updated)\s+(?:file\s+)?" + _PATH), FileOpKind.MODIFY),
        (re.compile(r"^(?:Deleted?|Removed)\s+(?:file\s+)?" + _PATH), FileOpKind.DELETE),
    ),
    error=_compile(
        r"^error:",
        r"^fatal:",
        r"\bfailed to\b",
        r"\bpermission denied\b",
        flags=re.IGNORECASE,
    ),
    progress=_compile(
        r"^(?:Working on|Processing|Analyzing|Reading|Writing|Running)\s+\S",
        r"^\[[\s=>#-]+\]\s*\d{1,3}%",
        r"^\d{1,3}%\s+complete",
        flags=re.IGNORECASE,
    ),
)


class LineClassifier(Protocol):
    def classify_line(self, line: str) -> EventKind | None: ...

    def detect_question(self, line: str) -> str | None: ...

    def match_file_operation(self, line: str) -> tuple[FileOpKind, str] | None: ...


def clean_line(raw: str) -> tuple[str, bool]:
    """Strip terminal control sequences and a leading spinner glyph.

    Returns the cleaned text and whether a spinner glyph was present.
    """
    text = ANSI_PATTERN.sub("", raw)
    if "\r" in text:
        # a carriage return redraws the line; the last frame wins
        frames = [frame for frame in text.split("\r") if frame.strip()]
        text = frames[-1] if frames else ""
    text = CONTROL_PATTERN.sub("", text)
    spinner = SPINNER_PATTERN.match(text)
    if spinner is not None:
        text = text[spinner.end():]
    return text.strip(), spinner is not None


class OutputParser:
    """Line-buffered classifier for one output stream.

    Chunks may split lines (and multibyte characters) anywhere; a trailing
    partial line is held until the next chunk or ``flush``. Each complete
    line yields at most one event.
    """

    def __init__(
        self,
        classifier: LineClassifier | None = None,
        *,
        max_line_length: int = 10_000,
        max_output_chars: int = 1_048_576,
    ) -> None:
        self.classifier: LineClassifier = classifier if classifier is not None else DEFAULT_PATTERNS
        self.max_line_length = max_line_length
        self.max_output_chars = max_output_chars
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._output = ""
        self.line_count = 0
        self.truncated = False

    @property
    def output(self) -> str:
        return self._output

    def _record(self, text: str) -> None:
        self._output += text
        overflow = len(self._output) - self.max_output_chars
        if overflow > 0:
            self._output = self._output[overflow:]
            self.truncated = True

    def feed(self, chunk: bytes | str) -> list[OutputEvent]:
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        if not text:
            return []
        self._record(text)
        self._buffer += text
        parts = LINE_SPLIT_PATTERN.split(self._buffer)
        self._buffer = parts.pop()
        events: list[OutputEvent] = []
        for line in parts:
            event = self.parse_line(line)
            if event is not None:
                events.append(event)
        while len(self._buffer) > self.max_line_length:
            line = self._buffer[: self.max_line_length]
            self._buffer = self._buffer[self.max_line_length :]
            event = self.parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[OutputEvent]:
        """End of stream: emit whatever partial line is still buffered."""
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._record(tail)
            self._buffer += tail
        line, self._buffer = self._buffer, ""
        if not line:
            return []
        event = self.parse_line(line)
        return [event] if event is not None else []

    def parse_line(self, raw: str) -> OutputEvent | None:
        line, had_spinner = clean_line(raw)
        if not line:
            return None
        self.line_count += 1
        kind = self.classifier.classify_line(line)
        if kind is None and had_spinner:
            kind = EventKind.PROGRESS
        if kind is None:
            return None
        if kind is EventKind.QUESTION:
            return OutputEvent(kind, self.classifier.detect_question(line) or line)
        if kind is EventKind.FILE_OP:
            matched = self.classifier.match_file_operation(line)
            if matched is None:
                return OutputEvent(EventKind.PROGRESS, line)
            operation, path = matched
            return OutputEvent(kind, line, operation=operation, path=path)
        if kind is EventKind.PROGRESS:
            percent_match = PERCENT_PATTERN.search(line)
            percent = min(100, int(percent_match.group(1))) if percent_match else None
            return OutputEvent(kind, line, percent=percent)
        return OutputEvent(kind, line)
