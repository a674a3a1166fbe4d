from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from kennel.harness.parser import (
    DEFAULT_PATTERNS,
    EventKind,
    FileOpKind,
    LinePatterns,
    OutputParser,
    clean_line,
)

SUMMARY_SECTION_PATTERN = re.compile(
    r"^#{1,3}\s*Summary\s*$\n(?P<body>.+?)(?=^#{1,3}\s|\Z)",
    re.MULTILINE | re.DOTALL | re.IGNORECASE,
)
DONE_SUMMARY_PATTERN = re.compile(
    r"^(?:Done|Completed?|Finished)[.:!]?\s+(?P<body>\S.+)$", re.MULTILINE
)
MAX_SUMMARY_CHARS = 500


@dataclass(slots=True)
class HarnessConfig:
    """Everything needed to launch one harness process.

    ``args`` never passes through a shell; the executable and arguments are
    handed to the OS as a list.
    """

    harness: str
    command: str
    args: list[str]
    cwd: Path
    env: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 300.0

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]


@dataclass(slots=True)
class FileOperations:
    created: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    def record(self, operation: FileOpKind, path: str) -> None:
        bucket = {
            FileOpKind.CREATE: self.created,
            FileOpKind.MODIFY: self.modified,
            FileOpKind.DELETE: self.deleted,
        }[operation]
        if path not in bucket:
            bucket.append(path)

    def merge(self, other: FileOperations) -> None:
        for path in other.created:
            self.record(FileOpKind.CREATE, path)
        for path in other.modified:
            self.record(FileOpKind.MODIFY, path)
        for path in other.deleted:
            self.record(FileOpKind.DELETE, path)

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "created": list(self.created),
            "modified": list(self.modified),
            "deleted": list(self.deleted),
        }


@dataclass(frozen=True, slots=True)
class HarnessCapabilities:
    streaming: bool = True
    questions: bool = True
    file_operations: bool = True

    def to_dict(self) -> dict[str, bool]:
        return {
            "streaming": self.streaming,
            "questions": self.questions,
            "file_operations": self.file_operations,
        }


class HarnessAdapter(ABC):
    """One external coding-agent CLI behind the shared harness interface.

    Subclasses supply the command line and may extend the shared pattern
    tables; classification, question detection and post-hoc extraction all
    run off ``patterns``.
    """

    name: str = ""
    default_binary: str = ""
    patterns: LinePatterns = DEFAULT_PATTERNS
    capabilities = HarnessCapabilities()

    def __init__(self, binary: str | None = None, extra_env: dict[str, str] | None = None) -> None:
        self.binary = binary or self.default_binary
        self.extra_env = dict(extra_env or {})

    @abstractmethod
    def build_args(self, goal: str) -> list[str]:
        """Arguments passed after the binary for a non-interactive run."""

    def base_env(self) -> dict[str, str]:
        return {}

    def build_config(self, goal: str, workspace: Path, timeout_seconds: float) -> HarnessConfig:
        env = self.base_env()
        env.update(self.extra_env)
        return HarnessConfig(
            harness=self.name,
            command=self.binary,
            args=self.build_args(goal),
            cwd=workspace,
            env=env,
            timeout_seconds=timeout_seconds,
        )

    def classify_line(self, line: str) -> EventKind | None:
        return self.patterns.classify_line(line)

    def detect_question(self, line: str) -> str | None:
        return self.patterns.detect_question(line)

    def match_file_operation(self, line: str) -> tuple[FileOpKind, str] | None:
        return self.patterns.match_file_operation(line)

    def format_response(self, text: str) -> str:
        return text.strip() + "\n"

    def create_parser(self, **kwargs: Any) -> OutputParser:
        return OutputParser(self, **kwargs)

    def extract_file_operations(self, output: str) -> FileOperations:
        operations = FileOperations()
        for raw in output.splitlines():
            line, _ = clean_line(raw)
            if not line or self.classify_line(line) is not EventKind.FILE_OP:
                continue
            matched = self.match_file_operation(line)
            if matched is not None:
                operations.record(*matched)
        return operations

    def extract_summary(self, output: str) -> str:
        text = "\n".join(clean_line(raw)[0] for raw in output.splitlines())
        section = SUMMARY_SECTION_PATTERN.search(text)
        if section is not None and section.group("body").strip():
            return _truncate(section.group("body").strip())
        done_lines = DONE_SUMMARY_PATTERN.findall(text)
        if done_lines:
            return _truncate(done_lines[-1].strip())
        paragraphs = [block.strip() for block in re.split(r"\n\s*\n", text) if block.strip()]
        for paragraph in reversed(paragraphs):
            if len(paragraph) <= 20:
                continue
            if self.classify_line(paragraph.splitlines()[0]) is EventKind.PROGRESS:
                continue
            return _truncate(paragraph)
        return "Task completed."


def _truncate(text: str) -> str:
    if len(text) <= MAX_SUMMARY_CHARS:
        return text
    return text[: MAX_SUMMARY_CHARS - 3].rstrip() + "..."
