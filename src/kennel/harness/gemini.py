from __future__ import annotations

import re

from kennel.harness.base import HarnessAdapter
from kennel.harness.parser import DEFAULT_PATTERNS, FileOpKind

_BRACKETED = r"\s+[`'\"]?(?P<path>[^\s`'\"]+)[`'\"]?\s*$"


class GeminiHarness(HarnessAdapter):
    name = "gemini"
    default_binary = "gemini"
    patterns = DEFAULT_PATTERNS.extend(
        question=(
            re.compile(r"^>\s*(.+\?)\s*$"),
            re.compile(r"^((?:choose|select|pick|which)\b.+)$", re.IGNORECASE),
        ),
        completion=(re.compile(r"^Changes applied\b"),),
        file_ops=(
            (re.compile(r"^\[Created\]" + _BRACKETED), FileOpKind.CREATE),
            (re.compile(r"^\[(?:Modified|Updated)\]" + _BRACKETED), FileOpKind.MODIFY),
            (re.compile(r"^\[Deleted\]" + _BRACKETED), FileOpKind.DELETE),
        ),
        progress=(re.compile(r"^(?:Analyzing|Working|Generating|Reading|Writing)\.\.\."),),
    )

    def build_args(self, goal: str) -> list[str]:
        return ["--sandbox=none", "-p", goal]

    def base_env(self) -> dict[str, str]:
        return {"TERM": "dumb", "NO_COLOR": "1"}
