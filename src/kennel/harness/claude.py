from __future__ import annotations

import re

from kennel.harness.base import HarnessAdapter
from kennel.harness.parser import DEFAULT_PATTERNS, FileOpKind

_PATH = r"[`'\"]?(?P<path>[^\s`'\"]+)[`'\"]?\s*$"


class ClaudeHarness(HarnessAdapter):
    name = "claude"
    default_binary = "claude"
    patterns = DEFAULT_PATTERNS.extend(
        file_ops=(
            (re.compile(r"^(?:●\s*)?(?:Write|Create)\((?P<path>[^)]+)\)"), FileOpKind.CREATE),
            (re.compile(r"^(?:●\s*)?(?:Edit|Update|MultiEdit)\((?P<path>[^)]+)\)"), FileOpKind.MODIFY),
            (re.compile(r"^Deleted\s+" + _PATH), FileOpKind.DELETE),
        ),
        progress=(re.compile(r"^●\s*(?:Read|Bash|Search|Grep|Glob)\("),),
    )

    def build_args(self, goal: str) -> list[str]:
        return ["--print", "--dangerously-skip-permissions", "-p", goal]

    def base_env(self) -> dict[str, str]:
        return {"CI": "true", "TERM": "dumb"}
