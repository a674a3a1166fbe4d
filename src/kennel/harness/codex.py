from __future__ import annotations

import dataclasses
import re

from kennel.harness.base import HarnessAdapter, HarnessCapabilities
from kennel.harness.parser import DEFAULT_PATTERNS, FileOpKind


class CodexHarness(HarnessAdapter):
    """Codex CLI in ``exec`` mode; it never stops to ask, so no question patterns."""

    name = "codex"
    default_binary = "codex"
    capabilities = HarnessCapabilities(questions=False)
    patterns = dataclasses.replace(
        DEFAULT_PATTERNS.extend(
            file_ops=(
                (re.compile(r"^A\s+(?P<path>\S+)$"), FileOpKind.CREATE),
                (re.compile(r"^M\s+(?P<path>\S+)$"), FileOpKind.MODIFY),
                (re.compile(r"^D\s+(?P<path>\S+)$"), FileOpKind.DELETE),
            ),
            progress=(re.compile(r"^(?:thinking|exec|codex)$"),),
        ),
        question=(),
    )

    def __init__(
        self,
        binary: str | None = None,
        extra_env: dict[str, str] | None = None,
        model: str | None = None,
    ) -> None:
        super().__init__(binary, extra_env)
        self.model = model

    def build_args(self, goal: str) -> list[str]:
        args = ["exec", "--full-auto", "--skip-git-repo-check"]
        if self.model:
            args.extend(["-m", self.model])
        args.append(goal)
        return args

    def base_env(self) -> dict[str, str]:
        return {"NO_COLOR": "1"}
