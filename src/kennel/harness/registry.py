from __future__ import annotations

import logging
from collections.abc import Mapping

from kennel.errors import ValidationError
from kennel.harness.base import HarnessAdapter, HarnessCapabilities
from kennel.harness.claude import ClaudeHarness
from kennel.harness.codex import CodexHarness
from kennel.harness.gemini import GeminiHarness

logger = logging.getLogger(__name__)

AUTO = "auto"
BUILTIN_HARNESSES: tuple[type[HarnessAdapter], ...] = (ClaudeHarness, GeminiHarness, CodexHarness)


class HarnessRegistry:
    """Maps harness identifiers to adapters."""

    def __init__(self, default: str = "claude") -> None:
        self.default = default
        self._adapters: dict[str, HarnessAdapter] = {}

    @classmethod
    def with_builtins(
        cls,
        binaries: Mapping[str, str] | None = None,
        default: str = "claude",
    ) -> HarnessRegistry:
        binaries = binaries or {}
        registry = cls(default=default)
        for adapter_cls in BUILTIN_HARNESSES:
            registry.register(adapter_cls(binary=binaries.get(adapter_cls.name)))
        return registry

    def register(self, adapter: HarnessAdapter) -> None:
        if not adapter.name:
            raise ValidationError("Harness adapter must declare a name.")
        if adapter.name in self._adapters:
            logger.warning("Replacing registered harness adapter %r", adapter.name)
        self._adapters[adapter.name] = adapter

    def resolve_name(self, preference: str | None) -> str:
        name = (preference or "").strip().lower()
        if not name or name == AUTO:
            name = self.default
        if name not in self._adapters:
            known = ", ".join(sorted(self._adapters)) or "none"
            raise ValidationError(f"Unknown harness '{name}'. Known harnesses: {known}.")
        return name

    def get(self, name: str | None) -> HarnessAdapter:
        return self._adapters[self.resolve_name(name)]

    def names(self) -> list[str]:
        return sorted(self._adapters)

    def capabilities(self, name: str) -> HarnessCapabilities:
        return self.get(name).capabilities

    def __contains__(self, name: object) -> bool:
        return name in self._adapters
