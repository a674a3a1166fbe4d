from kennel.harness.base import FileOperations, HarnessAdapter, HarnessCapabilities, HarnessConfig
from kennel.harness.claude import ClaudeHarness
from kennel.harness.codex import CodexHarness
from kennel.harness.executor import (
    ExecutionEvent,
    ExecutionEventKind,
    ExecutionResult,
    HarnessExecutor,
)
from kennel.harness.gemini import GeminiHarness
from kennel.harness.parser import EventKind, FileOpKind, OutputEvent, OutputParser
from kennel.harness.pool import HarnessPool, PoolStats
from kennel.harness.registry import HarnessRegistry
from kennel.harness.resilient import RetryPolicy
from kennel.harness.spawner import HarnessSpawner, ProcessHandle

__all__ = [
    "ClaudeHarness",
    "CodexHarness",
    "EventKind",
    "ExecutionEvent",
    "ExecutionEventKind",
    "ExecutionResult",
    "FileOpKind",
    "FileOperations",
    "GeminiHarness",
    "HarnessAdapter",
    "HarnessCapabilities",
    "HarnessConfig",
    "HarnessExecutor",
    "HarnessPool",
    "HarnessRegistry",
    "HarnessSpawner",
    "OutputEvent",
    "OutputParser",
    "PoolStats",
    "ProcessHandle",
    "RetryPolicy",
]
