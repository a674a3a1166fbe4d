from __future__ import annotations


class KennelError(RuntimeError):
    """Base class for every error raised by the orchestrator."""


class ValidationError(KennelError):
    """Raised when a caller passes bad input to an operation."""


class CapacityError(KennelError):
    """Raised when a session already holds a non-terminal task."""


class NotFoundError(KennelError):
    """Raised for an unknown task id."""


class NotWaitingError(KennelError):
    """Raised by respond when the task is not waiting for input."""


class InvalidTransitionError(KennelError):
    """Raised when a task transition does not follow the state machine."""


class StoreError(KennelError):
    """Raised when durable task state cannot be read or written."""


class HarnessError(KennelError):
    """Raised when a harness process cannot run to a successful end."""

    kind = "process"

    def __init__(
        self,
        message: str,
        *,
        harness: str | None = None,
        exit_code: int | None = None,
        retriable: bool = False,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.harness = harness
        self.exit_code = exit_code
        self.retriable = retriable
        self.output = output


class SpawnError(HarnessError):
    """Raised when the harness process fails to start."""

    kind = "spawn"

    def __init__(
        self,
        message: str,
        *,
        harness: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
        output: str = "",
    ) -> None:
        super().__init__(
            message,
            harness=harness,
            exit_code=exit_code,
            retriable=retriable,
            output=output,
        )


class HarnessTimeoutError(HarnessError):
    """Raised when a harness process exceeds its deadline."""

    kind = "timeout"


class HarnessProcessError(HarnessError):
    """Raised when a harness exits abnormally without reporting completion."""

    kind = "process"


class HarnessCancelledError(HarnessError):
    """Raised when an execution is cancelled before it finishes."""

    kind = "cancelled"
