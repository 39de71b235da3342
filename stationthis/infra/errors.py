"""Custom exception hierarchy for the StationThis coordinator.

All application-specific exceptions inherit from StationThisError,
which carries an error code for API error body mapping.
"""

from __future__ import annotations


class StationThisError(Exception):
    """Base exception for all StationThis errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class GatewayError(StationThisError):
    """Errors in the HTTP API layer (bad requests, unknown methods)."""

    def __init__(self, message: str, *, code: str = "GATEWAY_ERROR") -> None:
        super().__init__(message, code=code)


class DefinitionError(StationThisError):
    """A step definition cannot produce the inputs its tool requires.

    Authoring defect: never retried, always terminal for the run.
    """

    def __init__(self, message: str, *, code: str = "DEFINITION_ERROR") -> None:
        super().__init__(message, code=code)


class InvocationError(StationThisError):
    """Submitting a step to the execution engine failed."""

    def __init__(
        self, message: str, *, code: str = "INVOCATION_ERROR", retryable: bool = False
    ) -> None:
        super().__init__(message, code=code)
        self.retryable = retryable


class RecordStoreError(StationThisError):
    """Errors in the execution record store."""

    def __init__(self, message: str, *, code: str = "STORE_ERROR") -> None:
        super().__init__(message, code=code)


class DuplicateCompletionError(RecordStoreError):
    """A completion signal arrived for an already-terminal Step Result.

    Internal: logged and suppressed, never surfaced to run state.
    """

    def __init__(self, message: str = "Step result already terminal") -> None:
        super().__init__(message, code="DUPLICATE_COMPLETION")


class DuplicateDispatchError(RecordStoreError):
    """A Step Result for this (run, step index) already exists."""

    def __init__(self, message: str = "Step already dispatched") -> None:
        super().__init__(message, code="DUPLICATE_DISPATCH")


class AggregationConflict(RecordStoreError):
    """Conditional Run update lost against a concurrent writer."""

    def __init__(self, message: str = "Run record changed concurrently") -> None:
        super().__init__(message, code="AGGREGATION_CONFLICT")


class RunNotFoundError(RecordStoreError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code="RUN_NOT_FOUND")


class StepResultNotFoundError(RecordStoreError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code="STEP_RESULT_NOT_FOUND")


class SpellNotFoundError(RecordStoreError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code="SPELL_NOT_FOUND")


class RunStateError(StationThisError):
    """Operation requires a running Run but the Run is terminal."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="RUN_NOT_RUNNING")


class NotificationError(StationThisError):
    """Errors delivering a terminal run event to a platform notifier."""

    def __init__(self, message: str, *, code: str = "NOTIFICATION_ERROR") -> None:
        super().__init__(message, code=code)
