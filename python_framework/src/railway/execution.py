"""
Execution contexts — separate WHAT a pipeline computes from HOW it is run.

A pipeline is a zero-argument callable returning Result[T]. An execution
context wraps the call with cross-cutting behaviour (timing, logging, locking)
without the pipeline knowing about it:

    ctx = LoggingExecutionContext(operation="RetentionSweep")
    result = ctx.execute(lambda: run_retention_sweep(engine))
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol, TypeVar, runtime_checkable

from railway.failure import ErrorCode, FailureDescription
from railway.result import Failure, Result

T = TypeVar("T")
logger = logging.getLogger("railway.execution")


@runtime_checkable
class ExecutionContext(Protocol):
    """Anything with execute(computation) -> Result is an execution context."""

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]: ...


class NoOpExecutionContext:
    """Run the computation as-is. Default inner context and test double."""

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        return computation()


class LoggingExecutionContext:
    """
    Log start, finish, duration and outcome of a computation.

    Failures are logged with their code and whether they are retryable, so an
    operator reading the log can tell a flaky authority endpoint from a broken
    hash chain. An exception escaping the computation is turned into a
    TECHNICAL_ERROR failure instead of crashing the caller (typically a
    scheduler thread).
    """

    def __init__(
        self,
        inner: ExecutionContext | None = None,
        operation: str = "unknown",
        log_level: int = logging.INFO,
    ) -> None:
        self._inner = inner or NoOpExecutionContext()
        self._operation = operation
        self._log_level = log_level

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        logger.log(self._log_level, "[%s] Starting execution", self._operation)
        start = time.monotonic()

        try:
            result = self._inner.execute(computation)
        except Exception as e:
            elapsed = time.monotonic() - start
            logger.error(
                "[%s] Execution raised after %.3fs: %s",
                self._operation,
                elapsed,
                e,
            )
            return Failure(
                FailureDescription(ErrorCode.TECHNICAL_ERROR, f"Execution failed: {e}", e)
            )

        elapsed = time.monotonic() - start
        if result.is_success():
            logger.log(
                self._log_level,
                "[%s] Completed in %.3fs — SUCCESS",
                self._operation,
                elapsed,
            )
        else:
            err = result.error()
            logger.log(
                logging.ERROR if not err.retryable else logging.WARNING,
                "[%s] Completed in %.3fs — FAILURE %s (retryable=%s): %s",
                self._operation,
                elapsed,
                err.code.value,
                err.retryable,
                err.message,
            )
        return result
