"""
Railway-Oriented Programming (ROP) framework.

Explicit, composable error handling for the edges of the fiscal ledger:
network submissions, store access and scheduled jobs return Result values
instead of raising.

    from railway import ErrorCode, Result

    def require_tax_id(tax_id: str) -> Result[str]:
        if not tax_id:
            return Result.failure(ErrorCode.VALIDATION_ERROR, "Tax id is required")
        return Result.success(tax_id.upper())

    result = Result.success("b12345678").flat_map(require_tax_id)
"""

from railway.assertions import ResultAssertions
from railway.execution import (
    ExecutionContext,
    LoggingExecutionContext,
    NoOpExecutionContext,
)
from railway.failure import ErrorCode, FailureDescription
from railway.result import Failure, Result, Success

__all__ = [
    "Result",
    "Success",
    "Failure",
    "ErrorCode",
    "FailureDescription",
    "ExecutionContext",
    "NoOpExecutionContext",
    "LoggingExecutionContext",
    "ResultAssertions",
]

__version__ = "1.1.0"
