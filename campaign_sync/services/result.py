"""Outcome of an operation whose failure is an expected branch (card moves, routing).

``error_code`` is a stable snake_case string that routers forward to clients
as ``error``; ``error`` carries the human-readable detail.
"""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def failed_with(self, *codes: str) -> bool:
        return not self.ok and self.error_code in codes

    def forward(self) -> "Result":
        """Re-type a failure for the caller's own result."""
        return Result.failure(self.error or "", self.error_code or "unknown")

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
