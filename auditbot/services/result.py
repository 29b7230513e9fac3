from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
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

    @staticmethod
    def unsupported(error: str) -> "Result[T]":
        """The platform does not offer the capability at all."""
        return Result(ok=False, error=error, error_code=UNSUPPORTED)

    @property
    def is_unsupported(self) -> bool:
        return not self.ok and self.error_code == UNSUPPORTED
