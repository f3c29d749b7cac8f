from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

RACE_LOST = "race_lost"
NO_AGENTS = "no_agents"
NOT_FOUND = "not_found"


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

    @property
    def race_lost(self) -> bool:
        return not self.ok and self.error_code == RACE_LOST

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
