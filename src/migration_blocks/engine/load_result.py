"""Result of loading a migration plan.

Malformed plan files are reported as values rather than exceptions so that a
caller can show every problem in a file at once. Block execution does not use
this type; blocks report through BlockOutcome.
"""

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class LoadResult(Generic[T]):
    """
    A loaded value, or the problems that prevented loading it.

    Usage:
        result = load_plan_from_file(path)
        if not result:
            for problem in result.errors:
                print(problem)
    """

    source: str
    value: T | None = None
    errors: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if (self.value is None) == (not self.errors):
            raise ValueError("LoadResult needs either a value or errors, not both")

    @classmethod
    def success(cls, value: T, source: str = "<string>") -> "LoadResult[T]":
        return cls(source=source, value=value)

    @classmethod
    def failure(cls, *errors: str, source: str = "<string>") -> "LoadResult[T]":
        return cls(source=source, errors=tuple(errors))

    @property
    def is_success(self) -> bool:
        return not self.errors

    @property
    def is_failure(self) -> bool:
        return bool(self.errors)

    @property
    def error(self) -> str | None:
        """All problems as one message prefixed with the source, or None."""
        if not self.errors:
            return None
        if len(self.errors) == 1:
            return f"{self.source}: {self.errors[0]}"
        listing = "\n".join(f"  - {problem}" for problem in self.errors)
        return f"{self.source}: {len(self.errors)} problems\n{listing}"

    def __bool__(self) -> bool:
        return self.is_success

    def unwrap(self) -> T:
        """Return the value, or raise ValueError listing the problems."""
        if self.value is None:
            raise ValueError(f"Cannot use failed load of {self.error}")
        return self.value
