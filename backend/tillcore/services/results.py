# Overview: Result record for best-effort side operations.

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class BestEffortResult:
    """
    Outcome of an operation whose failures are logged but never raised
    (advanced indexes, line-item save, cache preload).
    """
    operation: str
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def record_success(self) -> None:
        self.attempted += 1
        self.succeeded += 1

    def record_failure(self, message: str) -> None:
        self.attempted += 1
        self.failed += 1
        self.errors.append(message)

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": list(self.errors),
        }
