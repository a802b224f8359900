"""Result type for best-effort operations.

Some side effects are allowed to fail without failing the job that issued
them (deleting an old comment, appending to the log sink). Instead of
suppressing the exception, those operations return a BestEffortResult that
the caller logs and discards.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class BestEffortResult:
    """Outcome of an operation whose failure is tolerated.

    Attributes:
        ok: Whether the operation succeeded
        warning: Human-readable reason when it did not
    """

    ok: bool
    warning: str | None = None

    @classmethod
    def success(cls) -> "BestEffortResult":
        return cls(ok=True)

    @classmethod
    def failed(cls, warning: str) -> "BestEffortResult":
        return cls(ok=False, warning=warning)
