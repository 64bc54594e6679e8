from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

T = TypeVar("T")


class CandidateRejected(Exception):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CandidatesExhaustedError(Exception):
    def __init__(self, attempts: list[CandidateAttempt]) -> None:
        self.attempts = attempts
        last = attempts[-1] if attempts else None
        self.last_candidate = last.candidate if last else None
        self.last_status = last.status_code if last else None
        super().__init__(
            f"All candidates failed. Last: {self.last_candidate} (status {self.last_status})"
        )


@dataclass(frozen=True)
class CandidateAttempt:
    candidate: str
    status_code: int | None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def as_dict(self) -> dict[str, object]:
        return {
            "candidate": self.candidate,
            "status_code": self.status_code,
            "error": self.error,
        }


@dataclass(frozen=True)
class CandidateResolution(Generic[T]):
    value: T
    candidate: str
    attempts: list[CandidateAttempt] = field(default_factory=list)


async def resolve_first(
    candidates: Sequence[str],
    attempt: Callable[[str], Awaitable[tuple[T, int | None]]],
) -> CandidateResolution[T]:
    """Try candidates in preference order and stop at the first success.

    ``attempt`` returns ``(value, status_code)`` or raises ``CandidateRejected``.
    Nothing after the winning candidate is requested.
    """
    attempts: list[CandidateAttempt] = []
    for candidate in candidates:
        try:
            value, status_code = await attempt(candidate)
        except CandidateRejected as exc:
            attempts.append(
                CandidateAttempt(
                    candidate=candidate,
                    status_code=exc.status_code,
                    error=str(exc),
                )
            )
            continue
        attempts.append(CandidateAttempt(candidate=candidate, status_code=status_code))
        return CandidateResolution(value=value, candidate=candidate, attempts=attempts)
    raise CandidatesExhaustedError(attempts)
