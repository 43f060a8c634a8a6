from __future__ import annotations

from typing import Iterator, Mapping

NO_AUTH = "noAuth"


class TicketServiceError(RuntimeError):
    """Base error for ticket service issues."""


class TicketNotFoundError(TicketServiceError):
    """Raised when an operation targets a non-existent ticket."""


class RuleViolations(Mapping[str, list[str]]):
    """Ordered collection of failure key -> messages gathered during one operation."""

    def __init__(self) -> None:
        self._items: dict[str, list[str]] = {}

    def add(self, key: str, message: str) -> None:
        self._items.setdefault(key, []).append(message)

    def extend(self, other: Mapping[str, list[str]]) -> None:
        for key, messages in other.items():
            for message in messages:
                self.add(key, message)

    def __getitem__(self, key: str) -> list[str]:
        return self._items[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"RuleViolations({self._items!r})"

    @property
    def is_authorization_failure(self) -> bool:
        return NO_AUTH in self._items

    def as_dict(self) -> dict[str, list[str]]:
        return {key: list(messages) for key, messages in self._items.items()}


class TicketRuleError(TicketServiceError):
    """Raised when an activity is denied or its input fails validation.

    All violations found during the operation are reported together.
    """

    def __init__(self, violations: RuleViolations) -> None:
        self.violations = violations
        summary = "; ".join(
            f"{key}: {message}" for key, messages in violations.items() for message in messages
        )
        super().__init__(summary or "Ticket rule violation")

    @classmethod
    def single(cls, key: str, message: str) -> TicketRuleError:
        violations = RuleViolations()
        violations.add(key, message)
        return cls(violations)
