"""Shared data models used across the ticket watcher."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .date_window import format_date_key


class AvailabilityStatus(str, Enum):
    """Availability taxonomy, ordered by urgency for display."""

    IDLE = "IDLE"
    CHECKING = "CHECKING"
    AVAILABLE = "AVAILABLE"
    LIMITED_HIGH = "LIMITED_HIGH"
    LIMITED_LOW = "LIMITED_LOW"
    SOLD_OUT = "SOLD_OUT"
    UNKNOWN = "UNKNOWN"
    ERROR = "ERROR"

    @property
    def is_actionable(self) -> bool:
        return self in ACTIONABLE_STATUSES


ACTIONABLE_STATUSES = frozenset({AvailabilityStatus.AVAILABLE, AvailabilityStatus.LIMITED_HIGH})


@dataclass(frozen=True)
class PartyComposition:
    """Requested group: a plain headcount is stored as adults with no children."""

    adults: int = 1
    children: int = 0

    def __post_init__(self) -> None:
        if self.adults < 0 or self.children < 0:
            raise ValueError("party counts must not be negative")

    @classmethod
    def from_headcount(cls, headcount: int) -> "PartyComposition":
        return cls(adults=headcount, children=0)

    @property
    def size(self) -> int:
        return self.adults + self.children

    def describe(self) -> str:
        if self.children:
            return f"{self.adults} adult(s), {self.children} child(ren)"
        return f"party of {self.adults}"


@dataclass(frozen=True)
class CheckKey:
    """Cache identity: a booking date plus the party composition asked for."""

    date_str: str
    party: PartyComposition

    @classmethod
    def for_date(cls, value: date, party: PartyComposition) -> "CheckKey":
        return cls(date_str=format_date_key(value), party=party)


class CheckResult(BaseModel):
    """Outcome of one fetch-and-classify pass for a key."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    date_str: str = Field(alias="dateStr")
    status: AvailabilityStatus
    message: str
    tickets_left: Optional[int] = Field(default=None, alias="ticketsLeft")
    timestamp: int
    url: str = ""
    adults: int = 1
    children: int = 0

    @property
    def party(self) -> PartyComposition:
        return PartyComposition(adults=self.adults, children=self.children)

    @property
    def key(self) -> CheckKey:
        return CheckKey(date_str=self.date_str, party=self.party)

    @property
    def is_actionable(self) -> bool:
        return self.status.is_actionable

    def to_payload(self) -> dict[str, object]:
        """JSON shape served to clients."""
        return self.model_dump(mode="json", by_alias=True)


@dataclass
class CacheEntry:
    """Stored state for a key: the latest result and whether it has been alerted on."""

    result: CheckResult
    fetched_at: int
    party: PartyComposition
    notified: bool = False
    alert: Optional[AvailabilityAlert] = None


@dataclass(frozen=True)
class AvailabilityAlert:
    """Payload handed to notification channels."""

    date_str: str
    status: AvailabilityStatus
    message: str
    url: str
    party: PartyComposition

    @classmethod
    def from_result(cls, result: CheckResult) -> "AvailabilityAlert":
        return cls(
            date_str=result.date_str,
            status=result.status,
            message=result.message,
            url=result.url,
            party=result.party,
        )
