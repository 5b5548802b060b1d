"""Page classification: raw upstream content to an availability status.

Two upstream layouts are supported behind one interface. The legacy
package page is scraped for its visible text and matched with
case-insensitive patterns; the direct ticketing system is matched on
literal substrings of the raw markup. Both share the same priority order:

1. sold-out marker
2. "limited availability, N tickets left" with N in 1..5
3. unconditional "tickets available" marker
4. "limited availability" without a count
5. layout markers (ticketing system only)
6. otherwise ``UNKNOWN``
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from bs4 import BeautifulSoup

from .models import AvailabilityStatus, PartyComposition
from .utils import normalise_whitespace

LIMITED_COUNT_PATTERN = re.compile(r"Limited Availability! Book Now! ([1-5]) tickets? left", re.IGNORECASE)
AVAILABLE_PATTERN = re.compile(r"Tickets available\. Book Now!", re.IGNORECASE)
LIMITED_GENERAL_PATTERN = re.compile(r"Limited Availability! Book Now!", re.IGNORECASE)

LEGACY_SOLD_OUT_PATTERN = re.compile(r"SOLDOUT! Please choose another date!", re.IGNORECASE)

TICKETING_SOLD_OUT_MARKERS = ("SOLDOUT", "Sold Out")
TICKETING_CHECKOUT_MARKERS = ("order summary", "checkout", "add to cart")
TICKETING_NO_TIMES_MARKERS = ("no available times", "choose another date")

INVISIBLE_TAGS = ("script", "style", "noscript", "template")

PartyLike = Union[int, PartyComposition]


class UpstreamVariant(str, Enum):
    """Which upstream page layout is being classified."""

    LEGACY = "legacy"
    TICKETING = "ticketing"


@dataclass(frozen=True)
class Classification:
    """Status, human message and optional remaining-ticket count for one page."""

    status: AvailabilityStatus
    message: str
    tickets_left: Optional[int] = None


def party_size(party: PartyLike) -> int:
    if isinstance(party, PartyComposition):
        return party.size
    return int(party)


class PageClassifier(ABC):
    """Maps page content plus requested party size to a :class:`Classification`."""

    variant: UpstreamVariant
    unknown_message: str

    def classify(self, raw_content: str, party: PartyLike) -> Classification:
        """Classify ``raw_content`` for ``party``. Pure; never raises on odd markup."""
        needed = party_size(party)
        text = self.normalise(raw_content or "")

        if self.is_sold_out(raw_content or "", text):
            return Classification(AvailabilityStatus.SOLD_OUT, "Sold Out")

        match = LIMITED_COUNT_PATTERN.search(text)
        if match:
            tickets_left = int(match.group(1))
            if tickets_left < needed:
                return Classification(
                    AvailabilityStatus.LIMITED_LOW,
                    f"Only {tickets_left} ticket(s) left (Need {needed})",
                    tickets_left,
                )
            return Classification(
                AvailabilityStatus.LIMITED_HIGH,
                f"Available - {tickets_left} tickets left!",
                tickets_left,
            )

        if AVAILABLE_PATTERN.search(text):
            return Classification(AvailabilityStatus.AVAILABLE, "Available! Book Now!")

        if LIMITED_GENERAL_PATTERN.search(text):
            return Classification(AvailabilityStatus.LIMITED_HIGH, "Limited Availability (Likely enough)")

        layout = self.classify_layout(raw_content or "")
        if layout is not None:
            return layout

        return Classification(AvailabilityStatus.UNKNOWN, self.unknown_message)

    @abstractmethod
    def normalise(self, raw_content: str) -> str:
        """Text the shared patterns are matched against."""

    @abstractmethod
    def is_sold_out(self, raw_content: str, text: str) -> bool:
        """Whether the page carries the variant's sold-out marker."""

    def classify_layout(self, raw_content: str) -> Optional[Classification]:
        return None


class LegacyPageClassifier(PageClassifier):
    """Scrapes visible body text of the package page."""

    variant = UpstreamVariant.LEGACY
    unknown_message = "Status text not found on page"

    def normalise(self, raw_content: str) -> str:
        return visible_text(raw_content)

    def is_sold_out(self, raw_content: str, text: str) -> bool:
        return bool(LEGACY_SOLD_OUT_PATTERN.search(text))


class TicketingPageClassifier(PageClassifier):
    """Checks the direct ticketing system's markup for literal markers."""

    variant = UpstreamVariant.TICKETING
    unknown_message = "Ambiguous page layout - verify on the booking site"

    def normalise(self, raw_content: str) -> str:
        return normalise_whitespace(raw_content)

    def is_sold_out(self, raw_content: str, text: str) -> bool:
        return any(marker in raw_content for marker in TICKETING_SOLD_OUT_MARKERS)

    def classify_layout(self, raw_content: str) -> Optional[Classification]:
        lowered = raw_content.lower()
        # Checkout words also show up in navigation and asset URLs, so an
        # explicit no-times notice wins over them.
        if any(marker in lowered for marker in TICKETING_NO_TIMES_MARKERS):
            return Classification(AvailabilityStatus.SOLD_OUT, "No available times for this date")
        if any(marker in lowered for marker in TICKETING_CHECKOUT_MARKERS):
            return Classification(AvailabilityStatus.AVAILABLE, "Tickets available - checkout is open")
        return None


def visible_text(html: str) -> str:
    """Whitespace-collapsed text of the page body, scripts and styles removed."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(INVISIBLE_TAGS):
        tag.decompose()
    root = soup.body or soup
    return normalise_whitespace(root.get_text(" ", strip=True))


_CLASSIFIERS = {
    UpstreamVariant.LEGACY: LegacyPageClassifier,
    UpstreamVariant.TICKETING: TicketingPageClassifier,
}


def classifier_for(variant: UpstreamVariant) -> PageClassifier:
    return _CLASSIFIERS[UpstreamVariant(variant)]()


def classify(
    raw_content: str,
    party: PartyLike,
    variant: UpstreamVariant = UpstreamVariant.LEGACY,
) -> Classification:
    """Convenience wrapper around :meth:`PageClassifier.classify`."""
    return classifier_for(variant).classify(raw_content, party)
