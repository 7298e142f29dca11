from __future__ import annotations
"""Incremental listing store for the active bucket."""
from dataclasses import dataclass
import logging
from typing import Iterable, Optional

from .models import ObjectEntry

LOGGER = logging.getLogger(__name__)


class StaleFetch(RuntimeError):
    """Raised when a result belongs to a context that is no longer active."""


@dataclass(frozen=True)
class FetchTicket:
    """Identifies one page request for one bucket generation."""

    collection: str
    generation: int
    serial: int
    cursor: Optional[str]


class PageCache:
    """Ordered entries fetched so far for a single bucket.

    Pages are appended as they arrive and are never re-sorted or merged; the
    listing API already returns key-ordered, non-overlapping pages. At most
    one page request is outstanding at a time.
    """

    def __init__(self) -> None:
        self._collection: Optional[str] = None
        self._generation = 0
        self._serial = 0
        self._entries: list[ObjectEntry] = []
        self._cursor: Optional[str] = None
        self._exhausted = False
        self._pending: Optional[FetchTicket] = None

    @property
    def collection(self) -> Optional[str]:
        return self._collection

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def entries(self) -> list[ObjectEntry]:
        return self._entries

    @property
    def is_fetching(self) -> bool:
        return self._pending is not None

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)

    def is_exhausted(self) -> bool:
        return self._exhausted

    def cursor(self) -> Optional[str]:
        return self._cursor

    def reset(self, collection_id: Optional[str]) -> None:
        if self._pending is not None:
            LOGGER.debug(
                "Abandoning page request %d for '%s'", self._pending.serial, self._pending.collection
            )
        self._collection = collection_id
        self._generation += 1
        self._entries = []
        self._cursor = None
        self._exhausted = False
        self._pending = None

    def begin_fetch(self) -> Optional[FetchTicket]:
        """Return a ticket for the next page, or ``None`` when nothing should be requested.

        A request made while another is pending is coalesced into the pending one.
        """

        if self._collection is None or self._exhausted or self._pending is not None:
            return None
        self._serial += 1
        self._pending = FetchTicket(
            collection=self._collection,
            generation=self._generation,
            serial=self._serial,
            cursor=self._cursor,
        )
        return self._pending

    def append_page(
        self,
        entries: Iterable[ObjectEntry],
        next_cursor: Optional[str],
        ticket: FetchTicket,
    ) -> int:
        """Append a fetched page and return how many entries it added."""

        self._claim(ticket)
        page = list(entries)
        self._entries.extend(page)
        self._cursor = next_cursor
        if next_cursor is None:
            self._exhausted = True
        return len(page)

    def fail_fetch(self, ticket: FetchTicket) -> None:
        """Release the pending request after a remote failure; the cursor is kept."""

        self._claim(ticket)

    def _claim(self, ticket: FetchTicket) -> None:
        if ticket.generation != self._generation or ticket != self._pending:
            raise StaleFetch(
                f"Page request {ticket.serial} for '{ticket.collection}' is no longer current"
            )
        self._pending = None
