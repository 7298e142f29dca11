from __future__ import annotations
"""Decides when another listing page should be requested."""
from enum import Enum
import logging

LOGGER = logging.getLogger(__name__)

DEFAULT_LOOKAHEAD = 50
DEFAULT_MATCH_FLOOR = 100


class PrefetchState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"


class PrefetchController:
    """Idle/Fetching state machine for one bucket.

    A fetch is requested when the viewport comes within ``lookahead`` rows of
    the end of what is loaded, or when an active rule matches fewer than
    ``match_floor`` loaded entries. Failures are not retried automatically.
    """

    def __init__(self, *, lookahead: int = DEFAULT_LOOKAHEAD, match_floor: int = DEFAULT_MATCH_FLOOR):
        self.lookahead = max(int(lookahead), 0)
        self.match_floor = max(int(match_floor), 0)
        self._state = PrefetchState.IDLE
        self.last_error: str | None = None

    @property
    def state(self) -> PrefetchState:
        return self._state

    def wants_page(
        self,
        *,
        exhausted: bool,
        viewport_end: int,
        shown_count: int,
        rule_active: bool = False,
        match_count: int = 0,
    ) -> bool:
        if exhausted:
            return False
        if viewport_end + self.lookahead >= shown_count:
            return True
        return rule_active and match_count < self.match_floor

    def evaluate(
        self,
        *,
        exhausted: bool,
        viewport_end: int,
        shown_count: int,
        rule_active: bool = False,
        match_count: int = 0,
    ) -> bool:
        """Move to ``FETCHING`` and return ``True`` if a page should be requested now."""

        if self._state is PrefetchState.FETCHING:
            return False
        if not self.wants_page(
            exhausted=exhausted,
            viewport_end=viewport_end,
            shown_count=shown_count,
            rule_active=rule_active,
            match_count=match_count,
        ):
            return False
        self._state = PrefetchState.FETCHING
        return True

    def cancel(self) -> None:
        """Return to ``IDLE`` without recording an error (e.g. the fetch was coalesced)."""

        self._state = PrefetchState.IDLE

    def fetch_completed(self) -> None:
        self._state = PrefetchState.IDLE
        self.last_error = None

    def fetch_failed(self, error: str) -> None:
        LOGGER.debug("Page fetch failed, waiting for next trigger: %s", error)
        self._state = PrefetchState.IDLE
        self.last_error = error

    def reset(self) -> None:
        self._state = PrefetchState.IDLE
        self.last_error = None
