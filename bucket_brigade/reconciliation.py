from __future__ import annotations
"""Derives restore status for archival objects from remote and local signals."""
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Iterable, Optional

from .ledger import RestoreLedger
from .listing import StaleFetch
from .models import (
    ObjectEntry,
    RemoteRestoreState,
    RemoteStatus,
    RestoreRequestRecord,
    RestoreStatus,
    utcnow,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 10
DEFAULT_FRESHNESS = timedelta(minutes=5)


def derive_status(
    remote: Optional[RemoteStatus],
    record: Optional[RestoreRequestRecord],
    now: datetime,
) -> RestoreStatus:
    """Combine remote metadata, the newest ledger record and the clock.

    Remote in-progress or completed restores win; otherwise the ledger record
    decides by whether its restore window has elapsed. Records of requests the
    remote rejected are ignored.
    """

    if remote is not None:
        if remote.state is RemoteRestoreState.IN_PROGRESS:
            return RestoreStatus.RESTORING
        if remote.state is RemoteRestoreState.AVAILABLE:
            if remote.expiry is not None and remote.expiry <= now:
                return RestoreStatus.EXPIRED
            return RestoreStatus.AVAILABLE
    if record is not None and not record.failed:
        return RestoreStatus.EXPIRED if record.is_elapsed(now) else RestoreStatus.RESTORING
    if remote is not None and remote.state is RemoteRestoreState.EXPIRED:
        return RestoreStatus.EXPIRED
    return RestoreStatus.NEEDS_RESTORE


@dataclass(frozen=True)
class Observation:
    remote: Optional[RemoteStatus]
    observed_at: datetime


class StatusReconciler:
    """Tracks per-key metadata fetches for one bucket.

    This object does no I/O itself. :meth:`start_ready` hands out keys to fetch
    while staying under the concurrency limit, and results come back through
    :meth:`apply_result` / :meth:`apply_failure` tagged with the context they
    were issued under. Results from an older context raise :class:`StaleFetch`.

    Fetches from an older context still count against the limit until their
    result arrives, since the remote call keeps running after a cancel. A key
    whose fetch failed is not fetched again until :meth:`requeue` or a new
    context.
    """

    def __init__(
        self,
        ledger: RestoreLedger,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        freshness: timedelta = DEFAULT_FRESHNESS,
        clock=utcnow,
    ):
        self._ledger = ledger
        self.concurrency = max(int(concurrency), 1)
        self.freshness = freshness
        self._clock = clock
        self._bucket: Optional[str] = None
        self._context = 0
        self._entries: dict[str, ObjectEntry] = {}
        self._observations: dict[str, Observation] = {}
        self._queue: deque[str] = deque()
        self._queued: set[str] = set()
        self._in_flight: set[str] = set()
        # (context, key) of fetches issued before a cancel that have not reported back.
        self._orphaned: set[tuple[int, str]] = set()
        self._failed: dict[str, datetime] = {}
        self._changed: set[str] = set()

    @property
    def context(self) -> int:
        return self._context

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    @property
    def orphaned_count(self) -> int:
        return len(self._orphaned)

    def has_failed(self, key: str) -> bool:
        return key in self._failed

    def reset(self, bucket: Optional[str]) -> None:
        """Forget everything about the previous bucket."""

        self._bucket = bucket
        self._entries.clear()
        self._observations.clear()
        self._changed.clear()
        self.cancel()

    def cancel(self) -> None:
        """Drop queued and outstanding fetches; keep what was already observed."""

        self._orphaned.update((self._context, key) for key in self._in_flight)
        self._context += 1
        self._queue.clear()
        self._queued.clear()
        self._in_flight.clear()
        self._failed.clear()

    def track(self, entries: Iterable[ObjectEntry]) -> int:
        """Queue metadata fetches for archival entries whose status is unknown or stale."""

        now = self._clock()
        added = 0
        for entry in entries:
            if not entry.needs_status:
                continue
            self._entries[entry.key] = entry
            if entry.restore_status is None:
                entry.restore_status = RestoreStatus.UNKNOWN
            if entry.key in self._in_flight or entry.key in self._queued or entry.key in self._failed:
                continue
            if not self._is_stale(entry.key, now):
                continue
            self._queue.append(entry.key)
            self._queued.add(entry.key)
            added += 1
        return added

    def invalidate(self, key: str) -> None:
        self._observations.pop(key, None)
        self._failed.pop(key, None)

    def requeue(self, key: str) -> bool:
        """Forget the last observation of a tracked key and queue a new fetch for it."""

        entry = self._entries.get(key)
        if entry is None:
            return False
        self.invalidate(key)
        return self.track([entry]) > 0

    def start_ready(self) -> list[str]:
        """Pop queued keys up to the concurrency limit and mark them in flight."""

        started: list[str] = []
        while self._queue and len(self._in_flight) + len(self._orphaned) < self.concurrency:
            key = self._queue.popleft()
            self._queued.discard(key)
            self._in_flight.add(key)
            started.append(key)
        return started

    def apply_result(
        self,
        key: str,
        remote: Optional[RemoteStatus],
        *,
        context: int,
        observed_at: datetime,
    ) -> Optional[RestoreStatus]:
        self._check_context(key, context)
        self._in_flight.discard(key)
        self._failed.pop(key, None)
        self._observations[key] = Observation(remote=remote, observed_at=observed_at)
        if remote is not None and self._bucket is not None:
            self._ledger.reconcile(self._bucket, key, remote.state)
        return self.refresh(key)

    def apply_failure(self, key: str, *, context: int) -> None:
        """Release the slot for ``key``; its status keeps its previous value.

        The key is not queued again by :meth:`track` until it is requeued or
        the context changes.
        """

        self._check_context(key, context)
        self._in_flight.discard(key)
        self._failed[key] = self._clock()

    def refresh(self, key: str, now: datetime | None = None) -> Optional[RestoreStatus]:
        """Recompute and store the derived status of a tracked entry."""

        entry = self._entries.get(key)
        if entry is None:
            return None
        status = self.status_of(entry, now)
        if status != entry.restore_status:
            entry.restore_status = status
            self._changed.add(key)
        return status

    def refresh_all(self, now: datetime | None = None) -> None:
        now = now or self._clock()
        for key in list(self._entries):
            self.refresh(key, now)

    def status_of(self, entry: ObjectEntry, now: datetime | None = None) -> Optional[RestoreStatus]:
        if not entry.needs_status:
            return None
        observation = self._observations.get(entry.key)
        record = self._ledger.latest(self._bucket, entry.key) if self._bucket else None
        if record is not None and record.failed:
            record = None
        if observation is None and record is None:
            return RestoreStatus.UNKNOWN
        remote = observation.remote if observation else None
        return derive_status(remote, record, now or self._clock())

    def take_changes(self) -> set[str]:
        changed, self._changed = self._changed, set()
        return changed

    def _is_stale(self, key: str, now: datetime) -> bool:
        observation = self._observations.get(key)
        return observation is None or now - observation.observed_at > self.freshness

    def discard(self, key: str, context: int) -> None:
        """Account for a result that is being dropped without being applied."""

        self._orphaned.discard((context, key))

    def _check_context(self, key: str, context: int) -> None:
        if context != self._context:
            self.discard(key, context)
            raise StaleFetch(f"Status result for '{key}' belongs to a superseded context")
