from __future__ import annotations
"""The browsing session: one bucket, one rule, and everything derived from them.

All state lives on a :class:`BrowserSession` that is only touched from the UI
loop. Remote work is described by request objects the session hands out, and
comes back as result messages passed to :meth:`BrowserSession.apply`.
"""
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Optional, Union

from .ledger import RestoreLedger
from .listing import FetchTicket, PageCache, StaleFetch
from .masks import SelectionRule
from .models import (
    BucketInfo,
    ObjectEntry,
    RemoteStatus,
    RestoreStatus,
    StorageTier,
    utcnow,
)
from .prefetch import PrefetchController
from .reconciliation import StatusReconciler
from .settings import AppSettings

LOGGER = logging.getLogger(__name__)

STATUS_LIMIT = 20


@dataclass(frozen=True)
class PageRequest:
    ticket: FetchTicket
    page_size: int


@dataclass(frozen=True)
class StatusRequest:
    bucket: str
    key: str
    context: int


Request = Union[PageRequest, StatusRequest]


@dataclass(frozen=True)
class PageLoaded:
    ticket: FetchTicket
    entries: tuple[ObjectEntry, ...]
    next_cursor: Optional[str]


@dataclass(frozen=True)
class PageFailed:
    ticket: FetchTicket
    error: str


@dataclass(frozen=True)
class StatusLoaded:
    bucket: str
    key: str
    remote: Optional[RemoteStatus]
    context: int
    observed_at: datetime


@dataclass(frozen=True)
class StatusFailed:
    bucket: str
    key: str
    context: int
    error: str


@dataclass(frozen=True)
class RestoreSubmitted:
    bucket: str
    key: str


@dataclass(frozen=True)
class RestoreFailed:
    bucket: str
    key: str
    error: str


@dataclass(frozen=True)
class TierChanged:
    bucket: str
    key: str
    tier: StorageTier


@dataclass(frozen=True)
class TierChangeFailed:
    bucket: str
    key: str
    tier: StorageTier
    error: str


@dataclass(frozen=True)
class BulkFinished:
    operation: str
    bucket: str
    succeeded: int
    failed: int


@dataclass(frozen=True)
class BucketsLoaded:
    buckets: tuple[BucketInfo, ...]


@dataclass(frozen=True)
class OperationFailed:
    operation: str
    error: str


@dataclass
class RestorePlan:
    """Which targets a restore would touch and which it would skip."""

    to_restore: list[ObjectEntry] = field(default_factory=list)
    already_restoring: int = 0
    already_available: int = 0
    not_archival: int = 0


class BrowserSession:
    """Owns the page cache, active rule, reconciler and prefetch state for one bucket."""

    def __init__(
        self,
        ledger: RestoreLedger,
        settings: AppSettings | None = None,
        *,
        clock=utcnow,
    ):
        settings = settings or AppSettings()
        self.ledger = ledger
        self.page_size = settings.page_size
        self.restore_days = settings.restore_days
        self._clock = clock
        self.cache = PageCache()
        self.prefetch = PrefetchController(lookahead=settings.lookahead, match_floor=settings.match_floor)
        self.reconciler = StatusReconciler(
            ledger,
            concurrency=settings.status_concurrency,
            freshness=timedelta(seconds=settings.status_freshness_seconds),
            clock=clock,
        )
        self.status_log: deque[str] = deque(maxlen=STATUS_LIMIT)
        self._progress: Optional[str] = None
        self.view_version = 0
        self.selected_index = 0
        self._rule: Optional[SelectionRule] = None
        self._matched: list[ObjectEntry] = []
        self._scanned = 0
        self._viewport = (0, 0)

    @property
    def bucket(self) -> Optional[str]:
        return self.cache.collection

    @property
    def rule(self) -> Optional[SelectionRule]:
        return self._rule

    @property
    def shown(self) -> list[ObjectEntry]:
        """Entries the operator sees: the matches when a rule is active, else everything loaded."""

        return self._matched if self._rule is not None else self.cache.entries

    @property
    def match_count(self) -> int:
        return len(self._matched)

    @property
    def viewport(self) -> tuple[int, int]:
        return self._viewport

    def selected_entry(self) -> Optional[ObjectEntry]:
        shown = self.shown
        if 0 <= self.selected_index < len(shown):
            return shown[self.selected_index]
        return None

    def push_status(self, message: str) -> None:
        LOGGER.info(message)
        self.status_log.append(message)

    def _push_progress(self, message: str) -> None:
        """Like :meth:`push_status`, but replaces the previous progress line if nothing followed it."""

        if self._progress is not None and self.status_log and self.status_log[-1] == self._progress:
            self.status_log.pop()
        self._progress = message
        self.push_status(message)

    @property
    def last_status(self) -> str:
        return self.status_log[-1] if self.status_log else ""

    # Operator events

    def select_collection(self, bucket: Optional[str]) -> list[Request]:
        self.cache.reset(bucket)
        self.reconciler.reset(bucket)
        self.prefetch.reset()
        self._matched = []
        self._scanned = 0
        self._viewport = (0, 0)
        self.selected_index = 0
        self.view_version += 1
        if bucket is None:
            return []
        self._push_progress(f"Loading objects in {bucket}…")
        return self._next_requests()

    def set_rule(self, rule: Optional[SelectionRule]) -> list[Request]:
        self._rule = rule
        self.reconciler.cancel()
        self._matched = []
        self._scanned = 0
        self._viewport = (0, 0)
        self.selected_index = 0
        self.view_version += 1
        self._scan_new_entries()
        if rule is None:
            self.push_status("Cleared mask filter")
        elif not rule.is_valid:
            self.push_status(f"Invalid pattern: {rule.error}")
        elif not self._matched:
            self.push_status("Mask applied but matched no objects")
        else:
            self.push_status(f"Mask '{rule.name or rule.pattern}' matched {len(self._matched)} objects")
        return self._next_requests()

    def scroll(self, first: int, last: int) -> list[Request]:
        first = max(int(first), 0)
        self._viewport = (first, max(int(last), first))
        self.reconciler.track(self.shown[first : self._viewport[1] + 1])
        return self._next_requests()

    def select(self, index: int) -> list[Request]:
        shown_count = len(self.shown)
        if shown_count == 0:
            self.selected_index = 0
            return self._next_requests()
        self.selected_index = min(max(int(index), 0), shown_count - 1)
        first, last = self._viewport
        if self.selected_index < first or self.selected_index > last:
            span = last - first
            first = self.selected_index if self.selected_index < first else self.selected_index - span
            return self.scroll(first, first + span)
        return self._next_requests()

    def tick(self, now: datetime | None = None) -> list[Request]:
        """Periodic upkeep: let elapsed restore windows expire and refresh stale visible rows."""

        self.reconciler.refresh_all(now)
        first, last = self._viewport
        self.reconciler.track(self.shown[first : last + 1])
        return self._start_status_fetches()

    # Result messages

    def apply(self, message) -> list[Request]:
        handler = self._HANDLERS.get(type(message))
        if handler is None:
            return []
        try:
            return handler(self, message)
        except StaleFetch as exc:
            LOGGER.debug("Dropping stale result: %s", exc)
            # A dropped status result may have freed a fetch slot.
            return self._start_status_fetches()

    def _on_page_loaded(self, message: PageLoaded) -> list[Request]:
        added = self.cache.append_page(message.entries, message.next_cursor, message.ticket)
        self.prefetch.fetch_completed()
        self._scan_new_entries()
        loaded = len(self.cache)
        if self.cache.is_exhausted():
            self._push_progress(f"Loaded all {loaded} objects")
        else:
            self._push_progress(f"Loaded {loaded} objects…")
        LOGGER.debug("Page %d added %d entries", message.ticket.serial, added)
        return self._next_requests()

    def _on_page_failed(self, message: PageFailed) -> list[Request]:
        self.cache.fail_fetch(message.ticket)
        self.prefetch.fetch_failed(message.error)
        self.push_status(f"Failed to load more: {message.error}")
        return self._start_status_fetches()

    def _on_status_loaded(self, message: StatusLoaded) -> list[Request]:
        self._check_bucket(message.bucket, message.key, message.context)
        self.reconciler.apply_result(
            message.key,
            message.remote,
            context=message.context,
            observed_at=message.observed_at,
        )
        return self._start_status_fetches()

    def _on_status_failed(self, message: StatusFailed) -> list[Request]:
        self._check_bucket(message.bucket, message.key, message.context)
        self.reconciler.apply_failure(message.key, context=message.context)
        self.push_status(f"Status check failed for {message.key}: {message.error}")
        return self._start_status_fetches()

    def _on_restore_submitted(self, message: RestoreSubmitted) -> list[Request]:
        self.push_status(f"✓ Restore requested for {message.key}")
        if message.bucket != self.bucket:
            return []
        self.reconciler.requeue(message.key)
        return self._start_status_fetches()

    def _on_restore_failed(self, message: RestoreFailed) -> list[Request]:
        self.push_status(f"✗ Restore failed for {message.key}: {message.error}")
        self.ledger.mark_failed(message.bucket, message.key)
        if message.bucket != self.bucket:
            return []
        self.reconciler.refresh(message.key)
        self.reconciler.requeue(message.key)
        return self._start_status_fetches()

    def _on_tier_changed(self, message: TierChanged) -> list[Request]:
        self.push_status(f"Transitioned {message.key} to {message.tier.value}")
        return []

    def _on_tier_change_failed(self, message: TierChangeFailed) -> list[Request]:
        self.push_status(f"Transition failed for {message.key}: {message.error}")
        return []

    def _on_bulk_finished(self, message: BulkFinished) -> list[Request]:
        summary = f"{message.operation}: {message.succeeded} succeeded"
        if message.failed:
            summary += f", {message.failed} failed"
        self.push_status(summary)
        if message.operation == "transition" and message.bucket == self.bucket:
            # Storage classes are only known from the listing, so reload it.
            return self.select_collection(self.bucket)
        return []

    def _on_operation_failed(self, message: OperationFailed) -> list[Request]:
        self.push_status(f"{message.operation} failed: {message.error}")
        return []

    _HANDLERS = {
        PageLoaded: _on_page_loaded,
        PageFailed: _on_page_failed,
        StatusLoaded: _on_status_loaded,
        StatusFailed: _on_status_failed,
        RestoreSubmitted: _on_restore_submitted,
        RestoreFailed: _on_restore_failed,
        TierChanged: _on_tier_changed,
        TierChangeFailed: _on_tier_change_failed,
        BulkFinished: _on_bulk_finished,
        OperationFailed: _on_operation_failed,
    }

    # Bulk operation targets

    def targets(self) -> list[ObjectEntry]:
        if self._rule is not None:
            return list(self._matched)
        entry = self.selected_entry()
        return [entry] if entry is not None else []

    def status_of(self, entry: ObjectEntry) -> Optional[RestoreStatus]:
        return self.reconciler.status_of(entry)

    def restore_plan(self) -> RestorePlan:
        plan = RestorePlan()
        now = self._clock()
        for entry in self.targets():
            if not entry.needs_status:
                plan.not_archival += 1
                continue
            status = self.reconciler.status_of(entry, now)
            if status is RestoreStatus.RESTORING:
                plan.already_restoring += 1
            elif status is RestoreStatus.AVAILABLE:
                plan.already_available += 1
            else:
                plan.to_restore.append(entry)
        return plan

    def begin_restore(self, duration_days: int | None = None) -> list[str]:
        """Record restore requests for eligible targets and return their keys."""

        bucket = self.bucket
        if bucket is None:
            raise ValueError("Select a bucket before restoring")
        days = int(duration_days or self.restore_days)
        plan = self.restore_plan()
        if plan.already_restoring:
            self.push_status(f"Skipped {plan.already_restoring} objects already being restored")
        if plan.already_available:
            self.push_status(f"Skipped {plan.already_available} objects already restored")
        if not plan.to_restore:
            self.push_status("No objects need restore")
            return []
        keys = []
        for entry in plan.to_restore:
            self.ledger.record_request(bucket, entry.key, days)
            self.reconciler.track([entry])
            self.reconciler.refresh(entry.key)
            keys.append(entry.key)
        self.push_status(f"Requesting restore for {len(keys)} objects...")
        return keys

    def begin_transition(self, target_tier: StorageTier) -> list[str]:
        if self.bucket is None:
            raise ValueError("Select a bucket before transitioning")
        keys = [entry.key for entry in self.targets() if entry.tier is not target_tier]
        if not keys:
            self.push_status("No objects selected for transition")
        return keys

    def take_status_changes(self) -> set[str]:
        return self.reconciler.take_changes()

    # Internals

    def _scan_new_entries(self) -> None:
        entries = self.cache.entries
        fresh = entries[self._scanned :]
        self._scanned = len(entries)
        if self._rule is None:
            shown = fresh
        else:
            shown = [entry for entry in fresh if self._rule.accepts(entry)]
            self._matched.extend(shown)
        self.reconciler.track(shown)

    def _next_requests(self) -> list[Request]:
        requests: list[Request] = []
        page = self._maybe_request_page()
        if page is not None:
            requests.append(page)
        requests.extend(self._start_status_fetches())
        return requests

    def _maybe_request_page(self) -> Optional[PageRequest]:
        if self.cache.collection is None:
            return None
        rule_active = self._rule is not None and self._rule.is_valid
        shown_count = len(self.shown) if self._rule is None or rule_active else len(self.cache)
        if not self.prefetch.evaluate(
            exhausted=self.cache.is_exhausted(),
            viewport_end=self._viewport[1],
            shown_count=shown_count,
            rule_active=rule_active,
            match_count=len(self._matched),
        ):
            return None
        ticket = self.cache.begin_fetch()
        if ticket is None:
            self.prefetch.cancel()
            return None
        return PageRequest(ticket=ticket, page_size=self.page_size)

    def _start_status_fetches(self) -> list[Request]:
        bucket = self.bucket
        if bucket is None:
            return []
        context = self.reconciler.context
        return [StatusRequest(bucket=bucket, key=key, context=context) for key in self.reconciler.start_ready()]

    def _check_bucket(self, bucket: str, key: str, context: int) -> None:
        if bucket != self.bucket:
            self.reconciler.discard(key, context)
            raise StaleFetch(f"Status result for '{key}' belongs to bucket '{bucket}'")
