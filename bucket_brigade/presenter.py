from __future__ import annotations
"""View-agnostic presenter that runs remote calls off the UI loop."""
from dataclasses import replace
import logging
import queue
import threading
from typing import Callable, Iterable, Optional

from .controller import BrowserController
from .ledger import LedgerStorage, RestoreLedger
from .masks import RuleStorage, SavedRule, SelectionRule
from .models import StorageTier, utcnow
from .services import S3Service, TransientRemoteError
from .session import (
    BrowserSession,
    BucketsLoaded,
    BulkFinished,
    OperationFailed,
    PageFailed,
    PageLoaded,
    PageRequest,
    Request,
    RestoreFailed,
    RestoreSubmitted,
    StatusFailed,
    StatusLoaded,
    StatusRequest,
    TierChanged,
    TierChangeFailed,
)
from .settings import AppSettings, SettingsStorage
from .ui_utils import PackageInfo, describe_remote_error, load_package_info


DispatchFn = Callable[[object], None]
SpawnFn = Callable[[Callable[[], None]], None]

LOGGER = logging.getLogger(__name__)


def _start_thread(task: Callable[[], None]) -> None:
    threading.Thread(target=task, daemon=True).start()


class BrowserPresenter:
    """Runs background operations and feeds their results to the session.

    Background tasks only ever hand a result message to ``dispatch``; the UI
    loop calls :meth:`drain` to apply them to the session on its own thread.
    """

    def __init__(
        self,
        *,
        controller: BrowserController | None = None,
        settings_storage: SettingsStorage | None = None,
        ledger: RestoreLedger | None = None,
        rule_storage: RuleStorage | None = None,
        session: BrowserSession | None = None,
        spawn: SpawnFn | None = None,
    ) -> None:
        self._settings_storage = settings_storage or SettingsStorage()
        self._settings = self._settings_storage.load()
        self._controller = controller or BrowserController(
            service=S3Service(timeout=self._settings.fetch_timeout_seconds)
        )
        self._ledger = ledger or RestoreLedger(LedgerStorage())
        self._rule_storage = rule_storage or RuleStorage()
        self._saved_rules: list[SavedRule] = self._rule_storage.load()
        self._session = session or BrowserSession(self._ledger, self._settings)
        self._queue: queue.Queue = queue.Queue()
        self._spawn = spawn or _start_thread
        self._package_info = load_package_info()

    @property
    def session(self) -> BrowserSession:
        return self._session

    @property
    def ledger(self) -> RestoreLedger:
        return self._ledger

    @property
    def settings(self) -> AppSettings:
        return replace(self._settings)

    @property
    def package_info(self) -> PackageInfo:
        return self._package_info

    @property
    def is_connected(self) -> bool:
        return self._controller.is_connected

    def dispatch(self, message: object) -> None:
        self._queue.put(message)

    def save_settings(self, settings: AppSettings) -> None:
        self._settings = settings
        self._settings_storage.save(settings)

    def update_last_bucket(self, bucket: str) -> None:
        self._settings = replace(self._settings, last_bucket=bucket or "")
        self._settings_storage.save(self._settings)

    def update_last_connection(self, connection: str) -> None:
        self._settings = replace(self._settings, last_connection=connection or "")
        self._settings_storage.save(self._settings)

    # Saved rules

    def list_saved_rules(self) -> list[SavedRule]:
        return list(self._saved_rules)

    def save_rule(
        self,
        rule: SelectionRule,
        *,
        target_tier: StorageTier | None = None,
        notes: str = "",
    ) -> SavedRule:
        saved = SavedRule(rule=rule, target_tier=target_tier, notes=notes)
        self._saved_rules.append(saved)
        self._rule_storage.save(self._saved_rules)
        return saved

    def delete_saved_rule(self, rule_id: str) -> None:
        before = len(self._saved_rules)
        self._saved_rules = [rule for rule in self._saved_rules if rule.id != rule_id]
        if len(self._saved_rules) == before:
            raise ValueError(f"Saved rule '{rule_id}' does not exist")
        self._rule_storage.save(self._saved_rules)

    # Operator events

    def connect(self, profile_name: str | None = None) -> None:
        LOGGER.debug("Connecting using profile '%s'", profile_name or "<default>")

        def task() -> None:
            try:
                buckets = self._controller.connect(profile_name)
            except TransientRemoteError as exc:
                LOGGER.exception("Connection error for profile '%s'", profile_name)
                self.dispatch(OperationFailed("Connect", describe_remote_error(exc)))
            except Exception as exc:
                LOGGER.exception("Unexpected connection error for profile '%s'", profile_name)
                self.dispatch(OperationFailed("Connect", str(exc)))
            else:
                LOGGER.debug("Connected (%d buckets)", len(buckets))
                self.dispatch(BucketsLoaded(tuple(buckets)))

        self._spawn(task)

    def refresh_buckets(self) -> None:
        def task() -> None:
            try:
                buckets = self._controller.refresh_buckets()
            except TransientRemoteError as exc:
                LOGGER.exception("Bucket refresh error")
                self.dispatch(OperationFailed("Bucket refresh", describe_remote_error(exc)))
            except Exception as exc:
                LOGGER.exception("Unexpected bucket refresh error")
                self.dispatch(OperationFailed("Bucket refresh", str(exc)))
            else:
                self.dispatch(BucketsLoaded(tuple(buckets)))

        self._spawn(task)

    def open_bucket(self, bucket: str | None) -> None:
        self.execute(self._session.select_collection(bucket))
        if bucket:
            self.update_last_bucket(bucket)

    def apply_rule(self, rule: SelectionRule | None) -> None:
        self.execute(self._session.set_rule(rule))

    def scroll(self, first: int, last: int) -> None:
        self.execute(self._session.scroll(first, last))

    def select(self, index: int) -> None:
        self.execute(self._session.select(index))

    def tick(self) -> None:
        self.execute(self._session.tick())

    def refresh_selected_status(self) -> None:
        entry = self._session.selected_entry()
        if entry is None:
            self._session.push_status("Select an object to inspect")
            return
        if not entry.needs_status:
            self._session.push_status(f"{entry.key} is {entry.tier.value}; no restore needed")
            return
        self._session.reconciler.requeue(entry.key)
        self.tick()

    def restore_targets(self, duration_days: int | None = None) -> list[str]:
        try:
            keys = self._session.begin_restore(duration_days or self._settings.restore_days)
        except ValueError as exc:
            self._session.push_status(str(exc))
            return []
        if keys:
            self._run_bulk_restore(self._session.bucket, keys, duration_days or self._settings.restore_days)
        return keys

    def transition_targets(self, target_tier: StorageTier) -> list[str]:
        try:
            keys = self._session.begin_transition(target_tier)
        except ValueError as exc:
            self._session.push_status(str(exc))
            return []
        if keys:
            self._run_bulk_transition(self._session.bucket, keys, target_tier)
        return keys

    # Loop side

    def drain(self, limit: int | None = None) -> list[object]:
        """Apply queued results to the session; returns the messages handled."""

        handled: list[object] = []
        while limit is None or len(handled) < limit:
            try:
                message = self._queue.get_nowait()
            except queue.Empty:
                break
            handled.append(message)
            self.execute(self._session.apply(message))
        return handled

    def execute(self, requests: Iterable[Request]) -> None:
        for request in requests:
            if isinstance(request, PageRequest):
                self._fetch_page(request)
            elif isinstance(request, StatusRequest):
                self._fetch_status(request)

    def _fetch_page(self, request: PageRequest) -> None:
        ticket = request.ticket
        LOGGER.debug("Fetching page %d for bucket '%s'", ticket.serial, ticket.collection)

        def task() -> None:
            try:
                page = self._controller.list_page(ticket.collection, ticket.cursor, page_size=request.page_size)
            except TransientRemoteError as exc:
                LOGGER.exception("List objects error for bucket '%s'", ticket.collection)
                self.dispatch(PageFailed(ticket, describe_remote_error(exc)))
            except Exception as exc:
                LOGGER.exception("Unexpected list objects error for bucket '%s'", ticket.collection)
                self.dispatch(PageFailed(ticket, str(exc)))
            else:
                LOGGER.debug("Page %d returned %d entries", ticket.serial, len(page.entries))
                self.dispatch(PageLoaded(ticket, tuple(page.entries), page.next_cursor))

        self._spawn(task)

    def _fetch_status(self, request: StatusRequest) -> None:
        def task() -> None:
            try:
                remote = self._controller.get_status(request.bucket, request.key)
            except TransientRemoteError as exc:
                LOGGER.warning("Status check failed for '%s': %s", request.key, exc)
                self.dispatch(
                    StatusFailed(request.bucket, request.key, request.context, describe_remote_error(exc))
                )
            except Exception as exc:
                LOGGER.exception("Unexpected status check error for '%s'", request.key)
                self.dispatch(StatusFailed(request.bucket, request.key, request.context, str(exc)))
            else:
                self.dispatch(StatusLoaded(request.bucket, request.key, remote, request.context, utcnow()))

        self._spawn(task)

    def _run_bulk_restore(self, bucket: Optional[str], keys: list[str], days: int) -> None:
        if bucket is None:
            return

        def task() -> None:
            succeeded = failed = 0
            for key in keys:
                try:
                    self._controller.request_restore(bucket, key, days)
                except TransientRemoteError as exc:
                    LOGGER.warning("Restore failed for '%s': %s", key, exc)
                    failed += 1
                    self.dispatch(RestoreFailed(bucket, key, describe_remote_error(exc)))
                except Exception as exc:
                    LOGGER.exception("Unexpected restore error for '%s'", key)
                    failed += 1
                    self.dispatch(RestoreFailed(bucket, key, str(exc)))
                else:
                    succeeded += 1
                    self.dispatch(RestoreSubmitted(bucket, key))
            self.dispatch(BulkFinished("restore", bucket, succeeded, failed))

        self._spawn(task)

    def _run_bulk_transition(self, bucket: Optional[str], keys: list[str], tier: StorageTier) -> None:
        if bucket is None:
            return

        def task() -> None:
            succeeded = failed = 0
            for key in keys:
                try:
                    self._controller.set_tier(bucket, key, tier)
                except TransientRemoteError as exc:
                    LOGGER.warning("Transition failed for '%s': %s", key, exc)
                    failed += 1
                    self.dispatch(TierChangeFailed(bucket, key, tier, describe_remote_error(exc)))
                except Exception as exc:
                    LOGGER.exception("Unexpected transition error for '%s'", key)
                    failed += 1
                    self.dispatch(TierChangeFailed(bucket, key, tier, str(exc)))
                else:
                    succeeded += 1
                    self.dispatch(TierChanged(bucket, key, tier))
            self.dispatch(BulkFinished("transition", bucket, succeeded, failed))

        self._spawn(task)
