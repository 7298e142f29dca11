from datetime import datetime, timedelta, timezone
import unittest

from bucket_brigade.ledger import RestoreLedger
from bucket_brigade.masks import MatchMode, SelectionRule
from bucket_brigade.models import (
    ObjectEntry,
    RemoteRestoreState,
    RemoteStatus,
    RestoreStatus,
    StorageTier,
)
from bucket_brigade.session import (
    STATUS_LIMIT,
    BrowserSession,
    BulkFinished,
    PageFailed,
    PageLoaded,
    PageRequest,
    RestoreFailed,
    RestoreSubmitted,
    StatusFailed,
    StatusLoaded,
    StatusRequest,
)
from bucket_brigade.settings import AppSettings

NOW = datetime(2026, 5, 4, 8, 0, tzinfo=timezone.utc)


class CountingRule(SelectionRule):
    """Selection rule that records every entry it is asked about."""

    checked: list = []

    def accepts(self, entry):
        CountingRule.checked.append(entry.key)
        return super().accepts(entry)


def _entries(start: int, count: int, storage_class: str = "STANDARD") -> list[ObjectEntry]:
    return [
        ObjectEntry(key=f"obj-{index:04d}", size=index, storage_class=storage_class)
        for index in range(start, start + count)
    ]


def _page_requests(requests):
    return [request for request in requests if isinstance(request, PageRequest)]


def _status_requests(requests):
    return [request for request in requests if isinstance(request, StatusRequest)]


class BrowserSessionTests(unittest.TestCase):
    def setUp(self):
        self.now = NOW
        self.ledger = RestoreLedger(clock=self._clock)
        self.session = BrowserSession(self.ledger, AppSettings(), clock=self._clock)

    def _clock(self):
        return self.now

    def _open(self, bucket: str = "photos") -> PageRequest:
        (request,) = _page_requests(self.session.select_collection(bucket))
        return request

    def _load(self, request: PageRequest, entries, next_cursor):
        return self.session.apply(PageLoaded(request.ticket, tuple(entries), next_cursor))

    def test_opening_a_bucket_requests_first_page(self):
        request = self._open()

        self.assertIsNone(request.ticket.cursor)
        self.assertEqual("photos", request.ticket.collection)
        self.assertEqual(200, request.page_size)
        self.assertEqual("photos", self.session.bucket)

    def test_scrolling_near_the_end_requests_next_page(self):
        requests = self._load(self._open(), _entries(0, 200), "c1")
        self.assertEqual([], _page_requests(requests))

        self.assertEqual([], _page_requests(self.session.scroll(0, 30)))
        (request,) = _page_requests(self.session.scroll(160, 190))

        self.assertEqual("c1", request.ticket.cursor)
        self.assertEqual([], _page_requests(self.session.scroll(170, 199)))

    def test_sparse_rule_keeps_fetching_until_exhausted(self):
        request = self._open()
        self.session.set_rule(SelectionRule(pattern="zzz"))
        pages = [(_entries(0, 200), "c1"), (_entries(200, 200), "c2"), (_entries(400, 50), None)]

        for entries, next_cursor in pages:
            self.assertIsNotNone(request)
            requests = _page_requests(self._load(request, entries, next_cursor))
            request = requests[0] if requests else None

        self.assertIsNone(request)
        self.assertEqual(450, len(self.session.cache))
        self.assertTrue(self.session.cache.is_exhausted())
        self.assertEqual(0, self.session.match_count)
        self.assertEqual("Loaded all 450 objects", self.session.last_status)

    def test_rule_selects_matching_entries_in_listing_order(self):
        request = self._open()
        entries = [
            ObjectEntry(key="logs-2024-a"),
            ObjectEntry(key="LOGS-2024-b"),
            ObjectEntry(key="logs-2023-c"),
        ]
        self._load(request, entries, None)

        self.session.set_rule(SelectionRule(pattern="logs-2024-", mode=MatchMode.PREFIX, case_sensitive=True))

        self.assertEqual(["logs-2024-a"], [entry.key for entry in self.session.shown])
        self.session.set_rule(SelectionRule(pattern="logs-2024-", mode=MatchMode.PREFIX, case_sensitive=False))
        self.assertEqual(["logs-2024-a", "LOGS-2024-b"], [entry.key for entry in self.session.shown])
        self.session.set_rule(None)
        self.assertEqual(3, len(self.session.shown))

    def test_new_pages_are_filtered_without_rescanning(self):
        first = self._open()
        self._load(first, _entries(0, 200), "c1")
        CountingRule.checked = []

        (second,) = _page_requests(self.session.set_rule(CountingRule(pattern="obj-000")))
        self.assertEqual(200, len(CountingRule.checked))

        self._load(second, _entries(200, 200), "c2")

        self.assertEqual(400, len(CountingRule.checked))
        self.assertEqual(400, len(set(CountingRule.checked)))
        self.assertEqual(10, self.session.match_count)

    def test_duplicate_page_result_is_dropped(self):
        request = self._open()
        message = PageLoaded(request.ticket, tuple(_entries(0, 20)), "c1")

        self.session.apply(message)
        self.assertEqual([], self.session.apply(message))

        self.assertEqual(20, len(self.session.cache))

    def test_page_for_previous_bucket_is_dropped(self):
        stale = self._open("photos")
        self._open("videos")

        self.assertEqual([], self._load(stale, _entries(0, 5), None))

        self.assertEqual(0, len(self.session.cache))
        self.assertEqual("videos", self.session.bucket)
        self.assertTrue(self.session.cache.is_fetching)

    def test_failed_page_waits_for_next_trigger(self):
        request = self._open()

        requests = self.session.apply(PageFailed(request.ticket, "request timed out; please retry"))

        self.assertEqual([], _page_requests(requests))
        self.assertEqual("Failed to load more: request timed out; please retry", self.session.last_status)
        self.assertEqual("request timed out; please retry", self.session.prefetch.last_error)
        (retry,) = _page_requests(self.session.scroll(0, 0))
        self.assertIsNone(retry.ticket.cursor)

    def test_archival_entries_request_status_checks(self):
        request = self._open("archive")
        entries = _entries(0, 3, "GLACIER") + [ObjectEntry(key="hot.txt")]

        requests = _status_requests(self._load(request, entries, None))

        self.assertEqual(["obj-0000", "obj-0001", "obj-0002"], [item.key for item in requests])
        self.assertTrue(all(item.bucket == "archive" for item in requests))
        self.assertIs(RestoreStatus.UNKNOWN, entries[0].restore_status)
        self.assertIsNone(entries[3].restore_status)

    def test_status_result_updates_entry(self):
        request = self._open("archive")
        entries = _entries(0, 1, "DEEP_ARCHIVE")
        (status_request,) = _status_requests(self._load(request, entries, None))
        remote = RemoteStatus(RemoteRestoreState.AVAILABLE, expiry=NOW + timedelta(days=2))

        self.session.apply(
            StatusLoaded("archive", status_request.key, remote, status_request.context, NOW)
        )

        self.assertIs(RestoreStatus.AVAILABLE, entries[0].restore_status)
        self.assertEqual({"obj-0000"}, self.session.take_status_changes())

    def test_status_for_other_bucket_is_dropped(self):
        request = self._open("archive")
        entries = _entries(0, 1, "GLACIER")
        (status_request,) = _status_requests(self._load(request, entries, None))

        self.session.apply(
            StatusLoaded("elsewhere", status_request.key, None, status_request.context, NOW)
        )

        self.assertIs(RestoreStatus.UNKNOWN, entries[0].restore_status)

    def test_rule_change_discards_outstanding_status_checks(self):
        request = self._open("archive")
        entries = _entries(0, 2, "GLACIER")
        old_requests = _status_requests(self._load(request, entries, None))

        new_requests = _status_requests(self.session.set_rule(SelectionRule(pattern="obj-0000")))
        for old in old_requests:
            self.session.apply(StatusLoaded("archive", old.key, None, old.context, NOW))

        self.assertIs(RestoreStatus.UNKNOWN, entries[0].restore_status)
        self.assertEqual(["obj-0000"], [item.key for item in new_requests])
        self.assertGreater(new_requests[0].context, old_requests[0].context)

    def test_failed_status_check_is_not_retried_on_tick(self):
        request = self._open("archive")
        (status_request,) = _status_requests(self._load(request, _entries(0, 1, "GLACIER"), None))

        self.session.apply(
            StatusFailed("archive", status_request.key, status_request.context, "AccessDenied: permission denied")
        )
        self.now += timedelta(minutes=30)

        self.assertEqual([], self.session.tick())
        self.assertEqual([], self.session.tick())
        failures = [line for line in self.session.status_log if line.startswith("Status check failed")]
        self.assertEqual(1, len(failures))

    def test_failed_status_check_retries_after_requeue(self):
        request = self._open("archive")
        (status_request,) = _status_requests(self._load(request, _entries(0, 1, "GLACIER"), None))
        self.session.apply(StatusFailed("archive", status_request.key, status_request.context, "boom"))

        self.session.reconciler.requeue(status_request.key)

        (retry,) = _status_requests(self.session.tick())
        self.assertEqual(status_request.key, retry.key)

    def test_rule_changes_do_not_exceed_status_fetch_limit(self):
        request = self._open("archive")
        issued = _status_requests(self._load(request, _entries(0, 50, "GLACIER"), None))

        for pattern in ("obj-", "obj-00", "obj-0"):
            issued.extend(_status_requests(self.session.set_rule(SelectionRule(pattern=pattern))))

        self.assertEqual(10, len(issued))

        first = issued[0]
        freed = self.session.apply(StatusLoaded("archive", first.key, None, first.context, NOW))

        self.assertEqual(1, len(_status_requests(freed)))
        self.assertEqual(self.session.reconciler.context, freed[0].context)

    def test_result_for_previous_bucket_frees_its_slot(self):
        request = self._open("archive")
        issued = _status_requests(self._load(request, _entries(0, 10, "GLACIER"), None))
        second = self._open("archive-2")
        self.assertEqual([], _status_requests(self._load(second, _entries(0, 5, "GLACIER"), None)))

        freed = self.session.apply(StatusFailed("archive", issued[0].key, issued[0].context, "late"))

        (started,) = _status_requests(freed)
        self.assertEqual("archive-2", started.bucket)

    def test_rejected_restore_can_be_requested_again(self):
        request = self._open("archive")
        entries = _entries(0, 1, "GLACIER")
        (status_request,) = _status_requests(self._load(request, entries, None))
        self.session.apply(StatusLoaded("archive", "obj-0000", None, status_request.context, NOW))
        self.session.begin_restore(7)

        requests = _status_requests(
            self.session.apply(RestoreFailed("archive", "obj-0000", "AccessDenied: permission denied"))
        )
        self.now += timedelta(minutes=10)
        self.session.apply(StatusLoaded("archive", "obj-0000", None, requests[0].context, self.now))

        self.assertTrue(self.ledger.latest("archive", "obj-0000").failed)
        self.assertIs(RestoreStatus.NEEDS_RESTORE, entries[0].restore_status)
        self.assertEqual(["obj-0000"], [entry.key for entry in self.session.restore_plan().to_restore])

    def test_listing_progress_replaces_previous_progress_line(self):
        self.session.set_rule(SelectionRule(pattern="zzz"))
        request = self._open()
        pages = [(_entries(0, 200), "c1"), (_entries(200, 200), "c2"), (_entries(400, 50), None)]

        for number, (entries, next_cursor) in enumerate(pages):
            requests = _page_requests(self._load(request, entries, next_cursor))
            request = requests[0] if requests else None
            if number == 0:
                self.session.push_status("Status check failed for x: denied")

        self.assertEqual(
            [
                "Mask applied but matched no objects",
                "Loaded 200 objects…",
                "Status check failed for x: denied",
                "Loaded all 450 objects",
            ],
            list(self.session.status_log),
        )

    def test_restore_plan_skips_restoring_and_available_targets(self):
        request = self._open("archive")
        entries = _entries(0, 3, "GLACIER") + [ObjectEntry(key="obj-0003")]
        status_requests = _status_requests(self._load(request, entries, None))
        remotes = [
            None,
            RemoteStatus(RemoteRestoreState.IN_PROGRESS),
            RemoteStatus(RemoteRestoreState.AVAILABLE, expiry=NOW + timedelta(days=1)),
        ]
        for status_request, remote in zip(status_requests, remotes):
            self.session.apply(
                StatusLoaded("archive", status_request.key, remote, status_request.context, NOW)
            )
        self.session.set_rule(SelectionRule(pattern="obj-"))

        plan = self.session.restore_plan()
        self.assertEqual(["obj-0000"], [entry.key for entry in plan.to_restore])
        self.assertEqual((1, 1, 1), (plan.already_restoring, plan.already_available, plan.not_archival))

        keys = self.session.begin_restore(5)

        self.assertEqual(["obj-0000"], keys)
        record = self.ledger.latest("archive", "obj-0000")
        self.assertEqual(5, record.duration_days)
        self.assertEqual(NOW, record.requested_at)
        self.assertIs(RestoreStatus.RESTORING, entries[0].restore_status)
        self.assertIn("Skipped 1 objects already being restored", self.session.status_log)
        self.assertIn("Skipped 1 objects already restored", self.session.status_log)

    def test_restore_without_targets_reports_nothing_to_do(self):
        request = self._open("archive")
        self._load(request, [ObjectEntry(key="hot.txt")], None)

        self.assertEqual([], self.session.begin_restore())
        self.assertEqual("No objects need restore", self.session.last_status)

    def test_restore_requires_a_bucket(self):
        with self.assertRaises(ValueError):
            self.session.begin_restore()

    def test_submitted_restore_schedules_a_status_check(self):
        request = self._open("archive")
        entries = _entries(0, 1, "GLACIER")
        (status_request,) = _status_requests(self._load(request, entries, None))
        self.session.apply(StatusLoaded("archive", "obj-0000", None, status_request.context, NOW))

        requests = _status_requests(self.session.apply(RestoreSubmitted("archive", "obj-0000")))

        self.assertEqual(["obj-0000"], [item.key for item in requests])

    def test_targets_follow_selection_without_rule(self):
        request = self._open()
        self._load(request, _entries(0, 5), None)

        self.session.select(3)

        self.assertEqual(["obj-0003"], [entry.key for entry in self.session.targets()])

    def test_transition_skips_objects_already_on_target_tier(self):
        request = self._open()
        entries = _entries(0, 2, "GLACIER") + _entries(2, 2)
        self._load(request, entries, None)
        self.session.set_rule(SelectionRule(pattern="obj-"))

        keys = self.session.begin_transition(StorageTier.GLACIER)

        self.assertEqual(["obj-0002", "obj-0003"], keys)

    def test_finished_transition_reloads_listing(self):
        request = self._open()
        self._load(request, _entries(0, 5), None)

        requests = self.session.apply(BulkFinished("transition", "photos", 5, 0))

        (reload,) = _page_requests(requests)
        self.assertIsNone(reload.ticket.cursor)
        self.assertEqual(0, len(self.session.cache))

    def test_invalid_rule_shows_nothing(self):
        request = self._open()
        self._load(request, _entries(0, 5), None)

        self.session.set_rule(SelectionRule(pattern="([", mode=MatchMode.REGEX))

        self.assertEqual([], self.session.shown)
        self.assertTrue(self.session.last_status.startswith("Invalid pattern"))

    def test_status_log_is_bounded(self):
        for index in range(STATUS_LIMIT + 5):
            self.session.push_status(f"message {index}")

        self.assertEqual(STATUS_LIMIT, len(self.session.status_log))
        self.assertEqual(f"message {STATUS_LIMIT + 4}", self.session.last_status)


if __name__ == "__main__":
    unittest.main()
