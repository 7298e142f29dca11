from datetime import datetime, timezone
import tempfile
import unittest
from pathlib import Path

from bucket_brigade.ledger import RestoreLedger
from bucket_brigade.masks import RuleStorage, SelectionRule
from bucket_brigade.models import (
    BucketInfo,
    ListingPage,
    ObjectEntry,
    RemoteRestoreState,
    RemoteStatus,
    RestoreStatus,
    StorageTier,
)
from bucket_brigade.presenter import BrowserPresenter
from bucket_brigade.services import TransientRemoteError
from bucket_brigade.session import BucketsLoaded, OperationFailed
from bucket_brigade.settings import SettingsStorage

FAR_FUTURE = datetime(2999, 1, 1, tzinfo=timezone.utc)


def _entries(start: int, count: int, storage_class: str = "STANDARD") -> list[ObjectEntry]:
    return [
        ObjectEntry(key=f"obj-{index:04d}", size=index, storage_class=storage_class)
        for index in range(start, start + count)
    ]


class FakeController:
    def __init__(self):
        self.is_connected = True
        self.buckets = [BucketInfo(name="photos", region="eu-west-1")]
        self.pages: dict = {}
        self.statuses: dict = {}
        self.connect_calls = []
        self.list_page_calls = []
        self.status_calls = []
        self.restore_calls = []
        self.tier_calls = []
        self.connect_error: Exception | None = None
        self.list_error: Exception | None = None
        self.restore_error: Exception | None = None

    def connect(self, profile_name=None):
        self.connect_calls.append(profile_name)
        if self.connect_error:
            raise self.connect_error
        return list(self.buckets)

    def refresh_buckets(self):
        return list(self.buckets)

    def list_page(self, bucket_name, cursor=None, *, page_size=200):
        self.list_page_calls.append((bucket_name, cursor, page_size))
        if self.list_error:
            raise self.list_error
        entries, next_cursor = self.pages[cursor]
        return ListingPage(entries=[ObjectEntry(**vars(entry)) for entry in entries], next_cursor=next_cursor)

    def get_status(self, bucket_name, key):
        self.status_calls.append((bucket_name, key))
        return self.statuses.get(key)

    def request_restore(self, bucket_name, key, duration_days):
        self.restore_calls.append((bucket_name, key, duration_days))
        if self.restore_error:
            raise self.restore_error

    def set_tier(self, bucket_name, key, target_tier):
        self.tier_calls.append((bucket_name, key, target_tier))


class BrowserPresenterTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        tmp = Path(self._tmp.name)
        self.settings_storage = SettingsStorage(tmp / "settings.json")
        self.rule_storage = RuleStorage(tmp / "rules.json")
        self.controller = FakeController()
        self.ledger = RestoreLedger()
        self.presenter = self._presenter()

    def _presenter(self):
        return BrowserPresenter(
            controller=self.controller,
            settings_storage=self.settings_storage,
            ledger=self.ledger,
            rule_storage=self.rule_storage,
            spawn=lambda task: task(),
        )

    def test_opening_bucket_loads_first_page(self):
        self.controller.pages = {None: (_entries(0, 200), "c1"), "c1": (_entries(200, 200), None)}

        self.presenter.open_bucket("photos")
        self.presenter.drain()

        self.assertEqual(200, len(self.presenter.session.cache))
        self.assertEqual([("photos", None, 200)], self.controller.list_page_calls)
        self.assertEqual("photos", self.presenter.settings.last_bucket)
        self.assertEqual("photos", self.settings_storage.load().last_bucket)

    def test_moving_selection_near_the_end_loads_next_page(self):
        self.controller.pages = {None: (_entries(0, 200), "c1"), "c1": (_entries(200, 200), None)}
        self.presenter.open_bucket("photos")
        self.presenter.drain()

        self.presenter.select(180)
        self.presenter.drain()

        self.assertEqual(400, len(self.presenter.session.cache))
        self.assertEqual(("photos", "c1", 200), self.controller.list_page_calls[-1])
        self.assertTrue(self.presenter.session.cache.is_exhausted())

    def test_page_failure_is_reported(self):
        self.controller.list_error = TransientRemoteError(
            "Read timeout on endpoint URL", operation="ListObjectsV2"
        )

        self.presenter.open_bucket("photos")
        self.presenter.drain()

        session = self.presenter.session
        self.assertEqual("Failed to load more: request timed out; please retry", session.last_status)
        self.assertFalse(session.cache.is_fetching)
        self.assertEqual(1, len(self.controller.list_page_calls))

    def test_archival_statuses_are_fetched(self):
        self.controller.pages = {None: (_entries(0, 3, "GLACIER"), None)}
        self.controller.statuses = {
            "obj-0001": RemoteStatus(RemoteRestoreState.IN_PROGRESS),
            "obj-0002": RemoteStatus(RemoteRestoreState.AVAILABLE, expiry=FAR_FUTURE),
        }

        self.presenter.open_bucket("archive")
        self.presenter.drain()

        statuses = [entry.restore_status for entry in self.presenter.session.cache]
        self.assertEqual(
            [RestoreStatus.NEEDS_RESTORE, RestoreStatus.RESTORING, RestoreStatus.AVAILABLE], statuses
        )
        self.assertEqual(3, len(self.controller.status_calls))

    def test_restore_records_request_and_rechecks_status(self):
        self.controller.pages = {None: (_entries(0, 1, "GLACIER"), None)}
        self.presenter.open_bucket("archive")
        self.presenter.drain()
        self.controller.statuses = {"obj-0000": RemoteStatus(RemoteRestoreState.IN_PROGRESS)}

        keys = self.presenter.restore_targets(3)
        self.presenter.drain()

        self.assertEqual(["obj-0000"], keys)
        self.assertEqual([("archive", "obj-0000", 3)], self.controller.restore_calls)
        record = self.ledger.latest("archive", "obj-0000")
        self.assertEqual(3, record.duration_days)
        self.assertIs(RemoteRestoreState.IN_PROGRESS, record.last_known_status)
        self.assertIs(RestoreStatus.RESTORING, self.presenter.session.cache.entries[0].restore_status)
        self.assertEqual("restore: 1 succeeded", self.presenter.session.last_status)

    def test_restore_failure_is_reported_per_key(self):
        self.controller.pages = {None: (_entries(0, 1, "GLACIER"), None)}
        self.controller.restore_error = TransientRemoteError(
            "already in progress", operation="RestoreObject", key="obj-0000", code="InvalidObjectState"
        )
        self.presenter.open_bucket("archive")
        self.presenter.drain()

        self.presenter.restore_targets()
        self.presenter.drain()

        log = list(self.presenter.session.status_log)
        self.assertIn(
            "✗ Restore failed for obj-0000: InvalidObjectState: object is already being restored "
            "or not eligible for this operation",
            log,
        )
        self.assertEqual("restore: 0 succeeded, 1 failed", log[-1])

    def test_restore_without_bucket_is_reported(self):
        self.assertEqual([], self.presenter.restore_targets())
        self.assertEqual("Select a bucket before restoring", self.presenter.session.last_status)

    def test_transition_changes_tier_and_reloads(self):
        self.controller.pages = {None: (_entries(0, 2), None)}
        self.presenter.open_bucket("photos")
        self.presenter.drain()
        self.presenter.apply_rule(SelectionRule(pattern="obj-"))

        keys = self.presenter.transition_targets(StorageTier.DEEP_ARCHIVE)
        self.presenter.drain()

        self.assertEqual(["obj-0000", "obj-0001"], keys)
        self.assertEqual(
            [
                ("photos", "obj-0000", StorageTier.DEEP_ARCHIVE),
                ("photos", "obj-0001", StorageTier.DEEP_ARCHIVE),
            ],
            self.controller.tier_calls,
        )
        self.assertEqual(2, len(self.controller.list_page_calls))

    def test_connect_posts_buckets(self):
        self.presenter.connect("work")
        messages = self.presenter.drain()

        self.assertEqual(["work"], self.controller.connect_calls)
        self.assertEqual([BucketsLoaded(tuple(self.controller.buckets))], messages)

    def test_connect_failure_is_reported(self):
        self.controller.connect_error = TransientRemoteError(
            "denied", operation="ListBuckets", code="AccessDenied"
        )

        self.presenter.connect(None)
        (message,) = self.presenter.drain()

        self.assertIsInstance(message, OperationFailed)
        self.assertEqual(
            "Connect failed: AccessDenied: permission denied for this operation",
            self.presenter.session.last_status,
        )

    def test_drain_respects_limit(self):
        self.presenter.dispatch(OperationFailed("one", "x"))
        self.presenter.dispatch(OperationFailed("two", "y"))

        self.assertEqual(1, len(self.presenter.drain(limit=1)))
        self.assertEqual(1, len(self.presenter.drain()))
        self.assertEqual([], self.presenter.drain())

    def test_inspecting_non_archival_object(self):
        self.controller.pages = {None: (_entries(0, 1), None)}
        self.presenter.open_bucket("photos")
        self.presenter.drain()

        self.presenter.refresh_selected_status()

        self.assertEqual("obj-0000 is STANDARD; no restore needed", self.presenter.session.last_status)

    def test_saved_rules_persist(self):
        saved = self.presenter.save_rule(
            SelectionRule(pattern="logs/", name="logs"), target_tier=StorageTier.GLACIER, notes="yearly"
        )

        reloaded = self._presenter()
        self.assertEqual([saved.id], [rule.id for rule in reloaded.list_saved_rules()])

        reloaded.delete_saved_rule(saved.id)
        self.assertEqual([], reloaded.list_saved_rules())
        with self.assertRaises(ValueError):
            reloaded.delete_saved_rule(saved.id)

    def test_last_connection_is_remembered(self):
        self.presenter.update_last_connection("work")

        self.assertEqual("work", self.settings_storage.load().last_connection)


if __name__ == "__main__":
    unittest.main()
