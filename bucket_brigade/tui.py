from __future__ import annotations
"""Textual terminal front end for the browser."""
import logging
from time import monotonic
from typing import Optional

from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import DataTable, Footer, Header, Input, Label, OptionList, Static

from .masks import MatchMode, SelectionRule
from .models import SELECTABLE_TIERS, BucketInfo, ObjectEntry, StorageTier
from .presenter import BrowserPresenter
from .session import BucketsLoaded
from .ui_utils import (
    format_last_modified,
    format_record,
    format_restore_status,
    format_size,
)

LOGGER = logging.getLogger(__name__)

ALL_REGIONS = "All Regions"
BUCKET_DEBOUNCE_SECONDS = 1.0
PUMP_INTERVAL = 0.1
TICK_INTERVAL = 5.0
DRAIN_LIMIT = 500


class MaskEditorScreen(ModalScreen[Optional[SelectionRule]]):
    """Edit the pattern, mode, case sensitivity and tier filter of a rule."""

    BINDINGS = [
        Binding("escape", "cancel", "Cancel"),
        Binding("f2", "cycle_mode", "Mode"),
        Binding("f3", "toggle_case", "Case"),
        Binding("f4", "cycle_tier", "Tier filter"),
    ]

    def __init__(self, rule: SelectionRule | None = None) -> None:
        super().__init__()
        self._mode = rule.mode if rule else MatchMode.PREFIX
        self._case_sensitive = rule.case_sensitive if rule else False
        self._tier: StorageTier | None = rule.storage_tier if rule else None
        self._pattern = rule.pattern if rule else ""

    def compose(self) -> ComposeResult:
        with Vertical(id="dialog"):
            yield Label("Mask pattern (Enter to apply, Esc to cancel)")
            yield Input(value=self._pattern, id="pattern")
            yield Label(self._describe(), id="options")
            yield Label("F2 mode · F3 case · F4 storage class filter", classes="hint")

    def _describe(self) -> str:
        case = "case sensitive" if self._case_sensitive else "case insensitive"
        tier = self._tier.value if self._tier else "any storage class"
        return f"Mode: {self._mode.value} · {case} · {tier}"

    def _refresh_options(self) -> None:
        self.query_one("#options", Label).update(self._describe())

    def action_cycle_mode(self) -> None:
        self._mode = self._mode.next()
        self._refresh_options()

    def action_toggle_case(self) -> None:
        self._case_sensitive = not self._case_sensitive
        self._refresh_options()

    def action_cycle_tier(self) -> None:
        choices: list[StorageTier | None] = [None, *SELECTABLE_TIERS]
        self._tier = choices[(choices.index(self._tier) + 1) % len(choices)]
        self._refresh_options()

    def action_cancel(self) -> None:
        self.dismiss(None)

    def on_input_submitted(self, event: Input.Submitted) -> None:
        pattern = event.value
        if not pattern:
            self.dismiss(None)
            return
        self.dismiss(
            SelectionRule(
                pattern=pattern,
                mode=self._mode,
                case_sensitive=self._case_sensitive,
                name=pattern,
                storage_tier=self._tier,
            )
        )


class TierPickerScreen(ModalScreen[Optional[StorageTier]]):
    BINDINGS = [Binding("escape", "cancel", "Cancel")]

    def compose(self) -> ComposeResult:
        with Vertical(id="dialog"):
            yield Label("Transition targets to storage class")
            yield OptionList(*(tier.value for tier in SELECTABLE_TIERS), id="tiers")

    def action_cancel(self) -> None:
        self.dismiss(None)

    def on_option_list_option_selected(self, event: OptionList.OptionSelected) -> None:
        self.dismiss(SELECTABLE_TIERS[event.option_index])


class ConfirmScreen(ModalScreen[bool]):
    BINDINGS = [
        Binding("y,enter", "confirm", "Yes"),
        Binding("n,escape", "cancel", "No"),
    ]

    def __init__(self, message: str) -> None:
        super().__init__()
        self._message = message

    def compose(self) -> ComposeResult:
        with Vertical(id="dialog"):
            yield Static(self._message, markup=False)
            yield Label("y: confirm  n: cancel", classes="hint")

    def action_confirm(self) -> None:
        self.dismiss(True)

    def action_cancel(self) -> None:
        self.dismiss(False)


class LogScreen(ModalScreen[None]):
    BINDINGS = [Binding("escape,l,q", "close", "Close")]

    def __init__(self, lines: list[str]) -> None:
        super().__init__()
        self._lines = lines

    def compose(self) -> ComposeResult:
        with Vertical(id="dialog"):
            yield Label("Activity log and restore requests")
            yield Static("\n".join(self._lines) or "Nothing yet.", markup=False)

    def action_close(self) -> None:
        self.dismiss(None)


class BucketBrigadeApp(App):
    """Two-pane browser: buckets on the left, objects of the active bucket on the right."""

    TITLE = "Bucket Brigade"
    CSS = """
    #buckets { width: 32; }
    #status { height: 1; background: $boost; }
    #dialog {
        width: 72;
        height: auto;
        padding: 1 2;
        border: thick $accent;
        background: $surface;
    }
    MaskEditorScreen, TierPickerScreen, ConfirmScreen, LogScreen { align: center middle; }
    .hint { color: $text-muted; }
    """
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("m", "edit_mask", "Mask"),
        Binding("f", "clear_mask", "Clear mask"),
        Binding("r", "restore", "Restore"),
        Binding("s", "transition", "Storage class"),
        Binding("i", "inspect", "Refresh status"),
        Binding("l", "show_log", "Log"),
        Binding("left_square_bracket", "cycle_region(-1)", "Prev region", show=False),
        Binding("right_square_bracket", "cycle_region(1)", "Next region", show=False),
    ]

    def __init__(self, presenter: BrowserPresenter, buckets: list[BucketInfo] | None = None) -> None:
        super().__init__()
        self._presenter = presenter
        self._all_buckets: list[BucketInfo] = list(buckets or [])
        self._region: str | None = None
        self._pending_bucket: str | None = None
        self._bucket_changed_at = 0.0
        self._rendered_version = -1
        self._rendered_count = 0
        self._rendered: dict[str, ObjectEntry] = {}

    def compose(self) -> ComposeResult:
        yield Header()
        with Horizontal():
            yield DataTable(id="buckets", cursor_type="row")
            yield DataTable(id="objects", cursor_type="row")
        yield Static("", id="status", markup=False)
        yield Footer()

    def on_mount(self) -> None:
        buckets = self.query_one("#buckets", DataTable)
        buckets.add_columns("Bucket", "Region")
        objects = self.query_one("#objects", DataTable)
        objects.add_column("Key", key="key")
        objects.add_column("Size", key="size")
        objects.add_column("Class", key="class")
        objects.add_column("Modified", key="modified")
        objects.add_column("Restore", key="status")
        if self._all_buckets:
            self._render_buckets()
        else:
            self._presenter.refresh_buckets()
        self.set_interval(PUMP_INTERVAL, self._pump)
        self.set_interval(TICK_INTERVAL, self._presenter.tick)

    # Loop

    def _pump(self) -> None:
        if self._pending_bucket and monotonic() - self._bucket_changed_at >= BUCKET_DEBOUNCE_SECONDS:
            bucket, self._pending_bucket = self._pending_bucket, None
            if bucket != self._presenter.session.bucket:
                self._presenter.open_bucket(bucket)
        for message in self._presenter.drain(DRAIN_LIMIT):
            if isinstance(message, BucketsLoaded):
                self._all_buckets = list(message.buckets)
                self._render_buckets()
        self._render_objects()
        self._report_viewport()
        self._render_status()

    def _report_viewport(self) -> None:
        table = self.query_one("#objects", DataTable)
        first = int(table.scroll_y)
        # One row per entry, minus the header line.
        last = first + max(table.size.height - 2, 0)
        if (first, last) != self._presenter.session.viewport:
            self._presenter.scroll(first, last)

    def _render_buckets(self) -> None:
        table = self.query_one("#buckets", DataTable)
        table.clear()
        for bucket in self._all_buckets:
            if self._region and bucket.region != self._region:
                continue
            table.add_row(bucket.name, bucket.region or "-", key=bucket.name)
        last_bucket = self._presenter.settings.last_bucket
        if last_bucket and not self._presenter.session.bucket:
            self._pending_bucket = last_bucket
            self._bucket_changed_at = 0.0

    def _render_objects(self) -> None:
        session = self._presenter.session
        table = self.query_one("#objects", DataTable)
        if session.view_version != self._rendered_version:
            table.clear()
            self._rendered_version = session.view_version
            self._rendered_count = 0
            self._rendered = {}
        shown = session.shown
        for entry in shown[self._rendered_count :]:
            table.add_row(
                Text(entry.key),
                format_size(entry.size),
                entry.storage_class,
                format_last_modified(entry.last_modified),
                format_restore_status(session.status_of(entry)),
                key=entry.key,
            )
            self._rendered[entry.key] = entry
        self._rendered_count = len(shown)
        for key in session.take_status_changes():
            entry = self._rendered.get(key)
            if entry is not None:
                table.update_cell(key, "status", format_restore_status(entry.restore_status))

    def _render_status(self) -> None:
        session = self._presenter.session
        parts = []
        if session.bucket:
            loaded = len(session.cache)
            more = "" if session.cache.is_exhausted() else "+"
            parts.append(f"{session.bucket}: {loaded}{more} loaded")
        if session.rule is not None:
            parts.append(f"{session.rule.summary()} → {session.match_count}")
        parts.append(f"region: {self._region or ALL_REGIONS}")
        if session.last_status:
            parts.append(session.last_status)
        self.query_one("#status", Static).update(" | ".join(parts))

    # Events

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        if event.data_table.id == "buckets":
            if event.row_key is None or event.row_key.value is None:
                return
            self._pending_bucket = event.row_key.value
            self._bucket_changed_at = monotonic()
        elif event.data_table.id == "objects":
            self._presenter.select(event.cursor_row)

    # Actions

    def action_edit_mask(self) -> None:
        def apply(rule: SelectionRule | None) -> None:
            if rule is not None:
                self._presenter.apply_rule(rule)

        self.push_screen(MaskEditorScreen(self._presenter.session.rule), apply)

    def action_clear_mask(self) -> None:
        if self._presenter.session.rule is not None:
            self._presenter.apply_rule(None)

    def action_restore(self) -> None:
        session = self._presenter.session
        if session.bucket is None or not session.targets():
            session.push_status("Select objects to restore first")
            return
        plan = session.restore_plan()
        if not plan.to_restore:
            if plan.already_restoring:
                session.push_status(f"{plan.already_restoring} objects are already being restored")
            else:
                session.push_status("No objects need restore (not Glacier or already restored)")
            return
        days = self._presenter.settings.restore_days
        reissued = sum(
            1 for entry in plan.to_restore if self._presenter.ledger.has_open_request(session.bucket, entry.key)
        )
        message = f"Request a {days}-day restore for {len(plan.to_restore)} objects?"
        if plan.already_restoring:
            message += f"\n{plan.already_restoring} already restoring will be skipped."
        if reissued:
            message += f"\nWarning: {reissued} of them already have an open restore request."

        def confirm(accepted: bool | None) -> None:
            if accepted:
                self._presenter.restore_targets(days)

        self.push_screen(ConfirmScreen(message), confirm)

    def action_transition(self) -> None:
        session = self._presenter.session
        if session.bucket is None or not session.targets():
            session.push_status("Select at least one object (mask or row)")
            return

        def picked(tier: StorageTier | None) -> None:
            if tier is None:
                return
            count = len(session.targets())

            def confirm(accepted: bool | None) -> None:
                if accepted:
                    self._presenter.transition_targets(tier)

            self.push_screen(ConfirmScreen(f"Transition {count} objects to {tier.value}?"), confirm)

        self.push_screen(TierPickerScreen(), picked)

    def action_inspect(self) -> None:
        self._presenter.refresh_selected_status()

    def action_show_log(self) -> None:
        lines = list(self._presenter.session.status_log)
        records = self._presenter.ledger.active_records()
        if records:
            lines.append("")
            lines.append("Open restore requests:")
            lines.extend(format_record(record) for record in records)
        self.push_screen(LogScreen(lines))

    def action_cycle_region(self, delta: int) -> None:
        regions = [ALL_REGIONS, *sorted({b.region for b in self._all_buckets if b.region})]
        current = regions.index(self._region) if self._region in regions else 0
        chosen = regions[(current + delta) % len(regions)]
        self._region = None if chosen == ALL_REGIONS else chosen
        self._render_buckets()
        self._presenter.session.push_status(f"Region filter: {chosen}")
