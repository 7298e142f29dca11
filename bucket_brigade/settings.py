from __future__ import annotations
"""Application settings persistence helpers."""

from dataclasses import asdict, dataclass
import json
import logging
from pathlib import Path

LOGGER = logging.getLogger(__name__)


@dataclass
class AppSettings:
    """Tunables for listing, prefetching and status reconciliation."""

    page_size: int = 200
    match_floor: int = 100
    lookahead: int = 50
    status_concurrency: int = 10
    status_freshness_seconds: int = 300
    restore_days: int = 7
    fetch_timeout_seconds: int = 30
    last_bucket: str = ""
    last_connection: str = ""


_INT_FIELDS = (
    "page_size",
    "match_floor",
    "lookahead",
    "status_concurrency",
    "status_freshness_seconds",
    "restore_days",
    "fetch_timeout_seconds",
)
_STR_FIELDS = ("last_bucket", "last_connection")
_MAX_PAGE_SIZE = 1000


class SettingsStorage:
    """JSON-backed persistence for :class:`AppSettings`."""

    def __init__(self, storage_path: str | Path | None = None):
        if storage_path is None:
            storage_path = Path.home() / ".bucket_brigade_settings.json"
        self._path = Path(storage_path)

    def load(self) -> AppSettings:
        if not self._path.exists():
            return AppSettings()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            LOGGER.warning("Ignoring unreadable settings file %s", self._path)
            return AppSettings()
        if not isinstance(data, dict):
            return AppSettings()

        values: dict[str, object] = {}
        for name in _INT_FIELDS:
            default = getattr(AppSettings, name)
            try:
                value = int(data.get(name, default))
            except (TypeError, ValueError):
                value = default
            values[name] = value if value > 0 else default
        values["page_size"] = min(values["page_size"], _MAX_PAGE_SIZE)
        for name in _STR_FIELDS:
            value = data.get(name, "")
            values[name] = value if isinstance(value, str) else ""
        return AppSettings(**values)

    def save(self, settings: AppSettings) -> None:
        payload = asdict(settings)
        for name in _INT_FIELDS:
            payload[name] = max(int(payload[name]), 1)
        payload["page_size"] = min(payload["page_size"], _MAX_PAGE_SIZE)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError:
            # Persist best-effort; ignore filesystem issues.
            LOGGER.warning("Could not write settings to %s", self._path)
