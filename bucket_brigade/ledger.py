from __future__ import annotations
"""History of restore requests issued by the operator."""
from datetime import datetime
import json
import logging
from pathlib import Path
from typing import Optional

from .models import RemoteRestoreState, RestoreRequestRecord, utcnow

LOGGER = logging.getLogger(__name__)


class LedgerStorage:
    """JSON file holding the ordered list of restore request records."""

    def __init__(self, storage_path: str | Path | None = None):
        if storage_path is None:
            storage_path = Path.home() / ".bucket_brigade_restores.json"
        self._path = Path(storage_path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> list[RestoreRequestRecord]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            LOGGER.warning("Could not read restore history from %s", self._path)
            return []
        records: list[RestoreRequestRecord] = []
        for entry in data if isinstance(data, list) else []:
            try:
                records.append(RestoreRequestRecord.from_dict(entry))
            except (KeyError, TypeError, ValueError):
                LOGGER.warning("Skipping malformed restore record: %r", entry)
                continue
        return records

    def save(self, records: list[RestoreRequestRecord]) -> None:
        payload = [record.to_dict() for record in records]
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError:
            LOGGER.exception("Failed to write restore history to %s", self._path)


class RestoreLedger:
    """In-memory restore history, written back on every change.

    Records are never removed. The most recent record for a bucket/key pair is
    the one that counts; re-requesting a key that still has an open record is
    allowed.
    """

    def __init__(self, storage: LedgerStorage | None = None, *, clock=utcnow):
        self._storage = storage
        self._clock = clock
        self._records: list[RestoreRequestRecord] = storage.load() if storage is not None else []
        self._latest: dict[tuple[str, str], RestoreRequestRecord] = {}
        for record in self._records:
            self._latest[(record.bucket, record.key)] = record

    def record_request(
        self, bucket: str, key: str, duration_days: int, *, requested_at: datetime | None = None
    ) -> RestoreRequestRecord:
        record = RestoreRequestRecord(
            bucket=bucket,
            key=key,
            requested_at=requested_at or self._clock(),
            duration_days=int(duration_days),
        )
        self._records.append(record)
        self._latest[(bucket, key)] = record
        self._persist()
        return record

    def reconcile(self, bucket: str, key: str, remote_status: RemoteRestoreState | None) -> bool:
        """Store the latest remote state on the newest record; returns whether anything changed."""

        record = self.latest(bucket, key)
        if record is None or record.last_known_status == remote_status:
            return False
        record.last_known_status = remote_status
        self._persist()
        return True

    def mark_failed(self, bucket: str, key: str) -> bool:
        """Flag the newest record as rejected by the remote; returns whether anything changed."""

        record = self.latest(bucket, key)
        if record is None or record.failed:
            return False
        record.failed = True
        self._persist()
        return True

    def latest(self, bucket: str, key: str) -> Optional[RestoreRequestRecord]:
        return self._latest.get((bucket, key))

    def has_open_request(self, bucket: str, key: str, *, now: datetime | None = None) -> bool:
        record = self.latest(bucket, key)
        return record is not None and not record.failed and not record.is_elapsed(now or self._clock())

    def active_records(self) -> list[RestoreRequestRecord]:
        return [
            record
            for record in self._latest.values()
            if not record.failed
            and record.last_known_status
            not in (RemoteRestoreState.AVAILABLE, RemoteRestoreState.EXPIRED)
        ]

    def all_records(self) -> list[RestoreRequestRecord]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def _persist(self) -> None:
        if self._storage is not None:
            self._storage.save(self._records)
