from __future__ import annotations
"""Data models representing listed objects and restore tracking."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


class StorageTier(str, Enum):
    """Storage classes understood by the browser."""

    STANDARD = "STANDARD"
    INTELLIGENT_TIERING = "INTELLIGENT_TIERING"
    STANDARD_IA = "STANDARD_IA"
    ONEZONE_IA = "ONEZONE_IA"
    GLACIER_IR = "GLACIER_IR"
    GLACIER = "GLACIER"
    DEEP_ARCHIVE = "DEEP_ARCHIVE"
    REDUCED_REDUNDANCY = "REDUCED_REDUNDANCY"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_label(cls, label: str | None) -> "StorageTier":
        if not label:
            return cls.STANDARD
        try:
            return cls(label.strip().upper())
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_archival(self) -> bool:
        return self in ARCHIVAL_TIERS


ARCHIVAL_TIERS = frozenset({StorageTier.GLACIER, StorageTier.DEEP_ARCHIVE})

SELECTABLE_TIERS = (
    StorageTier.STANDARD,
    StorageTier.INTELLIGENT_TIERING,
    StorageTier.STANDARD_IA,
    StorageTier.ONEZONE_IA,
    StorageTier.GLACIER_IR,
    StorageTier.GLACIER,
    StorageTier.DEEP_ARCHIVE,
)


class RestoreStatus(str, Enum):
    """Derived restore status of an archival entry."""

    UNKNOWN = "Unknown"
    NEEDS_RESTORE = "NeedsRestore"
    RESTORING = "Restoring"
    AVAILABLE = "Available"
    EXPIRED = "Expired"


class RemoteRestoreState(str, Enum):
    """Restore sub-state as reported by object metadata."""

    IN_PROGRESS = "in_progress"
    AVAILABLE = "available"
    EXPIRED = "expired"


@dataclass(frozen=True)
class RemoteStatus:
    """Restore information parsed from a metadata fetch."""

    state: RemoteRestoreState
    expiry: Optional[datetime] = None


@dataclass
class BucketInfo:
    """A bucket as shown in the collection selector."""

    name: str
    region: Optional[str] = None
    creation_date: Optional[datetime] = None


@dataclass
class ObjectEntry:
    """One listed object.

    Everything except ``restore_status`` is fixed once the entry has been
    fetched; ``restore_status`` is only written by the status reconciler.
    """

    key: str
    size: int = 0
    storage_class: str = StorageTier.STANDARD.value
    last_modified: Optional[datetime] = None
    restore_status: Optional[RestoreStatus] = None

    @property
    def tier(self) -> StorageTier:
        return StorageTier.from_label(self.storage_class)

    @property
    def needs_status(self) -> bool:
        return self.tier.is_archival


@dataclass
class ListingPage:
    """One page returned by a listing call."""

    entries: list[ObjectEntry] = field(default_factory=list)
    next_cursor: Optional[str] = None


@dataclass
class RestoreRequestRecord:
    """A restore the operator asked for, kept as history."""

    bucket: str
    key: str
    requested_at: datetime
    duration_days: int
    last_known_status: Optional[RemoteRestoreState] = None
    # The remote rejected the request; the record is kept as history only.
    failed: bool = False

    @property
    def expires_at(self) -> datetime:
        return self.requested_at + timedelta(days=self.duration_days)

    def is_elapsed(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, object]:
        return {
            "bucket": self.bucket,
            "key": self.key,
            "requested_at": self.requested_at.isoformat(),
            "duration_days": self.duration_days,
            "last_known_status": self.last_known_status.value if self.last_known_status else None,
            "failed": self.failed,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RestoreRequestRecord":
        requested_at = datetime.fromisoformat(data["requested_at"])
        if requested_at.tzinfo is None:
            requested_at = requested_at.replace(tzinfo=timezone.utc)
        status = data.get("last_known_status")
        return cls(
            bucket=str(data["bucket"]),
            key=str(data["key"]),
            requested_at=requested_at,
            duration_days=int(data["duration_days"]),
            last_known_status=RemoteRestoreState(status) if status else None,
            failed=bool(data.get("failed", False)),
        )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
