from __future__ import annotations
"""UI-agnostic helpers for formatting and error descriptions."""
from dataclasses import dataclass
from datetime import datetime
from importlib.metadata import PackageNotFoundError, metadata, version

from .models import RestoreRequestRecord, RestoreStatus

DIST_NAME = "bucket-brigade"

CREDENTIAL_ERROR_CODES = frozenset(
    {
        "InvalidAccessKeyId",
        "SignatureDoesNotMatch",
        "UnrecognizedClientException",
        "ExpiredToken",
        "InvalidToken",
    }
)

STATUS_LABELS = {
    RestoreStatus.UNKNOWN: "checking…",
    RestoreStatus.NEEDS_RESTORE: "archived",
    RestoreStatus.RESTORING: "restoring",
    RestoreStatus.AVAILABLE: "restored",
    RestoreStatus.EXPIRED: "expired",
}


@dataclass(frozen=True)
class PackageInfo:
    name: str
    version: str
    summary: str
    homepage: str | None


def load_package_info(dist_name: str = DIST_NAME) -> PackageInfo:
    try:
        distribution_metadata = metadata(dist_name)
        package_version = version(dist_name)
    except PackageNotFoundError:
        return PackageInfo(
            name="Bucket Brigade",
            version="",
            summary="Browse S3 buckets and manage Glacier restores from the terminal.",
            homepage=None,
        )
    homepage = distribution_metadata.get("Home-page")
    for entry in distribution_metadata.get_all("Project-URL") or []:
        label, _, link = entry.partition(",")
        if label.strip().lower() == "homepage" and not homepage:
            homepage = link.strip()
    return PackageInfo(
        name=distribution_metadata.get("Name") or dist_name,
        version=package_version,
        summary=distribution_metadata.get("Summary") or "",
        homepage=homepage or None,
    )


def format_size(size: int | None) -> str:
    if size is None:
        return "-"
    suffixes = ["B", "KB", "MB", "GB", "TB"]
    value = float(max(size, 0))
    for suffix in suffixes:
        if value < 1024 or suffix == suffixes[-1]:
            return f"{value:.1f} {suffix}" if suffix != "B" else f"{int(value)} {suffix}"
        value /= 1024
    return f"{size} B"


def format_last_modified(last_modified: object) -> str:
    if not last_modified:
        return "-"
    if isinstance(last_modified, datetime):
        return last_modified.strftime("%Y-%m-%d %H:%M:%S %Z").strip() or last_modified.isoformat()
    return str(last_modified)


def format_restore_status(status: RestoreStatus | None) -> str:
    if status is None:
        return ""
    return STATUS_LABELS.get(status, status.value)


def format_record(record: RestoreRequestRecord) -> str:
    if record.failed:
        state = "rejected"
    else:
        state = record.last_known_status.value if record.last_known_status else "pending"
    requested = record.requested_at.strftime("%Y-%m-%d %H:%M")
    return f"{record.bucket}/{record.key}  {requested}  {record.duration_days}d  {state}"


def is_credential_error(exc: Exception) -> bool:
    code = getattr(exc, "code", None)
    if code in CREDENTIAL_ERROR_CODES:
        return True
    text = str(exc)
    return "credentials" in text.lower() or any(name in text for name in CREDENTIAL_ERROR_CODES)


def describe_remote_error(exc: Exception) -> str:
    """Turn a failed remote call into a one-line explanation for the status bar."""

    code = getattr(exc, "code", None)
    message = str(exc)
    if code == "NoSuchKey":
        return "NoSuchKey: object was not found (mask may target stale keys or bucket differs)"
    if code == "InvalidObjectState":
        return "InvalidObjectState: object is already being restored or not eligible for this operation"
    if code in ("AccessDenied", "403"):
        return f"{code}: permission denied for this operation"
    if is_credential_error(exc):
        return f"credentials error: {message}"
    lowered = message.lower()
    if "timed out" in lowered or "timeout" in lowered:
        return "request timed out; please retry"
    if "could not connect" in lowered or "connection" in lowered:
        return f"network failure: {message}"
    if code:
        return f"{code}: {message}"
    return message
