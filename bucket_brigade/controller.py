from __future__ import annotations
"""Controller layer between the UI and :class:`S3Service`."""

from typing import Optional

from .models import BucketInfo, ListingPage, RemoteStatus, StorageTier
from .profiles import ConnectionProfile, ProfileStorage
from .services import PAGE_SIZE, S3Service


class NotConnectedError(RuntimeError):
    """Raised when an S3 operation is attempted before connecting."""


class BrowserController:
    """Holds the active connection and saved profiles."""

    def __init__(
        self,
        service: S3Service | None = None,
        storage: ProfileStorage | None = None,
    ):
        self._service = service or S3Service()
        self._storage = storage or ProfileStorage()
        self._client = None
        self._profiles: list[ConnectionProfile] = self._storage.load()
        self._selected_profile: str | None = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    @property
    def selected_profile(self) -> str | None:
        return self._selected_profile

    def list_profiles(self) -> list[ConnectionProfile]:
        return list(self._profiles)

    def save_profile(self, profile: ConnectionProfile, *, original_name: str | None = None) -> None:
        if original_name and original_name != profile.name:
            self._profiles = [p for p in self._profiles if p.name != original_name]
        for idx, existing in enumerate(self._profiles):
            if existing.name == profile.name:
                self._profiles[idx] = profile
                break
        else:
            self._profiles.append(profile)
        self._storage.save(self._profiles)

    def delete_profile(self, name: str) -> None:
        before = len(self._profiles)
        self._profiles = [p for p in self._profiles if p.name != name]
        if len(self._profiles) == before:
            raise ValueError(f"Profile '{name}' does not exist")
        if self._selected_profile == name:
            self._selected_profile = None
        self._storage.save(self._profiles)

    def get_profile(self, name: str) -> ConnectionProfile:
        for profile in self._profiles:
            if profile.name == name:
                return profile
        raise ValueError(f"Profile '{name}' does not exist")

    def connect(self, profile_name: str | None = None) -> list[BucketInfo]:
        """Connect with a saved profile, or the default credential chain when none is given."""

        params: dict[str, Optional[str]] = {}
        if profile_name:
            params = self.get_profile(profile_name).client_params()
        client = self._service.create_client(**params)
        buckets = self._service.list_buckets(client)
        self._client = client
        self._selected_profile = profile_name
        return buckets

    def refresh_buckets(self) -> list[BucketInfo]:
        return self._service.list_buckets(self._require_connection())

    def list_page(self, bucket_name: str, cursor: str | None = None, *, page_size: int = PAGE_SIZE) -> ListingPage:
        return self._service.list_page(self._require_connection(), bucket_name, cursor, page_size=page_size)

    def get_status(self, bucket_name: str, key: str) -> RemoteStatus | None:
        return self._service.get_status(self._require_connection(), bucket_name, key)

    def request_restore(self, bucket_name: str, key: str, duration_days: int) -> None:
        self._service.request_restore(self._require_connection(), bucket_name, key, duration_days)

    def set_tier(self, bucket_name: str, key: str, target_tier: StorageTier) -> None:
        self._service.set_tier(self._require_connection(), bucket_name, key, target_tier)

    def _require_connection(self):
        if self._client is None:
            raise NotConnectedError("Not connected to S3")
        return self._client
