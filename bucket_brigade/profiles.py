from __future__ import annotations
"""Connection profiles and persistence."""
from dataclasses import dataclass
import json
import logging
from pathlib import Path

import keyring
from keyring.errors import KeyringError

LOGGER = logging.getLogger(__name__)

KEYRING_SERVICE = "bucket-brigade"


@dataclass
class ConnectionProfile:
    """A saved S3 connection.

    Empty credentials mean the default AWS credential chain is used.
    """

    name: str
    endpoint_url: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""

    @property
    def uses_default_credentials(self) -> bool:
        return not (self.access_key and self.secret_key)

    def client_params(self) -> dict[str, str | None]:
        return {
            "endpoint_url": self.endpoint_url or None,
            "region_name": self.region or None,
            "access_key": self.access_key or None,
            "secret_key": self.secret_key or None,
        }


class KeychainStore:
    """Secret keys live in the OS keychain, never in the profiles file."""

    def __init__(self, service_name: str = KEYRING_SERVICE):
        self._service_name = service_name

    def get_secret(self, profile_name: str) -> str:
        if not profile_name:
            return ""
        try:
            return keyring.get_password(self._service_name, profile_name) or ""
        except KeyringError:
            LOGGER.warning("Keychain lookup failed for profile '%s'", profile_name)
            return ""

    def set_secret(self, profile_name: str, secret_key: str) -> None:
        if not profile_name:
            return
        if not secret_key:
            self.delete_secret(profile_name)
            return
        try:
            keyring.set_password(self._service_name, profile_name, secret_key)
        except KeyringError:
            LOGGER.warning("Could not store secret for profile '%s' in keychain", profile_name)

    def delete_secret(self, profile_name: str) -> None:
        if not profile_name:
            return
        try:
            keyring.delete_password(self._service_name, profile_name)
        except KeyringError:
            return


class ProfileStorage:
    """JSON-backed store for connection profiles."""

    def __init__(self, storage_path: str | Path | None = None, keychain: KeychainStore | None = None):
        if storage_path is None:
            storage_path = Path.home() / ".bucket_brigade_connections.json"
        self._path = Path(storage_path)
        self._keychain = keychain or KeychainStore()

    def load(self) -> list[ConnectionProfile]:
        names_and_entries = self._read_entries()
        profiles: list[ConnectionProfile] = []
        for entry in names_and_entries:
            name = entry.get("name")
            if not isinstance(name, str) or not name:
                continue
            access_key = str(entry.get("access_key") or "")
            profiles.append(
                ConnectionProfile(
                    name=name,
                    endpoint_url=str(entry.get("endpoint_url") or ""),
                    region=str(entry.get("region") or ""),
                    access_key=access_key,
                    secret_key=self._keychain.get_secret(name) if access_key else "",
                )
            )
        return profiles

    def save(self, profiles: list[ConnectionProfile]) -> None:
        previous = {entry.get("name") for entry in self._read_entries()}
        data = []
        for profile in profiles:
            self._keychain.set_secret(profile.name, profile.secret_key)
            data.append(
                {
                    "name": profile.name,
                    "endpoint_url": profile.endpoint_url,
                    "region": profile.region,
                    "access_key": profile.access_key,
                }
            )
        for name in previous - {profile.name for profile in profiles}:
            if isinstance(name, str):
                self._keychain.delete_secret(name)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def _read_entries(self) -> list[dict]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            LOGGER.warning("Could not read connection profiles from %s", self._path)
            return []
        return [entry for entry in data if isinstance(entry, dict)] if isinstance(data, list) else []
