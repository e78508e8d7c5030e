"""
Data models for arrvault.

These dataclasses describe the server-connection records that get backed up
and the transient structures built while exporting and importing them.

Secret fields (api keys, basic-auth passwords) are excluded from ``repr`` so
that records can be logged or shown in tracebacks without leaking them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ServiceType(str, Enum):
    """The kind of server a record connects to."""

    SONARR = "sonarr"
    RADARR = "radarr"


# Wire names of the per-service instance lists in the backup payload
PAYLOAD_LIST_KEYS: dict[ServiceType, str] = {
    ServiceType.SONARR: "sonarrInstances",
    ServiceType.RADARR: "radarrInstances",
}

PAYLOAD_ACTIVE_KEYS: dict[ServiceType, str] = {
    ServiceType.SONARR: "activeSonarrId",
    ServiceType.RADARR: "activeRadarrId",
}

_REQUIRED_RECORD_FIELDS = ("id", "name", "baseUrl", "apiKey")
_OPTIONAL_RECORD_FIELDS = ("basicAuthUsername", "basicAuthPassword")


@dataclass(frozen=True)
class InstanceRecord:
    """
    A single Sonarr or Radarr server connection.

    Attributes:
        id: Stable unique identifier.
        name: Display name.
        base_url: Server URL.
        api_key: API key (secret).
        service: Which service the record belongs to.
        basic_auth_username: Optional HTTP basic-auth user.
        basic_auth_password: Optional HTTP basic-auth password (secret).
    """

    id: str
    name: str
    base_url: str
    api_key: str = field(repr=False)
    service: ServiceType = ServiceType.SONARR
    basic_auth_username: str | None = None
    basic_auth_password: str | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire dictionary (service is implied by the list)."""
        return {
            "id": self.id,
            "name": self.name,
            "baseUrl": self.base_url,
            "apiKey": self.api_key,
            "basicAuthUsername": self.basic_auth_username,
            "basicAuthPassword": self.basic_auth_password,
        }

    @classmethod
    def from_dict(cls, data: Any, service: ServiceType) -> InstanceRecord:
        """
        Create a record from its wire dictionary.

        Raises:
            ValueError: If the data does not match the record schema.
        """
        if not isinstance(data, dict):
            raise ValueError("instance record must be an object")

        for key in _REQUIRED_RECORD_FIELDS:
            if not isinstance(data.get(key), str):
                raise ValueError(f"instance record field '{key}' must be a string")
        if not data["id"]:
            raise ValueError("instance record id must not be empty")

        for key in _OPTIONAL_RECORD_FIELDS:
            value = data.get(key)
            if value is not None and not isinstance(value, str):
                raise ValueError(f"instance record field '{key}' must be a string or null")

        return cls(
            id=data["id"],
            name=data["name"],
            base_url=data["baseUrl"],
            api_key=data["apiKey"],
            service=service,
            basic_auth_username=data.get("basicAuthUsername"),
            basic_auth_password=data.get("basicAuthPassword"),
        )


@dataclass(frozen=True)
class ActiveIds:
    """The active instance id per service, if any."""

    sonarr: str | None = None
    radarr: str | None = None

    def get(self, service: ServiceType) -> str | None:
        """Return the active id for a service."""
        if service is ServiceType.SONARR:
            return self.sonarr
        return self.radarr


@dataclass(frozen=True)
class BackupPayload:
    """
    Plaintext contents of a backup.

    Only ever exists in memory for the duration of an export or import.
    """

    records: tuple[InstanceRecord, ...]
    active_ids: ActiveIds = field(default_factory=ActiveIds)

    def records_for(self, service: ServiceType) -> list[InstanceRecord]:
        """Return the records of one service, in payload order."""
        return [record for record in self.records if record.service is service]

    def validate(self) -> None:
        """
        Check that from_json_bytes would accept this payload.

        Raises:
            ValueError: If a record or active id does not match the schema.
        """
        for record in self.records:
            if not isinstance(record.service, ServiceType):
                raise ValueError("instance record service must be a ServiceType")
            InstanceRecord.from_dict(record.to_dict(), record.service)

        for service, active_key in PAYLOAD_ACTIVE_KEYS.items():
            value = self.active_ids.get(service)
            if value is not None and not isinstance(value, str):
                raise ValueError(f"'{active_key}' must be a string or null")

    def to_json_bytes(self) -> bytes:
        """Serialize to canonical JSON (sorted keys, compact separators)."""
        data: dict[str, Any] = {}
        for service, list_key in PAYLOAD_LIST_KEYS.items():
            data[list_key] = [record.to_dict() for record in self.records_for(service)]
        for service, active_key in PAYLOAD_ACTIVE_KEYS.items():
            data[active_key] = self.active_ids.get(service)

        return json.dumps(
            data, sort_keys=True, separators=(",", ":"), ensure_ascii=False
        ).encode("utf-8")

    @classmethod
    def from_json_bytes(cls, raw: bytes) -> BackupPayload:
        """
        Parse and validate a decrypted payload.

        A null instance list reads as an empty one.

        Raises:
            ValueError: If the bytes are not UTF-8 JSON matching the payload
                schema. The message never includes field values.
        """
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError("payload is not valid UTF-8 JSON") from e

        if not isinstance(data, dict):
            raise ValueError("payload must be an object")

        if not any(key in data for key in PAYLOAD_LIST_KEYS.values()):
            raise ValueError("payload contains no instance lists")

        records: list[InstanceRecord] = []
        for service, list_key in PAYLOAD_LIST_KEYS.items():
            items = data.get(list_key)
            if items is None:
                continue
            if not isinstance(items, list):
                raise ValueError(f"'{list_key}' must be a list")
            records.extend(InstanceRecord.from_dict(item, service) for item in items)

        active: dict[str, str | None] = {}
        for service, active_key in PAYLOAD_ACTIVE_KEYS.items():
            value = data.get(active_key)
            if value is not None and not isinstance(value, str):
                raise ValueError(f"'{active_key}' must be a string or null")
            active[service.value] = value

        return cls(
            records=tuple(records),
            active_ids=ActiveIds(**active),
        )


@dataclass(frozen=True)
class ImportDiff:
    """
    Structural difference between a backup and the existing records.

    Produced by an import and applied by the caller; never retained.
    """

    to_create: tuple[InstanceRecord, ...] = ()
    to_overwrite: tuple[InstanceRecord, ...] = ()
    preserved_active_ids: ActiveIds = field(default_factory=ActiveIds)

    @property
    def total(self) -> int:
        """Number of records the diff touches."""
        return len(self.to_create) + len(self.to_overwrite)
