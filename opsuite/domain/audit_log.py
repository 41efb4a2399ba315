"""Typed action audit trail and its JSON codec.

Each approval transition appends exactly one entry. Entries are stored as rows
in ``action_audit_events`` and exchanged with clients and notifications in the
wire form ``{"event", "at", "by", "note"?, "metadata"?}``, where event-specific
fields travel inside ``metadata`` under camelCase keys.
"""

from __future__ import annotations

from datetime import datetime
import json
from typing import Annotated, Any, ClassVar, Iterable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from opsuite.core.timeutils import as_utc, utc_now


AUDIT_EVENT_TYPES = (
    "requested",
    "approved",
    "rejected",
    "enqueued",
    "executing",
    "completed",
    "failed",
)


def to_json_value(value: Any) -> Any:
    # Coerce arbitrary metadata into plain JSON types so rows and wire payloads agree.
    return json.loads(json.dumps(value, default=str))


class _AuditEntryBase(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    _BASE_FIELDS: ClassVar[frozenset[str]] = frozenset({"event", "actor", "at", "note", "metadata"})

    actor: str
    at: datetime = Field(default_factory=utc_now)
    note: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("at")
    @classmethod
    def _normalize_at(cls, value: datetime) -> datetime:
        return as_utc(value) or utc_now()

    @field_validator("metadata", mode="before")
    @classmethod
    def _normalize_metadata(cls, value: Any) -> dict[str, Any]:
        if not isinstance(value, dict):
            return {}
        return {str(key): to_json_value(item) for key, item in value.items() if item is not None}

    @classmethod
    def metadata_keys(cls) -> dict[str, str]:
        # Wire key -> attribute name for fields packed into metadata.
        keys: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            if name in cls._BASE_FIELDS:
                continue
            keys[field.alias or name] = name
        return keys


class RequestedEntry(_AuditEntryBase):
    event: Literal["requested"] = "requested"
    risk_score: int | None = Field(default=None, alias="riskScore")


class ApprovedEntry(_AuditEntryBase):
    event: Literal["approved"] = "approved"


class RejectedEntry(_AuditEntryBase):
    event: Literal["rejected"] = "rejected"


class EnqueuedEntry(_AuditEntryBase):
    event: Literal["enqueued"] = "enqueued"
    job_id: str | None = Field(default=None, alias="jobId")
    task_id: str | None = Field(default=None, alias="taskId")


class ExecutingEntry(_AuditEntryBase):
    event: Literal["executing"] = "executing"
    job_id: str | None = Field(default=None, alias="jobId")
    module_slug: str | None = Field(default=None, alias="moduleSlug")
    capability: str | None = None


class CompletedEntry(_AuditEntryBase):
    event: Literal["completed"] = "completed"
    payload_hash: str | None = Field(default=None, alias="payloadHash")
    duration_ms: int = Field(default=0, alias="durationMs")
    job_id: str | None = Field(default=None, alias="jobId")
    module_slug: str | None = Field(default=None, alias="moduleSlug")
    capability: str | None = None
    undo_payload: dict[str, Any] | None = Field(default=None, alias="undoPayload")


class FailedEntry(_AuditEntryBase):
    event: Literal["failed"] = "failed"
    job_id: str | None = Field(default=None, alias="jobId")
    module_slug: str | None = Field(default=None, alias="moduleSlug")
    capability: str | None = None

    @property
    def reason(self) -> str | None:
        return self.note


AuditEntry = Annotated[
    Union[
        RequestedEntry,
        ApprovedEntry,
        RejectedEntry,
        EnqueuedEntry,
        ExecutingEntry,
        CompletedEntry,
        FailedEntry,
    ],
    Field(discriminator="event"),
]

_ENTRY_TYPES: dict[str, type[_AuditEntryBase]] = {
    "requested": RequestedEntry,
    "approved": ApprovedEntry,
    "rejected": RejectedEntry,
    "enqueued": EnqueuedEntry,
    "executing": ExecutingEntry,
    "completed": CompletedEntry,
    "failed": FailedEntry,
}
_ENTRY_ADAPTER: TypeAdapter[AuditEntry] = TypeAdapter(AuditEntry)
# Older approval workflows recorded submission under a different name.
_LEGACY_EVENT_NAMES = {"submitted": "requested"}


def encode_entry(entry: AuditEntry) -> dict[str, Any]:
    typed = entry.model_dump(
        mode="json",
        by_alias=True,
        exclude_none=True,
        exclude=set(_AuditEntryBase._BASE_FIELDS),
    )
    metadata = {**entry.metadata, **typed}
    encoded: dict[str, Any] = {
        "event": entry.event,
        "at": entry.at.isoformat(),
        "by": entry.actor,
    }
    if entry.note is not None:
        encoded["note"] = entry.note
    if metadata:
        encoded["metadata"] = metadata
    return encoded


def decode_entry(raw: Any) -> AuditEntry | None:
    # Malformed entries are dropped rather than failing the whole log.
    if not isinstance(raw, dict):
        return None
    event = raw.get("event")
    event = _LEGACY_EVENT_NAMES.get(event, event) if isinstance(event, str) else event
    at = raw.get("at")
    by = raw.get("by")
    if event not in _ENTRY_TYPES or not isinstance(at, str) or not isinstance(by, str):
        return None
    raw_metadata = raw.get("metadata")
    metadata = dict(raw_metadata) if isinstance(raw_metadata, dict) else {}
    note = raw.get("note") if isinstance(raw.get("note"), str) else None
    typed = {
        attr: metadata.pop(wire_key)
        for wire_key, attr in _ENTRY_TYPES[event].metadata_keys().items()
        if wire_key in metadata
    }
    try:
        return _ENTRY_ADAPTER.validate_python(
            {"event": event, "actor": by, "at": at, "note": note, "metadata": metadata, **typed}
        )
    except ValidationError:
        return None


def encode_audit_log(entries: Iterable[AuditEntry]) -> list[dict[str, Any]]:
    return [encode_entry(entry) for entry in entries]


def decode_audit_log(raw: Any) -> list[AuditEntry]:
    if not isinstance(raw, list):
        return []
    decoded = (decode_entry(item) for item in raw)
    return [entry for entry in decoded if entry is not None]


def find_completed_entry(entries: Iterable[AuditEntry], payload_hash: str) -> CompletedEntry | None:
    for entry in entries:
        if isinstance(entry, CompletedEntry) and entry.payload_hash == payload_hash:
            return entry
    return None
