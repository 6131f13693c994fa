"""Audit data models.

Immutable audit entries with hash chaining for tamper-evident logging.
"""

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

SYSTEM_PRINCIPAL = "SYSTEM"
CANONICAL_DELIMITER = "|"


def utc_now_ms() -> datetime:
    """Current UTC time truncated to whole milliseconds.

    The hash input only carries epoch milliseconds, so entries never hold
    finer precision than what can be recomputed.
    """
    now = datetime.now(UTC)
    return now.replace(microsecond=now.microsecond - now.microsecond % 1000)


class AuditAction(str, Enum):
    """Kinds of auditable actions."""

    COPY_FILE = "COPY_FILE"
    COPY_FILE_CHILD = "COPY_FILE_CHILD"
    RENAME_FILE = "RENAME_FILE"
    RENAME_FOLDER = "RENAME_FOLDER"
    COPY_FOLDER = "COPY_FOLDER"
    DELETE_FILE = "DELETE_FILE"
    DELETE_FILE_CHILD = "DELETE_FILE_CHILD"
    DELETE_FOLDER = "DELETE_FOLDER"
    CREATE_FOLDER = "CREATE_FOLDER"
    MOVE_FILE = "MOVE_FILE"
    MOVE_FOLDER = "MOVE_FOLDER"
    UPLOAD_DOCUMENT = "UPLOAD_DOCUMENT"
    REPLACE_DOCUMENT_CONTENT = "REPLACE_DOCUMENT_CONTENT"
    REPLACE_DOCUMENT_METADATA = "REPLACE_DOCUMENT_METADATA"
    UPDATE_DOCUMENT_METADATA = "UPDATE_DOCUMENT_METADATA"
    DOWNLOAD_DOCUMENT = "DOWNLOAD_DOCUMENT"
    DELETE_DOCUMENT_METADATA = "DELETE_DOCUMENT_METADATA"
    SHARE_DOCUMENTS = "SHARE_DOCUMENTS"
    SHARE_DOCUMENT_CREATE = "SHARE_DOCUMENT_CREATE"
    SHARE_DOCUMENT_UPDATE = "SHARE_DOCUMENT_UPDATE"
    SHARE_DOCUMENT_DELETE = "SHARE_DOCUMENT_DELETE"

    # Recycle bin
    RESTORE_FILE = "RESTORE_FILE"
    RESTORE_FOLDER = "RESTORE_FOLDER"
    PERMANENT_DELETE_FILE = "PERMANENT_DELETE_FILE"
    PERMANENT_DELETE_FOLDER = "PERMANENT_DELETE_FOLDER"
    EMPTY_RECYCLE_BIN = "EMPTY_RECYCLE_BIN"

    # Comments
    COMMENT_CREATE = "COMMENT_CREATE"
    COMMENT_UPDATE = "COMMENT_UPDATE"
    COMMENT_DELETE = "COMMENT_DELETE"

    # Chain root, written once at startup
    CHAIN_GENESIS = "CHAIN_GENESIS"


class ResourceType(str, Enum):
    """Types of resources an action can target."""

    FILE = "FILE"
    FOLDER = "FOLDER"


class SortOrder(str, Enum):
    """Ordering of an audit trail."""

    ASC = "ASC"
    DESC = "DESC"


class VerificationStatus(str, Enum):
    """Outcome of a chain verification run."""

    VALID = "VALID"
    BROKEN = "BROKEN"
    EMPTY = "EMPTY"


class ActionDescriptor(BaseModel):
    """What a collaborator hands to the chain when it records an action."""

    action: AuditAction
    resource_type: ResourceType | None = None
    resource_id: str | None = None
    user_principal: str = SYSTEM_PRINCIPAL
    metadata: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=utc_now_ms)

    @field_validator("metadata")
    @classmethod
    def _normalize_metadata(cls, value: dict[str, Any] | None) -> dict[str, Any] | None:
        # Round-trip through JSON so the in-memory value hashes exactly like
        # the one read back from storage.
        if value is None:
            return None
        try:
            return json.loads(json.dumps(value, ensure_ascii=False, allow_nan=False))
        except (TypeError, ValueError) as e:
            raise ValueError(f"metadata must be JSON-serializable: {e}") from e

    @field_validator("resource_id", "user_principal")
    @classmethod
    def _reject_delimiter(cls, value: str | None) -> str | None:
        # Free-text fields of the canonical form never contain its delimiter
        if value is not None and CANONICAL_DELIMITER in value:
            raise ValueError(f"must not contain {CANONICAL_DELIMITER!r}")
        return value

    @field_validator("timestamp")
    @classmethod
    def _truncate_timestamp(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.replace(microsecond=value.microsecond - value.microsecond % 1000)


class AuditLogEntry(BaseModel):
    """Tamper-evident audit entry.

    Chain integrity:
    - `hash` is computed from the entry's fields + `previous_hash`
    - `previous_hash` is the `hash` of the entry written just before it
    - The genesis entry links to a fixed public sentinel
    - Entries are frozen; persisted copies are write-once
    """

    model_config = ConfigDict(frozen=True)

    sequence_id: int = Field(ge=1, description="Append position, starting at 1")
    timestamp: datetime = Field(description="When the action happened")
    user_principal: str = Field(description="Who performed the action")
    action: AuditAction = Field(description="Kind of action")
    resource_type: ResourceType | None = Field(
        default=None,
        description="Type of the affected resource"
    )
    resource_id: str | None = Field(
        default=None,
        description="ID of the affected resource"
    )
    metadata: dict[str, Any] | None = Field(
        default=None,
        description="Free-form payload folded into the hash"
    )
    previous_hash: str = Field(description="Hash of the previous written entry")
    hash: str = Field(description="Hash of this entry")

    @property
    def is_genesis(self) -> bool:
        return self.action == AuditAction.CHAIN_GENESIS


class BrokenLink(BaseModel):
    """First inconsistency found while replaying the chain."""

    entry_id: int
    expected_hash: str
    actual_hash: str


class AuditVerificationResult(BaseModel):
    """Result of a full chain verification."""

    status: VerificationStatus
    total_entries: int
    verified_entries: int
    verified_at: datetime
    broken_link: BrokenLink | None = None

    @property
    def is_valid(self) -> bool:
        return self.status != VerificationStatus.BROKEN


class AuditSearchQuery(BaseModel):
    """Filters for audit log search. All given filters must match."""

    resource_id: str | None = None
    resource_type: ResourceType | None = None
    action: AuditAction | None = None
    user_principal: str | None = None
    metadata: dict[str, Any] | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)

    @field_validator("start_time", "end_time")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value
