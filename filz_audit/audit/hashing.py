"""Deterministic hashing for audit chain entries."""

import hashlib
import json
from datetime import UTC, datetime, timedelta
from typing import Any

from filz_audit.audit.models import (
    CANONICAL_DELIMITER,
    AuditAction,
    AuditLogEntry,
    ResourceType,
)

GENESIS_SEED = "GENESIS"

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def epoch_millis(timestamp: datetime) -> int:
    """Milliseconds since the Unix epoch. Naive datetimes are taken as UTC."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=UTC)
    return (timestamp - _EPOCH) // timedelta(milliseconds=1)


class ChainHasher:
    """Computes entry hashes over a canonical, pipe-delimited serialization.

    Canonical form (null fields render as empty strings)::

        <epoch millis>|<principal>|<action>|<resource type>|<resource id>|<metadata json>|<previous hash>

    Metadata is serialized as compact JSON with sorted keys so equal
    payloads always hash equally regardless of key order.
    """

    def __init__(self, algorithm: str = "sha256"):
        # shake_* digests need an explicit length, which the chain has no way to carry
        if algorithm not in hashlib.algorithms_available or algorithm.startswith("shake_"):
            raise ValueError(f"Hash algorithm not available: {algorithm}")
        self.algorithm = algorithm

    def _digest(self, text: str) -> str:
        return hashlib.new(self.algorithm, text.encode("utf-8")).hexdigest()

    def genesis_hash(self) -> str:
        """Public sentinel used as the genesis entry's previous hash."""
        return self._digest(GENESIS_SEED)

    def canonicalize(
        self,
        timestamp: datetime | None,
        user_principal: str | None,
        action: AuditAction | None,
        resource_type: ResourceType | None,
        resource_id: str | None,
        metadata: dict[str, Any] | None,
        previous_hash: str | None,
    ) -> str:
        parts = [
            str(epoch_millis(timestamp)) if timestamp is not None else "",
            user_principal or "",
            action.value if action is not None else "",
            resource_type.value if resource_type is not None else "",
            resource_id or "",
            _serialize_metadata(metadata),
            previous_hash or "",
        ]
        return CANONICAL_DELIMITER.join(parts)

    def compute_hash(
        self,
        timestamp: datetime | None,
        user_principal: str | None,
        action: AuditAction | None,
        resource_type: ResourceType | None,
        resource_id: str | None,
        metadata: dict[str, Any] | None,
        previous_hash: str | None,
    ) -> str:
        return self._digest(
            self.canonicalize(
                timestamp,
                user_principal,
                action,
                resource_type,
                resource_id,
                metadata,
                previous_hash,
            )
        )

    def hash_entry(self, entry: AuditLogEntry, previous_hash: str) -> str:
        """Recompute an entry's hash against the given linking hash."""
        return self.compute_hash(
            entry.timestamp,
            entry.user_principal,
            entry.action,
            entry.resource_type,
            entry.resource_id,
            entry.metadata,
            previous_hash,
        )


def _serialize_metadata(metadata: dict[str, Any] | None) -> str:
    if metadata is None:
        return ""
    return json.dumps(
        metadata, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False
    )
