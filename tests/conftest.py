"""Shared fixtures for audit chain tests."""

import json
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from filz_audit.audit.hashing import ChainHasher
from filz_audit.audit.models import AuditAction, AuditLogEntry, ResourceType
from filz_audit.audit.service import AuditService
from filz_audit.audit.storage import FileAuditStorage

BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def make_entry(
    hasher: ChainHasher,
    sequence_id: int,
    previous_hash: str,
    action: AuditAction = AuditAction.CREATE_FOLDER,
    resource_type: ResourceType | None = ResourceType.FOLDER,
    resource_id: str | None = "folder-1",
    user_principal: str = "alice@example.com",
    metadata: dict | None = None,
) -> AuditLogEntry:
    """Build a correctly hashed entry without going through the writer."""
    timestamp = BASE_TIME + timedelta(seconds=sequence_id)
    if action == AuditAction.CHAIN_GENESIS:
        resource_type = None
        resource_id = None
    return AuditLogEntry(
        sequence_id=sequence_id,
        timestamp=timestamp,
        user_principal=user_principal,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        metadata=metadata,
        previous_hash=previous_hash,
        hash=hasher.compute_hash(
            timestamp,
            user_principal,
            action,
            resource_type,
            resource_id,
            metadata,
            previous_hash,
        ),
    )


@pytest.fixture
def hasher():
    return ChainHasher()


@pytest.fixture
def entry_factory(hasher):
    """make_entry bound to the default hasher."""

    def _make(sequence_id: int, previous_hash: str, **fields) -> AuditLogEntry:
        return make_entry(hasher, sequence_id, previous_hash, **fields)

    return _make


@pytest.fixture
def storage(tmp_path):
    """File storage in a fresh temporary directory."""
    return FileAuditStorage(tmp_path)


@pytest_asyncio.fixture
async def service(storage):
    """Started audit service; the chain already holds its genesis entry."""
    service = AuditService(storage)
    await service.start()
    yield service
    await service.stop()


def _rewrite(file_path, transform):
    lines = file_path.read_text(encoding="utf-8").splitlines()
    rewritten = []
    for line in lines:
        record = transform(json.loads(line))
        if record is not None:
            rewritten.append(json.dumps(record, ensure_ascii=False))
    file_path.write_text("\n".join(rewritten) + "\n", encoding="utf-8")


@pytest.fixture
def tamper(storage):
    """Overwrite fields of a stored entry directly on disk."""

    def _tamper(sequence_id: int, **changes):
        def transform(record):
            if record["sequence_id"] == sequence_id:
                record.update(changes)
            return record

        _rewrite(storage.file_path, transform)

    return _tamper


@pytest.fixture
def drop_entry(storage):
    """Remove a stored entry directly on disk."""

    def _drop(sequence_id: int):
        _rewrite(
            storage.file_path,
            lambda record: None if record["sequence_id"] == sequence_id else record,
        )

    return _drop
