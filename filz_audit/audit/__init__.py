"""Filz Audit Package.

Tamper-evident audit logging with hash chaining for the document
management backend.

Features:
- Append-only, write-once audit entries
- Cryptographic hash chaining from a CHAIN_GENESIS root
- Single-writer linearization of concurrent appends
- Runtime-replaceable action exclusions
- Chain integrity verification

Usage:
    from filz_audit.audit import AuditAction, AuditService, FileAuditStorage, ResourceType

    service = AuditService(FileAuditStorage("data/audit"))
    await service.start()

    # Record an action
    entry = await service.record(
        AuditAction.CREATE_FOLDER,
        resource_type=ResourceType.FOLDER,
        resource_id="folder-1",
        user_principal="user@example.com",
    )

    # Verify chain integrity
    result = await service.verify()
"""

from filz_audit.audit.chain import ChainAppender, GenesisInitializer
from filz_audit.audit.exceptions import (
    AppendInvariantViolation,
    AuditError,
    ImmutabilityViolation,
    StorageFailure,
)
from filz_audit.audit.exclusions import ExclusionPolicy
from filz_audit.audit.hashing import ChainHasher
from filz_audit.audit.models import (
    ActionDescriptor,
    AuditAction,
    AuditLogEntry,
    AuditSearchQuery,
    AuditVerificationResult,
    BrokenLink,
    ResourceType,
    SortOrder,
    VerificationStatus,
)
from filz_audit.audit.query import AuditQueryService
from filz_audit.audit.service import AuditService
from filz_audit.audit.storage import FileAuditStorage, PostgresAuditStorage
from filz_audit.audit.verifier import IntegrityVerifier, VerificationScheduler

__all__ = [
    "ActionDescriptor",
    "AppendInvariantViolation",
    "AuditAction",
    "AuditError",
    "AuditLogEntry",
    "AuditQueryService",
    "AuditSearchQuery",
    "AuditService",
    "AuditVerificationResult",
    "BrokenLink",
    "ChainAppender",
    "ChainHasher",
    "ExclusionPolicy",
    "FileAuditStorage",
    "GenesisInitializer",
    "ImmutabilityViolation",
    "IntegrityVerifier",
    "PostgresAuditStorage",
    "ResourceType",
    "SortOrder",
    "StorageFailure",
    "VerificationScheduler",
    "VerificationStatus",
]
