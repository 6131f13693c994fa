"""Audit service: the entry point business operations call into."""

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from filz_audit.audit.chain import ChainAppender, GenesisInitializer
from filz_audit.audit.exceptions import StorageFailure
from filz_audit.audit.exclusions import ExclusionPolicy
from filz_audit.audit.hashing import ChainHasher
from filz_audit.audit.models import (
    SYSTEM_PRINCIPAL,
    ActionDescriptor,
    AuditAction,
    AuditLogEntry,
    AuditSearchQuery,
    AuditVerificationResult,
    ResourceType,
    SortOrder,
)
from filz_audit.audit.query import AuditQueryService
from filz_audit.audit.storage import AuditStorage
from filz_audit.audit.verifier import IntegrityVerifier, VerificationScheduler

logger = logging.getLogger(__name__)


class AuditService:
    """Wires storage, hashing, exclusions, the writer and the read side.

    Usage:
        service = AuditService(FileAuditStorage("data/audit"))
        await service.start()  # writes CHAIN_GENESIS on an empty log

        entry = await service.record(
            AuditAction.UPLOAD_DOCUMENT,
            resource_type=ResourceType.FILE,
            resource_id="doc-42",
            user_principal="alice@example.com",
            metadata={"filename": "report.pdf"},
        )

        result = await service.verify()
        await service.stop()
    """

    def __init__(
        self,
        storage: AuditStorage,
        hash_algorithm: str = "sha256",
        excluded_actions: Iterable[AuditAction] = (),
        fail_open: bool = False,
        verification_interval_seconds: float | None = None,
    ):
        self.storage = storage
        self.hasher = ChainHasher(hash_algorithm)
        self.exclusions = ExclusionPolicy(excluded_actions)
        self.appender = ChainAppender(storage, self.hasher, self.exclusions)
        self.genesis = GenesisInitializer(storage, self.appender)
        self.verifier = IntegrityVerifier(storage, self.hasher)
        self.queries = AuditQueryService(storage)
        self.fail_open = fail_open
        self.scheduler = (
            VerificationScheduler(self.verifier, verification_interval_seconds)
            if verification_interval_seconds
            else None
        )

    async def start(self) -> AuditLogEntry:
        """Start the writer and make sure the chain has its genesis entry.

        Must complete before any business action reaches `record`.
        """
        await self.appender.start()
        genesis = await self.genesis.ensure_genesis()
        if self.scheduler is not None:
            await self.scheduler.start()
        return genesis

    async def stop(self) -> None:
        try:
            if self.scheduler is not None:
                await self.scheduler.stop()
        finally:
            try:
                await self.appender.stop()
            finally:
                await self.storage.close()

    async def record(
        self,
        action: AuditAction,
        resource_type: ResourceType | None = None,
        resource_id: str | None = None,
        user_principal: str | None = None,
        metadata: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> AuditLogEntry | None:
        """Record a mutating action.

        Returns the appended entry, or None when the action is excluded.
        Storage failures reach the caller before it answers its own
        request, unless the service was built with `fail_open=True`.
        """
        fields: dict[str, Any] = {
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "user_principal": user_principal or SYSTEM_PRINCIPAL,
            "metadata": metadata,
        }
        if timestamp is not None:
            fields["timestamp"] = timestamp
        descriptor = ActionDescriptor(**fields)

        try:
            return await self.appender.append(descriptor)
        except StorageFailure as e:
            if not self.fail_open:
                raise
            logger.error("Failed to record audit action %s: %s", action.value, e.message)
            return None

    async def verify(self) -> AuditVerificationResult:
        return await self.verifier.verify()

    async def search(self, query: AuditSearchQuery | None = None) -> list[AuditLogEntry]:
        return await self.queries.search(query)

    async def get_trail(
        self, resource_id: str, sort_order: SortOrder | None = None
    ) -> list[AuditLogEntry]:
        return await self.queries.get_trail(resource_id, sort_order)

    def set_excluded_actions(self, actions: Iterable[AuditAction]) -> frozenset[AuditAction]:
        return self.exclusions.set_excluded(actions)
