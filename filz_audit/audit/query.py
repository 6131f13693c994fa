"""Read-side access to the audit chain."""

from filz_audit.audit.models import AuditLogEntry, AuditSearchQuery, SortOrder
from filz_audit.audit.storage import AuditStorage


class AuditQueryService:
    """Search, filter and trail retrieval for external consumers.

    Pure reads against committed entries; never waits on the writer.
    Returned entries carry `hash` and `previous_hash` so callers can
    spot-check linkage themselves.
    """

    def __init__(self, storage: AuditStorage):
        self.storage = storage

    async def search(self, query: AuditSearchQuery | None = None) -> list[AuditLogEntry]:
        """Entries matching every given filter, ascending by sequence id."""
        return await self.storage.query(query or AuditSearchQuery())

    async def get_trail(
        self, resource_id: str, sort_order: SortOrder | None = None
    ) -> list[AuditLogEntry]:
        """All entries referencing a resource. Newest first unless ASC is asked for."""
        return await self.storage.get_trail(resource_id, sort_order or SortOrder.DESC)

    async def get_entry(self, sequence_id: int) -> AuditLogEntry | None:
        return await self.storage.get_by_sequence(sequence_id)

    async def count(self) -> int:
        return await self.storage.count()
