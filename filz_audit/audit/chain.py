"""Audit hash chain implementation.

Provides tamper-evident audit logging through cryptographic hash chaining.
Each entry links to its predecessor, forming an immutable chain.

Appends are linearized by a single writer task that owns the chain's
tail. Callers put requests on a FIFO queue and await their own result,
so concurrent business operations can never fork the chain.
"""

import asyncio
import logging

from filz_audit.audit.exceptions import (
    AppendInvariantViolation,
    AuditError,
    ImmutabilityViolation,
    StorageFailure,
)
from filz_audit.audit.exclusions import ExclusionPolicy
from filz_audit.audit.hashing import ChainHasher
from filz_audit.audit.models import (
    SYSTEM_PRINCIPAL,
    ActionDescriptor,
    AuditAction,
    AuditLogEntry,
)
from filz_audit.audit.storage import AuditStorage

logger = logging.getLogger(__name__)

_Request = tuple[ActionDescriptor, "asyncio.Future[AuditLogEntry]"]


class ChainAppender:
    """Linearizes and persists new audit entries.

    Ensures a strict linear chain by:
    1. Gating each request through the exclusion policy
    2. Queueing it for the one writer task
    3. Hashing it against the previous *written* entry
    4. Persisting it with the next sequence id

    Usage:
        appender = ChainAppender(storage, ChainHasher(), ExclusionPolicy())
        await appender.start()

        entry = await appender.append(
            ActionDescriptor(
                action=AuditAction.CREATE_FOLDER,
                resource_type=ResourceType.FOLDER,
                resource_id="folder-1",
                user_principal="alice@example.com",
            )
        )

        await appender.stop()
    """

    def __init__(
        self,
        storage: AuditStorage,
        hasher: ChainHasher,
        exclusions: ExclusionPolicy,
    ):
        self.storage = storage
        self.hasher = hasher
        self.exclusions = exclusions
        self._queue: asyncio.Queue[_Request | None] | None = None
        self._task: asyncio.Task[None] | None = None
        # Owned by the writer task only
        self._tail: AuditLogEntry | None = None
        self._tail_loaded = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the writer task."""
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._tail_loaded = False
        self._task = asyncio.create_task(self._run(), name="audit-chain-writer")
        logger.info("Audit chain writer started")

    async def stop(self) -> None:
        """Process every queued request, then stop the writer task."""
        task, queue = self._task, self._queue
        if task is None or queue is None:
            return
        if not task.done():
            await queue.put(None)
        await task

        # Requests that arrived behind the stop marker are never written
        while not queue.empty():
            request = queue.get_nowait()
            if request is not None and not request[1].done():
                request[1].set_exception(StorageFailure("Audit chain writer stopped"))

        # A record() after the old writer exited may already have started a new one
        if self._task is task:
            self._task = None
            self._queue = None
        logger.info("Audit chain writer stopped")

    async def append(self, descriptor: ActionDescriptor) -> AuditLogEntry | None:
        """Record an action in the chain.

        Returns the written entry, or None when the action is excluded.
        Blocks until the entry is persisted; write errors are re-raised here.
        """
        if self.exclusions.is_excluded(descriptor.action):
            logger.debug("Skipping excluded audit action %s", descriptor.action.value)
            return None
        return await self._submit(descriptor)

    async def append_genesis(self) -> AuditLogEntry:
        """Write the CHAIN_GENESIS root entry through the writer queue."""
        return await self._submit(
            ActionDescriptor(action=AuditAction.CHAIN_GENESIS, user_principal=SYSTEM_PRINCIPAL)
        )

    async def _submit(self, descriptor: ActionDescriptor) -> AuditLogEntry:
        if not self.running:
            await self.start()

        future: asyncio.Future[AuditLogEntry] = asyncio.get_running_loop().create_future()
        await self._queue.put((descriptor, future))
        return await future

    async def _run(self) -> None:
        """Writer loop: one request at a time, in arrival order."""
        queue = self._queue
        while True:
            request = await queue.get()
            if request is None:
                break

            descriptor, future = request
            if future.cancelled():
                continue

            try:
                entry = await self._write(descriptor)
            except Exception as e:
                # Delivered to the waiting caller; the writer keeps serving the queue
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(entry)

    async def _load_tail(self) -> AuditLogEntry | None:
        if not self._tail_loaded:
            self._tail = await self.storage.get_latest()
            self._tail_loaded = True
        return self._tail

    async def _write(self, descriptor: ActionDescriptor) -> AuditLogEntry:
        tail = await self._load_tail()
        genesis = descriptor.action == AuditAction.CHAIN_GENESIS

        if tail is None and not genesis:
            raise AppendInvariantViolation(
                f"Cannot append {descriptor.action.value}: chain has no genesis entry"
            )
        if tail is not None and genesis:
            raise AppendInvariantViolation("Chain already initialized; refusing a second CHAIN_GENESIS")

        previous_hash = tail.hash if tail is not None else self.hasher.genesis_hash()
        sequence_id = tail.sequence_id + 1 if tail is not None else 1

        entry = AuditLogEntry(
            sequence_id=sequence_id,
            timestamp=descriptor.timestamp,
            user_principal=descriptor.user_principal,
            action=descriptor.action,
            resource_type=descriptor.resource_type,
            resource_id=descriptor.resource_id,
            metadata=descriptor.metadata,
            previous_hash=previous_hash,
            hash=self.hasher.compute_hash(
                descriptor.timestamp,
                descriptor.user_principal,
                descriptor.action,
                descriptor.resource_type,
                descriptor.resource_id,
                descriptor.metadata,
                previous_hash,
            ),
        )

        try:
            await self.storage.append(entry)
        except (AppendInvariantViolation, ImmutabilityViolation) as e:
            # The sequence id or link was fresh when computed, so the stored
            # tail moved under the writer: someone else is appending.
            self._tail_loaded = False
            logger.critical(
                "Audit chain append rejected at seq=%d: storage tail moved under the writer",
                sequence_id,
            )
            if isinstance(e, AppendInvariantViolation):
                raise
            raise AppendInvariantViolation(
                f"Entry {sequence_id} already exists in storage; refusing to fork the chain"
            ) from e
        except AuditError:
            self._tail_loaded = False
            logger.error("Failed to append audit action %s at seq=%d", descriptor.action.value, sequence_id)
            raise

        self._tail = entry

        logger.debug(
            "Appended audit entry: seq=%d action=%s hash=%s",
            sequence_id,
            descriptor.action.value,
            entry.hash[:16] + "...",
        )

        return entry


class GenesisInitializer:
    """Bootstraps the chain with exactly one CHAIN_GENESIS entry."""

    def __init__(self, storage: AuditStorage, appender: ChainAppender):
        self.storage = storage
        self.appender = appender

    async def ensure_genesis(self) -> AuditLogEntry:
        """Write the genesis entry if the log is empty. Idempotent."""
        existing = await self.storage.find_genesis()
        if existing is not None:
            logger.info("Audit chain already initialized")
            return existing

        if await self.storage.count() > 0:
            raise AppendInvariantViolation(
                "Audit log has entries but no CHAIN_GENESIS; refusing to initialize"
            )

        logger.info("Initializing audit chain with CHAIN_GENESIS entry")
        try:
            return await self.appender.append_genesis()
        except AppendInvariantViolation:
            # A concurrent initializer may have won the race
            existing = await self.storage.find_genesis()
            if existing is None:
                raise
            logger.info("Audit chain initialized concurrently")
            return existing
