"""Audit chain integrity verification."""

import asyncio
import logging
from datetime import UTC, datetime

from filz_audit.audit.exceptions import StorageFailure
from filz_audit.audit.hashing import ChainHasher
from filz_audit.audit.models import (
    AuditVerificationResult,
    BrokenLink,
    VerificationStatus,
)
from filz_audit.audit.storage import AuditStorage

logger = logging.getLogger(__name__)


class IntegrityVerifier:
    """Replays the whole chain and reports the first inconsistency.

    Walks entries in sequence order starting from the genesis sentinel
    and, for each entry:
    1. Checks its previous_hash against the hash expected from the walk
    2. Recomputes its hash from its fields + the expected previous hash
    3. Stops at the first mismatch

    Tampering is a reported status, never an exception. Read-only, so it
    is safe to run while appends are in flight.
    """

    def __init__(self, storage: AuditStorage, hasher: ChainHasher):
        self.storage = storage
        self.hasher = hasher

    async def verify(self) -> AuditVerificationResult:
        entries = await self.storage.get_all()

        if not entries:
            return AuditVerificationResult(
                status=VerificationStatus.EMPTY,
                total_entries=0,
                verified_entries=0,
                verified_at=datetime.now(UTC),
            )

        expected = self.hasher.genesis_hash()
        for position, entry in enumerate(entries, start=1):
            broken = None

            if entry.previous_hash != expected:
                broken = BrokenLink(
                    entry_id=entry.sequence_id,
                    expected_hash=expected,
                    actual_hash=entry.previous_hash,
                )
            else:
                recomputed = self.hasher.hash_entry(entry, expected)
                if recomputed != entry.hash:
                    broken = BrokenLink(
                        entry_id=entry.sequence_id,
                        expected_hash=recomputed,
                        actual_hash=entry.hash,
                    )

            if broken is not None:
                logger.warning(
                    "AUDIT CHAIN INTEGRITY VIOLATION: chain broken at entry %d. "
                    "Expected hash: %s, actual: %s",
                    broken.entry_id,
                    broken.expected_hash,
                    broken.actual_hash,
                )
                return AuditVerificationResult(
                    status=VerificationStatus.BROKEN,
                    total_entries=position,
                    verified_entries=position - 1,
                    verified_at=datetime.now(UTC),
                    broken_link=broken,
                )

            expected = entry.hash

        logger.info("Chain verification passed: %d entries verified", len(entries))

        return AuditVerificationResult(
            status=VerificationStatus.VALID,
            total_entries=len(entries),
            verified_entries=len(entries),
            verified_at=datetime.now(UTC),
        )


class VerificationScheduler:
    """Runs chain verification periodically in the background."""

    def __init__(self, verifier: IntegrityVerifier, interval_seconds: float = 86400):
        self.verifier = verifier
        self.interval_seconds = interval_seconds
        self.last_result: AuditVerificationResult | None = None
        self._running = False
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Start the verification worker."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="audit-chain-verifier")
        logger.info("Scheduled audit chain verification every %ss", self.interval_seconds)

    async def stop(self) -> None:
        """Stop the verification worker."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def run_once(self) -> AuditVerificationResult | None:
        logger.info("Starting scheduled audit chain verification")
        try:
            self.last_result = await self.verifier.verify()
        except StorageFailure as e:
            logger.error("Audit chain verification failed: %s", e.message)
            return None
        if self.last_result.status == VerificationStatus.EMPTY:
            logger.info("Audit chain verification: no chained entries found")
        return self.last_result

    async def _run(self) -> None:
        """Main worker loop."""
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception:
                # The next interval still runs
                logger.exception("Audit chain verification crashed")
