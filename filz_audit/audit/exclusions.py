"""Action kinds exempt from the audit chain."""

import logging
from collections.abc import Iterable

from filz_audit.audit.models import AuditAction

logger = logging.getLogger(__name__)


class ExclusionPolicy:
    """Replaceable set of actions that are never written to the chain.

    The set is held as a single frozenset reference. Readers take it
    without locking and always see either the old or the new set.
    Excluded actions leave no entry, so the chain's tail simply does not
    move for them.
    """

    def __init__(self, initial: Iterable[AuditAction] = ()):
        self._excluded: frozenset[AuditAction] = self._validate(initial)

    @staticmethod
    def _validate(actions: Iterable[AuditAction]) -> frozenset[AuditAction]:
        snapshot = frozenset(AuditAction(a) for a in actions)
        if AuditAction.CHAIN_GENESIS in snapshot:
            raise ValueError("CHAIN_GENESIS cannot be excluded from the audit chain")
        return snapshot

    @property
    def excluded(self) -> frozenset[AuditAction]:
        """Current snapshot of excluded actions."""
        return self._excluded

    def is_excluded(self, action: AuditAction) -> bool:
        return action in self._excluded

    def set_excluded(self, actions: Iterable[AuditAction]) -> frozenset[AuditAction]:
        """Replace the excluded set. Applies to subsequent appends only."""
        snapshot = self._validate(actions)
        self._excluded = snapshot
        logger.info(
            "Audit exclusion set replaced: %s",
            ", ".join(sorted(a.value for a in snapshot)) or "<none>",
        )
        return snapshot
