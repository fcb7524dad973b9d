# =============================================================================
# File: engage/chat/sync_results.py
# Description: Outcome records returned by reconciliation passes
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class SyncAction(str, Enum):
    """What a reconciliation pass did to one group"""
    CREATED = "created"
    RECONCILED = "reconciled"
    UNCHANGED = "unchanged"
    REACTIVATED = "reactivated"
    DEACTIVATED = "deactivated"
    SKIPPED = "skipped"
    DRIFT = "drift"
    FAILED = "failed"


@dataclass
class GroupSyncOutcome:
    """Result of reconciling one group (or one system group category)"""
    action: SyncAction
    group_id: Optional[str] = None
    category: Optional[str] = None
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    stale_removed: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.action not in (SyncAction.DRIFT, SyncAction.FAILED)


@dataclass
class BranchSyncReport:
    """Per-branch result of a batch reconciliation job"""
    branch_id: str
    outcomes: List[GroupSyncOutcome] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and all(o.succeeded for o in self.outcomes)

    def count(self, action: SyncAction) -> int:
        return sum(1 for o in self.outcomes if o.action == action)

    def to_metrics(self) -> Dict[str, Any]:
        return {
            "categories": len(self.outcomes),
            "created": self.count(SyncAction.CREATED),
            "reconciled": self.count(SyncAction.RECONCILED),
            "unchanged": self.count(SyncAction.UNCHANGED),
            "drift": self.count(SyncAction.DRIFT),
            "failed": self.count(SyncAction.FAILED) + (1 if self.error else 0),
        }
