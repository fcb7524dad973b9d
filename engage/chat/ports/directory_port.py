# =============================================================================
# File: engage/chat/ports/directory_port.py
# Description: Port interface for employee/branch/job master data
# Pattern: Hexagonal Architecture / Ports & Adapters
# =============================================================================

from __future__ import annotations

from typing import Protocol, List, Optional, Sequence, runtime_checkable

from engage.chat.read_models import BranchRecord, UserRecord
from engage.chat.value_objects import DirectoryPage


@runtime_checkable
class DirectoryPort(Protocol):
    """
    Port: Employee Directory (read-mostly)

    Defined by: Chat Domain
    Implemented by: HttpDirectoryClient (engage/infra/directory/http_directory_client.py)

    Records returned here already carry effective values: the overriding
    job and branch assignment win over the selected ones.
    """

    async def get_by_id(self, employee_id: str) -> Optional[UserRecord]:
        ...

    async def get_by_ids(
        self,
        employee_ids: Sequence[str],
        *,
        active_only: bool = False,
    ) -> List[UserRecord]:
        ...

    async def get_by_branch(
        self,
        branch_ids: Sequence[str],
        job_levels: Sequence[int],
        *,
        active_only: bool = True,
        skip: int = 0,
        limit: int = 600,
    ) -> DirectoryPage:
        """
        One page of users whose effective branches intersect branch_ids and
        whose effective job level is in job_levels, oldest first.
        """
        ...

    async def get_branch(self, branch_id: str) -> Optional[BranchRecord]:
        ...

    async def get_job_ids_for_category(self, job_category: str) -> List[str]:
        """Job ids that belong to a job category (system group allow-list)."""
        ...

    async def is_feature_enabled(self, branch_id: str, feature_key: str) -> bool:
        """True when the branch carries the given feature provision."""
        ...

    async def bind_vendor_identity(self, employee_id: str, vendor_user_id: Optional[str]) -> None:
        """Store (or clear, with None) the employee's vendor identity binding."""
        ...
