# =============================================================================
# File: engage/chat/ports/thread_provider_port.py
# Description: Port interface for the communication vendor (chat threads)
# Pattern: Hexagonal Architecture / Ports & Adapters
# =============================================================================

from __future__ import annotations

from typing import Protocol, List, Sequence, runtime_checkable

from engage.chat.value_objects import RootToken, VendorParticipant, VendorToken


@runtime_checkable
class ThreadProviderPort(Protocol):
    """
    Port: Communication Vendor Threads

    Defined by: Chat Domain
    Implemented by: AcsThreadProvider (engage/infra/acs/thread_provider.py)

    Every administrative thread operation runs as the service ("root")
    identity. Callers obtain the root token through RootCredential, never
    by calling issue_root_token directly from business logic.

    Failures surface as VendorOperationFailedError. Participant add/remove
    are batch calls whose partial success is reported through the return
    value; the caller confirms the outcome by re-listing participants.
    """

    # =========================================================================
    # Identities and tokens
    # =========================================================================

    async def issue_root_token(self) -> RootToken:
        """Issue a fresh access token for the root identity."""
        ...

    async def create_user_identity(self) -> str:
        """Create a vendor identity for an employee; returns the vendor user id."""
        ...

    async def delete_user_identity(self, vendor_user_id: str) -> None:
        """Delete a vendor identity (and revoke its tokens)."""
        ...

    async def issue_user_token(self, vendor_user_id: str) -> VendorToken:
        """Issue a chat access token for an employee's vendor identity."""
        ...

    # =========================================================================
    # Threads
    # =========================================================================

    async def create_thread(
        self,
        root: RootToken,
        topic: str,
        participants: Sequence[VendorParticipant],
    ) -> str:
        """
        Create a thread with its initial participants in one call.

        Args:
            root: Root identity token
            topic: Thread topic (group name)
            participants: Users that already have vendor identities

        Returns:
            Vendor thread id
        """
        ...

    async def delete_thread(self, thread_id: str, root: RootToken) -> None:
        """Delete a thread. A thread that is already gone is not an error."""
        ...

    # =========================================================================
    # Participants
    # =========================================================================

    async def list_participants(self, thread_id: str, root: RootToken) -> List[VendorParticipant]:
        """
        List every participant of a thread.

        Paginates internally and aborts after a fixed page-count ceiling.
        """
        ...

    async def add_participants(
        self,
        thread_id: str,
        root: RootToken,
        participants: Sequence[VendorParticipant],
    ) -> List[str]:
        """
        Add participants. Callers pass only users not already present.

        Returns:
            Vendor user ids the vendor reported as added
        """
        ...

    async def remove_participants(
        self,
        thread_id: str,
        root: RootToken,
        vendor_user_ids: Sequence[str],
    ) -> List[str]:
        """
        Remove participants one by one; a single failure does not abort the batch.

        Returns:
            Vendor user ids the vendor reported as removed
        """
        ...
