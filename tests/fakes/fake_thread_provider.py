# =============================================================================
# File: tests/fakes/fake_thread_provider.py
# Description: Fake implementation of ThreadProviderPort for unit testing
# Pattern: Ports & Adapters - Fake/Stub adapter
# =============================================================================

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Sequence, Set

from engage.chat.exceptions import VendorOperationFailedError
from engage.chat.value_objects import RootToken, VendorParticipant, VendorToken

from tests.fakes.call_tracking import CallTrackingFake

ROOT_IDENTITY = "acs-root"

MUTATING_METHODS = frozenset({"create_thread", "delete_thread", "add_participants", "remove_participants"})


class FakeThreadProvider(CallTrackingFake):
    """
    In-memory communication vendor.

    Threads are dicts of vendor_user_id -> VendorParticipant. The root
    identity joins every thread it creates, like the real vendor does.

    Vendor misbehaviour is simulated per user:
        forget_on_add     ids the vendor accepts but never actually adds
        retain_on_remove  ids the vendor acknowledges but keeps in the thread

    Usage:
        fake = FakeThreadProvider()
        thread_id = fake.seed_thread(["acs-1", "acs-2"])
        fake.forget_on_add.add("acs-3")

        # ... run the reconciler ...
        assert fake.participant_ids(thread_id) == {"acs-1", "acs-2"}
        assert fake.mutating_calls() == []
    """

    failure_factory = staticmethod(lambda method, message: VendorOperationFailedError(method, message))

    def __init__(self, root_identity: str = ROOT_IDENTITY, token_lifetime: timedelta = timedelta(hours=24)):
        super().__init__()
        self.root_identity = root_identity
        self.token_lifetime = token_lifetime

        self.threads: Dict[str, Dict[str, VendorParticipant]] = {}
        self.identities: Set[str] = set()

        self.forget_on_add: Set[str] = set()
        self.retain_on_remove: Set[str] = set()

        self._thread_seq = 0
        self._identity_seq = 0
        self._token_seq = 0

    # =========================================================================
    # Test Setup Methods
    # =========================================================================

    def seed_thread(self, vendor_user_ids: Sequence[str] = (), *, include_root: bool = True) -> str:
        """Create a thread directly, without recording a call."""
        thread_id = self._next_thread_id()
        participants = {v: VendorParticipant(vendor_user_id=v, display_name=v) for v in vendor_user_ids}
        if include_root:
            participants[self.root_identity] = VendorParticipant(vendor_user_id=self.root_identity)
        self.threads[thread_id] = participants
        return thread_id

    def put_participant(self, thread_id: str, vendor_user_id: str, display_name: str = "") -> None:
        self.threads[thread_id][vendor_user_id] = VendorParticipant(
            vendor_user_id=vendor_user_id,
            display_name=display_name or vendor_user_id,
        )

    def drop_participant(self, thread_id: str, vendor_user_id: str) -> None:
        self.threads[thread_id].pop(vendor_user_id, None)

    def participant_ids(self, thread_id: str, *, include_root: bool = False) -> Set[str]:
        ids = set(self.threads.get(thread_id, {}))
        if not include_root:
            ids.discard(self.root_identity)
        return ids

    def clear(self) -> None:
        super().clear()
        self.threads.clear()
        self.identities.clear()
        self.forget_on_add.clear()
        self.retain_on_remove.clear()

    # =========================================================================
    # Test Verification Methods
    # =========================================================================

    def mutating_calls(self) -> List[str]:
        """Ordered names of every call that changes vendor state."""
        return [c.method for c in self._calls if c.method in MUTATING_METHODS]

    # =========================================================================
    # Internal Helpers
    # =========================================================================

    def _next_thread_id(self) -> str:
        self._thread_seq += 1
        return f"19:thread-{self._thread_seq}@thread.v2"

    def _require_thread(self, method: str, thread_id: str) -> Dict[str, VendorParticipant]:
        if thread_id not in self.threads:
            raise VendorOperationFailedError(method, "thread not found", thread_id)
        return self.threads[thread_id]

    def _token_for(self, identity: str) -> VendorToken:
        self._token_seq += 1
        return VendorToken(
            token=f"token-{self._token_seq}",
            identity=identity,
            expires_on=datetime.now(timezone.utc) + self.token_lifetime,
        )

    # =========================================================================
    # ThreadProviderPort Implementation
    # =========================================================================

    async def issue_root_token(self) -> RootToken:
        self._record_call("issue_root_token")
        self._check_failure("issue_root_token")
        return self._token_for(self.root_identity)

    async def create_user_identity(self) -> str:
        record = self._record_call("create_user_identity")
        self._check_failure("create_user_identity")
        self._identity_seq += 1
        vendor_user_id = f"8:acs:new-{self._identity_seq}"
        self.identities.add(vendor_user_id)
        record.result = vendor_user_id
        return vendor_user_id

    async def delete_user_identity(self, vendor_user_id: str) -> None:
        self._record_call("delete_user_identity", vendor_user_id)
        self._check_failure("delete_user_identity")
        self.identities.discard(vendor_user_id)

    async def issue_user_token(self, vendor_user_id: str) -> VendorToken:
        self._record_call("issue_user_token", vendor_user_id)
        self._check_failure("issue_user_token")
        return self._token_for(vendor_user_id)

    async def create_thread(
        self,
        root: RootToken,
        topic: str,
        participants: Sequence[VendorParticipant],
    ) -> str:
        record = self._record_call("create_thread", root, topic, list(participants))
        self._check_failure("create_thread")

        thread_id = self._next_thread_id()
        members = {p.vendor_user_id: p for p in participants}
        members[root.identity] = VendorParticipant(vendor_user_id=root.identity)
        self.threads[thread_id] = members
        record.result = thread_id
        return thread_id

    async def delete_thread(self, thread_id: str, root: RootToken) -> None:
        self._record_call("delete_thread", thread_id)
        self._check_failure("delete_thread")
        self.threads.pop(thread_id, None)

    async def list_participants(self, thread_id: str, root: RootToken) -> List[VendorParticipant]:
        self._record_call("list_participants", thread_id)
        self._check_failure("list_participants")
        return list(self._require_thread("list_participants", thread_id).values())

    async def add_participants(
        self,
        thread_id: str,
        root: RootToken,
        participants: Sequence[VendorParticipant],
    ) -> List[str]:
        record = self._record_call("add_participants", thread_id, [p.vendor_user_id for p in participants])
        self._check_failure("add_participants")

        thread = self._require_thread("add_participants", thread_id)
        added = []
        for participant in participants:
            if participant.vendor_user_id not in self.forget_on_add:
                thread[participant.vendor_user_id] = participant
            added.append(participant.vendor_user_id)
        record.result = added
        return added

    async def remove_participants(
        self,
        thread_id: str,
        root: RootToken,
        vendor_user_ids: Sequence[str],
    ) -> List[str]:
        record = self._record_call("remove_participants", thread_id, list(vendor_user_ids))
        self._check_failure("remove_participants")

        thread = self._require_thread("remove_participants", thread_id)
        removed = []
        for vendor_user_id in vendor_user_ids:
            if vendor_user_id not in self.retain_on_remove:
                thread.pop(vendor_user_id, None)
            removed.append(vendor_user_id)
        record.result = removed
        return removed
