# =============================================================================
# File: engage/chat/membership_diff.py
# Description: Pure membership diff functions (no I/O)
# =============================================================================
"""
Expected-vs-current membership diffs.

Terms used below:
- local:     employees with an Active membership row
- current:   local plus employees whose vendor id is present in the thread
- confirmed: local employees whose vendor id is present in the thread
- orphans:   vendor participants that map to no known employee

to_add    = expected - confirmed
to_remove = current - expected - protected
unchanged = expected & confirmed
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Sequence

from engage.chat.read_models import ChatGroup, ChatMember, GroupChanges
from engage.chat.value_objects import ExpectedMembershipSet


@dataclass(frozen=True)
class MembershipDiff:
    to_add: FrozenSet[str] = field(default_factory=frozenset)
    to_remove: FrozenSet[str] = field(default_factory=frozenset)
    unchanged: FrozenSet[str] = field(default_factory=frozenset)
    orphan_vendor_ids: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_empty(self) -> bool:
        return not (self.to_add or self.to_remove or self.orphan_vendor_ids)

    def summary(self) -> str:
        return (
            f"add={len(self.to_add)} remove={len(self.to_remove)} "
            f"unchanged={len(self.unchanged)} orphans={len(self.orphan_vendor_ids)}"
        )


def compute_membership_diff(
    expected_ids: Iterable[str],
    members: Sequence[ChatMember],
    vendor_participant_ids: Iterable[str],
    *,
    expected_vendor_ids: Optional[Mapping[str, str]] = None,
    protected_ids: Iterable[str] = (),
    ignored_vendor_ids: Iterable[str] = (),
) -> MembershipDiff:
    """
    Diff expected membership against local rows and the vendor thread.

    Args:
        expected_ids: employee ids that should be in the group
        members: local membership rows of the group (any status)
        vendor_participant_ids: vendor user ids currently in the thread
        expected_vendor_ids: employee_id -> vendor_user_id for expected users
        protected_ids: employees never removed by this diff
        ignored_vendor_ids: vendor ids never treated as orphans (root identity)
    """
    expected = frozenset(expected_ids)
    protected = frozenset(protected_ids)
    ignored = frozenset(ignored_vendor_ids)
    present = frozenset(vendor_participant_ids)

    vendor_to_employee: Dict[str, str] = {}
    for employee_id, vendor_user_id in (expected_vendor_ids or {}).items():
        if vendor_user_id:
            vendor_to_employee[vendor_user_id] = employee_id
    for member in members:
        vendor_to_employee[member.vendor_user_id] = member.employee_id

    local = {m.employee_id: m.vendor_user_id for m in members if m.is_active}
    vendor_mapped = frozenset(vendor_to_employee[v] for v in present if v in vendor_to_employee)

    current = frozenset(local) | vendor_mapped
    confirmed = frozenset(e for e, v in local.items() if v in present)

    orphans = frozenset(v for v in present if v not in vendor_to_employee and v not in ignored)

    return MembershipDiff(
        to_add=expected - confirmed,
        to_remove=current - expected - protected,
        unchanged=expected & confirmed,
        orphan_vendor_ids=orphans,
    )


def compute_direct_message_diff(
    expected: ExpectedMembershipSet,
    field_staff_id: str,
    members: Sequence[ChatMember],
    vendor_participant_ids: Iterable[str],
    *,
    expected_vendor_ids: Optional[Mapping[str, str]] = None,
    root_vendor_id: Optional[str] = None,
) -> MembershipDiff:
    """Private group: the field-staff member is kept no matter what the admin diff says."""
    return compute_membership_diff(
        expected.all_ids | {field_staff_id},
        members,
        vendor_participant_ids,
        expected_vendor_ids=expected_vendor_ids,
        protected_ids=(field_staff_id,),
        ignored_vendor_ids=(root_vendor_id,) if root_vendor_id else (),
    )


def compute_broadcast_diff(
    expected: ExpectedMembershipSet,
    members: Sequence[ChatMember],
    vendor_participant_ids: Iterable[str],
    *,
    expected_vendor_ids: Optional[Mapping[str, str]] = None,
    root_vendor_id: Optional[str] = None,
) -> MembershipDiff:
    """System group: to_add are the missing ids, to_remove the ineligible ones."""
    return compute_membership_diff(
        expected.all_ids,
        members,
        vendor_participant_ids,
        expected_vendor_ids=expected_vendor_ids,
        ignored_vendor_ids=(root_vendor_id,) if root_vendor_id else (),
    )


def compute_explicit_diff(
    add_ids: Iterable[str],
    remove_ids: Iterable[str],
    members: Sequence[ChatMember],
) -> MembershipDiff:
    """
    Diff for an explicit edit: adds are incoming ids not already active,
    removes are requested ids that are active members.
    """
    active = frozenset(m.employee_id for m in members if m.is_active)
    adds = frozenset(add_ids)
    removes = frozenset(remove_ids)
    return MembershipDiff(
        to_add=adds - active - removes,
        to_remove=active & removes,
        unchanged=active - removes,
    )


def compare_group_changes(group: ChatGroup, changes: GroupChanges) -> Dict[str, Any]:
    """Fields of `changes` whose value differs from the stored group."""
    changed: Dict[str, Any] = {}
    for field_name in ("name", "image", "status", "access_control"):
        desired = getattr(changes, field_name)
        if desired is None:
            continue
        if desired != getattr(group, field_name):
            changed[field_name] = desired
    return changed
