# =============================================================================
# File: engage/chat/value_objects.py
# Description: Chat domain value objects
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple, FrozenSet


@dataclass(frozen=True)
class VendorParticipant:
    """A participant as the communication vendor sees it."""
    vendor_user_id: str
    display_name: str = ""


@dataclass(frozen=True)
class VendorToken:
    """
    Value Object: access token issued by the vendor for one identity.

    The root token is a VendorToken whose identity is the service (root)
    identity used for every administrative thread operation.
    """
    token: str
    identity: str
    expires_on: datetime

    def expires_within(self, seconds: int, now: Optional[datetime] = None) -> bool:
        """True when the token is expired or expires in the next `seconds`."""
        now = now or datetime.now(timezone.utc)
        return self.expires_on - timedelta(seconds=seconds) <= now

    def to_cache(self) -> dict:
        return {
            "token": self.token,
            "identity": self.identity,
            "expires_on": self.expires_on.isoformat(),
        }

    @classmethod
    def from_cache(cls, data: dict) -> 'VendorToken':
        expires_on = datetime.fromisoformat(data["expires_on"])
        if expires_on.tzinfo is None:
            expires_on = expires_on.replace(tzinfo=timezone.utc)
        return cls(token=data["token"], identity=data["identity"], expires_on=expires_on)


# Root credential used for thread administration
RootToken = VendorToken


@dataclass(frozen=True)
class ExpectedMembershipSet:
    """
    Business-rule-derived target membership for one group.

    Computed fresh on every reconciliation pass; never persisted.
    """
    admin_ids: Tuple[str, ...] = ()
    field_staff_ids: Tuple[str, ...] = ()
    inactive_ids: Tuple[str, ...] = ()

    @property
    def all_ids(self) -> FrozenSet[str]:
        return frozenset(self.admin_ids) | frozenset(self.field_staff_ids)


@dataclass(frozen=True)
class DirectoryPage:
    """One page of directory users plus the upstream 'has more' signal."""
    users: Tuple = ()
    has_more: bool = False


@dataclass(frozen=True)
class PartUploadUrl:
    part_number: int
    url: str


@dataclass(frozen=True)
class MultipartUpload:
    """Result of initiating a multipart attachment upload."""
    upload_id: str
    key: str
    part_urls: Tuple[PartUploadUrl, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class CompletedPart:
    part_number: int
    etag: str


@dataclass(frozen=True)
class AttachmentRef:
    """Stored attachment: object key plus a time-limited download url."""
    file_identifier: str
    signed_url: str
