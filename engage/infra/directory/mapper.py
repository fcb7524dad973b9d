# =============================================================================
# File: engage/infra/directory/mapper.py
# Description: Directory payloads -> UserRecord / BranchRecord
# =============================================================================

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from engage.chat.membership_rules import user_level_for
from engage.chat.read_models import BranchRecord, GroupImage, JobInfo, UserRecord

AZURE_VENDOR_ID = "Azure"
ACTIVE_STATUS = "Active"


def effective_job(payload: Mapping[str, Any]) -> JobInfo:
    """
    The access (override) job wins over the assigned job: its level always,
    its job id when present.
    """
    job = payload.get("job") or {}
    access = payload.get("obAccess") or {}

    if access.get("level") is not None:
        level = int(access["level"])
        job_id = access.get("jobId") or job.get("jobId")
    else:
        level = int(job.get("level") or 0)
        job_id = job.get("jobId")

    if not job_id:
        raise ValueError(f"Employee {payload.get('employeePsId')} has no job id")

    return JobInfo(job_id=job_id, level=level, title=job.get("title"), category=job.get("category"))


def effective_branch_ids(payload: Mapping[str, Any]) -> List[str]:
    """Overridden branches when any are set, otherwise the selected branches."""
    branch_access = payload.get("branchAccess") or {}
    overridden = branch_access.get("overriddenBranchIds") or []
    return list(overridden) if overridden else list(branch_access.get("selectedBranchIds") or [])


def vendor_user_id_of(payload: Mapping[str, Any]) -> Optional[str]:
    for system in payload.get("vendorSystems") or []:
        if system.get("vendorId") == AZURE_VENDOR_ID and system.get("vendorValue"):
            return system["vendorValue"]
    return None


def _image(payload: Mapping[str, Any]) -> Optional[GroupImage]:
    badge = payload.get("badge") or {}
    if not badge.get("badgeImageUrl"):
        return None
    return GroupImage(bucket_name=badge.get("bucketName"), uri=badge["badgeImageUrl"])


def _timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def map_employee_record(payload: Mapping[str, Any]) -> UserRecord:
    employee_id = payload.get("employeePsId")
    if not employee_id:
        raise ValueError("Directory record without employeePsId")

    job = effective_job(payload)
    return UserRecord(
        employee_id=employee_id,
        display_name=payload.get("displayName") or employee_id,
        job=job,
        user_level=user_level_for(job.level),
        branch_ids=effective_branch_ids(payload),
        vendor_user_id=vendor_user_id_of(payload),
        is_active=payload.get("activeStatus", ACTIVE_STATUS) == ACTIVE_STATUS,
        image=_image(payload),
        created_at=_timestamp(payload.get("createdAt")),
    )


def map_branch_record(payload: Mapping[str, Any]) -> BranchRecord:
    provisions: Dict[str, Any] = payload.get("featureProvisions") or {}
    return BranchRecord(
        branch_id=payload["branchId"],
        name=payload.get("branchName") or payload["branchId"],
        features=sorted(key for key, enabled in provisions.items() if enabled),
    )
