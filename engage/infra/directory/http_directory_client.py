# =============================================================================
# File: engage/infra/directory/http_directory_client.py
# Description: DirectoryService adapter over the HR master-data HTTP API
# =============================================================================

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

import httpx

from engage.chat.read_models import BranchRecord, UserRecord
from engage.chat.value_objects import DirectoryPage
from engage.common.exceptions.exceptions import InfrastructureError
from engage.config.directory_config import DirectoryConfig, get_directory_config
from engage.config.logging_config import get_logger
from engage.config.reliability_config import ReliabilityConfigs
from engage.infra.directory.mapper import AZURE_VENDOR_ID, map_branch_record, map_employee_record
from engage.infra.reliability.retry import retry_async

log = get_logger("engage.infra.directory.client")


class DirectoryServiceError(InfrastructureError):
    """Directory API call failed"""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


def should_retry_directory(error: Exception) -> bool:
    return isinstance(error, DirectoryServiceError) and error.retryable


class HttpDirectoryClient:
    """
    DirectoryService over HTTP.

    Records are mapped with the effective job and branch rules before they
    leave this adapter; a 404 on a single-record lookup answers None.
    """

    def __init__(
        self,
        config: Optional[DirectoryConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or get_directory_config()
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=self.config.timeout_seconds)

        if self.config.enable_retry:
            self.retry_config = ReliabilityConfigs.directory_retry().model_copy(
                update={"retry_condition": should_retry_directory}
            )
        else:
            self.retry_config = None

    async def close(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    # =========================================================================
    # HTTP plumbing
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Optional[Any]:
        url = f"{self.config.base_url.rstrip('/')}{path}"
        headers = {"x-api-key": self.config.get_api_key()} if self.config.get_api_key() else None

        async def _do_http_call() -> Optional[Any]:
            try:
                response = await self.http.request(method, url, json=json, params=params, headers=headers)
            except httpx.TransportError as e:
                log.error(f"Directory network error ({method} {path}): {e}")
                raise DirectoryServiceError(f"Network error calling {path}: {e}", retryable=True) from e

            if response.status_code == 404 and allow_not_found:
                return None
            if response.status_code >= 400:
                log.error(f"Directory HTTP error {response.status_code} at {path}: {response.text[:200]}")
                raise DirectoryServiceError(
                    f"Directory error {response.status_code} at {path}",
                    status_code=response.status_code,
                    retryable=response.status_code == 429 or response.status_code >= 500,
                )
            if response.status_code == 204 or not response.content:
                return None
            return response.json()

        if self.retry_config is None:
            return await _do_http_call()
        return await retry_async(_do_http_call, retry_config=self.retry_config, context=f"directory {method} {path}")

    @staticmethod
    def _map_users(items: Sequence[Dict[str, Any]]) -> List[UserRecord]:
        users = []
        for item in items:
            try:
                users.append(map_employee_record(item))
            except (ValueError, KeyError) as e:
                log.warning(f"Skipping malformed directory record {item.get('employeePsId')}: {e}")
        return users

    # =========================================================================
    # Users
    # =========================================================================

    async def get_by_id(self, employee_id: str) -> Optional[UserRecord]:
        data = await self._request("GET", f"/employees/{employee_id}", allow_not_found=True)
        if not data:
            return None
        return map_employee_record(data)

    async def get_by_ids(
        self,
        employee_ids: Sequence[str],
        *,
        active_only: bool = False,
    ) -> List[UserRecord]:
        if not employee_ids:
            return []
        data = await self._request(
            "POST",
            "/employees/search",
            json={"employeeIds": list(dict.fromkeys(employee_ids)), "activeOnly": active_only},
        )
        return self._map_users((data or {}).get("results", []))

    async def get_by_branch(
        self,
        branch_ids: Sequence[str],
        job_levels: Sequence[int],
        *,
        active_only: bool = True,
        skip: int = 0,
        limit: int = 600,
    ) -> DirectoryPage:
        data = await self._request(
            "POST",
            "/employees/by-branch",
            json={
                "branchIds": list(branch_ids),
                "jobLevels": list(job_levels),
                "activeOnly": active_only,
                "skip": skip,
                "limit": limit,
                "sort": "createdAt",
            },
        ) or {}
        users = self._map_users(data.get("results", []))
        return DirectoryPage(users=tuple(users), has_more=bool(data.get("hasMore")))

    async def bind_vendor_identity(self, employee_id: str, vendor_user_id: Optional[str]) -> None:
        path = f"/employees/{employee_id}/vendor-systems/{AZURE_VENDOR_ID}"
        if vendor_user_id is None:
            await self._request("DELETE", path, allow_not_found=True)
            log.info(f"Cleared vendor identity of {employee_id}")
        else:
            await self._request("PUT", path, json={"vendorValue": vendor_user_id})
            log.info(f"Bound vendor identity {vendor_user_id} to {employee_id}")

    # =========================================================================
    # Branches and jobs
    # =========================================================================

    async def get_branch(self, branch_id: str) -> Optional[BranchRecord]:
        data = await self._request("GET", f"/branches/{branch_id}", allow_not_found=True)
        if not data:
            return None
        return map_branch_record(data)

    async def is_feature_enabled(self, branch_id: str, feature_key: str) -> bool:
        branch = await self.get_branch(branch_id)
        return branch is not None and feature_key in branch.features

    async def get_job_ids_for_category(self, job_category: str) -> List[str]:
        data = await self._request("GET", "/jobs", params={"category": job_category}) or {}
        return [job["jobId"] for job in data.get("results", []) if job.get("jobId")]
