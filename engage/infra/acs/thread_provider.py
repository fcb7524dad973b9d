# =============================================================================
# File: engage/infra/acs/thread_provider.py
# Description: ThreadProvider adapter over the ACS identity and chat REST APIs
# =============================================================================

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

import httpx

from engage.chat.exceptions import VendorOperationFailedError
from engage.chat.value_objects import RootToken, VendorParticipant, VendorToken
from engage.config.acs_config import AcsConfig, get_acs_config
from engage.config.logging_config import get_logger
from engage.config.reliability_config import ReliabilityConfigs
from engage.infra.acs.auth import AcsHmacAuth, BearerTokenAuth
from engage.infra.acs.error_classifier import should_retry_acs
from engage.infra.acs.exceptions import (
    AcsAuthenticationError,
    AcsBadRequestError,
    AcsClientError,
    AcsError,
    AcsNetworkError,
    AcsNotFoundError,
    AcsRateLimitError,
    AcsServerError,
    AcsTimeoutError,
)
from engage.infra.reliability.retry import retry_async

log = get_logger("engage.infra.acs.thread_provider")

T = TypeVar("T")

DEFAULT_PAGE_CEILING = 250

_FRACTION = re.compile(r"\.(\d+)")


def parse_expires_on(value: str) -> datetime:
    """ACS returns up to 7 fractional digits; datetime accepts 6."""
    normalized = _FRACTION.sub(lambda m: "." + m.group(1)[:6], value.replace("Z", "+00:00"), count=1)
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _identifier(vendor_user_id: str) -> Dict[str, Any]:
    return {"rawId": vendor_user_id, "communicationUser": {"id": vendor_user_id}}


def _participant_body(participant: VendorParticipant) -> Dict[str, Any]:
    return {
        "communicationIdentifier": _identifier(participant.vendor_user_id),
        "displayName": participant.display_name,
    }


def _participant_from_wire(item: Dict[str, Any]) -> Optional[VendorParticipant]:
    identifier = item.get("communicationIdentifier") or {}
    vendor_user_id = (identifier.get("communicationUser") or {}).get("id") or identifier.get("rawId")
    if not vendor_user_id:
        return None
    return VendorParticipant(vendor_user_id=vendor_user_id, display_name=item.get("displayName") or "")


class AcsThreadProvider:
    """
    ThreadProvider over Azure Communication Services.

    Identity endpoints are signed with the resource access key (HMAC);
    chat endpoints use the root identity's bearer token handed in by the
    caller. Transient failures (429, 5xx, network, timeout) are retried;
    terminal failures surface as VendorOperationFailedError.
    """

    def __init__(
        self,
        endpoint: str,
        access_key: str,
        root_identity: str,
        *,
        config: Optional[AcsConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        page_ceiling: int = DEFAULT_PAGE_CEILING,
    ):
        self.config = config or get_acs_config()
        self.endpoint = endpoint.rstrip("/")
        self.root_identity = root_identity
        self.page_ceiling = page_ceiling

        self._hmac = AcsHmacAuth(access_key)
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.timeout_seconds, connect=self.config.connect_timeout_seconds)
        )

        if self.config.enable_retry:
            self.retry_config = ReliabilityConfigs.acs_retry().model_copy(
                update={"retry_condition": should_retry_acs}
            )
        else:
            self.retry_config = None

    async def close(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    # =========================================================================
    # HTTP plumbing
    # =========================================================================

    def _identity_url(self, path: str) -> str:
        return f"{self.endpoint}{path}"

    def _chat_url(self, path: str) -> str:
        return f"{self.endpoint}/chat{path}"

    async def _request(
        self,
        method: str,
        url: str,
        *,
        auth: httpx.Auth,
        api_version: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Optional[Dict[str, Any]]:
        query = {"api-version": api_version, **(params or {})}

        async def _do_http_call() -> Optional[Dict[str, Any]]:
            return await self._execute_http(method, url, auth=auth, json=json, params=query, headers=headers)

        if self.retry_config is None:
            return await _do_http_call()
        return await retry_async(_do_http_call, retry_config=self.retry_config, context=f"acs {method} {url}")

    async def _get_link(self, url: str, auth: httpx.Auth) -> Optional[Dict[str, Any]]:
        """Follow a nextLink, which already carries its own api-version."""

        async def _do_http_call() -> Optional[Dict[str, Any]]:
            return await self._execute_http("GET", url, auth=auth)

        if self.retry_config is None:
            return await _do_http_call()
        return await retry_async(_do_http_call, retry_config=self.retry_config, context=f"acs GET {url}")

    async def _execute_http(
        self,
        method: str,
        url: str,
        *,
        auth: httpx.Auth,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Optional[Dict[str, Any]]:
        log.debug(f"[ACS] {method} {url}")

        try:
            response = await self.http.request(method, url, json=json, params=params, headers=headers, auth=auth)
        except httpx.TimeoutException as e:
            log.error(f"[ACS] Timeout calling {method} {url}: {e}")
            raise AcsTimeoutError(f"Timeout calling {url}: {e}") from e
        except httpx.TransportError as e:
            log.error(f"[ACS] Network error calling {method} {url}: {e}")
            raise AcsNetworkError(f"Network error calling {url}: {e}") from e

        if response.status_code >= 400:
            self._handle_http_error(response, url)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    @staticmethod
    def _handle_http_error(response: httpx.Response, url: str) -> None:
        status_code = response.status_code
        error_text = response.text[:200] if response.text else "Unknown error"

        log.error(f"[ACS] HTTP error {status_code} at {url}: {error_text}")

        if status_code == 400:
            raise AcsBadRequestError(f"Bad request to {url}: {error_text}", status_code)
        if status_code in (401, 403):
            raise AcsAuthenticationError(f"Access denied to {url}: {error_text}", status_code)
        if status_code == 404:
            raise AcsNotFoundError(f"Resource not found at {url}", status_code)
        if status_code == 429:
            retry_after = response.headers.get("retry-after")
            raise AcsRateLimitError(
                f"Rate limit exceeded for {url}",
                status_code,
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status_code >= 500:
            raise AcsServerError(f"Server error at {url}: {error_text}", status_code)
        raise AcsClientError(f"API error {status_code} at {url}: {error_text}", status_code)

    async def _vendor_call(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        thread_id: Optional[str] = None,
    ) -> T:
        try:
            return await call()
        except AcsError as e:
            raise VendorOperationFailedError(operation, str(e), thread_id) from e

    # =========================================================================
    # Identities and tokens
    # =========================================================================

    async def _issue_token(self, vendor_user_id: str) -> VendorToken:
        data = await self._request(
            "POST",
            self._identity_url(f"/identities/{vendor_user_id}/:issueAccessToken"),
            auth=self._hmac,
            api_version=self.config.identity_api_version,
            json={
                "scopes": list(self.config.token_scopes),
                "expiresInMinutes": self.config.token_expires_in_minutes,
            },
        )
        return VendorToken(
            token=data["token"],
            identity=vendor_user_id,
            expires_on=parse_expires_on(data["expiresOn"]),
        )

    async def issue_root_token(self) -> RootToken:
        if not self.root_identity:
            raise VendorOperationFailedError("issue_root_token", "root identity is not configured")
        return await self._vendor_call("issue_root_token", lambda: self._issue_token(self.root_identity))

    async def issue_user_token(self, vendor_user_id: str) -> VendorToken:
        token = await self._vendor_call("issue_user_token", lambda: self._issue_token(vendor_user_id))
        log.info(f"[ACS] Issued access token for identity {vendor_user_id}")
        return token

    async def create_user_identity(self) -> str:
        async def _create() -> str:
            data = await self._request(
                "POST",
                self._identity_url("/identities"),
                auth=self._hmac,
                api_version=self.config.identity_api_version,
                json={"createTokenWithScopes": []},
            )
            return data["identity"]["id"]

        vendor_user_id = await self._vendor_call("create_user_identity", _create)
        log.info(f"[ACS] Created identity {vendor_user_id}")
        return vendor_user_id

    async def delete_user_identity(self, vendor_user_id: str) -> None:
        """Revoke the identity's tokens, then delete it."""

        async def _delete() -> None:
            await self._request(
                "POST",
                self._identity_url(f"/identities/{vendor_user_id}/:revokeAccessTokens"),
                auth=self._hmac,
                api_version=self.config.identity_api_version,
            )
            await self._request(
                "DELETE",
                self._identity_url(f"/identities/{vendor_user_id}"),
                auth=self._hmac,
                api_version=self.config.identity_api_version,
            )

        await self._vendor_call("delete_user_identity", _delete)
        log.info(f"[ACS] Deleted identity {vendor_user_id}")

    # =========================================================================
    # Threads
    # =========================================================================

    async def create_thread(
        self,
        root: RootToken,
        topic: str,
        participants: Sequence[VendorParticipant],
    ) -> str:
        if not participants:
            log.warning(f"[ACS] Creating thread '{topic}' without participants")

        async def _create() -> str:
            data = await self._request(
                "POST",
                self._chat_url("/threads"),
                auth=BearerTokenAuth(root.token),
                api_version=self.config.chat_api_version,
                json={"topic": topic, "participants": [_participant_body(p) for p in participants]},
                headers={"repeatability-request-id": str(uuid.uuid4())},
            )
            return data["chatThread"]["id"]

        thread_id = await self._vendor_call("create_thread", _create)
        log.info(f"[ACS] Created thread {thread_id} '{topic}' with {len(participants)} participant(s)")
        return thread_id

    async def delete_thread(self, thread_id: str, root: RootToken) -> None:
        try:
            await self._request(
                "DELETE",
                self._chat_url(f"/threads/{thread_id}"),
                auth=BearerTokenAuth(root.token),
                api_version=self.config.chat_api_version,
            )
        except AcsNotFoundError:
            log.info(f"[ACS] Thread {thread_id} already deleted")
            return
        except AcsError as e:
            raise VendorOperationFailedError("delete_thread", str(e), thread_id) from e
        log.info(f"[ACS] Deleted thread {thread_id}")

    # =========================================================================
    # Participants
    # =========================================================================

    async def list_participants(self, thread_id: str, root: RootToken) -> List[VendorParticipant]:
        auth = BearerTokenAuth(root.token)

        async def _list() -> List[VendorParticipant]:
            participants: List[VendorParticipant] = []
            data = await self._request(
                "GET",
                self._chat_url(f"/threads/{thread_id}/participants"),
                auth=auth,
                api_version=self.config.chat_api_version,
                params={"maxPageSize": self.config.participant_page_size},
            )
            pages = 1
            while True:
                for item in (data or {}).get("value", []):
                    participant = _participant_from_wire(item)
                    if participant is not None:
                        participants.append(participant)

                next_link = (data or {}).get("nextLink")
                if not next_link:
                    break
                if pages >= self.page_ceiling:
                    log.warning(
                        f"[ACS] Participant listing of thread {thread_id} stopped at the "
                        f"{self.page_ceiling}-page ceiling ({len(participants)} participants)"
                    )
                    break
                data = await self._get_link(next_link, auth)
                pages += 1
            return participants

        participants = await self._vendor_call("list_participants", _list, thread_id)
        log.debug(f"[ACS] Thread {thread_id} has {len(participants)} participant(s)")
        return participants

    async def add_participants(
        self,
        thread_id: str,
        root: RootToken,
        participants: Sequence[VendorParticipant],
    ) -> List[str]:
        if not participants:
            return []

        async def _add() -> Optional[Dict[str, Any]]:
            return await self._request(
                "POST",
                self._chat_url(f"/threads/{thread_id}/participants/:add"),
                auth=BearerTokenAuth(root.token),
                api_version=self.config.chat_api_version,
                json={"participants": [_participant_body(p) for p in participants]},
            )

        data = await self._vendor_call("add_participants", _add, thread_id)

        invalid = {item.get("target") for item in (data or {}).get("invalidParticipants") or []}
        if invalid:
            log.warning(f"[ACS] Thread {thread_id} rejected participant(s): {sorted(i for i in invalid if i)}")

        added = [p.vendor_user_id for p in participants if p.vendor_user_id not in invalid]
        log.info(f"[ACS] Added {len(added)} participant(s) to thread {thread_id}")
        return added

    async def remove_participants(
        self,
        thread_id: str,
        root: RootToken,
        vendor_user_ids: Sequence[str],
    ) -> List[str]:
        auth = BearerTokenAuth(root.token)
        removed: List[str] = []
        failed: List[str] = []

        for vendor_user_id in vendor_user_ids:
            try:
                await self._request(
                    "POST",
                    self._chat_url(f"/threads/{thread_id}/participants/:remove"),
                    auth=auth,
                    api_version=self.config.chat_api_version,
                    json=_identifier(vendor_user_id),
                )
                removed.append(vendor_user_id)
            except AcsError as e:
                log.error(f"[ACS] Failed to remove {vendor_user_id} from thread {thread_id}: {e}")
                failed.append(vendor_user_id)

        if failed:
            log.warning(f"[ACS] Failed to remove participant(s) from thread {thread_id}: {failed}")
        log.info(f"[ACS] Removed {len(removed)} participant(s) from thread {thread_id}")
        return removed
