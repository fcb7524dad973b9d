# =============================================================================
# File: engage/infra/acs/auth.py
# Description: httpx auth flows for ACS (HMAC access key, bearer token)
# =============================================================================

import base64
import hashlib
import hmac
from email.utils import formatdate
from typing import Callable, Generator, Optional

import httpx


def content_hash(body: bytes) -> str:
    return base64.b64encode(hashlib.sha256(body).digest()).decode("ascii")


def compute_signature(access_key: str, string_to_sign: str) -> str:
    digest = hmac.new(base64.b64decode(access_key), string_to_sign.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class AcsHmacAuth(httpx.Auth):
    """
    Signs identity requests with the resource access key.

    String to sign: "<VERB>\\n<path and query>\\n<x-ms-date>;<host>;<content hash>"
    """

    requires_request_body = True

    def __init__(self, access_key: str, clock: Optional[Callable[[], str]] = None):
        self._access_key = access_key
        self._clock = clock or (lambda: formatdate(usegmt=True))

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        date = self._clock()
        body_hash = content_hash(request.content)
        host = request.url.netloc.decode("ascii")
        path_and_query = request.url.raw_path.decode("ascii")

        string_to_sign = f"{request.method.upper()}\n{path_and_query}\n{date};{host};{body_hash}"
        signature = compute_signature(self._access_key, string_to_sign)

        request.headers["x-ms-date"] = date
        request.headers["x-ms-content-sha256"] = body_hash
        request.headers["Authorization"] = (
            f"HMAC-SHA256 SignedHeaders=x-ms-date;host;x-ms-content-sha256&Signature={signature}"
        )
        yield request


class BearerTokenAuth(httpx.Auth):
    """Chat endpoints run as the root identity."""

    def __init__(self, token: str):
        self._token = token

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["Authorization"] = f"Bearer {self._token}"
        yield request
