"""
K8s API errors.

The client library (``aiohttp``) is an implementation detail of the client layer.
Its exceptions are not spread over the rest of the operator. Instead, the API
failures are converted to our own hierarchy, with the original error chained
as the cause. The networking & SSL issues are escalated as they are.

Some of the HTTP statuses have their own classes: they are handled specially
somewhere in the operator (e.g. "not found" as the absence of an object,
"conflict" as an existing object on creation, "forbidden" in the audit events).
"""
import asyncio
import collections.abc
import json
from typing import Collection, Optional

import aiohttp
from typing_extensions import Literal, TypedDict


class RawStatusCause(TypedDict):
    field: str
    reason: str
    message: str


class RawStatusDetails(TypedDict, total=False):
    name: str
    uid: str
    retryAfterSeconds: int
    kind: str
    group: str
    causes: Collection[RawStatusCause]


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.32/#status-v1-meta
class RawStatus(TypedDict, total=False):
    apiVersion: str
    kind: Literal["Status"]
    code: int
    status: Literal["Success", "Failure"]
    reason: str
    message: str
    details: RawStatusDetails


class APIError(Exception):

    def __init__(
            self,
            payload: Optional[RawStatus],
            *,
            status: int,
    ) -> None:
        message = payload.get('message') if payload else None
        super().__init__(message or f"HTTP {status}", payload)
        self._status = status
        self._payload = payload

    @property
    def status(self) -> int:
        return self._status

    @property
    def code(self) -> Optional[int]:
        return self._payload.get('code') if self._payload else None

    @property
    def reason(self) -> Optional[str]:
        return self._payload.get('reason') if self._payload else None

    @property
    def message(self) -> Optional[str]:
        return self._payload.get('message') if self._payload else None

    @property
    def details(self) -> Optional[RawStatusDetails]:
        return self._payload.get('details') if self._payload else None


class APIUnauthorizedError(APIError):
    pass


class APIForbiddenError(APIError):
    pass


class APINotFoundError(APIError):
    pass


class APIConflictError(APIError):
    pass


class APITooManyRequestsError(APIError):
    pass


class APIServerError(APIError):
    pass


def get_error_class(status: int) -> type[APIError]:
    return (
        APIUnauthorizedError if status == 401 else
        APIForbiddenError if status == 403 else
        APINotFoundError if status == 404 else
        APIConflictError if status == 409 else
        APITooManyRequestsError if status == 429 else
        APIServerError if status >= 500 else
        APIError
    )


async def check_response(
        response: aiohttp.ClientResponse,
) -> None:
    """
    Check for the K8s errors, and raise them with the server-provided details.
    """
    if response.status >= 400:

        # Read the body before it is closed by raise_for_status().
        payload: Optional[RawStatus]
        try:
            payload = await response.json()
        except (json.JSONDecodeError, aiohttp.ContentTypeError, aiohttp.ClientConnectionError):
            payload = None

        # Only the statuses are kept: other payloads can contain sensitive data.
        if not isinstance(payload, collections.abc.Mapping) or payload.get('kind') != 'Status':
            payload = None

        cls = get_error_class(response.status)
        try:
            response.raise_for_status()
        except aiohttp.ClientResponseError as e:
            raise cls(payload, status=response.status) from e


# All the failures of the API calls, both the API errors and the networking issues.
API_FAILURES = (APIError, aiohttp.ClientError, asyncio.TimeoutError)
