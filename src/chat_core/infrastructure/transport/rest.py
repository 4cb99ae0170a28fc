"""aiohttp request/response half of the transport."""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

import aiohttp

from chat_core.application.exceptions import ChatError
from chat_core.application.ports.identity import IdentityProvider
from chat_core.infrastructure.transport.serializer import dumps
from chat_core.services.retry_policy import classify_exception, classify_status

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def unwrap(body: Any) -> Any:
    """Strip the ``{"success": ..., "data": ...}`` envelope some endpoints use."""
    if isinstance(body, dict) and "data" in body and not {"id", "_id"} & body.keys():
        return body["data"]
    return body


class RestClient:
    def __init__(
        self,
        base_url: str,
        identity: IdentityProvider,
        *,
        session: aiohttp.ClientSession | None = None,
        read_timeout: float = 10.0,
        write_timeout: float = 20.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._identity = identity
        self._session = session
        self._owns_session = session is None
        self._read_timeout = aiohttp.ClientTimeout(total=read_timeout)
        self._write_timeout = aiohttp.ClientTimeout(total=write_timeout)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    def headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        token = self._identity.auth_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Perform one request; failures are raised as classified ``ChatError``s."""
        request_id = uuid.uuid4().hex
        headers = self.headers()
        headers[REQUEST_ID_HEADER] = request_id
        data = None
        if json is not None:
            headers["Content-Type"] = "application/json"
            data = dumps(json)
        query = {k: str(v) for k, v in (params or {}).items() if v is not None}
        timeout = self._read_timeout if method == "GET" else self._write_timeout

        logger.debug("%s %s [%s]", method, path, request_id)
        try:
            async with self._get_session().request(
                method,
                f"{self._base_url}{path}",
                params=query,
                data=data,
                headers=headers,
                timeout=timeout,
            ) as resp:
                body = await self._read_body(resp)
                if resp.status >= 400:
                    raise classify_status(
                        resp.status, body, operation=operation, correlation_id=request_id,
                    )
                return unwrap(body)
        except ChatError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise classify_exception(
                exc, operation=operation, correlation_id=request_id,
            ) from exc

    @staticmethod
    async def _read_body(resp: aiohttp.ClientResponse) -> Any:
        if resp.status == 204:
            return None
        text = await resp.text()
        if not text:
            return None
        try:
            return await resp.json(content_type=None)
        except ValueError:
            return text
