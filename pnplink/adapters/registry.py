"""Hub registry REST client (service side)."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Mapping, Optional
from urllib.parse import quote

import aiohttp

from .. import constants
from ..auth import ConnectionString
from ..core import RegistryError

LOGGER = logging.getLogger(__name__)


class RegistryClient:
    """Reads and patches device twins and invokes direct methods.

    The client borrows an ``aiohttp.ClientSession`` when one is supplied and
    otherwise owns one for its lifetime.
    """

    def __init__(
        self,
        connection: ConnectionString,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        base_url: Optional[str] = None,
        api_version: str = constants.HUB_API_VERSION,
        timeout: float = 30.0,
        method_response_timeout: float = 30.0,
    ) -> None:
        self._connection = connection
        self._base_url = (base_url or f"https://{connection.host_name}").rstrip("/")
        self._api_version = api_version
        self._timeout = timeout
        self._method_response_timeout = method_response_timeout
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def list_devices(self) -> list[dict[str, Any]]:
        result = await self._request("GET", "/devices")
        return result if isinstance(result, list) else []

    async def get_twin(self, device_id: str) -> dict[str, Any]:
        result = await self._request("GET", f"/twins/{_quote(device_id)}")
        return result if isinstance(result, dict) else {}

    async def get_model_id(self, device_id: str) -> str:
        twin = await self.get_twin(device_id)
        return str(twin.get("modelId") or "")

    async def patch_twin(
        self, device_id: str, patch: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Merge ``patch`` into the twin's desired properties."""

        body = {"properties": {"desired": dict(patch)}}
        result = await self._request(
            "PATCH",
            f"/twins/{_quote(device_id)}",
            json_body=body,
            headers={"If-Match": "*"},
        )
        return result if isinstance(result, dict) else {}

    async def invoke_method(
        self,
        device_id: str,
        method_name: str,
        payload: Any = None,
        *,
        response_timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        response_timeout = response_timeout or self._method_response_timeout
        body = {
            "methodName": method_name,
            "payload": payload,
            "responseTimeoutInSeconds": int(response_timeout),
            "connectTimeoutInSeconds": int(min(response_timeout, 30)),
        }
        LOGGER.info("Invoking %s on %s", method_name, device_id)
        result = await self._request(
            "POST",
            f"/twins/{_quote(device_id)}/methods",
            json_body=body,
            timeout=self._timeout + response_timeout,
        )
        return result if isinstance(result, dict) else {"payload": result}

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        session = await self._ensure_session()
        url = f"{self._base_url}{path}"
        request_headers = {
            "Authorization": self._connection.sas_token(),
            "Content-Type": constants.JSON_CONTENT_TYPE,
        }
        if headers:
            request_headers.update(headers)

        try:
            async with asyncio.timeout(timeout or self._timeout):
                async with session.request(
                    method,
                    url,
                    params={"api-version": self._api_version},
                    json=json_body,
                    headers=request_headers,
                ) as response:
                    if response.status >= 400:
                        detail = await response.text()
                        raise RegistryError(
                            f"{method} {path} failed with status {response.status}: {detail}",
                            status=response.status,
                        )
                    text = await response.text()
                    return json.loads(text) if text else None
        except asyncio.TimeoutError as exc:
            raise RegistryError(f"{method} {path} timed out") from exc
        except aiohttp.ClientError as exc:
            raise RegistryError(f"{method} {path} failed: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise RegistryError(f"{method} {path} returned invalid JSON") from exc


def _quote(value: str) -> str:
    return quote(value, safe="")
