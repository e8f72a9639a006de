from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import httpx

from llm_relay.errors import TransportError
from llm_relay.llm_providers import ProviderDescriptor
from llm_relay.models import ProviderRequest, RawResponse


RETRY_BACKOFF_SEC = 0.5


class ProviderClient(Protocol):
    @property
    def provider_id(self) -> str: ...

    async def send(self, request: ProviderRequest, timeout_sec: float) -> RawResponse: ...


def _redact(value: Any) -> Any:
    if isinstance(value, str):
        if len(value) > 8:
            return value[:4] + "…" + value[-4:]
        return "***"
    return "***"


def redact_headers(headers: dict[str, str]) -> dict[str, str]:
    redacted: dict[str, str] = {}
    for key, val in headers.items():
        key_lower = key.lower()
        if any(token in key_lower for token in ("token", "cookie", "authorization", "session", "key")):
            redacted[key] = _redact(val)
        else:
            redacted[key] = val
    return redacted


def _retry_after_seconds(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class HttpProviderClient:
    """Posts a prepared request to one provider endpoint.

    Transport failures are raised as ``TransportError``; any response that is
    not a transport failure is handed back untouched for the normalizer.
    """

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        client: httpx.AsyncClient,
        credential: str | None = None,
    ) -> None:
        self._descriptor = descriptor
        self._client = client
        self._credential = credential
        self._logger = logging.getLogger("provider_client")

    @property
    def provider_id(self) -> str:
        return self._descriptor.provider_id

    def build_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        headers.update(self._descriptor.headers)
        mode = self._descriptor.auth_mode
        if mode == "bearer" and self._credential:
            headers["Authorization"] = f"Bearer {self._credential}"
        elif mode == "header" and self._credential:
            headers[self._descriptor.auth_header] = self._credential
        return headers

    async def send(self, request: ProviderRequest, timeout_sec: float) -> RawResponse:
        try:
            return await asyncio.wait_for(self._send_with_retries(request, timeout_sec), timeout=timeout_sec)
        except asyncio.TimeoutError as exc:
            raise TransportError("timeout", f"{self.provider_id} timed out after {timeout_sec:.1f}s") from exc

    async def _send_with_retries(self, request: ProviderRequest, timeout_sec: float) -> RawResponse:
        attempt = 0
        retries = max(self._descriptor.retries, 0)
        while True:
            try:
                return await self._send_once(request, timeout_sec)
            except TransportError as exc:
                if exc.category != "network" or attempt >= retries:
                    raise
                self._logger.warning(
                    "Provider %s network error attempt=%s: %s",
                    self.provider_id,
                    attempt + 1,
                    exc,
                )
                await asyncio.sleep(RETRY_BACKOFF_SEC * (attempt + 1))
                attempt += 1

    async def _send_once(self, request: ProviderRequest, timeout_sec: float) -> RawResponse:
        headers = self.build_headers()
        endpoint = self._descriptor.endpoint
        self._logger.info(
            "LLM send provider=%s model=%s path=%s headers=%s bytes=%s",
            self.provider_id,
            request.model,
            endpoint,
            redact_headers(headers),
            len(request.body),
        )
        try:
            resp = await self._client.post(endpoint, content=request.body, headers=headers, timeout=timeout_sec)
        except httpx.TimeoutException as exc:
            raise TransportError("timeout", f"{self.provider_id} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransportError("network", f"{self.provider_id} network error: {exc}") from exc

        status = resp.status_code
        if status == 408:
            raise TransportError("timeout", f"{self.provider_id} returned 408", status_code=status)
        if status in (401, 403):
            raise TransportError("auth_failed", f"{self.provider_id} rejected credentials", status_code=status)
        if status == 429:
            raise TransportError(
                "rate_limited",
                f"{self.provider_id} rate limited",
                status_code=status,
                retry_after=_retry_after_seconds(resp),
            )
        if status >= 500:
            raise TransportError("server_error", f"{self.provider_id} server error {status}", status_code=status)
        self._logger.info("LLM response provider=%s status=%s bytes=%s", self.provider_id, status, len(resp.content))
        return RawResponse(status_code=status, content=resp.content, headers=dict(resp.headers))


def build_clients(
    registry: dict[str, ProviderDescriptor],
    credentials: dict[str, str],
) -> tuple[dict[str, HttpProviderClient], dict[str, httpx.AsyncClient]]:
    adapters: dict[str, HttpProviderClient] = {}
    http_clients: dict[str, httpx.AsyncClient] = {}
    for descriptor in registry.values():
        verify = descriptor.tls_ca_cert_path or True
        http_client = httpx.AsyncClient(
            base_url=descriptor.base_url.rstrip("/"),
            timeout=descriptor.timeout_sec,
            verify=verify,
        )
        credential = credentials.get(descriptor.credential) if descriptor.credential else None
        http_clients[descriptor.provider_id] = http_client
        adapters[descriptor.provider_id] = HttpProviderClient(descriptor, http_client, credential)
    return adapters, http_clients
