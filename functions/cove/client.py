"""
Cove Data Protection protocol client.

Cove speaks JSON-RPC 2.0 against a single POST endpoint and chains a
short-lived session token ("visa") through every exchange:

1. Login(partner, username, password) returns a visa.
2. Every later call sends the visa in the request body.
3. Every response carries a new visa; the previous one is dead.

The current visa lives in the shared store (never in this process), and
calls that read or rotate it are serialized by a DistributedLock. The same
visa also authenticates the DRaaS REST API (as a bearer token) and the
per-device storage nodes (at body level, next to a node-scoped token).
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import requests

from backend.store import KeyValueStore
from cove import keys
from cove.errors import (
    ConnectorAuthError,
    ConnectorError,
    ConnectorTransportError,
)
from cove.lock import DistributedLock
from cove.models import HealthCheckResult
from cove.rate_limiter import RateLimiter
from cove.retry import RetryPolicy

logger = logging.getLogger(__name__)

LOGIN_METHOD = "Login"
REQUEST_ID = "jsonrpc"
VISA_TTL_SECONDS = 840  # 14 minutes, one under the service's 15-minute expiry
LOGIN_TIMEOUT_SECONDS = 15
ARTIFACT_TIMEOUT_SECONDS = 15
BATCH_LOCK_MS_PER_CALL = 1_000
BATCH_LOCK_BUFFER_MS = 10_000
STORAGE_NODE_RPC_PATH = "/repserv_json"
AUTH_ERROR_CODES = {-32001, -32002}
JSONAPI_MEDIA_TYPE = "application/vnd.api+json"


@dataclass
class CoveConfig:
    tool_id: str = "cove"
    partner: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    api_url: str = "https://api.backup.management/jsonapi"
    draas_url: str = "https://api.backup.management/draas/actual-statistics/v1"
    rate_limit_max: int = 30
    rate_limit_window_ms: int = 60_000
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    retry_base_delay: float = 1.0

    @classmethod
    def from_settings(cls, settings) -> "CoveConfig":
        return cls(
            tool_id=settings.cove_tool_id,
            partner=settings.cove_partner,
            username=settings.cove_username,
            password=settings.cove_password,
            api_url=settings.cove_api_url,
            draas_url=settings.cove_draas_url,
            rate_limit_max=settings.cove_rate_limit_max,
            rate_limit_window_ms=settings.cove_rate_limit_window_ms,
            timeout_seconds=settings.cove_timeout_seconds,
            max_attempts=settings.cove_max_attempts,
        )


@dataclass
class RpcCall:
    method: str
    params: Optional[dict[str, Any]] = field(default=None)


class CoveClient:
    def __init__(
        self,
        config: CoveConfig,
        store: KeyValueStore,
        *,
        session: Optional[requests.Session] = None,
    ):
        self.config = config
        self.store = store
        self.session = session or requests.Session()
        self.rate_limiter = RateLimiter(
            store,
            config.tool_id,
            max_requests=config.rate_limit_max,
            window_ms=config.rate_limit_window_ms,
        )
        self.lock = DistributedLock(store, keys.lock_key(config.tool_id))
        self.retry_policy = RetryPolicy(
            max_attempts=config.max_attempts,
            base_delay=config.retry_base_delay,
            should_retry=self._should_retry,
            on_retry=self._on_retry,
        )
        self.visa_key = keys.visa_key(config.tool_id)
        self.partner_id_key = keys.partner_id_key(config.tool_id)

    @property
    def tool_id(self) -> str:
        return self.config.tool_id

    # --- Primary JSON-RPC protocol -------------------------------------------

    async def call(self, method: str, params: Optional[dict[str, Any]] = None) -> Any:
        """
        Execute one JSON-RPC method with rate limiting, visa management and retries.

        Raises:
            ConnectorAuthError: If the visa cannot be (re)established.
            ConnectorError: For non-retryable failures, or once retries run out.
        """
        await self.rate_limiter.acquire()
        return await self.retry_policy.run(lambda: self._serialized_call(method, params))

    async def call_batch(self, calls: list[RpcCall]) -> list[Any]:
        """
        Execute several calls under one lock acquisition.

        A failing item yields None in its slot; the remaining calls still run.
        """
        if not calls:
            return []
        if len(calls) == 1:
            try:
                return [await self.call(calls[0].method, calls[0].params)]
            except ConnectorError as exc:
                logger.warning("Batch call %s failed: %s", calls[0].method, exc)
                return [None]

        await self.rate_limiter.acquire()
        ttl_ms = len(calls) * BATCH_LOCK_MS_PER_CALL + BATCH_LOCK_BUFFER_MS
        results: list[Any] = []
        async with self.lock.hold(ttl_ms=ttl_ms):
            for item in calls:
                results.append(await self._batch_item(item))
        return results

    async def _batch_item(self, item: RpcCall) -> Any:
        try:
            return await self._execute_call(item.method, item.params)
        except ConnectorAuthError:
            # Visa died mid-batch; drop it and retry this one call.
            await self.invalidate_visa()
            try:
                return await self._execute_call(item.method, item.params)
            except ConnectorError as exc:
                logger.warning("Batch call %s failed after re-login: %s", item.method, exc)
                return None
        except ConnectorError as exc:
            logger.warning("Batch call %s failed: %s", item.method, exc)
            return None

    async def _serialized_call(self, method: str, params: Optional[dict[str, Any]]) -> Any:
        if method == LOGIN_METHOD:
            return await self._execute_call(method, params)
        async with self.lock.hold():
            return await self._execute_call(method, params)

    async def _execute_call(self, method: str, params: Optional[dict[str, Any]]) -> Any:
        body: dict[str, Any] = {"jsonrpc": "2.0", "id": REQUEST_ID, "method": method}
        if method != LOGIN_METHOD:
            body["visa"] = await self.get_or_refresh_visa()
        if params is not None:
            body["params"] = params

        response = await self._send(
            "POST", self.config.api_url, json=body, timeout=self.config.timeout_seconds
        )
        payload = self._decode_json(response, method)

        # Every response rotates the visa, errors included.
        await self._store_visa(payload.get("visa"))

        error = payload.get("error")
        if error:
            logger.error("%s JSON-RPC error: %s", method, error)
            code = error.get("code")
            message = error.get("message", "")
            if code in AUTH_ERROR_CODES:
                raise ConnectorAuthError(self.tool_id, f"Visa expired or invalid: {message}")
            raise ConnectorError(self.tool_id, f"JSON-RPC error {code}: {message}")

        result = payload.get("result")
        if result is None:
            raise ConnectorError(self.tool_id, f"No result in response for method {method}")
        return result

    # --- Session visa --------------------------------------------------------

    async def get_or_refresh_visa(self) -> str:
        cached = await self.store.get(self.visa_key)
        if cached:
            return cached
        return await self.login()

    async def invalidate_visa(self) -> None:
        await self.store.delete(self.visa_key)

    async def _store_visa(self, visa: Optional[str]) -> None:
        if visa:
            await self.store.set(self.visa_key, visa, ttl_seconds=VISA_TTL_SECONDS)

    async def login(self) -> str:
        """Exchange the long-lived credentials for a fresh visa and store it."""
        config = self.config
        if not (config.partner and config.username and config.password):
            raise ConnectorAuthError(
                self.tool_id, "Missing Cove credentials (partner, username, password)"
            )

        body = {
            "jsonrpc": "2.0",
            "id": REQUEST_ID,
            "method": LOGIN_METHOD,
            "params": {
                "partner": config.partner,
                "username": config.username,
                "password": config.password,
            },
        }
        try:
            response = await self._send(
                "POST", config.api_url, json=body, timeout=LOGIN_TIMEOUT_SECONDS
            )
        except ConnectorTransportError as exc:
            raise ConnectorAuthError(self.tool_id, f"Login request failed: {exc}") from exc
        if response.status_code >= 400:
            raise ConnectorAuthError(
                self.tool_id, f"Login HTTP {response.status_code}: {response.reason}"
            )

        payload = self._decode_json(response, LOGIN_METHOD)
        if payload.get("error"):
            message = payload["error"].get("message", "unknown error")
            raise ConnectorAuthError(self.tool_id, f"Login failed: {message}")

        visa = payload.get("visa")
        if not visa:
            raise ConnectorAuthError(self.tool_id, "Login succeeded but no visa returned")
        await self._store_visa(visa)

        # Login wraps the user info one level deeper than other methods.
        result = payload.get("result") or {}
        user_info = result.get("result", result) if isinstance(result, dict) else {}
        partner_id = user_info.get("PartnerId") if isinstance(user_info, dict) else None
        if partner_id:
            await self.store.set(
                self.partner_id_key, str(partner_id), ttl_seconds=VISA_TTL_SECONDS
            )
        return visa

    async def get_partner_id(self) -> int:
        """Root partner id from the last login; forces a fresh login if unknown."""
        cached = await self.store.get(self.partner_id_key)
        if cached:
            return int(cached)

        await self.invalidate_visa()
        await self.login()

        partner_id = await self.store.get(self.partner_id_key)
        if not partner_id:
            raise ConnectorAuthError(self.tool_id, "Login did not return a PartnerId")
        return int(partner_id)

    # --- DRaaS REST protocol -------------------------------------------------

    async def draas_get(self, path: str, query: Optional[dict[str, str]] = None) -> Any:
        await self.rate_limiter.acquire()
        return await self.retry_policy.run(
            lambda: self._draas_request("GET", path, params=query)
        )

    async def draas_post(self, path: str, body: Any) -> Any:
        await self.rate_limiter.acquire()
        return await self.retry_policy.run(
            lambda: self._draas_request("POST", path, json=body)
        )

    async def _draas_request(self, method: str, path: str, **kwargs) -> Any:
        # Reads the visa without the lock. A concurrent rotation can make this
        # request fail with 401; the retry policy then logs in again.
        visa = await self.get_or_refresh_visa()
        headers = {
            "Accept": JSONAPI_MEDIA_TYPE,
            "Content-Type": JSONAPI_MEDIA_TYPE,
            "Authorization": f"Bearer {visa}",
        }
        response = await self._send(
            method,
            f"{self.config.draas_url}{path}",
            headers=headers,
            timeout=self.config.timeout_seconds,
            **kwargs,
        )
        return self._decode_json(response, f"DRaaS {method} {path}")

    async def fetch_artifact(self, url: str) -> tuple[bytes, Optional[str]]:
        """Download a temporary signed URL. Returns (body, content type)."""
        response = await self._send("GET", url, timeout=ARTIFACT_TIMEOUT_SECONDS)
        self._raise_for_status(response, "Artifact download")
        return response.content, response.headers.get("content-type")

    # --- Storage node sub-protocol -------------------------------------------

    async def call_storage_node(
        self, node_url: str, method: str, params: dict[str, Any]
    ) -> Any:
        """
        Execute a JSON-RPC call against a device's storage node.

        The node-scoped token travels in params; the current visa goes at body
        level and the node may hand back a rotated one, so the call holds the lock.
        """
        await self.rate_limiter.acquire()
        async with self.lock.hold():
            body = {
                "jsonrpc": "2.0",
                "id": REQUEST_ID,
                "method": method,
                "params": params,
                "visa": await self.get_or_refresh_visa(),
            }
            response = await self._send(
                "POST",
                f"{node_url}{STORAGE_NODE_RPC_PATH}",
                json=body,
                timeout=self.config.timeout_seconds,
            )
            payload = self._decode_json(response, f"Storage node {method}")
            await self._store_visa(payload.get("visa"))

        error = payload.get("error")
        if error:
            logger.error("Storage node %s error: %s", method, error)
            raise ConnectorError(
                self.tool_id,
                f"Storage node error {error.get('code')}: {error.get('message', '')}",
            )
        result = payload.get("result")
        if result is None:
            raise ConnectorError(self.tool_id, f"No result from storage node {method}")
        return result

    # --- Health check ----------------------------------------------------------

    async def health_check(self) -> HealthCheckResult:
        """Force a fresh login and report the outcome. Never raises."""
        start = time.perf_counter()
        try:
            await self.invalidate_visa()
            await self.login()
            return HealthCheckResult(ok=True, latency_ms=_elapsed_ms(start))
        except Exception as exc:
            return HealthCheckResult(
                ok=False, latency_ms=_elapsed_ms(start), message=str(exc)
            )

    # --- Transport -------------------------------------------------------------

    async def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return await asyncio.to_thread(self.session.request, method, url, **kwargs)
        except requests.RequestException as exc:
            raise ConnectorTransportError(self.tool_id, f"{method} {url} failed: {exc}") from exc

    def _raise_for_status(self, response: requests.Response, context: str) -> None:
        status = response.status_code
        if status == 401:
            raise ConnectorAuthError(self.tool_id, f"{context} HTTP 401: {response.reason}")
        if status >= 400:
            raise ConnectorError(
                self.tool_id,
                f"{context} HTTP {status}: {response.reason}",
                status,
                response.text,
            )

    def _decode_json(self, response: requests.Response, context: str) -> Any:
        self._raise_for_status(response, context)
        try:
            return response.json()
        except ValueError as exc:
            raise ConnectorError(
                self.tool_id, f"{context} returned invalid JSON", response.status_code
            ) from exc

    def _should_retry(self, error: BaseException) -> bool:
        if isinstance(error, (ConnectorAuthError, ConnectorTransportError)):
            return True
        if isinstance(error, ConnectorError):
            return 500 <= (error.status_code or 0) < 600
        return False

    async def _on_retry(self, attempt: int, error: BaseException) -> None:
        if isinstance(error, ConnectorAuthError):
            await self.invalidate_visa()

    async def close(self) -> None:
        self.session.close()


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
