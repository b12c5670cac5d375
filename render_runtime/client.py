"""
Render Network Runtime SDK: Python client.

Talks to the Render Network REST API with ``httpx`` and to the event
stream with ``websockets``.

Usage::

    from render_runtime import RenderRuntime

    runtime = RenderRuntime(api_key="rk_...", creator_account_id="creator-1")
    await runtime.connect("jobs")
    job = await runtime.jobs.submit_render_job(RenderJobConfig(scene_id="scene-1"))
    await runtime.stream.subscribe_to_job(job.data.id)
    # ... use runtime.jobs, runtime.stream
    await runtime.disconnect()
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, TypeVar
from urllib.parse import quote as url_quote

import httpx
from pydantic import BaseModel, ValidationError

from render_runtime.constants import RENDER_API_ENDPOINTS
from render_runtime.events import EventHandler, StreamManager
from render_runtime.jobs import JobOrchestrator
from render_runtime.types import (
    ApiResponse,
    ChannelGroup,
    CostEstimate,
    ErrorKind,
    InferenceResults,
    JobHistory,
    JobInfo,
    RuntimeConfig,
    StreamConfig,
    StreamEventType,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class _HttpClient:
    """Thin wrapper around httpx that turns every outcome into an :class:`ApiResponse`."""

    def __init__(
        self,
        api_endpoint: str,
        api_key: str,
        creator_account_id: str,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = api_endpoint.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "X-Creator-ID": creator_account_id,
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    async def request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        query: dict[str, Any] | None = None,
        _retries: int = 4,
        _attempt: int = 0,
    ) -> ApiResponse[Any]:
        """Make an authenticated request to the API.

        Never raises for network or HTTP failures; they come back as
        ``ApiResponse(success=False, ...)``. Retries 429 responses up to
        4 times with 5s, 10s, 20s, 40s delays (jittered).
        """
        params = {k: v for k, v in (query or {}).items() if v is not None} or None
        try:
            response = await self._client.request(
                method=method,
                url=path,
                json=body,
                params=params,
            )
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", method, path, e)
            return ApiResponse.fail(str(e) or type(e).__name__, ErrorKind.NETWORK)

        # Auto-retry on 429 with exponential backoff + jitter
        if response.status_code == 429 and _retries > 0:
            try:
                retry_after = float(response.headers.get("retry-after", "0"))
            except ValueError:
                retry_after = 0.0
            exp_delay = min(5 * (2 ** _attempt), 60)
            delay = max(retry_after, exp_delay)
            delay *= 0.8 + random.random() * 0.4
            logger.info(
                "Rate limited (429) on %s, retrying in %.1fs (attempt %d/%d)",
                path, delay, _attempt + 1, _attempt + _retries,
            )
            await asyncio.sleep(delay)
            return await self.request(method, path, body, query, _retries - 1, _attempt + 1)

        # Only pass a short message through; never the raw body
        if response.status_code >= 400:
            try:
                err_data = response.json()
                err_msg = err_data.get("message") or err_data.get("error")
            except (ValueError, AttributeError):
                err_msg = None
            kind = ErrorKind.NOT_FOUND if response.status_code == 404 else ErrorKind.HTTP
            return ApiResponse.fail(
                str(err_msg) if err_msg else f"API Error: {response.status_code}",
                kind,
            )

        if response.status_code == 204 or not response.content:
            return ApiResponse.ok({})

        try:
            return ApiResponse.ok(response.json())
        except ValueError:
            return ApiResponse.fail(
                f"Invalid JSON in response to {method} {path}", ErrorKind.INVALID_RESPONSE
            )

    async def close(self) -> None:
        await self._client.aclose()


def _parse(result: ApiResponse[Any], model: type[M]) -> ApiResponse[M]:
    """Validate a successful payload into ``model``."""
    if not result.success:
        return ApiResponse[model].fail(result.error or "Request failed", result.error_kind or ErrorKind.HTTP)
    try:
        return ApiResponse[model].ok(model.model_validate(result.data))
    except ValidationError as e:
        logger.warning("Unexpected %s payload: %s", model.__name__, e)
        return ApiResponse[model].fail(
            f"Invalid {model.__name__} in response", ErrorKind.INVALID_RESPONSE
        )


class RenderApiClient:
    """The job endpoints of the Render Network REST API."""

    def __init__(self, http: _HttpClient) -> None:
        self._http = http

    async def create_job(self, params: dict[str, Any]) -> ApiResponse[JobInfo]:
        return _parse(await self._http.request("POST", "/jobs", params), JobInfo)

    async def get_job(self, job_id: str) -> ApiResponse[JobInfo]:
        return _parse(
            await self._http.request("GET", f"/jobs/{url_quote(job_id, safe='')}"), JobInfo
        )

    async def cancel_job(self, job_id: str) -> ApiResponse[Any]:
        return await self._http.request("POST", f"/jobs/{url_quote(job_id, safe='')}/cancel")

    async def list_jobs(
        self,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> ApiResponse[JobHistory]:
        result = await self._http.request(
            "GET", "/jobs", query={"status": status, "limit": limit, "offset": offset}
        )
        return _parse(result, JobHistory)

    async def estimate_job_cost(self, params: dict[str, Any]) -> ApiResponse[CostEstimate]:
        return _parse(await self._http.request("POST", "/jobs/estimate", params), CostEstimate)

    async def submit_ai_job(self, params: dict[str, Any]) -> ApiResponse[JobInfo]:
        return _parse(await self._http.request("POST", "/ai/jobs", params), JobInfo)

    async def get_ai_job_results(self, job_id: str) -> ApiResponse[InferenceResults]:
        result = await self._http.request(
            "GET", f"/ai/jobs/{url_quote(job_id, safe='')}/results"
        )
        return _parse(result, InferenceResults)


class RenderRuntime:
    """
    The main Render Network client for Python.

    Bundles the REST job workflows (``jobs``) and the real-time event
    stream (``stream``). The two are independent; this class only
    owns their shared credentials and lifetimes.
    """

    def __init__(
        self,
        api_key: str,
        creator_account_id: str,
        api_endpoint: str | None = None,
        timeout_seconds: float = 30.0,
        stream: StreamConfig | None = None,
    ) -> None:
        self._http = _HttpClient(
            api_endpoint or RENDER_API_ENDPOINTS["production"],
            api_key,
            creator_account_id,
            timeout=timeout_seconds,
        )
        self.api = RenderApiClient(self._http)
        self.jobs = JobOrchestrator(self.api)
        self.stream = StreamManager.from_config(api_key, stream or StreamConfig())

    @classmethod
    def from_config(cls, config: RuntimeConfig) -> RenderRuntime:
        return cls(
            api_key=config.api_key,
            creator_account_id=config.creator_account_id,
            api_endpoint=config.api_endpoint,
            timeout_seconds=config.timeout_seconds,
            stream=config.stream,
        )

    @property
    def is_connected(self) -> bool:
        """Whether the event stream is currently open."""
        return self.stream.is_active()

    async def connect(self, channel_group: ChannelGroup = "jobs") -> None:
        """Open the event stream for ``channel_group``."""
        await self.stream.connect(channel_group)

    async def disconnect(self) -> None:
        """Close the event stream and the HTTP client."""
        await self.stream.disconnect()
        await self._http.close()
        logger.info("Disconnected from Render Network")

    # ---- Event shortcuts ----

    def on(self, event_type: StreamEventType | str, handler: EventHandler) -> None:
        """Subscribe to a specific event type."""
        self.stream.subscribe(event_type, handler)

    def off(self, event_type: StreamEventType | str, handler: EventHandler | None = None) -> None:
        """Unsubscribe from an event type."""
        self.stream.unsubscribe(event_type, handler)
