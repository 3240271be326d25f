"""
client/api.py
Async client for the Rainbow Tour Guides API.
Reads go through a QueryCache; slot mutations invalidate the guide's
availability entries once the server confirms them.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from client.query_cache import QueryCache, QueryError, QueryResult
from shared.utils.slots import ALLOWED_DURATIONS

logger = logging.getLogger(__name__)


class SlotValidationError(ValueError):
    """Slot input rejected before any request is sent."""


class ApiError(Exception):
    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and "detail" in body:
        detail = body["detail"]
        return detail if isinstance(detail, str) else str(detail)
    return response.text


def validate_slot(guide_id: str, start_time: datetime, duration_hours: int, now: Optional[datetime] = None) -> None:
    if not guide_id:
        raise SlotValidationError("guideId is required")
    if isinstance(duration_hours, bool) or duration_hours not in ALLOWED_DURATIONS:
        raise SlotValidationError(f"durationHours must be one of {list(ALLOWED_DURATIONS)}")
    if start_time.tzinfo is None:
        raise SlotValidationError("startTime must include a timezone offset")
    if start_time <= (now or datetime.now(timezone.utc)):
        raise SlotValidationError("startTime must be in the future")


class RainbowApiClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        cache: Optional[QueryCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: httpx.Timeout = httpx.Timeout(5.0),
    ):
        self.base_url = base_url
        self.token = token
        self.cache = cache or QueryCache()
        self._transport = transport
        self._timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                transport=self._transport,
                timeout=self._timeout,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RainbowApiClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        client = await self._get_client()
        headers = kwargs.pop("headers", {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        response = await client.request(method, path, headers=headers, **kwargs)
        if response.is_error:
            detail = _error_detail(response)
            logger.warning(f"{method} {path} failed ({response.status_code}): {detail}")
            raise ApiError(response.status_code, detail)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def _query(self, method: str, path: str, **kwargs) -> Any:
        try:
            return await self._request(method, path, **kwargs)
        except ApiError as e:
            raise QueryError(e.detail, e.status_code) from e
        except httpx.HTTPError as e:
            raise QueryError(str(e) or e.__class__.__name__) from e

    # ── Availability ─────────────────────────────────────────
    async def list_slots(
        self,
        guide_id: str,
        start: datetime,
        end: datetime,
        status: Optional[str] = None,
    ) -> QueryResult:
        key = ("availability", str(guide_id), start.isoformat(), end.isoformat(), status)
        params = {"guideId": str(guide_id), "from": start.isoformat(), "to": end.isoformat()}
        if status:
            params["status"] = status
        return await self.cache.fetch(key, lambda: self._query("GET", "/api/availability", params=params))

    async def create_slot(self, guide_id: str, start_time: datetime, duration_hours: int) -> dict:
        """Raises SlotValidationError before sending, ApiError when the server refuses."""
        validate_slot(str(guide_id), start_time, duration_hours)
        slot = await self._request(
            "POST",
            "/api/guides/availability",
            json={
                "guideId": str(guide_id),
                "startTime": start_time.isoformat(),
                "durationHours": duration_hours,
            },
        )
        self.cache.invalidate(("availability", str(guide_id)))
        return slot

    async def delete_slot(self, slot_id: str, guide_id: str) -> None:
        await self._request("DELETE", f"/api/availability/{slot_id}")
        self.cache.invalidate(("availability", str(guide_id)))

    # ── Guides ───────────────────────────────────────────────
    async def get_guide(self, handle: str) -> QueryResult:
        return await self.cache.fetch(
            ("guides", handle),
            lambda: self._query("GET", f"/api/guides/{handle}"),
        )

    async def quote(self, handle: str, duration: int, travelers: int = 1) -> QueryResult:
        """Always asks the server; quotes follow the guide's current rate."""
        try:
            data = await self._query(
                "GET",
                f"/api/guides/{handle}/quote",
                params={"duration": duration, "travelers": travelers},
            )
        except QueryError as e:
            return QueryResult(error=e.message, status_code=e.status_code)
        return QueryResult(data=data)
