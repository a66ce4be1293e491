"""Read-only access to analytics events and the menu catalog in Supabase."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from fastapi import HTTPException
from httpx import HTTPError as HttpxError
from postgrest import APIError as PostgrestAPIError

from app.config.analytics_settings import ANALYTICS_EVENTS_PAGE_SIZE
from app.services.postgrest_client import create_postgrest_client, raise_postgrest_error

logger = logging.getLogger(__name__)
T = TypeVar("T")

EVENT_COLUMNS = (
    "event_type,branch_id,category_id,item_id,device_type,language,metadata,created_at,session_id"
)
CATEGORY_COLUMNS = "id,name_en,name_ar,is_offers,display_order"
ITEM_COLUMNS = (
    "id,name_en,name_ar,description_en,description_ar,category_id,is_featured,"
    "contains_dairy,contains_nuts,contains_eggs,contains_shellfish,contains_soy,contains_sesame"
)
MODIFIER_COLUMNS = "id,name"
BRANCH_COLUMNS = "id,name"


class SupabaseAnalyticsDAO:
    """DAO reading one restaurant's analytics events and catalog through PostgREST."""

    def __init__(
        self,
        restaurant_id: str,
        access_token: str,
        *,
        api_key: Optional[str] = None,
        page_size: int = ANALYTICS_EVENTS_PAGE_SIZE,
    ):
        self.restaurant_id = str(restaurant_id)
        self.access_token = access_token
        self.api_key = api_key
        self.page_size = max(1, page_size)

    def _client(self):
        return create_postgrest_client(self.access_token, api_key=self.api_key)

    async def fetch_events(
        self,
        since: Optional[datetime],
        until: Optional[datetime] = None,
        event_types: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Return every event for the restaurant at or after ``since`` (all-time when ``None``)."""

        def _request() -> List[Dict[str, Any]]:
            rows: List[Dict[str, Any]] = []
            offset = 0
            with self._client() as client:
                while True:
                    query = (
                        client.table("analytics_events")
                        .select(EVENT_COLUMNS)
                        .eq("restaurant_id", self.restaurant_id)
                    )
                    if since is not None:
                        query = query.gte("created_at", _format_timestamp(since))
                    if until is not None:
                        query = query.lte("created_at", _format_timestamp(until))
                    if event_types:
                        query = query.in_("event_type", list(event_types))
                    response = (
                        query.order("created_at", desc=False)
                        .range(offset, offset + self.page_size - 1)
                        .execute()
                    )
                    page = response.data or []
                    rows.extend(page)
                    if len(page) < self.page_size:
                        return rows
                    offset += self.page_size

        rows = await self._run(_request, context="fetch analytics events")
        logger.debug(
            "Fetched analytics events",
            extra={"restaurant_id": self.restaurant_id, "rows": len(rows), "since": since, "until": until},
        )
        return rows

    async def fetch_categories(self) -> List[Dict[str, Any]]:
        return await self._select_catalog("categories", CATEGORY_COLUMNS, order="display_order")

    async def fetch_items(self) -> List[Dict[str, Any]]:
        return await self._select_catalog("items", ITEM_COLUMNS, order="display_order")

    async def fetch_modifier_groups(self) -> List[Dict[str, Any]]:
        return await self._select_catalog("modifiers", MODIFIER_COLUMNS, order="name")

    async def fetch_branches(self) -> List[Dict[str, Any]]:
        return await self._select_catalog("branches", BRANCH_COLUMNS, order="name")

    async def _select_catalog(self, table: str, columns: str, *, order: str) -> List[Dict[str, Any]]:
        def _request() -> List[Dict[str, Any]]:
            with self._client() as client:
                response = (
                    client.table(table)
                    .select(columns)
                    .eq("restaurant_id", self.restaurant_id)
                    .order(order)
                    .execute()
                )
                return response.data or []

        return await self._run(_request, context=f"fetch {table}")

    async def _run(self, request: Callable[[], T], *, context: str) -> T:
        try:
            return await asyncio.to_thread(request)
        except PostgrestAPIError as exc:  # pragma: no cover - network interaction
            raise_postgrest_error(exc, context=context)
        except HttpxError as exc:  # pragma: no cover - network interaction
            logger.error("Supabase unreachable during %s: %s", context, exc)
            raise HTTPException(status_code=503, detail="Supabase is temporarily unreachable.") from exc


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    normalized = value.astimezone(timezone.utc)
    return normalized.isoformat(timespec="milliseconds").replace("+00:00", "Z")


__all__ = ["SupabaseAnalyticsDAO"]
