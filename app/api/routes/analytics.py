"""Analytics dashboard endpoint."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from app.config.analytics_settings import ANALYTICS_RATE_LIMIT, ANALYTICS_RATE_WINDOW_SECONDS
from app.schemas import AnalyticsResult
from app.security.guards import rate_limit_request
from app.services import restaurant_service
from app.services.analytics_service import AnalyticsUnavailableError, load_analytics
from app.services.analytics_store import SupabaseAnalyticsDAO
from app.services.postgrest_client import extract_bearer_token, resolve_postgrest_credentials

router = APIRouter(prefix="/api/analytics", tags=["analytics"])
logger = logging.getLogger(__name__)


async def get_access_token(
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> str:
    """Extract the Supabase bearer token from the Authorization header."""

    return extract_bearer_token(authorization)


async def get_current_restaurant_id(access_token: str = Depends(get_access_token)) -> str:
    """Resolve the caller's restaurant through Supabase Auth and ``restaurant_users``."""

    def _resolve() -> Optional[str]:
        user_id = restaurant_service.get_user_id_for_token(access_token)
        if not user_id:
            raise HTTPException(status_code=401, detail="Invalid Supabase user.")
        return restaurant_service.get_restaurant_id_for_user(user_id)

    try:
        restaurant_id = await asyncio.to_thread(_resolve)
    except RuntimeError as exc:
        logger.error("Restaurant membership lookup failed: %s", exc)
        raise HTTPException(status_code=503, detail="Supabase is temporarily unreachable.") from exc

    if not restaurant_id:
        raise HTTPException(status_code=404, detail="No restaurant is linked to this account.")
    return restaurant_id


async def get_analytics_dao(
    restaurant_id: str = Depends(get_current_restaurant_id),
    access_token: str = Depends(get_access_token),
) -> SupabaseAnalyticsDAO:
    db_token, api_key = resolve_postgrest_credentials(access_token)
    return SupabaseAnalyticsDAO(restaurant_id, db_token, api_key=api_key)


def get_current_time() -> datetime:
    return datetime.now(timezone.utc)


def enforce_analytics_rate_limit(request: Request) -> None:
    """Throttle per client IP before any Supabase lookup runs."""

    rate_limit_request(
        request,
        scope="analytics",
        limit=ANALYTICS_RATE_LIMIT,
        window_seconds=ANALYTICS_RATE_WINDOW_SECONDS,
    )


@router.get(
    "",
    response_model=AnalyticsResult,
    dependencies=[Depends(enforce_analytics_rate_limit)],
)
async def analytics_report(
    range_value: Optional[str] = Query(default=None, alias="range"),
    dao: SupabaseAnalyticsDAO = Depends(get_analytics_dao),
    now: datetime = Depends(get_current_time),
) -> AnalyticsResult:
    """Return the analytics report for the caller's restaurant.

    Unsupported ``range`` values fall back to the default window instead of
    failing validation.
    """

    try:
        return await load_analytics(dao, range_value, now)
    except AnalyticsUnavailableError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
