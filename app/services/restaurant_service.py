"""Helpers to resolve which restaurant a dashboard user belongs to."""

from __future__ import annotations

from typing import Any, Callable, Optional, Sequence, TypeVar

import logging
import time

from httpx import HTTPError as HttpxError
from supabase_auth.errors import AuthApiError, AuthError

from app.config.supabase_client import SUPABASE_URL, get_supabase_client

logger = logging.getLogger(__name__)
T = TypeVar("T")


def _retry_supabase_call(
    operation: Callable[[], T],
    *,
    retries: int = 2,
    backoff_seconds: Sequence[float] = (0.2, 0.5, 1.0),
    label: str,
) -> T:
    """Run a Supabase call with a short retry/backoff strategy."""

    attempts = retries + 1
    for attempt in range(1, attempts + 1):
        start = time.monotonic()
        try:
            result = operation()
            duration_ms = (time.monotonic() - start) * 1000
            logger.debug(
                "Supabase call succeeded",
                extra={
                    "label": label,
                    "duration_ms": round(duration_ms, 2),
                    "supabase_url": SUPABASE_URL,
                },
            )
            return result
        except HttpxError as exc:
            duration_ms = (time.monotonic() - start) * 1000
            logger.warning(
                "Supabase call failed",
                extra={
                    "label": label,
                    "attempt": attempt,
                    "duration_ms": round(duration_ms, 2),
                    "supabase_url": SUPABASE_URL,
                    "error": str(exc),
                },
            )
            if attempt >= attempts:
                raise RuntimeError("Supabase unreachable.") from exc
            delay = backoff_seconds[min(attempt - 1, len(backoff_seconds) - 1)]
            time.sleep(delay)
    raise RuntimeError("Supabase unreachable.")


def get_user_id_for_token(access_token: str) -> Optional[str]:
    """Validate the access token with Supabase Auth and return the user id.

    Returns ``None`` when Supabase rejects the token.
    """

    client = get_supabase_client()
    if client is None:
        raise RuntimeError("Supabase client is not configured.")

    try:
        response = _retry_supabase_call(
            lambda: client.auth.get_user(access_token),
            label="get_user_id_for_token:user",
        )
    except AuthApiError as exc:
        logger.info("Supabase rejected access token: %s", exc)
        return None
    except AuthError as exc:
        raise RuntimeError("Supabase authentication unavailable.") from exc

    user = getattr(response, "user", None)
    user_id = getattr(user, "id", None)
    return str(user_id) if user_id else None


def get_restaurant_id_for_user(user_id: str) -> Optional[str]:
    """Return the restaurant the user is a member of, if any.

    Membership lives in ``restaurant_users``; a user belongs to at most one
    restaurant for dashboard purposes, so the first row wins.
    """

    client = get_supabase_client()
    if client is None:
        raise RuntimeError("Supabase client is not configured.")

    def _fetch_membership() -> Any:
        return (
            client.table("restaurant_users")
            .select("restaurant_id")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )

    response = _retry_supabase_call(
        _fetch_membership,
        label="get_restaurant_id_for_user:membership",
    )
    rows = response.data or []
    if not rows:
        return None
    restaurant_id = rows[0].get("restaurant_id")
    return str(restaurant_id) if restaurant_id else None


__all__ = ["get_restaurant_id_for_user", "get_user_id_for_token"]
