"""PostgREST access for the analytics reads: auth header parsing, clients, error mapping."""

from __future__ import annotations

import logging
from typing import Dict, NoReturn, Optional, Tuple

from fastapi import HTTPException
from postgrest import APIError as PostgrestAPIError
from postgrest import SyncPostgrestClient

from app.config.analytics_settings import ANALYTICS_DB_TIMEOUT_SECONDS
from app.config.supabase_client import SUPABASE_ANON_KEY, SUPABASE_SERVICE_ROLE_KEY, SUPABASE_URL

logger = logging.getLogger(__name__)

# PostgREST / Postgres error codes that carry a meaningful HTTP status.
_STATUS_BY_ERROR_CODE: Dict[str, int] = {
    "PGRST301": 401,  # JWT invalid or expired
    "PGRST302": 401,  # anonymous access disabled
    "42501": 403,  # insufficient_privilege (RLS)
    "42P01": 502,  # undefined_table
}

_STATUS_DETAILS: Dict[int, str] = {
    401: "Supabase authentication required.",
    403: "Access to the analytics data is denied.",
    404: "Analytics resource not found.",
}


def extract_bearer_token(header_value: Optional[str]) -> str:
    """Return the token from an ``Authorization: Bearer <token>`` header or raise 401."""

    if not header_value:
        raise HTTPException(status_code=401, detail="Authentication required.")
    scheme, _, token = header_value.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or " " in token:
        raise HTTPException(status_code=401, detail="Invalid Bearer token.")
    if not token:
        raise HTTPException(status_code=401, detail="Missing Bearer token.")
    return token


def rest_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/rest/v1"


def create_postgrest_client(access_token: str, *, api_key: Optional[str] = None) -> SyncPostgrestClient:
    """Open a read-only PostgREST client for one analytics request.

    ``api_key`` falls back to the anon key, in which case row-level security
    scopes every read to the caller's token.
    """

    resolved_api_key = api_key or SUPABASE_ANON_KEY
    if not SUPABASE_URL or not resolved_api_key:
        raise HTTPException(status_code=500, detail="Supabase is not configured.")

    client = SyncPostgrestClient(
        rest_url(SUPABASE_URL),
        headers={"apikey": resolved_api_key, "Accept": "application/json"},
        timeout=ANALYTICS_DB_TIMEOUT_SECONDS,
    )
    client.auth(access_token)
    return client


def resolve_postgrest_credentials(access_token: str) -> Tuple[str, Optional[str]]:
    """Pick the token/api key pair: service role when configured, else the caller's token."""

    if SUPABASE_SERVICE_ROLE_KEY:
        return SUPABASE_SERVICE_ROLE_KEY, SUPABASE_SERVICE_ROLE_KEY
    return access_token, None


def raise_postgrest_error(exc: PostgrestAPIError, *, context: str) -> NoReturn:
    status_code = postgrest_status(exc)
    logger.error(
        "PostgREST request failed",
        extra={"context": context, "status_code": status_code, "code": exc.code, "error": exc.message},
    )
    detail = _STATUS_DETAILS.get(status_code, "Error while communicating with Supabase.")
    raise HTTPException(status_code=status_code if status_code in _STATUS_DETAILS else 502, detail=detail) from exc


def postgrest_status(exc: PostgrestAPIError) -> int:
    """HTTP status for a PostgREST error; 502 when the code says nothing useful."""

    code = str(exc.code or "").strip()
    if code in _STATUS_BY_ERROR_CODE:
        return _STATUS_BY_ERROR_CODE[code]
    if code.isdigit() and 400 <= int(code) < 600:
        return int(code)
    return 502


__all__ = [
    "create_postgrest_client",
    "extract_bearer_token",
    "postgrest_status",
    "raise_postgrest_error",
    "resolve_postgrest_credentials",
    "rest_url",
]
