"""FastAPI application exposing the restaurant menu analytics API."""

import logging
from typing import Dict

from fastapi import FastAPI, HTTPException

from app.config.analytics_settings import LOG_LEVEL
from app.config.supabase_client import SUPABASE_ANON_KEY, SUPABASE_URL
from app.api.routes.analytics import router as analytics_router

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Menu Analytics")

app.include_router(analytics_router)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/config")
def supabase_config() -> Dict[str, str]:
    if not SUPABASE_URL or not SUPABASE_ANON_KEY:
        raise HTTPException(status_code=500, detail="Supabase configuration missing.")
    return {"supabaseUrl": SUPABASE_URL, "supabaseAnonKey": SUPABASE_ANON_KEY}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="127.0.0.1", port=8000, reload=True)
