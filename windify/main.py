"""Windify transform service: FastAPI app hosting the transform engine.

This is the server side of the remote-call transport. Loads config.yaml
and the engine on startup and exposes POST /api/transform, plus
operational endpoints for health and hot-reload.

Run with:
    uvicorn windify.main:app --port 8000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from windify.config import get_config, load_config, reload_config
from windify.engine import load_engine
from windify.schemas import TransformBody

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = load_config()
    app.state.engine = load_engine(config.engine)
    auth = "on" if config.service.api_key else "off"
    logger.info(f"Transform service ready: engine={config.engine} auth={auth}")
    yield
    logger.info("Transform service stopped")


# CORS middleware must be added before startup, so origins come from a boot-time read.
_origins = load_config().service.allowed_origins

app = FastAPI(title="Windify Transform Service", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Auth dependency
# ---------------------------------------------------------------------------


async def verify_api_key(request: Request) -> None:
    """Reject requests whose X-API-Key differs from service.api_key. Open when unset."""
    expected = get_config().service.api_key
    if expected and request.headers.get("X-API-Key") != expected:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


# ---------------------------------------------------------------------------
# Transform endpoint
# ---------------------------------------------------------------------------


@app.post("/api/transform", dependencies=[Depends(verify_api_key)])
async def transform(body: TransformBody, request: Request):
    """Run the engine on `{css, options}` and return its result as JSON.

    The engine runs in a worker thread so slow inputs never block the loop.
    """
    if not body.css:
        return JSONResponse(status_code=400, content={"error": "CSS content is required"})

    engine = request.app.state.engine
    try:
        result = await run_in_threadpool(engine, body.css, body.options)
    except Exception as e:
        logger.error(f"Error transforming CSS: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to transform CSS", "message": str(e)},
        )

    return result


# ---------------------------------------------------------------------------
# Operational endpoints
# ---------------------------------------------------------------------------


@app.get("/health")
async def health():
    """Liveness check."""
    config = get_config()
    return {"status": "healthy", "engine": config.engine}


@app.post("/reload", dependencies=[Depends(verify_api_key)])
async def reload(request: Request):
    """Hot-reload config.yaml and the engine without a restart."""
    try:
        new_config = reload_config()
        request.app.state.engine = load_engine(new_config.engine)
        return {"status": "reloaded", "engine": new_config.engine}
    except Exception as e:
        logger.error(f"Reload failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Reload failed: {e}")
