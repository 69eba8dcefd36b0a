"""
Photo-to-text WhatsApp backend.
FastAPI application receiving WhatsApp webhooks and replying with the text
read from photographed documents.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from app.dependencies import close_clients, get_counter_store
from app.routers import process_image, webhook

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Log where the API listens on startup and close provider clients on
    shutdown.

    The port shown is taken from ``HOST_PORT`` so Docker-mapped ports are
    reported correctly. Defaults to 8000.
    """
    host_port = os.getenv("HOST_PORT", "8000")
    logger.info(
        "Textsnap API running at:\n"
        "  Local:   http://localhost:%s\n"
        "  Webhook: http://localhost:%s/api/webhook",
        host_port,
        host_port,
    )
    yield
    await close_clients()


app = FastAPI(
    title="Textsnap API",
    description="WhatsApp webhook that digitizes text from photographed documents",
    version=VERSION,
    lifespan=lifespan,
)


@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Include routers
app.include_router(webhook.router, prefix="/api/webhook", tags=["webhook"])
app.include_router(process_image.router, prefix="/api/process-image", tags=["upload"])


@app.get("/")
async def root():
    return {"message": "Textsnap API", "version": VERSION}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/redis")
async def health_redis():
    """
    Ping the rate-limit counter store. Returns 503 when it is unreachable or
    not configured.
    """
    try:
        store = get_counter_store()
    except ValueError as exc:
        raise HTTPException(
            status_code=503,
            detail=f"Counter store unavailable: {exc}",
        )

    try:
        if not await store.ping():
            raise HTTPException(status_code=503, detail="Counter store did not answer ping")
        return {"status": "ok", "counter_store": "reachable"}
    except HTTPException:
        raise
    except Exception as exc:
        logger.error(f"Counter store health check failed: {exc}")
        raise HTTPException(
            status_code=503,
            detail=f"Counter store check failed: {str(exc)}",
        )
