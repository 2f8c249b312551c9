from fastapi import FastAPI, Request
import logging
import time

from config import APP_NAME, APP_VERSION
from health_routes import router as health_router
from log_context import CORRELATION_HEADER, configure_logging, set_component, set_correlation_id
from packs_routes import close_pack_service, get_pack_service, router as packs_router

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title=APP_NAME, version=APP_VERSION)


@app.middleware("http")
async def correlation_middleware(request: Request, call_next):
    cid = set_correlation_id(request.headers.get(CORRELATION_HEADER))
    set_component("HTTP")
    started = time.perf_counter()
    status = 500
    try:
        response = await call_next(request)
        status = response.status_code
    finally:
        elapsed = (time.perf_counter() - started) * 1000
        logger.info(f"HTTP {request.method} {request.url.path} responded {status} in {elapsed:.1f} ms")
    response.headers[CORRELATION_HEADER] = cid
    return response


for _router in [packs_router, health_router]:
    app.include_router(_router)


@app.on_event("startup")
async def startup_event():
    """Create the packs root and warm up the shared service."""
    service = get_pack_service()
    try:
        service.root.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Cannot create packs root {service.root}: {e}")
    logger.info(f"{APP_NAME} {APP_VERSION} serving packs from {service.root}")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop pack watchers and drop cached manifests."""
    try:
        close_pack_service()
        logger.info("Pack service closed")
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")
