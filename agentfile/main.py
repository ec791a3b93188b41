from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import ConfigError, configure_logging, get_settings
from .engine import build_error_envelope, new_request_id
from .routers import agentfiles as agentfiles_router


logger = logging.getLogger("agentfile")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging from settings on startup."""
    configure_logging(get_settings().log_level)
    yield


app = FastAPI(title="Agent File Toolbox", version="0.1.0", lifespan=lifespan)


# CORS: controlled by env AF_CORS_ORIGINS (e.g. * or http://localhost:3000)
_cors_origins_list = [o.strip() for o in get_settings().cors_origins.strip().split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(agentfiles_router.router)


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s", request.url.path)
    status_code, body = build_error_envelope(
        request_id=new_request_id(),
        settings=None,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Internal server error",
        details={"message": str(exc)},
    )
    return JSONResponse(status_code=status_code, content=body)


@app.get("/")
async def root() -> Dict[str, Any]:
    """
    Service metadata endpoint.
    """
    return {
        "service": "agentfile-toolbox",
        "docs": "/docs",
        "health": "/health",
        "endpoints": [route.path for route in agentfiles_router.router.routes],
    }


@app.get("/health")
async def health() -> JSONResponse:
    """
    Simple health check. Returns 200 when settings load successfully.
    """
    try:
        settings = get_settings()
    except ConfigError as exc:
        status_code, body = build_error_envelope(
            request_id=new_request_id(),
            settings=None,
            status_code=500,
            code="INTERNAL_ERROR",
            message=str(exc),
        )
        return JSONResponse(status_code=status_code, content=body)

    payload = {
        "status": "ok",
        "service": settings.service_name,
        "max_size_bytes": settings.max_size_bytes,
        "auto_fix": settings.auto_fix,
        "strict": settings.strict,
    }
    return JSONResponse(status_code=200, content=payload)


def get_app() -> FastAPI:
    """Convenience accessor for external runners."""
    return app
