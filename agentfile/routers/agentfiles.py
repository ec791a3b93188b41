"""
Agent File API.

The request body of validate, parse, metadata and import is the .af document
itself; export takes {"agent", "memory", "options"}. Parse options come from
settings and may be overridden per request with query parameters.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from agentfile.engine import (
    build_error_envelope,
    new_request_id,
    process_export,
    process_import,
    process_metadata,
    process_parse,
    process_validate,
)

logger = logging.getLogger("agentfile.api")

router = APIRouter(prefix="/agentfiles", tags=["agentfiles"])


async def _read(request: Request):
    try:
        return await request.body(), dict(request.query_params)
    except Exception:
        logger.info("failed to read request body for %s", request.url.path)
        return None, None


def _unreadable() -> JSONResponse:
    status_code, body = build_error_envelope(
        request_id=new_request_id(),
        settings=None,
        status_code=400,
        code="MALFORMED_REQUEST",
        message="Failed to read request body",
    )
    return JSONResponse(status_code=status_code, content=body)


def _respond(result: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=result["status_code"], content=result["body"])


@router.post("/validate")
async def validate_agentfile(request: Request) -> JSONResponse:
    """
    Report whether the body is a valid .af document; 200 either way.
    """
    body, params = await _read(request)
    if body is None:
        return _unreadable()
    return _respond(process_validate(body, params))


@router.post("/parse")
async def parse_agentfile(request: Request) -> JSONResponse:
    """
    Parse the body and return the normalized document.
    """
    body, params = await _read(request)
    if body is None:
        return _unreadable()
    return _respond(process_parse(body, params))


@router.post("/metadata")
async def agentfile_metadata(request: Request) -> JSONResponse:
    body, params = await _read(request)
    if body is None:
        return _unreadable()
    return _respond(process_metadata(body, params))


@router.post("/import")
async def import_agentfile(request: Request) -> JSONResponse:
    """
    Convert the body into the host agent configuration plus warnings.

    Query parameters: tool_code_strategy (skip | stub | schema-only),
    include_messages, auto_fix, strict.
    """
    body, params = await _read(request)
    if body is None:
        return _unreadable()
    return _respond(process_import(body, params))


@router.post("/export")
async def export_agentfile(request: Request) -> JSONResponse:
    """
    Convert a host agent payload back into an .af document.
    """
    body, params = await _read(request)
    if body is None:
        return _unreadable()
    return _respond(process_export(body, params))
