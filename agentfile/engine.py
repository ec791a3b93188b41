"""
Request pipelines behind the HTTP surface.

Each process_* function takes the raw body and returns {"status_code", "body"}
without touching FastAPI response types, so it can be tested directly.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Callable, Dict, Optional, Tuple

from .config import ConfigError, Settings, get_settings, parse_bool
from .exporter import ExportOptions, export_host_agent
from .host import HostAgentConfig, HostMemoryConfig
from .importer import ImportOptions, import_agent_file
from .parser import (
    DocumentParseError,
    MalformedInputError,
    ParseOptions,
    extract_agent_metadata,
    get_validation_errors,
    parse_agent_file,
)

logger = logging.getLogger("agentfile.engine")


class ErrorEnvelope(Exception):
    """
    Internal control-flow exception.

    The pipelines convert it into the standardized error envelope.
    """

    def __init__(self, status_code: int, code: str, message: str, details: Any = None):
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


def new_request_id() -> str:
    return str(uuid.uuid4())


def _meta(request_id: str, settings: Optional[Settings], latency_ms: Optional[float] = None) -> Dict[str, Any]:
    meta: Dict[str, Any] = {
        "request_id": request_id,
        "service": settings.service_name if settings else "unknown",
    }
    if latency_ms is not None:
        meta["latency_ms"] = latency_ms
    return meta


def build_success_envelope(
    output: Any,
    *,
    request_id: str,
    settings: Settings,
    latency_ms: float,
) -> Dict[str, Any]:
    return {"output": output, "meta": _meta(request_id, settings, latency_ms)}


def build_error_envelope(
    *,
    request_id: str,
    settings: Optional[Settings],
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> Tuple[int, Dict[str, Any]]:
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details,
        },
        "meta": _meta(request_id, settings),
    }
    return status_code, body


def _document_error(exc: DocumentParseError) -> ErrorEnvelope:
    details = exc.details()
    if isinstance(exc, MalformedInputError):
        if any(d["code"] == "max_size_exceeded" for d in details):
            return ErrorEnvelope(413, "PAYLOAD_TOO_LARGE", exc.message, details)
        return ErrorEnvelope(400, "MALFORMED_REQUEST", exc.message, details)
    return ErrorEnvelope(422, "DOCUMENT_INVALID", exc.message, details)


def _parse_options(settings: Settings, params: Dict[str, Any]) -> ParseOptions:
    options = ParseOptions.from_settings(settings)
    for name in ("auto_fix", "strict"):
        if name in params:
            flag = parse_bool(params[name])
            if flag is None:
                raise ErrorEnvelope(400, "MALFORMED_REQUEST", f"Query parameter '{name}' must be a boolean")
            setattr(options, name, flag)
    return options


def _run(operation: str, body: bytes, params: Dict[str, Any], handler: Callable[..., Any]) -> Dict[str, Any]:
    request_id = new_request_id()
    start = time.monotonic()
    settings: Optional[Settings] = None
    try:
        try:
            settings = get_settings()
        except ConfigError as exc:
            raise ErrorEnvelope(500, "INTERNAL_ERROR", str(exc)) from exc
        output = handler(settings, body, params)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "%s request_id=%s status=200 latency_ms=%.2f", operation, request_id, latency_ms
        )
        envelope = build_success_envelope(output, request_id=request_id, settings=settings, latency_ms=latency_ms)
        return {"status_code": 200, "body": envelope}
    except ErrorEnvelope as exc:
        logger.info("%s request_id=%s status=%s code=%s", operation, request_id, exc.status_code, exc.code)
        status_code, body_out = build_error_envelope(
            request_id=request_id,
            settings=settings,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )
        return {"status_code": status_code, "body": body_out}


def _validate(settings: Settings, body: bytes, params: Dict[str, Any]) -> Dict[str, Any]:
    errors = get_validation_errors(body, _parse_options(settings, params))
    return {"valid": errors is None, "errors": errors}


def _parse(settings: Settings, body: bytes, params: Dict[str, Any]) -> Dict[str, Any]:
    try:
        document = parse_agent_file(body, _parse_options(settings, params))
    except DocumentParseError as exc:
        raise _document_error(exc) from exc
    return {"document": document.to_wire()}


def _metadata(settings: Settings, body: bytes, params: Dict[str, Any]) -> Dict[str, Any]:
    if len(body) > settings.max_size_bytes:
        raise ErrorEnvelope(413, "PAYLOAD_TOO_LARGE", "Request body exceeds the configured size limit")
    return {"metadata": extract_agent_metadata(body)}


def _import(settings: Settings, body: bytes, params: Dict[str, Any]) -> Dict[str, Any]:
    try:
        document = parse_agent_file(body, _parse_options(settings, params))
    except DocumentParseError as exc:
        raise _document_error(exc) from exc

    options = ImportOptions.from_settings(settings)
    strategy = params.get("tool_code_strategy")
    if strategy is not None:
        if strategy not in ("skip", "stub", "schema-only"):
            raise ErrorEnvelope(400, "MALFORMED_REQUEST", f"Unknown tool_code_strategy '{strategy}'")
        options.tool_code_strategy = strategy
    if "include_messages" in params:
        flag = parse_bool(params["include_messages"])
        if flag is None:
            raise ErrorEnvelope(400, "MALFORMED_REQUEST", "Query parameter 'include_messages' must be a boolean")
        options.include_messages = flag
    return import_agent_file(document, options).to_payload()


_EXPORT_OPTION_TYPES = {
    "pretty": bool,
    "include_host_metadata": bool,
    "version": str,
    "include_messages": bool,
    "max_messages": int,
    "agent_type": str,
}
_EXPORT_OPTION_FIELDS = tuple(_EXPORT_OPTION_TYPES)


def _export(settings: Settings, body: bytes, params: Dict[str, Any]) -> Dict[str, Any]:
    if len(body) > settings.max_size_bytes:
        raise ErrorEnvelope(413, "PAYLOAD_TOO_LARGE", "Request body exceeds the configured size limit")
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as exc:
        raise ErrorEnvelope(400, "MALFORMED_REQUEST", "Request body must be valid JSON", {"message": str(exc)}) from exc

    if not isinstance(payload, dict) or not isinstance(payload.get("agent"), dict):
        raise ErrorEnvelope(
            400,
            "MALFORMED_REQUEST",
            "Request body must have a top-level 'agent' object",
            [{"path": "agent", "message": "Missing 'agent' field"}],
        )

    options = ExportOptions.from_settings(settings)
    raw_options = payload.get("options") or {}
    if not isinstance(raw_options, dict):
        raise ErrorEnvelope(400, "MALFORMED_REQUEST", "'options' must be an object")
    unknown = sorted(set(raw_options) - set(_EXPORT_OPTION_FIELDS))
    if unknown:
        raise ErrorEnvelope(400, "MALFORMED_REQUEST", f"Unknown export options: {', '.join(unknown)}")
    for name, value in raw_options.items():
        expected = _EXPORT_OPTION_TYPES[name]
        if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
            raise ErrorEnvelope(400, "MALFORMED_REQUEST", f"Export option '{name}' has the wrong type")
        setattr(options, name, value)

    try:
        agent = HostAgentConfig.from_payload(payload["agent"])
        memory = HostMemoryConfig.from_payload(payload["memory"]) if payload.get("memory") is not None else None
    except ValueError as exc:
        raise ErrorEnvelope(400, "MALFORMED_REQUEST", str(exc)) from exc

    return export_host_agent(agent, memory, options).to_payload()


def process_validate(body: bytes, params: Dict[str, Any]) -> Dict[str, Any]:
    return _run("validate", body, params, _validate)


def process_parse(body: bytes, params: Dict[str, Any]) -> Dict[str, Any]:
    return _run("parse", body, params, _parse)


def process_metadata(body: bytes, params: Dict[str, Any]) -> Dict[str, Any]:
    return _run("metadata", body, params, _metadata)


def process_import(body: bytes, params: Dict[str, Any]) -> Dict[str, Any]:
    return _run("import", body, params, _import)


def process_export(body: bytes, params: Dict[str, Any]) -> Dict[str, Any]:
    return _run("export", body, params, _export)
