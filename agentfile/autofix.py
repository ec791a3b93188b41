"""
Pre-validation normalization ("auto-fix") for .af documents.

A normalizer is any callable taking the raw document mapping and returning
a repaired copy. default_normalizer fills safe defaults for fields that are
commonly missing; it never touches a field that is present, so an invalid
value still fails validation.
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from .models import is_iso_timestamp

logger = logging.getLogger("agentfile.autofix")

Normalizer = Callable[[Dict[str, Any]], Dict[str, Any]]

DEFAULT_VERSION = "0.1.0"
DEFAULT_AGENT_TYPE = "letta"

_PROVIDER_PREFIXES = (
    ("gpt-", "openai"),
    ("o1", "openai"),
    ("o3", "openai"),
    ("text-embedding-", "openai"),
    ("claude", "anthropic"),
    ("gemini", "google"),
    ("mistral", "mistral"),
    ("llama", "meta"),
)


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not is_iso_timestamp(value):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def infer_provider(model: str) -> str:
    lowered = model.lower()
    for prefix, provider in _PROVIDER_PREFIXES:
        if lowered.startswith(prefix):
            return provider
    return "unknown"


def _minimal_parameters(params: Any) -> Dict[str, Any]:
    properties = params.get("properties") if isinstance(params, dict) else None
    return {"type": "object", "properties": properties if isinstance(properties, dict) else {}}


def default_normalizer(data: Dict[str, Any], *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Return a repaired deep copy of `data`; the input is never mutated."""
    fixed = copy.deepcopy(data)
    moment = now or datetime.now(timezone.utc)
    stamp = format_timestamp(moment)

    for field in ("created_at", "updated_at"):
        if not fixed.get(field):
            fixed[field] = stamp
            logger.debug("auto-fix: supplied %s", field)

    if not fixed.get("version"):
        fixed["version"] = DEFAULT_VERSION
        logger.debug("auto-fix: defaulted version to %s", DEFAULT_VERSION)

    if not fixed.get("agent_type"):
        fixed["agent_type"] = DEFAULT_AGENT_TYPE
        logger.debug("auto-fix: defaulted agent_type to %s", DEFAULT_AGENT_TYPE)

    for field, empty in (("core_memory", {}), ("messages", []), ("tools", [])):
        if fixed.get(field) is None:
            fixed[field] = empty
            logger.debug("auto-fix: initialized empty %s", field)

    llm_config = fixed.get("llm_config")
    if isinstance(llm_config, dict) and not llm_config.get("provider"):
        model = llm_config.get("model")
        if isinstance(model, str) and model:
            llm_config["provider"] = infer_provider(model)
            logger.debug("auto-fix: inferred llm_config.provider=%s", llm_config["provider"])

    messages = fixed.get("messages")
    if isinstance(messages, list):
        base = _parse_timestamp(fixed.get("created_at")) or moment
        for index, message in enumerate(messages):
            if isinstance(message, dict) and not message.get("timestamp"):
                message["timestamp"] = format_timestamp(base + timedelta(seconds=index))
                logger.debug("auto-fix: synthesized timestamp for message %d", index)

    tools = fixed.get("tools")
    if isinstance(tools, list):
        for index, tool in enumerate(tools):
            if not isinstance(tool, dict):
                continue
            params = tool.get("parameters")
            if (
                not isinstance(params, dict)
                or params.get("type") != "object"
                or not isinstance(params.get("properties"), dict)
            ):
                tool["parameters"] = _minimal_parameters(params)
                logger.debug("auto-fix: coerced parameters of tool %d", index)

    return fixed
