"""
Convert a host agent configuration back into an Agent File document.

Export fails open: details the .af format cannot hold are listed in
ExportMetadata.omitted_features instead of raising.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .autofix import DEFAULT_AGENT_TYPE, DEFAULT_VERSION, format_timestamp
from .config import Settings
from .host import Dynamic, HostAgentConfig, HostChatTurn, HostMemoryConfig, HostTool, ModelDescriptor, Static
from .importer import STUB_SUFFIX
from .integrity import REQUIRED_MEMORY_LABELS
from .models import (
    DEPRECATED_API_KEY,
    EXTENSION_KEY,
    AgentDocument,
    LLMConfig,
    MemoryBlock,
    Message,
    Tool,
    is_iso_timestamp,
    is_semver,
)
from .parser import serialize_agent_file

logger = logging.getLogger("agentfile.exporter")

DYNAMIC_INSTRUCTIONS_PLACEHOLDER = "Dynamic instructions (see metadata)"
DYNAMIC_MODEL_DEFAULT = {"provider": "openai", "model": "gpt-4"}


@dataclass
class ExportOptions:
    pretty: bool = True
    include_host_metadata: bool = True
    # Falls back to the version recorded at import, then 0.1.0.
    version: Optional[str] = None
    include_messages: bool = True
    max_messages: int = 1000
    agent_type: str = DEFAULT_AGENT_TYPE

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExportOptions":
        return cls(max_messages=settings.max_export_messages)


@dataclass
class ExportMetadata:
    exported_at: str
    omitted_features: List[str] = field(default_factory=list)
    tool_count: int = 0
    message_count: int = 0


@dataclass
class ExportResult:
    content: str
    document: AgentDocument
    metadata: ExportMetadata

    def to_payload(self) -> Dict[str, Any]:
        return {"content": self.content, "document": self.document.to_wire(), "metadata": asdict(self.metadata)}


def _export_model(model: Any, omitted: List[str]) -> Dict[str, Any]:
    if isinstance(model, Dynamic):
        omitted.append("dynamic_model")
        return dict(DYNAMIC_MODEL_DEFAULT, _dynamic=True)

    value = model.value if isinstance(model, Static) else model
    if isinstance(value, ModelDescriptor):
        provider, name, params = value.provider, value.name, dict(value.params)
    elif isinstance(value, dict):
        params = dict(value)
        provider = params.pop("provider", None)
        name = params.pop("name", None) or params.pop("model", None)
    else:
        provider, name, params = None, value if isinstance(value, str) else None, {}

    params.pop(DEPRECATED_API_KEY, None)
    config = {"provider": provider or "unknown", "model": name or "unknown", **params}
    try:
        return LLMConfig.model_validate(config).to_wire()
    except (ValidationError, ValueError, TypeError) as exc:
        logger.warning("dropping invalid model parameters on export: %s", exc)
        omitted.append("llm_config_params")
        return {"provider": config["provider"], "model": config["model"]}


def _export_tool(tool_id: str, tool: HostTool) -> Dict[str, Any]:
    description = tool.description or tool_id
    if tool.handler is not None and description.endswith(STUB_SUFFIX):
        description = description[: -len(STUB_SUFFIX)] or tool_id

    wire: Dict[str, Any] = {
        "name": tool_id,
        "description": description,
        "type": "json_schema",
        "parameters": tool.parameters,
    }
    metadata = dict(tool.metadata)
    if tool.extension is not None:
        metadata[EXTENSION_KEY] = tool.extension.to_metadata()
    if metadata:
        wire["metadata"] = metadata
    return Tool.model_validate(wire).to_wire()


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _json_safe(value: Any) -> bool:
    try:
        json.dumps(value)
    except (TypeError, ValueError, RecursionError):
        return False
    return True


def _export_block(label: str, data: Any) -> Dict[str, Any]:
    if isinstance(data, dict) and "value" in data:
        wire: Dict[str, Any] = {"label": label, "value": str(data["value"])}
        limit = data.get("character_limit", data.get("characterLimit"))
        if limit is not None:
            wire["character_limit"] = limit
        if data.get("metadata") is not None:
            wire["metadata"] = data["metadata"]
    elif isinstance(data, (dict, list)):
        wire = {"label": label, "value": json.dumps(data)}
    else:
        wire = {"label": label, "value": "" if data is None else str(data)}
    return MemoryBlock.model_validate(wire).to_wire()


_TURN_KEYS = ("id", "timestamp", "tool_calls", "tool_results", "metadata")


def _export_turn(turn: HostChatTurn, index: int, stamp: str) -> Dict[str, Any]:
    meta = turn.metadata or {}
    timestamp = meta.get("timestamp")
    wire: Dict[str, Any] = {
        "id": meta.get("id") or f"msg_{index}",
        "role": turn.role,
        "text": turn.content,
        "timestamp": timestamp if is_iso_timestamp(timestamp) else stamp,
    }
    for key in ("tool_calls", "tool_results"):
        if meta.get(key) is not None:
            wire[key] = meta[key]
    extra = dict(meta.get("metadata") or {})
    extra.update({k: v for k, v in meta.items() if k not in _TURN_KEYS})
    if extra:
        wire["metadata"] = extra
    return Message.model_validate(wire).to_wire()


def export_host_agent(
    agent: HostAgentConfig,
    memory: Optional[HostMemoryConfig] = None,
    options: Optional[ExportOptions] = None,
    *,
    now: Optional[datetime] = None,
) -> ExportResult:
    """Build an .af document from a host agent and optional memory.

    Dynamic instructions, models and tool sets cannot be resolved without
    running the host, so they are exported as placeholders or left out and
    flagged. Items that fail validation or are not JSON-serializable are
    dropped and named in omitted_features; export itself does not raise.
    """
    options = options or ExportOptions()
    stamp = format_timestamp(now or datetime.now(timezone.utc))
    omitted: List[str] = []

    host_metadata = dict(agent.metadata or {})
    af_metadata = host_metadata.pop("af_metadata", None)
    if not isinstance(af_metadata, dict):
        af_metadata = {}
    prior_metadata = af_metadata.get("metadata_")
    metadata_: Dict[str, Any] = dict(prior_metadata) if isinstance(prior_metadata, dict) else {}

    if isinstance(agent.instructions, Dynamic):
        system = DYNAMIC_INSTRUCTIONS_PLACEHOLDER
        metadata_["host_dynamic_instructions"] = True
        omitted.append("dynamic_instructions")
    else:
        value = agent.instructions.value if isinstance(agent.instructions, Static) else agent.instructions
        system = value if isinstance(value, str) else str(value)
        if not system:
            system = DYNAMIC_INSTRUCTIONS_PLACEHOLDER
            omitted.append("instructions")

    tools: List[Dict[str, Any]] = []
    if isinstance(agent.tools, Dynamic):
        omitted.append("dynamic_tools")
    for tool_id, tool in agent.static_tools.items():
        try:
            tools.append(_export_tool(tool_id, tool))
        except (ValidationError, ValueError, TypeError) as exc:
            logger.warning("omitting tool %s from export: %s", tool_id, exc)
            omitted.append(f"tools.{tool_id}")

    core_memory: Dict[str, Dict[str, Any]] = {}
    messages: List[Dict[str, Any]] = []
    if memory is not None:
        for label, data in memory.working_memory.items():
            try:
                core_memory[label] = _export_block(label, data)
            except (ValidationError, ValueError, TypeError) as exc:
                logger.warning("omitting memory block %s from export: %s", label, exc)
                omitted.append(f"core_memory.{label}")
        if options.include_messages:
            kept = memory.messages[-options.max_messages :] if options.max_messages > 0 else []
            if len(kept) < len(memory.messages):
                logger.debug("truncated %d messages on export", len(memory.messages) - len(kept))
            for index, turn in enumerate(kept):
                try:
                    messages.append(_export_turn(turn, index, stamp))
                except (ValidationError, ValueError, TypeError) as exc:
                    logger.warning("omitting message %d from export: %s", index, exc)
                    omitted.append(f"messages.{index}")

    for label in REQUIRED_MEMORY_LABELS:
        if label not in core_memory:
            core_memory[label] = {"label": label, "value": ""}
            logger.debug("export: added empty %s block", label)

    if options.include_host_metadata:
        metadata_["host_export"] = {
            "exported_at": stamp,
            "features": {
                "dynamic_instructions": isinstance(agent.instructions, Dynamic),
                "dynamic_model": isinstance(agent.model, Dynamic),
                "dynamic_tools": isinstance(agent.tools, Dynamic),
                "external_tools": any(t.is_external for t in agent.static_tools.values()),
            },
        }
    metadata_.update(host_metadata)
    for key in [k for k, v in metadata_.items() if not isinstance(k, str) or not _json_safe(v)]:
        logger.warning("omitting non-JSON metadata %s from export", key)
        del metadata_[key]
        omitted.append(f"metadata.{key}")

    llm_config = _export_model(agent.model, omitted)

    version = options.version or af_metadata.get("version")
    if version is not None and not is_semver(version):
        logger.warning("export version %r is not a semantic version; using %s", version, DEFAULT_VERSION)
        omitted.append("version")
        version = None

    created_at = af_metadata.get("created_at")
    wire: Dict[str, Any] = {
        "agent_type": _text(af_metadata.get("agent_type")) or _text(options.agent_type) or DEFAULT_AGENT_TYPE,
        "name": _text(agent.name) or "unnamed-agent",
        "system": system,
        "llm_config": llm_config,
        "core_memory": core_memory,
        "messages": messages,
        "tools": tools,
        "version": version or DEFAULT_VERSION,
        "created_at": created_at if is_iso_timestamp(created_at) else stamp,
        "updated_at": stamp,
    }
    description = _text(agent.description) or _text(af_metadata.get("description"))
    if description:
        wire["description"] = description
    tags = af_metadata.get("tags")
    if isinstance(tags, list) and all(isinstance(tag, str) for tag in tags):
        wire["tags"] = list(tags)
    if metadata_:
        wire["metadata_"] = metadata_

    document = AgentDocument.model_validate(wire)
    for feature in omitted:
        logger.debug("export of %s omitted %s", agent.name, feature)

    return ExportResult(
        content=serialize_agent_file(document, pretty=options.pretty),
        document=document,
        metadata=ExportMetadata(
            exported_at=stamp,
            omitted_features=omitted,
            tool_count=len(tools),
            message_count=len(messages),
        ),
    )


def quick_export(agent: HostAgentConfig) -> str:
    """Pretty .af JSON for an agent alone, without memory or messages."""
    return export_host_agent(agent, None, ExportOptions(pretty=True, include_messages=False)).content
