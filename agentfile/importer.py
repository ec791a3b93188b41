"""
Convert a validated AgentDocument into the host agent configuration.

Conversion fails open: anything the host cannot represent becomes a
ConversionWarning on the result, and one broken tool never blocks the rest.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .autofix import format_timestamp
from .config import Settings
from .host import (
    ExternalToolBinding,
    HostAgentConfig,
    HostChatTurn,
    HostMemoryConfig,
    HostTool,
    HostValue,
    ModelDescriptor,
    Static,
    ToolStubError,
    as_host_value,
    build_input_model,
)
from .models import AgentDocument, ExternalToolMetadata, LLMConfig, Message, Tool

logger = logging.getLogger("agentfile.importer")

STUB_SUFFIX = " (stub - source code not imported)"

_CREDENTIAL_KEYS = ("api_key", "apikey", "token", "secret", "password")

_LLM_KNOBS = ("temperature", "max_tokens", "top_p", "frequency_penalty", "presence_penalty")


@dataclass(frozen=True)
class ConversionWarning:
    """A per-field degradation. Severity is info, warning or error."""

    field: str
    reason: str
    severity: str = "warning"

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass
class ImportOptions:
    tool_code_strategy: str = "schema-only"
    include_messages: bool = True
    validate_mcp_servers: bool = False
    # provider name -> callable(LLMConfig) returning the host model value
    model_mapping: Optional[Dict[str, Callable[[LLMConfig], Any]]] = None
    mcp_server_validator: Optional[Callable[[ExternalToolMetadata], bool]] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ImportOptions":
        return cls(tool_code_strategy=settings.tool_code_strategy)


@dataclass
class ImportMetadata:
    original_version: str
    imported_at: str
    lossy_conversions: List[str]
    external_tool_count: int
    standard_tool_count: int


@dataclass
class ImportResult:
    agent: HostAgentConfig
    memory: HostMemoryConfig
    warnings: List[ConversionWarning]
    metadata: ImportMetadata

    def to_payload(self) -> Dict[str, Any]:
        return {
            "agent": self.agent.to_payload(),
            "memory": self.memory.to_payload(),
            "warnings": [w.to_dict() for w in self.warnings],
            "metadata": asdict(self.metadata),
        }


def _convert_model(llm_config: LLMConfig, options: ImportOptions, warnings: List[ConversionWarning]) -> HostValue:
    mapping = options.model_mapping or {}
    custom = mapping.get(llm_config.provider)
    if custom is not None:
        try:
            mapped = custom(llm_config)
        except Exception as exc:
            logger.warning("model mapping for provider %s failed: %s", llm_config.provider, exc)
            warnings.append(
                ConversionWarning(
                    field="llm_config",
                    reason=f"Custom model mapping for '{llm_config.provider}' failed ({exc}); using default mapping",
                    severity="error",
                )
            )
        else:
            return as_host_value(mapped)

    params: Dict[str, Any] = {}
    for knob in _LLM_KNOBS:
        value = getattr(llm_config, knob)
        if value is not None:
            params[knob] = value
    params.update(llm_config.extra_params)
    return Static(ModelDescriptor(provider=llm_config.provider, name=llm_config.model, params=params))


def _credential_keys(metadata: Dict[str, Any]) -> List[str]:
    found = []
    for key in metadata:
        lowered = key.lower()
        if any(lowered == marker or lowered.endswith("_" + marker) for marker in _CREDENTIAL_KEYS):
            found.append(key)
    return found


def _stub_handler(tool_name: str) -> Callable[[Dict[str, Any]], Any]:
    def handler(arguments: Dict[str, Any]) -> Any:
        raise ToolStubError(f"Tool {tool_name} is a stub - source code was not imported")

    return handler


def _check_mcp_server(
    tool: Tool, external: ExternalToolMetadata, options: ImportOptions, warnings: List[ConversionWarning]
) -> None:
    if not options.validate_mcp_servers or external.type != "mcp":
        return
    if options.mcp_server_validator is None:
        warnings.append(
            ConversionWarning(
                field=f"tools.{tool.name}",
                reason="MCP server validation was requested but no validator is configured",
                severity="info",
            )
        )
        return
    try:
        reachable = options.mcp_server_validator(external)
    except Exception as exc:
        logger.warning("MCP server validator raised for tool %s: %s", tool.name, exc)
        reachable = False
    if not reachable:
        warnings.append(
            ConversionWarning(
                field=f"tools.{tool.name}",
                reason=f"MCP server {external.server} failed validation",
                severity="warning",
            )
        )


def _convert_tool(tool: Tool, options: ImportOptions, warnings: List[ConversionWarning]) -> Optional[HostTool]:
    extra_metadata = dict(tool.metadata.model_extra or {}) if tool.metadata is not None else {}
    suspicious = _credential_keys(extra_metadata)
    if suspicious:
        warnings.append(
            ConversionWarning(
                field=f"tools.{tool.name}.metadata",
                reason=(
                    f"Metadata keys {', '.join(sorted(suspicious))} look like embedded credentials; "
                    "use an auth_ref instead"
                ),
                severity="warning",
            )
        )

    external = tool.external
    if external is not None:
        _check_mcp_server(tool, external, options, warnings)
        return HostTool(
            id=tool.name,
            description=tool.description,
            input_model=build_input_model(tool.parameters, name=tool.name),
            extension=ExternalToolBinding.from_metadata(external),
            metadata=extra_metadata,
        )

    if tool.source_code:
        strategy = options.tool_code_strategy
        if strategy == "skip":
            warnings.append(
                ConversionWarning(
                    field=f"tools.{tool.name}",
                    reason=f"Tool with {tool.type} source code skipped",
                    severity="info",
                )
            )
            return None
        if strategy == "stub":
            warnings.append(
                ConversionWarning(
                    field=f"tools.{tool.name}",
                    reason=f"Tool imported as a stub; its {tool.type} source code was not imported",
                    severity="warning",
                )
            )
            return HostTool(
                id=tool.name,
                description=f"{tool.description}{STUB_SUFFIX}",
                input_model=build_input_model(tool.parameters, name=tool.name),
                handler=_stub_handler(tool.name),
                metadata=extra_metadata,
            )
        if strategy != "schema-only":
            raise ValueError(f"Unknown tool code strategy '{strategy}'")
        warnings.append(
            ConversionWarning(
                field=f"tools.{tool.name}",
                reason=f"Tool schema imported without its {tool.type} source code",
                severity="info",
            )
        )

    return HostTool(
        id=tool.name,
        description=tool.description,
        input_model=build_input_model(tool.parameters, name=tool.name),
        metadata=extra_metadata,
    )


def _convert_turn(message: Message) -> HostChatTurn:
    metadata: Dict[str, Any] = {"id": message.id, "timestamp": message.timestamp}
    if message.tool_calls is not None:
        metadata["tool_calls"] = [call.to_wire() for call in message.tool_calls]
    if message.tool_results is not None:
        metadata["tool_results"] = [result.to_wire() for result in message.tool_results]
    if message.metadata is not None:
        metadata["metadata"] = dict(message.metadata)
    return HostChatTurn(role=message.role, content=message.text, metadata=metadata)


def import_agent_file(
    document: AgentDocument,
    options: Optional[ImportOptions] = None,
    *,
    now: Optional[datetime] = None,
) -> ImportResult:
    """Map a validated document to a HostAgentConfig and HostMemoryConfig.

    Never raises for a document that passed parsing; problems are reported
    in ImportResult.warnings.
    """
    options = options or ImportOptions()
    warnings: List[ConversionWarning] = []
    lossy: List[str] = []

    model = _convert_model(document.llm_config, options, warnings)

    tools: Dict[str, HostTool] = {}
    for tool in document.tools:
        try:
            converted = _convert_tool(tool, options, warnings)
        except Exception as exc:
            logger.warning("failed to convert tool %s: %s", tool.name, exc)
            warnings.append(ConversionWarning(field=f"tools.{tool.name}", reason=str(exc), severity="error"))
            continue
        if converted is not None:
            tools[tool.name] = converted

    if document.tool_rules:
        warnings.append(
            ConversionWarning(
                field="tool_rules",
                reason=(
                    f"{len(document.tool_rules)} tool rule(s) not imported; "
                    "the host has no native tool rules, implement them as custom logic"
                ),
                severity="warning",
            )
        )
        lossy.append("tool_rules")

    if document.in_context_message_indices is not None:
        warnings.append(
            ConversionWarning(
                field="in_context_message_indices",
                reason="Context window management is automatic in the host; indices dropped",
                severity="info",
            )
        )

    if document.tool_exec_environment_variables:
        names = ", ".join(sorted(document.tool_exec_environment_variables))
        warnings.append(
            ConversionWarning(
                field="tool_exec_environment_variables",
                reason=f"Tool environment variables not imported ({names}); configure them in the host",
                severity="warning",
            )
        )
        lossy.append("tool_exec_environment_variables")

    if document.embedding_config is not None:
        warnings.append(
            ConversionWarning(
                field="embedding_config",
                reason="Embedding configuration is not part of the host agent config",
                severity="info",
            )
        )
        lossy.append("embedding_config")

    working_memory: Dict[str, Any] = {}
    for label, block in document.core_memory.items():
        working_memory[label] = {
            "value": block.value,
            "character_limit": block.character_limit,
            "metadata": dict(block.metadata) if block.metadata is not None else None,
        }

    turns: List[HostChatTurn] = []
    if options.include_messages:
        turns = [_convert_turn(message) for message in document.messages]

    # Read back by the exporter so a round trip keeps document identity.
    af_metadata: Dict[str, Any] = {
        "agent_type": document.agent_type,
        "version": document.version,
        "created_at": document.created_at,
    }
    if document.tags is not None:
        af_metadata["tags"] = list(document.tags)
    if document.metadata_ is not None:
        af_metadata["metadata_"] = dict(document.metadata_)

    agent = HostAgentConfig(
        name=document.name,
        description=document.description,
        instructions=Static(document.system),
        model=model,
        tools=tools,
        metadata={"af_metadata": af_metadata},
    )

    external_count = sum(1 for tool in document.tools if tool.external is not None)
    for category in lossy:
        logger.debug("lossy import of %s for agent %s", category, document.name)

    return ImportResult(
        agent=agent,
        memory=HostMemoryConfig(working_memory=working_memory, messages=turns),
        warnings=warnings,
        metadata=ImportMetadata(
            original_version=document.version,
            imported_at=format_timestamp(now or datetime.now(timezone.utc)),
            lossy_conversions=lossy,
            external_tool_count=external_count,
            standard_tool_count=len(document.tools) - external_count,
        ),
    )
