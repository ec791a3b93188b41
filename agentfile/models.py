"""
Structural schema for the Agent File (.af) format.

Defines AgentDocument and every entity it contains. Field names follow the
.af wire vocabulary exactly; do not rename them. Cross-entity rules (message
index bounds, tool-rule references, conditional source code) live in
agentfile.integrity, not here.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from jsonschema import Draft7Validator, SchemaError
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictInt, field_validator, model_validator
from pydantic_core import PydanticCustomError

# Namespaced key inside Tool.metadata that carries external-tool wiring.
EXTENSION_KEY = "_mastra_tool"

MAX_PARAMETER_DEPTH = 32

DEPRECATED_API_KEY = "model_api_key"

MessageRole = Literal["system", "user", "assistant", "tool"]
ToolType = Literal["python", "javascript", "json_schema"]
SOURCE_TOOL_TYPES = ("python", "javascript")

# Known auth providers. AuthReference.provider stays an open string; this
# set is informational only.
KNOWN_AUTH_PROVIDERS = frozenset({"env", "vault", "oauth2", "keychain", "dynamic", "custom"})

_TIMESTAMP_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(\.\d+)?(Z|[+-]\d{2}:\d{2})$"
)
# Same shape as the SemVer 2.0 grammar.
_SEMVER_RE = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(-((0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)"
    r"(\.(0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(\+([0-9a-zA-Z-]+(\.[0-9a-zA-Z-]+)*))?$"
)


def is_iso_timestamp(value: Any) -> bool:
    """True when value is an ISO 8601 date-time with a time part and an offset or Z."""
    if not isinstance(value, str):
        return False
    match = _TIMESTAMP_RE.match(value)
    if not match:
        return False
    year, month, day, hour, minute, second = (int(g) for g in match.groups()[:6])
    try:
        datetime(year, month, day, hour, minute, second)
    except ValueError:
        return False
    return True


def is_semver(value: Any) -> bool:
    return isinstance(value, str) and _SEMVER_RE.match(value) is not None


def _check_timestamp(value: str, field_name: str) -> str:
    if not is_iso_timestamp(value):
        raise PydanticCustomError(
            "timestamp_format",
            "{field} must be an ISO 8601 timestamp (e.g. 2024-01-01T00:00:00Z)",
            {"field": field_name},
        )
    return value


def _check_url(value: str, field_name: str) -> str:
    if not re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*://[^\s/]+", value):
        raise PydanticCustomError("url_format", "{field} must be a valid URL", {"field": field_name})
    return value


class WireModel(BaseModel):
    """Base for every .af entity: immutable once constructed."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """Dump using .af field names, keeping only what was actually set."""
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


class LLMConfig(WireModel):
    """Language model settings. Unknown provider-specific keys pass through."""

    model_config = ConfigDict(
        frozen=True, populate_by_name=True, extra="allow", protected_namespaces=()
    )

    provider: str = Field(min_length=1)
    model: str = Field(min_length=1)
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    top_p: Optional[float] = Field(default=None, ge=0, le=1)
    frequency_penalty: Optional[float] = Field(default=None, ge=-2, le=2)
    presence_penalty: Optional[float] = Field(default=None, ge=-2, le=2)

    @model_validator(mode="before")
    @classmethod
    def _drop_api_key(cls, data: Any) -> Any:
        # Deprecated model_api_key is accepted on input and never stored.
        if isinstance(data, dict) and DEPRECATED_API_KEY in data:
            data = {k: v for k, v in data.items() if k != DEPRECATED_API_KEY}
        return data

    @property
    def extra_params(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class EmbeddingConfig(WireModel):
    model_config = ConfigDict(
        frozen=True, populate_by_name=True, extra="allow", protected_namespaces=()
    )

    provider: str = Field(min_length=1)
    model: str = Field(min_length=1)
    dimensions: Optional[int] = Field(default=None, gt=0)


class MemoryBlock(WireModel):
    """A core memory block. Letta files spell character_limit as `limit`."""

    label: str = Field(min_length=1)
    value: str
    character_limit: Optional[int] = Field(
        default=None, gt=0, validation_alias=AliasChoices("character_limit", "limit")
    )
    metadata: Optional[Dict[str, Any]] = None


class ToolCall(WireModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    arguments: Dict[str, Any]
    metadata: Optional[Dict[str, Any]] = None


class ToolResult(WireModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    result: Any = None
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class Message(WireModel):
    id: str = Field(min_length=1)
    role: MessageRole
    text: str
    timestamp: str
    tool_calls: Optional[List[ToolCall]] = None
    tool_results: Optional[List[ToolResult]] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("timestamp")
    @classmethod
    def _timestamp(cls, value: str) -> str:
        return _check_timestamp(value, "timestamp")


class ParameterProperty(WireModel):
    """One JSON-Schema property. Nests through `items` and `properties`."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    type: str = Field(min_length=1)
    description: Optional[str] = None
    enum: Optional[List[Any]] = None
    items: Optional[ParameterProperty] = None
    properties: Optional[Dict[str, ParameterProperty]] = None


def parameter_depth(schema: Any) -> int:
    """Nesting depth of a parameter schema, walked with an explicit stack."""
    deepest = 0
    stack = [(schema, 0)]
    while stack:
        node, depth = stack.pop()
        if not isinstance(node, dict):
            continue
        deepest = max(deepest, depth)
        items = node.get("items")
        if isinstance(items, dict):
            stack.append((items, depth + 1))
        props = node.get("properties")
        if isinstance(props, dict):
            stack.extend((child, depth + 1) for child in props.values())
    return deepest


class ToolParameters(WireModel):
    """Root parameter schema of a tool: always a JSON-Schema object."""

    type: Literal["object"]
    properties: Dict[str, ParameterProperty]
    required: Optional[List[str]] = None
    additional_properties: Optional[bool] = Field(default=None, alias="additionalProperties")

    @model_validator(mode="before")
    @classmethod
    def _bounded_depth(cls, data: Any) -> Any:
        if isinstance(data, dict) and parameter_depth(data) > MAX_PARAMETER_DEPTH:
            raise PydanticCustomError(
                "schema_too_deep",
                "parameters nest deeper than {limit} levels",
                {"limit": MAX_PARAMETER_DEPTH},
            )
        return data

    @model_validator(mode="after")
    def _required_are_declared(self) -> "ToolParameters":
        for name in self.required or []:
            if name not in self.properties:
                raise PydanticCustomError(
                    "required_not_declared",
                    "required property '{name}' is not defined in properties",
                    {"name": name},
                )
        try:
            Draft7Validator.check_schema(self.to_wire())
        except SchemaError as exc:
            raise PydanticCustomError(
                "json_schema_invalid",
                "parameters is not a valid Draft-07 JSON schema: {reason}",
                {"reason": exc.message},
            ) from exc
        return self


class AuthMetadata(WireModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    auth_type: Optional[Literal["bearer", "api_key", "oauth2", "basic", "custom"]] = None
    required_scopes: Optional[List[str]] = None
    expires_in: Optional[float] = Field(default=None, gt=0)
    prompt: Optional[str] = None
    cache_duration: Optional[float] = Field(default=None, ge=0)


class AuthReference(WireModel):
    """Opaque pointer to credentials held by the caller's secret resolver."""

    provider: str = Field(min_length=1)
    config_id: str = Field(min_length=1)
    metadata: Optional[AuthMetadata] = None


class ExternalToolMetadata(WireModel):
    """External-tool wiring tagged by `type`: mcp, url or reference."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    type: Literal["mcp", "url", "reference"]
    server: Optional[str] = None
    tool_name: Optional[str] = None
    transport: Optional[Literal["stdio", "http"]] = None
    endpoint: Optional[str] = None
    method: Optional[str] = Field(default=None, min_length=1)
    auth_ref: Optional[AuthReference] = None

    @field_validator("server", "endpoint")
    @classmethod
    def _url(cls, value: Optional[str], info) -> Optional[str]:
        if value is None:
            return value
        return _check_url(value, info.field_name)


class ToolMetadata(WireModel):
    """Free-form tool metadata with the optional external-tool extension."""

    # Only the namespaced key may populate `external`.
    model_config = ConfigDict(frozen=True, populate_by_name=False, extra="allow")

    external: Optional[ExternalToolMetadata] = Field(default=None, alias=EXTENSION_KEY)


class Tool(WireModel):
    name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    type: ToolType
    parameters: ToolParameters
    source_code: Optional[str] = None
    metadata: Optional[ToolMetadata] = None

    @property
    def external(self) -> Optional[ExternalToolMetadata]:
        return self.metadata.external if self.metadata is not None else None

    @property
    def carries_source(self) -> bool:
        return self.type in SOURCE_TOOL_TYPES and bool(self.source_code)


class ToolRule(WireModel):
    """Tool usage rule. Content may be a string or a structured configuration."""

    tool_name: str = Field(min_length=1)
    rule_type: str = Field(min_length=1, validation_alias=AliasChoices("rule_type", "type"))
    rule_content: Optional[str] = None
    configuration: Optional[Dict[str, Any]] = None

    @model_validator(mode="before")
    @classmethod
    def _structured_content(cls, data: Any) -> Any:
        # Some producers put an object in rule_content; keep it as configuration.
        if isinstance(data, dict) and isinstance(data.get("rule_content"), dict):
            data = dict(data)
            data.setdefault("configuration", data.pop("rule_content"))
        return data


def _memory_mapping(value: Any) -> Any:
    """Canonicalize core_memory to a label -> block mapping.

    List entries are keyed by label (last write wins on duplicates); entries
    without a usable label are keyed by position so errors point at them.
    """
    if isinstance(value, list):
        mapping: Dict[str, Any] = {}
        for index, block in enumerate(value):
            label = block.get("label") if isinstance(block, dict) else None
            key = label if isinstance(label, str) and label else str(index)
            mapping[key] = block
        return mapping
    if isinstance(value, dict):
        mapping = {}
        for key, block in value.items():
            if isinstance(block, dict) and "label" not in block:
                block = dict(block, label=key)
            mapping[key] = block
        return mapping
    return value


class AgentDocument(WireModel):
    """Root of an .af document. Unknown top-level keys are preserved."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    agent_type: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: Optional[str] = None
    system: str = Field(min_length=1)
    llm_config: LLMConfig
    embedding_config: Optional[EmbeddingConfig] = None
    core_memory: Dict[str, MemoryBlock]
    messages: List[Message]
    in_context_message_indices: Optional[List[StrictInt]] = None
    tools: List[Tool]
    tool_rules: Optional[List[ToolRule]] = None
    tool_exec_environment_variables: Optional[Dict[str, str]] = None
    tags: Optional[List[str]] = None
    metadata_: Optional[Dict[str, Any]] = None
    version: str = Field(min_length=1)
    created_at: str
    updated_at: str

    @field_validator("core_memory", mode="before")
    @classmethod
    def _canonical_memory(cls, value: Any) -> Any:
        return _memory_mapping(value)

    @field_validator("created_at", "updated_at")
    @classmethod
    def _timestamps(cls, value: str, info) -> str:
        return _check_timestamp(value, info.field_name)

    @field_validator("version")
    @classmethod
    def _semver(cls, value: str) -> str:
        if value and not is_semver(value):
            raise PydanticCustomError(
                "version_format",
                "version must be a semantic version such as 0.1.0, got '{value}'",
                {"value": value},
            )
        return value

    def tool(self, name: str) -> Optional[Tool]:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None


ParameterProperty.model_rebuild()
