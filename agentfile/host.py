"""
In-memory agent shapes of the host framework.

The converters only build and read these plain values; nothing here runs an
agent. Instruction and model values are wrapped in the Static/Dynamic sum
type so callers can tell a resolved value from a runtime callback without
calling it.

A tool's input-validation schema is a pydantic model. build_input_model
turns a .af ParameterSchema into one, describe_input_model turns any
pydantic model back into the ParameterSchema shape.
"""

from __future__ import annotations

import keyword
import re
import types
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple, Type, Union, get_args, get_origin

from pydantic import BaseModel, ConfigDict, Field, create_model

from .models import ExternalToolMetadata, ParameterProperty, ToolParameters


class ToolNotExecutableError(RuntimeError):
    """Raised when a host tool without a handler is invoked."""


class ToolStubError(ToolNotExecutableError):
    """Raised by the handler of a stub tool whose source code was not imported."""


@dataclass(frozen=True)
class Static:
    value: Any


@dataclass(frozen=True)
class Dynamic:
    """Opaque runtime value. `resolver` is carried, never called here."""

    resolver: Optional[Callable[..., Any]] = None
    description: Optional[str] = None


HostValue = Union[Static, Dynamic]


def as_host_value(value: Any) -> HostValue:
    if isinstance(value, (Static, Dynamic)):
        return value
    if callable(value):
        return Dynamic(resolver=value)
    return Static(value)


@dataclass(frozen=True)
class ModelDescriptor:
    provider: str
    name: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExternalToolBinding:
    """External-tool wiring held in a host tool's extension slot."""

    kind: str
    server: Optional[str] = None
    tool_name: Optional[str] = None
    transport: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None
    auth_ref: Optional[Dict[str, Any]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _KNOWN = ("server", "tool_name", "transport", "endpoint", "method", "auth_ref")

    @classmethod
    def from_metadata(cls, metadata: ExternalToolMetadata) -> "ExternalToolBinding":
        wire = metadata.to_wire()
        kind = wire.pop("type")
        known = {key: wire.pop(key) for key in cls._KNOWN if key in wire}
        return cls(kind=kind, extra=wire, **known)

    def to_metadata(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.kind}
        for key in self._KNOWN:
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        out.update(self.extra)
        return out


@dataclass
class HostTool:
    id: str
    description: str
    input_model: Type[BaseModel]
    handler: Optional[Callable[[Dict[str, Any]], Any]] = None
    extension: Optional[ExternalToolBinding] = None
    # Free-form tool metadata other than the extension block.
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_external(self) -> bool:
        return self.extension is not None

    @property
    def is_executable(self) -> bool:
        return self.handler is not None

    @property
    def parameters(self) -> Dict[str, Any]:
        return describe_input_model(self.input_model)

    def validate_input(self, arguments: Dict[str, Any]) -> BaseModel:
        """Validate invocation arguments; raises pydantic.ValidationError."""
        return self.input_model.model_validate(arguments)

    def invoke(self, arguments: Dict[str, Any]) -> Any:
        if self.handler is None:
            raise ToolNotExecutableError(f"Tool {self.id} has no executable handler")
        validated = self.validate_input(arguments)
        return self.handler(validated.model_dump(by_alias=True, exclude_unset=True))


@dataclass(frozen=True)
class HostChatTurn:
    role: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HostMemoryConfig:
    working_memory: Dict[str, Any] = field(default_factory=dict)
    messages: List[HostChatTurn] = field(default_factory=list)
    thread_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "working_memory": dict(self.working_memory),
            "messages": [{"role": t.role, "content": t.content, "metadata": dict(t.metadata)} for t in self.messages],
            "thread_id": self.thread_id,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "HostMemoryConfig":
        if not isinstance(data, dict):
            raise ValueError("memory must be an object")
        working = data.get("working_memory") or {}
        if not isinstance(working, dict):
            raise ValueError("memory.working_memory must be an object")
        turns: List[HostChatTurn] = []
        for index, turn in enumerate(data.get("messages") or []):
            if not isinstance(turn, dict) or not isinstance(turn.get("role"), str):
                raise ValueError(f"memory.messages[{index}] must be an object with a role")
            content = turn.get("content")
            turns.append(
                HostChatTurn(
                    role=turn["role"],
                    content=content if isinstance(content, str) else "",
                    metadata=dict(turn.get("metadata") or {}),
                )
            )
        return cls(working_memory=dict(working), messages=turns, thread_id=data.get("thread_id"))


@dataclass
class HostAgentConfig:
    name: str
    instructions: HostValue
    model: HostValue
    # A Dynamic tool set is resolved by the host at run time.
    tools: Union[Dict[str, HostTool], Dynamic] = field(default_factory=dict)
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def static_tools(self) -> Dict[str, HostTool]:
        return {} if isinstance(self.tools, Dynamic) else self.tools

    def to_payload(self) -> Dict[str, Any]:
        """JSON-safe view. Dynamic values become {"dynamic": true} markers."""
        if isinstance(self.instructions, Static):
            instructions: Any = self.instructions.value
        else:
            instructions = {"dynamic": True, "description": self.instructions.description}

        if isinstance(self.model, Static) and isinstance(self.model.value, ModelDescriptor):
            descriptor = self.model.value
            model: Any = {"provider": descriptor.provider, "name": descriptor.name, "params": dict(descriptor.params)}
        elif isinstance(self.model, Static):
            model = self.model.value
        else:
            model = {"dynamic": True, "description": self.model.description}

        tools: Dict[str, Any] = {}
        if isinstance(self.tools, Dynamic):
            tools = {"dynamic": True, "description": self.tools.description}
        for tool_id, tool in self.static_tools.items():
            tools[tool_id] = {
                "description": tool.description,
                "parameters": tool.parameters,
                "executable": tool.is_executable,
                "extension": tool.extension.to_metadata() if tool.extension else None,
                "metadata": dict(tool.metadata),
            }
        return {
            "name": self.name,
            "description": self.description,
            "instructions": instructions,
            "model": model,
            "tools": tools,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "HostAgentConfig":
        """Rebuild a config from to_payload output. Raises ValueError on bad shapes."""
        if not isinstance(data, dict):
            raise ValueError("agent must be an object")
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError("agent.name must be a non-empty string")

        raw_instructions = data.get("instructions")
        if isinstance(raw_instructions, dict) and raw_instructions.get("dynamic"):
            instructions: HostValue = Dynamic(description=raw_instructions.get("description"))
        elif isinstance(raw_instructions, str):
            instructions = Static(raw_instructions)
        else:
            raise ValueError("agent.instructions must be a string or a dynamic marker")

        raw_model = data.get("model")
        if isinstance(raw_model, dict) and raw_model.get("dynamic"):
            model: HostValue = Dynamic(description=raw_model.get("description"))
        elif isinstance(raw_model, dict) and raw_model.get("provider") and raw_model.get("name"):
            model = Static(
                ModelDescriptor(
                    provider=str(raw_model["provider"]),
                    name=str(raw_model["name"]),
                    params=dict(raw_model.get("params") or {}),
                )
            )
        else:
            raise ValueError("agent.model must be {provider, name, params} or a dynamic marker")

        raw_tools = data.get("tools") or {}
        if not isinstance(raw_tools, dict):
            raise ValueError("agent.tools must be an object keyed by tool id")
        if raw_tools.get("dynamic") is True:
            return cls(
                name=name,
                instructions=instructions,
                model=model,
                tools=Dynamic(description=raw_tools.get("description")),
                description=data.get("description"),
                metadata=dict(data.get("metadata") or {}),
            )
        tools: Dict[str, HostTool] = {}
        for tool_id, entry in raw_tools.items():
            if not isinstance(entry, dict):
                raise ValueError(f"agent.tools.{tool_id} must be an object")
            parameters = ToolParameters.model_validate(entry.get("parameters") or {"type": "object", "properties": {}})
            extension = entry.get("extension")
            tools[tool_id] = HostTool(
                id=tool_id,
                description=entry.get("description") or "",
                input_model=build_input_model(parameters, name=tool_id),
                extension=(
                    ExternalToolBinding.from_metadata(ExternalToolMetadata.model_validate(extension))
                    if extension
                    else None
                ),
                metadata=dict(entry.get("metadata") or {}),
            )
        return cls(
            name=name,
            instructions=instructions,
            model=model,
            tools=tools,
            description=data.get("description"),
            metadata=dict(data.get("metadata") or {}),
        )


# --- ParameterSchema <-> pydantic model -------------------------------------

_SCALAR_TYPES: Dict[str, Any] = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
    "null": type(None),
}
_SCALAR_NAMES = {annotation: name for name, annotation in _SCALAR_TYPES.items()}
_ARRAY_ORIGINS = (list, tuple, set, frozenset)


def _identifier(raw: str, fallback: str) -> str:
    name = re.sub(r"\W", "_", raw)
    if not name or name[0].isdigit() or name.startswith("_"):
        name = f"{fallback}_{name.lstrip('_')}".rstrip("_")
    return name


def _field_name(key: str, taken: set) -> str:
    name = _identifier(key, "f")
    if keyword.iskeyword(name) or hasattr(BaseModel, name):
        name = f"{name}_"
    candidate, suffix = name, 1
    while candidate in taken:
        suffix += 1
        candidate = f"{name}_{suffix}"
    taken.add(candidate)
    return candidate


def _model_config(additional: Optional[bool], empty_required: bool = False) -> ConfigDict:
    extra = {True: "allow", False: "forbid"}.get(additional, "ignore")
    config = ConfigDict(populate_by_name=True, protected_namespaces=(), extra=extra)
    if empty_required:
        # An explicit "required": [] has no field-level trace.
        config["json_schema_extra"] = {"required": []}
    return config


def _annotation_for(prop: ParameterProperty, owner: str) -> Any:
    if prop.enum:
        if all(v is None or isinstance(v, (str, int)) for v in prop.enum):
            return Literal[tuple(prop.enum)]
        # Floats and structured members stay in the schema extras only.
        return Any
    if prop.type == "array":
        item = _annotation_for(prop.items, f"{owner}_item") if prop.items is not None else Any
        return List[item]
    if prop.type == "object":
        if prop.properties is None:
            return Dict[str, Any]
        extras = prop.model_extra or {}
        required = extras.get("required") if isinstance(extras.get("required"), list) else None
        additional = extras.get("additionalProperties")
        return _build_model(
            owner,
            prop.properties,
            required,
            additional if isinstance(additional, bool) else None,
        )
    return _SCALAR_TYPES.get(prop.type, Any)


def _build_model(
    name: str,
    properties: Dict[str, ParameterProperty],
    required: Optional[List[str]],
    additional: Optional[bool],
) -> Type[BaseModel]:
    required_keys = required or []
    taken: set = set()
    fields: Dict[str, Tuple[Any, Any]] = {}
    for key, prop in properties.items():
        field_name = _field_name(key, taken)
        annotation = _annotation_for(prop, f"{name}_{field_name}")
        # Whatever the annotation cannot express is kept as schema extras.
        derived = _describe_annotation(annotation)
        extra = {k: v for k, v in prop.to_wire().items() if k != "description" and derived.get(k) != v}
        options = {"alias": key, "description": prop.description, "json_schema_extra": extra or None}
        if key in required_keys:
            fields[field_name] = (annotation, Field(..., **options))
        else:
            fields[field_name] = (Optional[annotation], Field(None, **options))
    return create_model(name, __config__=_model_config(additional, required == []), **fields)


def build_input_model(parameters: Union[ToolParameters, Dict[str, Any]], name: str = "ToolInput") -> Type[BaseModel]:
    """Build the host input-validation model for a tool's parameter schema."""
    if not isinstance(parameters, ToolParameters):
        parameters = ToolParameters.model_validate(parameters)
    return _build_model(
        _identifier(f"{name}_input", "Tool"),
        parameters.properties,
        parameters.required,
        parameters.additional_properties,
    )


def _unwrap_optional(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is Union or (hasattr(types, "UnionType") and origin is getattr(types, "UnionType")):
        args = [a for a in get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


def _literal_type(values: Tuple[Any, ...]) -> str:
    if values and all(isinstance(v, bool) for v in values):
        return "boolean"
    if values and all(isinstance(v, int) and not isinstance(v, bool) for v in values):
        return "integer"
    if values and all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in values):
        return "number"
    return "string"


def _describe_annotation(annotation: Any) -> Dict[str, Any]:
    annotation = _unwrap_optional(annotation)
    origin = get_origin(annotation)

    if origin is Literal:
        values = get_args(annotation)
        return {"type": _literal_type(values), "enum": list(values)}
    if annotation in _SCALAR_NAMES:
        return {"type": _SCALAR_NAMES[annotation]}
    if annotation in _ARRAY_ORIGINS or origin in _ARRAY_ORIGINS:
        out: Dict[str, Any] = {"type": "array"}
        args = get_args(annotation)
        if args and args[0] is not Any and args[0] is not Ellipsis:
            out["items"] = _describe_annotation(args[0])
        return out
    if annotation is dict or origin is dict:
        return {"type": "object"}
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return _object_schema(annotation)
    return {"type": "string"}


def _describe_fields(model: Type[BaseModel]) -> Tuple[Dict[str, Any], List[str]]:
    properties: Dict[str, Any] = {}
    required: List[str] = []
    for name, info in model.model_fields.items():
        key = info.alias or name
        prop = _describe_annotation(info.annotation)
        if info.description is not None:
            prop["description"] = info.description
        if isinstance(info.json_schema_extra, dict):
            prop.update(info.json_schema_extra)
        properties[key] = prop
        if info.is_required():
            required.append(key)
    return properties, required


def _declares_empty_required(model: Type[BaseModel]) -> bool:
    extra = model.model_config.get("json_schema_extra")
    return isinstance(extra, dict) and extra.get("required") == []


def _object_schema(model: Type[BaseModel]) -> Dict[str, Any]:
    properties, required = _describe_fields(model)
    out: Dict[str, Any] = {"type": "object", "properties": properties}
    if required or _declares_empty_required(model):
        out["required"] = required
    additional = _additional_properties(model)
    if additional is not None:
        out["additionalProperties"] = additional
    return out


def _additional_properties(model: Type[BaseModel]) -> Optional[bool]:
    extra = model.model_config.get("extra")
    if extra == "allow":
        return True
    if extra == "forbid":
        return False
    return None


def describe_input_model(model: Type[BaseModel]) -> Dict[str, Any]:
    """Convert a pydantic model into the .af ParameterSchema shape.

    Fields typed Optional[...] or carrying a default are not required; enum
    literals become a typed `enum` list; nested models become nested objects.
    """
    return _object_schema(model)
