"""
Document-level integrity checks for .af documents.

These rules need the whole document at once. They run over the plain
mapping (after auto-fix, before or alongside schema validation) and skip
anything whose basic shape is wrong, since the schema already reports that.
Every rule reports all of its failures; nothing short-circuits.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping

from .issues import ValidationIssue
from .models import EXTENSION_KEY, SOURCE_TOOL_TYPES

REQUIRED_MEMORY_LABELS = ("persona", "human")

_EXTERNAL_REQUIRED = {
    "mcp": ("server", "tool_name"),
    "url": ("endpoint",),
}


def _is_index(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _memory_labels(core_memory: Any) -> List[str]:
    labels: List[str] = []
    if isinstance(core_memory, dict):
        for key, block in core_memory.items():
            labels.append(key)
            if isinstance(block, dict) and isinstance(block.get("label"), str):
                labels.append(block["label"])
    elif isinstance(core_memory, list):
        for block in core_memory:
            if isinstance(block, dict) and isinstance(block.get("label"), str):
                labels.append(block["label"])
    return labels


def check_core_memory(core_memory: Any, *, strict: bool = False) -> List[ValidationIssue]:
    if not isinstance(core_memory, (dict, list)):
        return []
    issues: List[ValidationIssue] = []
    labels = set(_memory_labels(core_memory))
    for required in REQUIRED_MEMORY_LABELS:
        if required not in labels:
            issues.append(
                ValidationIssue(
                    path="core_memory",
                    message=f"core_memory must contain a '{required}' block",
                    code="core_memory_missing_block",
                )
            )
    if strict and isinstance(core_memory, list):
        issues.append(
            ValidationIssue(
                path="core_memory",
                message="core_memory must be a mapping of label to block in strict mode",
                code="core_memory_shape",
            )
        )
        seen: Dict[str, int] = {}
        for index, block in enumerate(core_memory):
            label = block.get("label") if isinstance(block, dict) else None
            if not isinstance(label, str):
                continue
            if label in seen:
                issues.append(
                    ValidationIssue(
                        path=f"core_memory.{index}.label",
                        message=f"duplicate core_memory label '{label}' (first at position {seen[label]})",
                        code="duplicate_memory_label",
                    )
                )
            else:
                seen[label] = index
    return issues


def check_message_indices(indices: Any, messages: Any) -> List[ValidationIssue]:
    if not isinstance(indices, list) or not isinstance(messages, list):
        return []
    count = len(messages)
    issues: List[ValidationIssue] = []
    for position, index in enumerate(indices):
        if not _is_index(index):
            continue
        if index < 0 or index >= count:
            issues.append(
                ValidationIssue(
                    path=f"in_context_message_indices.{position}",
                    message=(
                        f"in_context_message_indices[{position}] = {index} is out of range: "
                        f"message index must satisfy 0 <= index < {count}"
                    ),
                    code="message_index_out_of_range",
                )
            )
    return issues


def _tool_names(tools: Any) -> List[str]:
    if not isinstance(tools, list):
        return []
    return [t["name"] for t in tools if isinstance(t, dict) and isinstance(t.get("name"), str)]


def check_tool_rules(rules: Any, tools: Any, *, strict: bool = False) -> List[ValidationIssue]:
    if not isinstance(rules, list):
        return []
    known = set(_tool_names(tools))
    issues: List[ValidationIssue] = []
    for position, rule in enumerate(rules):
        if not isinstance(rule, dict):
            continue
        name = rule.get("tool_name")
        if isinstance(name, str) and name and name not in known:
            rule_type = rule.get("rule_type") or rule.get("type") or "rule"
            issues.append(
                ValidationIssue(
                    path=f"tool_rules.{position}.tool_name",
                    message=f"tool rule {position} ({rule_type}) references unknown tool '{name}'",
                    code="tool_rule_unknown_tool",
                )
            )
        if strict and isinstance(rule.get("rule_content"), dict):
            issues.append(
                ValidationIssue(
                    path=f"tool_rules.{position}.rule_content",
                    message="rule_content must be a string in strict mode; use configuration for structured rules",
                    code="tool_rule_shape",
                )
            )
    return issues


def _check_external(position: int, name: str, metadata: Any) -> Iterable[ValidationIssue]:
    if not isinstance(metadata, dict):
        return
    external = metadata.get(EXTENSION_KEY)
    if not isinstance(external, dict):
        return
    kind = external.get("type")
    for key in _EXTERNAL_REQUIRED.get(kind, ()):
        if not external.get(key):
            yield ValidationIssue(
                path=f"tools.{position}.metadata.{EXTENSION_KEY}.{key}",
                message=f"{kind} tool '{name}' requires {key} in {EXTENSION_KEY} metadata",
                code="external_tool_incomplete",
            )


def check_tools(tools: Any) -> List[ValidationIssue]:
    if not isinstance(tools, list):
        return []
    issues: List[ValidationIssue] = []
    seen: Dict[str, int] = {}
    for position, tool in enumerate(tools):
        if not isinstance(tool, dict):
            continue
        name = tool.get("name") if isinstance(tool.get("name"), str) else f"#{position}"
        tool_type = tool.get("type")
        source = tool.get("source_code")
        if tool_type in SOURCE_TOOL_TYPES and not (isinstance(source, str) and source.strip()):
            issues.append(
                ValidationIssue(
                    path=f"tools.{position}.source_code",
                    message=f"source_code is required for {tool_type} tool '{name}'",
                    code="source_code_required",
                )
            )
        issues.extend(_check_external(position, name, tool.get("metadata")))
        if isinstance(tool.get("name"), str):
            if name in seen:
                issues.append(
                    ValidationIssue(
                        path=f"tools.{position}.name",
                        message=f"duplicate tool name '{name}' (first defined at tools.{seen[name]})",
                        code="duplicate_tool_name",
                    )
                )
            else:
                seen[name] = position
    return issues


def check_references(data: Mapping[str, Any], *, strict: bool = False) -> List[ValidationIssue]:
    """Run every integrity rule over a raw document mapping and collect the issues."""
    if not isinstance(data, Mapping):
        return []
    issues: List[ValidationIssue] = []
    issues.extend(check_core_memory(data.get("core_memory"), strict=strict))
    issues.extend(check_message_indices(data.get("in_context_message_indices"), data.get("messages")))
    issues.extend(check_tool_rules(data.get("tool_rules"), data.get("tools"), strict=strict))
    issues.extend(check_tools(data.get("tools")))
    return issues
