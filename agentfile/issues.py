"""
Structured validation issues.

Every validation failure, whether raised by the pydantic schema or by the
cross-reference checks, is reported as a ValidationIssue so callers get one
uniform list of {path, message, code} records.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Sequence, Tuple, Union

from pydantic import ValidationError

Loc = Sequence[Union[str, int]]


@dataclass(frozen=True)
class ValidationIssue:
    """One validation failure: dotted field path, readable message, rule code."""

    path: str
    message: str
    code: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "message": self.message, "code": self.code}


_TYPE_NOUNS = {
    "string_type": "a string",
    "int_type": "an integer",
    "int_parsing": "an integer",
    "int_from_float": "an integer",
    "float_type": "a number",
    "float_parsing": "a number",
    "bool_type": "a boolean",
    "bool_parsing": "a boolean",
    "dict_type": "an object",
    "model_type": "an object",
    "model_attributes_type": "an object",
    "list_type": "an array",
}


def format_path(loc: Loc) -> str:
    return ".".join(str(part) for part in loc)


def _field_name(loc: Loc) -> str:
    for part in reversed(loc):
        if isinstance(part, str):
            return part
    return "document"


def _message_for(err: Dict[str, Any]) -> str:
    loc: Tuple[Any, ...] = tuple(err.get("loc") or ())
    kind = err.get("type", "")
    ctx = err.get("ctx") or {}
    field = _field_name(loc)
    path = format_path(loc) or "document"

    if kind == "missing":
        return f"{path} is required"
    if kind == "string_too_short":
        return f"{field} must not be empty"
    if kind == "greater_than_equal":
        return f"{field} must be >= {ctx.get('ge')}"
    if kind == "less_than_equal":
        return f"{field} must be <= {ctx.get('le')}"
    if kind == "greater_than":
        return f"{field} must be > {ctx.get('gt')}"
    if kind == "less_than":
        return f"{field} must be < {ctx.get('lt')}"
    if kind == "literal_error":
        return f"{field} must be one of: {ctx.get('expected')}"
    if kind in _TYPE_NOUNS:
        return f"{field} must be {_TYPE_NOUNS[kind]}"
    if kind == "value_error":
        # pydantic prefixes plain ValueErrors with "Value error, ".
        return f"{path}: {ctx.get('error', err.get('msg', ''))}"
    return err.get("msg") or f"{path} is invalid"


def issues_from_pydantic(exc: ValidationError, prefix: Loc = ()) -> List[ValidationIssue]:
    """Translate a pydantic ValidationError into ValidationIssues, keeping order."""
    issues: List[ValidationIssue] = []
    for err in exc.errors(include_url=False):
        loc = tuple(prefix) + tuple(err.get("loc") or ())
        err = dict(err, loc=loc)
        issues.append(
            ValidationIssue(
                path=format_path(loc),
                message=_message_for(err),
                code=str(err.get("type", "invalid")),
            )
        )
    return issues


def issues_to_dicts(issues: Iterable[ValidationIssue]) -> List[Dict[str, str]]:
    return [issue.to_dict() for issue in issues]
