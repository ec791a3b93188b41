"""
Parse and validate Agent File (.af) documents.

parse_agent_file is the throwing entry point; safe_parse_agent_file,
is_valid_agent_file and get_validation_errors are derived from it so the
boolean, the issue list and the raised error always agree.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from .autofix import Normalizer, default_normalizer
from .config import DEFAULT_MAX_SIZE_BYTES, Settings
from .integrity import check_references
from .issues import ValidationIssue, issues_from_pydantic, issues_to_dicts
from .models import AgentDocument

logger = logging.getLogger("agentfile.parser")

RawInput = Union[str, bytes, bytearray]


class DocumentParseError(ValueError):
    """Raised when an .af document cannot be turned into an AgentDocument.

    `errors` holds every ValidationIssue found; `cause` the underlying
    exception, if any.
    """

    def __init__(
        self,
        message: str,
        errors: Optional[List[ValidationIssue]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.errors: List[ValidationIssue] = list(errors or [])
        self.cause = cause

    def details(self) -> List[Dict[str, str]]:
        return issues_to_dicts(self.errors)


class MalformedInputError(DocumentParseError):
    """Input is not well-formed JSON, not UTF-8, or larger than the size ceiling."""


class StructuralValidationError(DocumentParseError):
    """One or more fields violate type, range or required constraints."""


class CrossReferenceValidationError(DocumentParseError):
    """The document is well-typed but breaks a document-level invariant."""


@dataclass
class ParseOptions:
    max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES
    auto_fix: bool = True
    strict: bool = False
    normalizer: Optional[Normalizer] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ParseOptions":
        return cls(
            max_size_bytes=settings.max_size_bytes,
            auto_fix=settings.auto_fix,
            strict=settings.strict,
        )

    @property
    def applies_auto_fix(self) -> bool:
        return self.auto_fix and not self.strict


@dataclass(frozen=True)
class ParseResult:
    """Tagged result of safe_parse_agent_file: either `value` or `error` is set."""

    ok: bool
    value: Optional[AgentDocument] = None
    error: Optional[DocumentParseError] = None

    @property
    def errors(self) -> List[ValidationIssue]:
        return self.error.errors if self.error is not None else []


def _summarize(category: str, issues: List[ValidationIssue]) -> str:
    count = len(issues)
    first = issues[0].message if issues else ""
    noun = "issue" if count == 1 else "issues"
    return f"Agent file {category} ({count} {noun}): {first}"


def _decode(raw_text: RawInput, max_size_bytes: int) -> str:
    if isinstance(raw_text, (bytes, bytearray)):
        size = len(raw_text)
    else:
        size = len(raw_text.encode("utf-8", "surrogatepass"))
    if size > max_size_bytes:
        message = f"Agent file is {size} bytes, exceeding the {max_size_bytes} byte limit"
        raise MalformedInputError(
            message, errors=[ValidationIssue(path="", message=message, code="max_size_exceeded")]
        )
    if isinstance(raw_text, (bytes, bytearray)):
        try:
            return bytes(raw_text).decode("utf-8")
        except UnicodeDecodeError as exc:
            message = f"Agent file is not valid UTF-8: {exc}"
            raise MalformedInputError(
                message,
                errors=[ValidationIssue(path="", message=message, code="invalid_encoding")],
                cause=exc,
            ) from exc
    return raw_text


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        message = f"Agent file is not valid JSON: {exc}"
        raise MalformedInputError(
            message, errors=[ValidationIssue(path="", message=message, code="invalid_json")], cause=exc
        ) from exc
    except RecursionError as exc:
        message = "Agent file is not valid JSON: nesting exceeds the decoder recursion limit"
        raise MalformedInputError(
            message, errors=[ValidationIssue(path="", message=message, code="invalid_json")], cause=exc
        ) from exc


def parse_agent_file_object(data: Any, options: Optional[ParseOptions] = None) -> AgentDocument:
    """Validate an already-deserialized document and return the AgentDocument.

    Raises:
        StructuralValidationError: Field-level violations (reported together
            with any integrity violations that could still be checked).
        CrossReferenceValidationError: Only document-level invariants failed.
        MalformedInputError: The mapping nests too deeply for auto-fix to copy.
    """
    options = options or ParseOptions()

    if not isinstance(data, dict):
        message = f"Agent file must be a JSON object, got {type(data).__name__}"
        raise StructuralValidationError(
            message, errors=[ValidationIssue(path="", message=message, code="dict_type")]
        )

    if options.applies_auto_fix:
        normalizer = options.normalizer or default_normalizer
        try:
            data = normalizer(data)
        except RecursionError as exc:
            message = "Agent file nests too deeply to normalize"
            raise MalformedInputError(
                message, errors=[ValidationIssue(path="", message=message, code="nesting_too_deep")], cause=exc
            ) from exc

    document: Optional[AgentDocument] = None
    structural: List[ValidationIssue] = []
    try:
        document = AgentDocument.model_validate(data)
    except ValidationError as exc:
        structural = issues_from_pydantic(exc)

    references = check_references(data, strict=options.strict)

    if document is None:
        issues = structural + references
        logger.info("agent file rejected: %d structural, %d reference issues", len(structural), len(references))
        raise StructuralValidationError(_summarize("failed structural validation", issues), errors=issues)
    if references:
        logger.info("agent file rejected: %d reference issues", len(references))
        raise CrossReferenceValidationError(
            _summarize("failed cross-reference validation", references), errors=references
        )
    return document


def parse_agent_file(raw_text: RawInput, options: Optional[ParseOptions] = None) -> AgentDocument:
    """Parse .af JSON text (str or UTF-8 bytes) into a validated AgentDocument.

    The size ceiling is checked before anything is decoded or validated.

    Raises:
        MalformedInputError: Oversized, non-UTF-8 or non-JSON input.
        StructuralValidationError / CrossReferenceValidationError: See
            parse_agent_file_object.
    """
    options = options or ParseOptions()
    text = _decode(raw_text, options.max_size_bytes)
    return parse_agent_file_object(_load_json(text), options)


def safe_parse_agent_file(raw_text: RawInput, options: Optional[ParseOptions] = None) -> ParseResult:
    try:
        return ParseResult(ok=True, value=parse_agent_file(raw_text, options))
    except DocumentParseError as exc:
        return ParseResult(ok=False, error=exc)


def is_valid_agent_file(raw_text: RawInput, options: Optional[ParseOptions] = None) -> bool:
    return safe_parse_agent_file(raw_text, options).ok


def get_validation_errors(
    raw_text: RawInput, options: Optional[ParseOptions] = None
) -> Optional[List[Dict[str, str]]]:
    """None when the document is valid, else the ordered {path, message, code} records."""
    result = safe_parse_agent_file(raw_text, options)
    if result.ok:
        return None
    return issues_to_dicts(result.errors)


def extract_agent_metadata(raw_text: RawInput) -> Optional[Dict[str, Any]]:
    """Cheap identity lookup without validation. Never raises; None on any failure."""
    try:
        if isinstance(raw_text, (bytes, bytearray)):
            raw_text = bytes(raw_text).decode("utf-8")
        data = json.loads(raw_text)
    except (TypeError, ValueError, RecursionError):
        # JSONDecodeError and UnicodeDecodeError are both ValueErrors.
        return None
    if not isinstance(data, dict):
        return None

    def _text(key: str) -> Optional[str]:
        value = data.get(key)
        return value if isinstance(value, str) else None

    tools = data.get("tools")
    return {
        "name": _text("name"),
        "version": _text("version"),
        "agent_type": _text("agent_type"),
        "tool_count": len(tools) if isinstance(tools, list) else 0,
    }


def serialize_agent_file(document: AgentDocument, *, pretty: bool = True) -> str:
    payload = document.to_wire()
    if pretty:
        return json.dumps(payload, indent=2, ensure_ascii=False)
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
