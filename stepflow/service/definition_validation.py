from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List

from jsonschema import Draft202012Validator

from stepflow.logging import get_logger
from stepflow.models import WorkflowDefinition
from stepflow.service.errors import ValidationError

logger = get_logger(__name__)

_STEP_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "tool": {"type": "string", "minLength": 1},
        "name": {"type": "string"},
        "description": {"type": "string"},
        "inputs": {},
        "condition": {"type": "string"},
        "forEach": {"type": "string"},
        "maxIterations": {"type": "integer", "minimum": 0},
        "continueOnError": {"type": "boolean"},
        "allowWrites": {"type": "boolean"},
    },
    "required": ["id", "tool"],
}

WORKFLOW_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "version": {"type": ["string", "number"]},
        "description": {"type": "string"},
        "inputs": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "type": {"type": "string"},
                    "required": {"type": "boolean"},
                    "description": {"type": "string"},
                    "default": {},
                },
            },
        },
        "defaults": {"type": "object"},
        "steps": {"type": "array", "minItems": 1, "items": _STEP_SCHEMA},
        "output": {},
        "branding": {"type": "object"},
    },
    "required": ["name", "steps"],
    "additionalProperties": True,
}

_VALIDATOR = Draft202012Validator(WORKFLOW_SCHEMA)


def document_errors(document: Any) -> List[str]:
    """Structural problems in a raw workflow document, in path order."""
    errors = sorted(_VALIDATOR.iter_errors(document), key=lambda e: list(e.path))
    messages: List[str] = []
    for error in errors:
        location = "/".join(str(part) for part in error.path)
        messages.append(f"{location}: {error.message}" if location else error.message)
    return messages


def parse_definition(document: Any) -> WorkflowDefinition:
    """Validate a raw document's structure and build the definition model.

    Semantic checks (duplicate ids, unknown tools, cycles) happen when the
    dependency graph is built.
    """
    errors = document_errors(document)
    if errors:
        raise ValidationError("workflow document is malformed", errors)
    return WorkflowDefinition.from_dict(document)


def load_workflow(path: str | Path) -> WorkflowDefinition:
    """Read and parse a JSON workflow document from disk."""
    workflow_path = Path(path)
    try:
        document = json.loads(workflow_path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ValidationError(f"workflow not found: {workflow_path}") from exc
    except json.JSONDecodeError as exc:
        logger.warning("workflow_document_unreadable", path=str(workflow_path), error=str(exc))
        raise ValidationError(f"workflow is not valid JSON: {exc.msg}") from exc
    return parse_definition(document)


__all__ = ["WORKFLOW_SCHEMA", "document_errors", "parse_definition", "load_workflow"]
