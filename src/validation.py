"""
Schema Validation - OpenAPI v3 schema validation for declarative objects.

Validates submitted specs against the schema registered for their kind.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

from resources import SCHEMAS

logger = logging.getLogger(__name__)


def validate_spec_against_schema(
    spec: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a resource spec against an OpenAPI v3 schema.

    Args:
        spec: The resource specification to validate
        schema: The OpenAPI v3 JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
        errors = sorted(validator.iter_errors(spec), key=lambda e: list(e.path))

        if not errors:
            return True, None

        error_messages = []
        for error in errors:
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            error_messages.append(f"{path}: {error.message}")

        return False, "; ".join(error_messages)

    except ValidationError as e:
        return False, f"Validation error: {str(e)}"


def validate_resource_spec(
    kind: str, spec: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a spec against the schema of its kind.

    Args:
        kind: Resource kind (e.g. 'Repository')
        spec: The submitted spec

    Returns:
        Tuple of (is_valid, error_message). Unknown kinds are invalid.
    """
    schema = SCHEMAS.get(kind)
    if schema is None:
        return False, f"Unknown kind: {kind}"
    return validate_spec_against_schema(spec, schema)
