"""
Validation logic for delta writes.

Validates payloads before they reach a store so that everything persisted
is a normalized, full field snapshot of the canonical schema.
"""

from copy import deepcopy
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError
from pydantic_core import PydanticUndefined

from .errors import InvalidDelta
from .models import (
    AddDelta,
    DeltaChange,
    DeltaOperation,
    ENTITY_SCHEMAS,
    EntityType,
    OverrideDelta,
    RemoveDelta,
)


def validate_payload_presence(
    operation: DeltaOperation,
    payload: Optional[dict[str, Any]]
) -> None:
    """
    Check payload presence against the operation.

    Raises:
        InvalidDelta: ADD/OVERRIDE without payload, or REMOVE with one
    """
    if operation == DeltaOperation.REMOVE:
        if payload:
            raise InvalidDelta("Operation 'remove' must not carry a payload")
        return

    if not payload:
        raise InvalidDelta(f"Operation '{operation.value}' requires a payload")


def normalize_payload(
    entity_type: EntityType,
    payload: dict[str, Any]
) -> dict[str, Any]:
    """
    Validate a payload against its canonical schema.

    Canonical fields are replaced with their normalized JSON form (dates as
    ISO strings, enums as values, defaults filled in). Unrecognized keys are
    kept verbatim so newer clients can round-trip extra data.

    Args:
        entity_type: Kind of entity the payload describes
        payload: Raw field snapshot

    Returns:
        Normalized copy of the payload

    Raises:
        InvalidDelta: If the payload does not satisfy the schema
    """
    schema = ENTITY_SCHEMAS[entity_type]
    try:
        validated = schema.model_validate(payload)
    except PydanticValidationError as e:
        errors = [
            {
                "field": ".".join(str(part) for part in err["loc"]),
                "message": err["msg"],
            }
            for err in e.errors()
        ]
        raise InvalidDelta(
            f"Invalid {entity_type.value} payload",
            errors=errors,
        ) from e

    normalized = deepcopy(payload)
    normalized.update(validated.model_dump(mode="json"))
    return normalized


def build_change(
    entity_type: EntityType,
    operation: DeltaOperation,
    payload: Optional[dict[str, Any]] = None
) -> DeltaChange:
    """
    Build the tagged delta for a write request.

    Args:
        entity_type: Kind of entity
        operation: ADD, OVERRIDE or REMOVE
        payload: Field snapshot (ADD/OVERRIDE only)

    Returns:
        AddDelta, OverrideDelta or RemoveDelta
    """
    validate_payload_presence(operation, payload)

    if operation == DeltaOperation.REMOVE:
        return RemoveDelta()

    normalized = normalize_payload(entity_type, payload)
    if operation == DeltaOperation.ADD:
        return AddDelta(payload=normalized)
    return OverrideDelta(payload=normalized)


def canonical_fields(
    entity_type: EntityType,
    fields: dict[str, Any]
) -> dict[str, Any]:
    """
    Project stored fields onto the canonical schema.

    Extra keys are dropped; missing optional keys take the schema default.
    Used for equality, so provenance and unknown fields never register as
    a difference.
    """
    schema = ENTITY_SCHEMAS[entity_type]
    canonical: dict[str, Any] = {}
    for name, info in schema.model_fields.items():
        if name in fields:
            canonical[name] = fields[name]
        elif info.default is not PydanticUndefined:
            default = info.default
            canonical[name] = default.value if hasattr(default, "value") else default
        else:
            canonical[name] = None
    return canonical
