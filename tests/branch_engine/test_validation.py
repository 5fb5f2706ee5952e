"""Tests for delta validation helpers."""

import pytest

from src.branch_engine import (
    AddDelta,
    DeltaOperation,
    EntityType,
    InvalidDelta,
    OverrideDelta,
    RemoveDelta,
)
from src.branch_engine.validation import build_change, canonical_fields, normalize_payload


class TestBuildChange:
    """Tests for build_change()."""

    def test_operation_selects_variant(self, assignment):
        """Each operation builds its own delta variant."""
        add = build_change(EntityType.ASSIGNMENT, DeltaOperation.ADD, assignment(10))
        override = build_change(EntityType.ASSIGNMENT, DeltaOperation.OVERRIDE, assignment(10))
        remove = build_change(EntityType.ASSIGNMENT, DeltaOperation.REMOVE)

        assert isinstance(add, AddDelta)
        assert isinstance(override, OverrideDelta)
        assert isinstance(remove, RemoveDelta)

    def test_remove_payload_cannot_be_constructed(self):
        """RemoveDelta has no payload field at all."""
        with pytest.raises(ValueError):
            RemoveDelta(payload={"x": 1})

    def test_invalid_delta_is_value_error(self):
        """Schema failures are ValueErrors as well as InvalidDelta."""
        with pytest.raises(ValueError):
            build_change(EntityType.PROJECT, DeltaOperation.ADD, {"priority": 3})


class TestNormalizePayload:
    """Tests for normalize_payload()."""

    def test_input_not_mutated(self, assignment):
        """Normalizing returns a copy and leaves the input alone."""
        payload = assignment(10, start_date="2025-01-01")
        normalize_payload(EntityType.ASSIGNMENT, payload)
        assert "assignment_date_mode" not in payload

    def test_collects_field_errors(self):
        """Every failing field is reported."""
        with pytest.raises(InvalidDelta) as exc_info:
            normalize_payload(EntityType.PROJECT, {"name": "", "priority": 9})
        fields = {e["field"] for e in exc_info.value.detail["errors"]}
        assert fields == {"name", "priority"}


class TestCanonicalFields:
    """Tests for canonical_fields()."""

    def test_drops_extras_and_fills_defaults(self):
        """Canonical fields follow the schema, not the stored keys."""
        fields = canonical_fields(
            EntityType.ASSIGNMENT,
            {
                "project_id": "proj-1",
                "person_id": "p1",
                "role_id": "dev",
                "allocation_percentage": 40.0,
                "color": "blue",
            },
        )
        assert "color" not in fields
        assert fields["assignment_date_mode"] == "fixed"
        assert fields["phase_id"] is None
        assert list(fields)[0] == "project_id"
