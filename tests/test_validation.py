"""
Input Validation Tests
----------------------
Tests cover:
- Field-level error paths for nested models
- Tools without an input model
- Canonical serialization used for cache keys
- Non-fatal output validation
"""

from pathlib import Path
from typing import List
import sys

import pytest
from pydantic import BaseModel, Field

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import ErrorKind, InputValidationError
from tools.registry import ToolDescriptor
from tools.validation import canonicalize, to_jsonable, validate_input, validate_output


class LineItem(BaseModel):
    name: str
    qty: int = Field(..., ge=1)


class OrderInput(BaseModel):
    customer: str
    items: List[LineItem]


class OrderOutput(BaseModel):
    order_id: str


ORDER = ToolDescriptor(name="placeOrder", input_model=OrderInput, output_model=OrderOutput)
BARE = ToolDescriptor(name="bare")


class TestValidateInput:

    def test_valid_input_returns_model(self):
        parsed = validate_input(ORDER, {"customer": "c1", "items": [{"name": "pen", "qty": 2}]})

        assert isinstance(parsed, OrderInput)
        assert parsed.items[0].qty == 2

    def test_field_errors_carry_paths(self):
        """Nested violations are reported with dotted paths."""
        with pytest.raises(InputValidationError) as exc_info:
            validate_input(ORDER, {"items": [{"name": "pen", "qty": 0}]})

        paths = {e.path for e in exc_info.value.field_errors}
        assert "customer" in paths
        assert "items.0.qty" in paths
        assert exc_info.value.kind is ErrorKind.VALIDATION_ERROR

    def test_non_object_input_rejected(self):
        with pytest.raises(InputValidationError):
            validate_input(ORDER, "not an object")

    def test_none_input_rejected_when_model_requires_fields(self):
        with pytest.raises(InputValidationError):
            validate_input(ORDER, None)

    def test_bare_tool_accepts_mapping_or_nothing(self):
        assert validate_input(BARE, None) == {}
        assert validate_input(BARE, {"a": 1}) == {"a": 1}

    def test_bare_tool_rejects_scalars(self):
        with pytest.raises(InputValidationError):
            validate_input(BARE, 42)


class TestCanonicalize:

    def test_key_order_independent(self):
        a = validate_input(ORDER, {"customer": "c", "items": [{"name": "x", "qty": 1}]})
        b = validate_input(ORDER, {"items": [{"qty": 1, "name": "x"}], "customer": "c"})

        assert canonicalize(a) == canonicalize(b)

    def test_compact_sorted(self):
        assert canonicalize({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'

    def test_defaults_included(self):
        """Coerced and defaulted values are what get keyed."""
        class WithDefault(BaseModel):
            city: str
            units: str = "metric"

        descriptor = ToolDescriptor(name="w", input_model=WithDefault)
        explicit = validate_input(descriptor, {"city": "Oslo", "units": "metric"})
        implicit = validate_input(descriptor, {"city": "Oslo"})

        assert canonicalize(explicit) == canonicalize(implicit)


class TestValidateOutput:

    def test_matching_output_parsed(self):
        out = validate_output(ORDER, {"order_id": "o-1"})

        assert isinstance(out, OrderOutput)

    def test_mismatch_is_non_fatal(self, caplog):
        raw = {"unexpected": True}

        out = validate_output(ORDER, raw)

        assert out is raw
        assert "does not match its schema" in caplog.text

    def test_no_output_model_passthrough(self):
        value = object()
        assert validate_output(BARE, value) is value

    def test_to_jsonable_dumps_models(self):
        assert to_jsonable(OrderOutput(order_id="o-2")) == {"order_id": "o-2"}
