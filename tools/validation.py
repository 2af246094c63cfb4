"""
Input Validation
----------------
pydantic-backed parsing of raw caller input, field-level error detail,
and canonical serialization for cache keys.
"""

from typing import Any, List
import json
import logging

from pydantic import BaseModel, ValidationError
from pydantic_core import to_jsonable_python

from core.errors import FieldError, InputValidationError

from .registry import ToolDescriptor


logger = logging.getLogger("toolgate.tools.validation")


def field_errors_from(exc: ValidationError) -> List[FieldError]:
    """Flatten a pydantic ValidationError into (path, message) pairs."""
    errors = []
    for err in exc.errors():
        path = ".".join(str(part) for part in err.get("loc", ()))
        errors.append(FieldError(path=path, message=err.get("msg", "Invalid value")))
    return errors


def validate_input(descriptor: ToolDescriptor, raw: Any) -> Any:
    """
    Parse raw input against the tool's input model.

    Returns the model instance. Tools without an input model accept a
    mapping (or nothing) and get a plain dict.
    """
    model = descriptor.input_model
    if model is None:
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise InputValidationError([FieldError("", "Input should be an object")])
        return dict(raw)

    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise InputValidationError(field_errors_from(e)) from e


def validate_output(descriptor: ToolDescriptor, output: Any) -> Any:
    """
    Check output against the declared output model.

    Non-fatal: a mismatch is logged and the raw output passes through.
    """
    model = descriptor.output_model
    if model is None or isinstance(output, model):
        return output
    try:
        return model.model_validate(output)
    except ValidationError as e:
        paths = ", ".join(f.path or "<root>" for f in field_errors_from(e))
        logger.warning(f"Output of {descriptor.name} does not match its schema ({paths})")
        return output


def to_jsonable(value: Any) -> Any:
    """JSON-compatible view of handler output (models dumped in JSON mode)."""
    return to_jsonable_python(value, fallback=str)


def canonicalize(value: Any) -> str:
    """Deterministic JSON: sorted keys, compact separators."""
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    return json.dumps(to_jsonable(value), sort_keys=True, separators=(",", ":"))
